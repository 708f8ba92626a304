"""
Pipeline drivers: the live change-feed subscription and the periodic sweep.
"""
import asyncio
from typing import Dict, Optional

from fleet_alerts.alerting.pipeline import AlertPipeline, DEFAULT_SWEEP_LIMIT
from fleet_alerts.models.telemetry import SweepReport
from fleet_alerts.realtime.change_feed import INSERT, ChangeEvent, ChangeFeed, Subscription
from fleet_alerts.utils.logging_config import get_logger

logger = get_logger(__name__)

TELEMETRY_TABLE = "telemetry"


class LiveAlertSubscription:
    """
    Feeds telemetry INSERT events into the pipeline as they arrive.

    Events are queued per device and every device queue is drained by a
    single worker, so one device's samples are processed in arrival order
    while different devices proceed concurrently.
    """

    def __init__(
        self,
        pipeline: AlertPipeline,
        feed: ChangeFeed,
        table: str = TELEMETRY_TABLE,
        concurrency: Optional[int] = None,
    ):
        self.pipeline = pipeline
        self.feed = feed
        self.table = table
        self._slots = asyncio.Semaphore(concurrency or pipeline.concurrency)
        self._subscription: Optional[Subscription] = None
        self._queues: Dict[str, asyncio.Queue] = {}
        self._workers: Dict[str, asyncio.Task] = {}
        self.stats = {"received": 0, "ignored": 0, "processed": 0, "failed": 0, "alerts": 0}

    @property
    def running(self) -> bool:
        return self._subscription is not None

    def start(self) -> None:
        if self.running:
            logger.warning("Live alert subscription already started")
            return
        self._subscription = self.feed.subscribe(self.table, self._on_event)
        logger.info(f"Live alert subscription started on {self.table}")

    async def stop(self, drain: bool = True) -> None:
        """Unsubscribe, then finish (or cancel) in-flight device workers."""
        if self._subscription is not None:
            self._subscription.unsubscribe()
            self._subscription = None

        if drain:
            await self.join()
        else:
            workers = list(self._workers.values())
            for worker in workers:
                worker.cancel()
            await asyncio.gather(*workers, return_exceptions=True)
        logger.info("Live alert subscription stopped")

    async def join(self) -> None:
        """Wait until every queued event has been processed."""
        while self._workers:
            await asyncio.gather(*list(self._workers.values()), return_exceptions=True)

    def _on_event(self, event: ChangeEvent) -> None:
        if event.event_type != INSERT:
            self.stats["ignored"] += 1
            return

        self.stats["received"] += 1
        device_id = str(event.row.get("device_id") or "")
        queue = self._queues.get(device_id)
        if queue is None:
            queue = self._queues[device_id] = asyncio.Queue()
            self._workers[device_id] = asyncio.create_task(
                self._drain(device_id, queue), name=f"live-alerts-{device_id or 'unknown'}"
            )
        queue.put_nowait(event.row)

    async def _drain(self, device_id: str, queue: asyncio.Queue) -> None:
        try:
            while not queue.empty():
                row = queue.get_nowait()
                try:
                    async with self._slots:
                        alert = await self.pipeline.process_telemetry_event(row, track_location=True)
                except Exception as e:
                    self.stats["failed"] += 1
                    logger.error(f"Live processing failed for sample {row.get('id')} (device {device_id}): {e}",
                                 exc_info=True)
                    continue
                self.stats["processed"] += 1
                if alert is not None:
                    self.stats["alerts"] += 1
        finally:
            self._queues.pop(device_id, None)
            self._workers.pop(device_id, None)


class SweepScheduler:
    """Runs a batch sweep every ``interval_seconds`` until stopped."""

    def __init__(self, pipeline: AlertPipeline, interval_seconds: float, limit: int = DEFAULT_SWEEP_LIMIT):
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self.pipeline = pipeline
        self.interval_seconds = interval_seconds
        self.limit = limit
        self.last_report: Optional[SweepReport] = None
        self.sweeps_run = 0
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            logger.warning("Sweep scheduler already running")
            return
        self._task = asyncio.create_task(self._run(), name="alert-sweep-scheduler")
        logger.info(f"Sweep scheduler started: every {self.interval_seconds}s, limit {self.limit}")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Sweep scheduler stopped")

    async def _run(self) -> None:
        while True:
            try:
                self.last_report = await self.pipeline.run_batch_sweep(self.limit)
                if self.last_report.failed:
                    logger.warning(
                        f"Sweep reported {len(self.last_report.failed)} failed samples: "
                        f"{self.last_report.failed_sample_ids}"
                    )
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Batch sweep failed: {e}", exc_info=True)
            self.sweeps_run += 1
            await asyncio.sleep(self.interval_seconds)
