"""
Telemetry ingestion pipeline: resolve -> evaluate -> classify -> gate -> notify.

Live mode calls process_telemetry_event once per change-feed event; batch
sweeps re-scan the most recent samples and rely on the gate for duplicate
safety.
"""
import asyncio
from typing import Any, List, Mapping, Optional, Set, Union

from pydantic import ValidationError

from fleet_alerts.alerting.classifier import classify
from fleet_alerts.alerting.errors import (
    EvaluationError,
    PersistenceError,
    ResolverError,
    VehicleNotFound,
)
from fleet_alerts.alerting.evaluator import evaluate_sample
from fleet_alerts.alerting.gate import AlertGate
from fleet_alerts.alerting.interfaces import (
    LocationTracker,
    Notifier,
    TelemetryRepository,
    VehicleResolver,
)
from fleet_alerts.models.telemetry import (
    Alert,
    SampleFailure,
    SweepReport,
    TelemetrySample,
    Thresholds,
)
from fleet_alerts.utils.logging_config import get_logger

logger = get_logger(__name__)

RawSample = Union[TelemetrySample, Mapping[str, Any]]

DEFAULT_SWEEP_LIMIT = 50


def parse_sample(raw: RawSample) -> TelemetrySample:
    if isinstance(raw, TelemetrySample):
        return raw
    try:
        return TelemetrySample.model_validate(raw)
    except (ValidationError, TypeError) as e:
        raise EvaluationError(f"Malformed telemetry sample: {e}", row=raw) from e


class AlertPipeline:
    """
    Orchestrates alert detection for telemetry samples.

    Args:
        resolver: Device-to-vehicle lookup
        gate: Dedup and persistence gate; the only path to the alert store
        notifier: Receives every accepted alert in a background task, best-effort
        telemetry: Sample source for batch sweeps
        location_tracker: Optional vehicle position recorder used in live mode
        thresholds: Evaluation thresholds
        max_retries: Attempts per sample when persistence fails
        retry_base_delay: Backoff before the second attempt, doubled each time
        concurrency: Samples processed at once during a sweep
    """

    def __init__(
        self,
        resolver: VehicleResolver,
        gate: AlertGate,
        notifier: Optional[Notifier] = None,
        telemetry: Optional[TelemetryRepository] = None,
        location_tracker: Optional[LocationTracker] = None,
        thresholds: Thresholds = Thresholds(),
        max_retries: int = 3,
        retry_base_delay: float = 0.5,
        concurrency: int = 8,
    ):
        if max_retries < 1:
            raise ValueError("max_retries must be at least 1")
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self.resolver = resolver
        self.gate = gate
        self.notifier = notifier
        self.telemetry = telemetry
        self.location_tracker = location_tracker
        self.thresholds = thresholds
        self.max_retries = max_retries
        self.retry_base_delay = retry_base_delay
        self.concurrency = concurrency
        self._pending_notifications: Set[asyncio.Task] = set()

    async def process_telemetry_event(self, raw: RawSample, track_location: bool = False) -> Optional[Alert]:
        """
        Run the full pipeline for one sample, as live mode does.

        Never raises for per-sample failures: they are logged and the call
        returns None, since nobody upstream can act on them.
        """
        try:
            return await self._process(raw, track_location=track_location)
        except ResolverError as e:
            logger.error(f"Dropping sample: {e}")
        except PersistenceError as e:
            logger.error(f"Dropping sample after {self.max_retries} attempts: {e}")
        except Exception as e:
            logger.error(f"Unexpected error while processing sample: {e}", exc_info=True)
        return None

    async def run_batch_sweep(self, limit: int = DEFAULT_SWEEP_LIMIT) -> SweepReport:
        """
        Process the most recent samples independently.

        Samples run concurrently up to the configured limit. A failing sample
        is reported in the result and never stops the others.

        Raises:
            PersistenceError: the recent samples could not be read at all
        """
        if self.telemetry is None:
            raise RuntimeError("Batch sweep requires a telemetry repository")

        samples = await self.telemetry.recent_samples(limit)
        report = SweepReport(scanned=len(samples))
        slots = asyncio.Semaphore(self.concurrency)

        async def run_one(sample: TelemetrySample) -> Optional[Alert]:
            async with slots:
                return await self._process(sample)

        outcomes = await asyncio.gather(
            *(run_one(sample) for sample in samples),
            return_exceptions=True,
        )

        for sample, outcome in zip(samples, outcomes):
            if isinstance(outcome, Alert):
                report.accepted.append(outcome)
            elif isinstance(outcome, (ResolverError, PersistenceError)):
                logger.error(f"Sweep failed for sample {sample.id} (device {sample.device_id}): {outcome}")
                report.failed.append(
                    SampleFailure(sample_id=sample.id, device_id=sample.device_id, error=str(outcome))
                )
            elif isinstance(outcome, asyncio.CancelledError):
                raise outcome
            elif isinstance(outcome, BaseException):
                logger.error(
                    f"Unexpected error for sample {sample.id} (device {sample.device_id}): {outcome}",
                    exc_info=outcome,
                )
                report.failed.append(
                    SampleFailure(sample_id=sample.id, device_id=sample.device_id, error=repr(outcome))
                )

        logger.info(
            f"Batch sweep complete: {report.scanned} scanned, {len(report.accepted)} alerts, "
            f"{len(report.failed)} failed"
        )
        return report

    async def _process(self, raw: RawSample, track_location: bool = False) -> Optional[Alert]:
        try:
            sample = parse_sample(raw)
        except EvaluationError as e:
            logger.warning(f"Dropping sample: {e}")
            return None

        try:
            vehicle_id = await self._resolve(sample.device_id)
        except VehicleNotFound:
            logger.debug(f"No vehicle bound to device {sample.device_id}, sample dropped")
            return None

        if track_location and self.location_tracker is not None and sample.has_position:
            await self._record_location(vehicle_id, sample)

        evaluation = evaluate_sample(sample, self.thresholds)
        candidate = classify(evaluation, sample)
        if candidate is None:
            return None

        try:
            alert = await self._submit_with_retry(vehicle_id, candidate, sample.recorded_at)
        except VehicleNotFound:
            logger.debug(f"Vehicle {vehicle_id} disappeared before the alert was stored")
            return None
        if alert is None:
            return None

        self._schedule_notification(alert)
        return alert

    async def _resolve(self, device_id: str) -> str:
        try:
            vehicle_id = await self.resolver.resolve_vehicle_id(device_id)
        except (VehicleNotFound, ResolverError):
            raise
        except Exception as e:
            raise ResolverError(device_id, f"Vehicle lookup failed for device {device_id}: {e}") from e

        if not vehicle_id:
            raise VehicleNotFound(device_id=device_id)
        return vehicle_id

    async def _submit_with_retry(self, vehicle_id, candidate, recorded_at) -> Optional[Alert]:
        delay = self.retry_base_delay
        for attempt in range(1, self.max_retries + 1):
            try:
                return await self.gate.submit(vehicle_id, candidate, recorded_at)
            except PersistenceError as e:
                if attempt == self.max_retries:
                    raise
                logger.warning(
                    f"Alert persistence failed for vehicle {vehicle_id} "
                    f"(attempt {attempt}/{self.max_retries}), retrying in {delay:.2f}s: {e}"
                )
                await asyncio.sleep(delay)
                delay *= 2
        return None

    async def _record_location(self, vehicle_id: str, sample: TelemetrySample) -> None:
        try:
            await self.location_tracker.record_location(vehicle_id, sample)
        except Exception as e:
            logger.warning(f"Could not record location for vehicle {vehicle_id}: {e}")

    def _schedule_notification(self, alert: Alert) -> None:
        if self.notifier is None:
            return
        task = asyncio.create_task(self._notify(alert), name=f"notify-alert-{alert.id}")
        self._pending_notifications.add(task)
        task.add_done_callback(self._pending_notifications.discard)

    async def flush_notifications(self) -> None:
        """Wait until every scheduled notification has been delivered or has failed."""
        while self._pending_notifications:
            await asyncio.gather(*list(self._pending_notifications), return_exceptions=True)

    async def _notify(self, alert: Alert) -> None:
        try:
            await self.notifier.notify(alert)
        except Exception as e:
            logger.warning(f"Notification failed for alert {alert.id}: {e}")
