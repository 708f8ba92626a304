"""
Composition root: wires the store, gate, pipeline, change feed and notifiers.
"""
from dataclasses import dataclass
from typing import Optional

from fastapi import Request

from fleet_alerts.alerting.gate import AlertGate
from fleet_alerts.alerting.live import LiveAlertSubscription, SweepScheduler
from fleet_alerts.alerting.pipeline import AlertPipeline
from fleet_alerts.database.connection import DatabaseManager
from fleet_alerts.database.store import FleetStore
from fleet_alerts.models.telemetry import Thresholds
from fleet_alerts.notifications.fanout import LoggingNotifier, NotificationFanout
from fleet_alerts.notifications.webhook import WebhookNotifier
from fleet_alerts.realtime.change_feed import ChangeFeed
from fleet_alerts.utils.config import Settings
from fleet_alerts.utils.logging_config import get_logger

logger = get_logger(__name__)


@dataclass
class AlertingRuntime:
    settings: Settings
    db: DatabaseManager
    store: FleetStore
    feed: ChangeFeed
    gate: AlertGate
    fanout: NotificationFanout
    pipeline: AlertPipeline
    live: LiveAlertSubscription
    scheduler: Optional[SweepScheduler] = None
    webhook: Optional[WebhookNotifier] = None

    @classmethod
    def build(cls, settings: Settings, db: DatabaseManager) -> "AlertingRuntime":
        store = FleetStore(db, history_limit=settings.LOCATION_HISTORY_LIMIT)
        feed = ChangeFeed()
        gate = AlertGate(store, cooldown_seconds=settings.ALERT_COOLDOWN_SECONDS)

        fanout = NotificationFanout([LoggingNotifier()])
        webhook = None
        if settings.ALERT_WEBHOOK_URL:
            webhook = WebhookNotifier(settings.ALERT_WEBHOOK_URL, timeout_seconds=settings.NOTIFY_TIMEOUT_SECONDS)
            fanout.subscribe(webhook)

        pipeline = AlertPipeline(
            resolver=store,
            gate=gate,
            notifier=fanout,
            telemetry=store,
            location_tracker=store,
            thresholds=Thresholds.from_settings(settings),
            max_retries=settings.PERSISTENCE_MAX_RETRIES,
            retry_base_delay=settings.PERSISTENCE_RETRY_BASE_DELAY,
            concurrency=settings.PIPELINE_CONCURRENCY,
        )
        live = LiveAlertSubscription(pipeline, feed)
        scheduler = None
        if settings.SWEEP_INTERVAL_SECONDS > 0:
            scheduler = SweepScheduler(pipeline, settings.SWEEP_INTERVAL_SECONDS, limit=settings.SWEEP_LIMIT)

        return cls(
            settings=settings,
            db=db,
            store=store,
            feed=feed,
            gate=gate,
            fanout=fanout,
            pipeline=pipeline,
            live=live,
            scheduler=scheduler,
            webhook=webhook,
        )

    async def start(self) -> None:
        self.live.start()
        if self.scheduler is not None:
            self.scheduler.start()
        logger.info("Alerting runtime started")

    async def stop(self) -> None:
        """Stop drivers and deliver pending notifications before the store goes away."""
        if self.scheduler is not None:
            await self.scheduler.stop()
        await self.live.stop()
        await self.pipeline.flush_notifications()
        if self.webhook is not None:
            await self.webhook.close()
        logger.info("Alerting runtime stopped")


def get_runtime(request: Request) -> AlertingRuntime:
    """FastAPI dependency returning the runtime built at startup."""
    return request.app.state.runtime
