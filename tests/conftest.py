import asyncio
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional
from uuid import uuid4

import pytest

from fleet_alerts.alerting.errors import PersistenceError
from fleet_alerts.alerting.gate import AlertGate
from fleet_alerts.alerting.pipeline import AlertPipeline
from fleet_alerts.database.connection import DatabaseManager, initialize_database
from fleet_alerts.database.store import FleetStore
from fleet_alerts.models.telemetry import Alert, AlertCandidate, AlertType, TelemetrySample
from fleet_alerts.utils.config import Settings


class FakeClock:
    def __init__(self, start: Optional[datetime] = None) -> None:
        self.now = start or datetime(2025, 9, 4, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FakeResolver:
    def __init__(self, bindings: Optional[Dict[str, str]] = None, failing: Iterable[str] = ()) -> None:
        self.bindings = dict(bindings or {})
        self.failing = set(failing)
        self.calls: List[str] = []

    async def resolve_vehicle_id(self, device_id: str) -> Optional[str]:
        await asyncio.sleep(0)
        self.calls.append(device_id)
        if device_id in self.failing:
            raise RuntimeError("resolver offline")
        return self.bindings.get(device_id)


class InMemoryAlertRepository:
    """Yields to the loop between lookup and insert so races would show up."""

    def __init__(self, insert_failures: int = 0, lookup_error: Optional[Exception] = None) -> None:
        self.alerts: List[Alert] = []
        self.insert_failures = insert_failures
        self.insert_attempts = 0
        self.lookup_error = lookup_error

    async def latest_alert(self, vehicle_id: str, alert_type: AlertType) -> Optional[Alert]:
        await asyncio.sleep(0)
        if self.lookup_error is not None:
            raise self.lookup_error
        matches = [a for a in self.alerts if a.vehicle_id == vehicle_id and a.type == alert_type]
        return max(matches, key=lambda a: (a.recorded_at, a.timestamp)) if matches else None

    async def insert_alert(
        self,
        vehicle_id: str,
        candidate: AlertCandidate,
        timestamp: datetime,
        recorded_at: datetime,
    ) -> Alert:
        await asyncio.sleep(0)
        self.insert_attempts += 1
        if self.insert_failures > 0:
            self.insert_failures -= 1
            raise PersistenceError("store unavailable")
        alert = Alert(
            id=str(uuid4()),
            vehicle_id=vehicle_id,
            type=candidate.type,
            severity=candidate.severity,
            description=candidate.description,
            timestamp=timestamp,
            recorded_at=recorded_at,
        )
        self.alerts.append(alert)
        return alert


class InMemoryTelemetryRepository:
    def __init__(self, samples: Iterable[TelemetrySample] = ()) -> None:
        self.samples = list(samples)

    async def recent_samples(self, limit: int) -> List[TelemetrySample]:
        await asyncio.sleep(0)
        return self.samples[:limit]


class RecordingNotifier:
    def __init__(self, fail: bool = False) -> None:
        self.alerts: List[Alert] = []
        self.fail = fail

    async def notify(self, alert: Alert) -> None:
        if self.fail:
            raise RuntimeError("toast service down")
        self.alerts.append(alert)


class RecordingLocationTracker:
    def __init__(self) -> None:
        self.recorded: List[tuple] = []

    async def record_location(self, vehicle_id: str, sample: TelemetrySample) -> None:
        self.recorded.append((vehicle_id, sample.latitude, sample.longitude))


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def resolver() -> FakeResolver:
    return FakeResolver({"D1": "V1", "D2": "V2"})


@pytest.fixture
def repository() -> InMemoryAlertRepository:
    return InMemoryAlertRepository()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def telemetry() -> InMemoryTelemetryRepository:
    return InMemoryTelemetryRepository()


@pytest.fixture
def gate(repository: InMemoryAlertRepository, clock: FakeClock) -> AlertGate:
    return AlertGate(repository, cooldown_seconds=60, clock=clock)


@pytest.fixture
def pipeline(
    resolver: FakeResolver,
    gate: AlertGate,
    notifier: RecordingNotifier,
    telemetry: InMemoryTelemetryRepository,
) -> AlertPipeline:
    return AlertPipeline(
        resolver=resolver,
        gate=gate,
        notifier=notifier,
        telemetry=telemetry,
        retry_base_delay=0,
    )


@pytest.fixture
def settings() -> Settings:
    return Settings(
        DATABASE_URL="sqlite://",
        SWEEP_INTERVAL_SECONDS=0,
        PERSISTENCE_RETRY_BASE_DELAY=0,
        ALERT_WEBHOOK_URL=None,
    )


@pytest.fixture
def db(settings: Settings):
    manager = initialize_database(DatabaseManager(), settings.DATABASE_URL)
    yield manager
    manager.close()


@pytest.fixture
def store(db: DatabaseManager) -> FleetStore:
    return FleetStore(db, history_limit=3)
