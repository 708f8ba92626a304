"""
Alert deduplication and persistence gate.

The only writer of alert rows. Decisions for the same (vehicle, type) pair
are serialized so two concurrent samples cannot both pass the cooldown check
and double-insert.
"""
import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import AsyncIterator, Callable, Dict, Hashable, Optional

from fleet_alerts.alerting.interfaces import AlertRepository
from fleet_alerts.models.telemetry import Alert, AlertCandidate, ensure_utc, utc_now
from fleet_alerts.utils.logging_config import get_logger

logger = get_logger(__name__)

DEFAULT_COOLDOWN_SECONDS = 60.0


class KeyedLock:
    """One asyncio.Lock per key, dropped again once nobody holds or waits on it."""

    def __init__(self):
        self._locks: Dict[Hashable, asyncio.Lock] = {}
        self._users: Dict[Hashable, int] = {}

    @asynccontextmanager
    async def hold(self, key: Hashable) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


class AlertGate:
    """
    Accepts or rejects alert candidates per vehicle and alert type.

    The cooldown is measured on sample time (``recorded_at``), not on the
    time the alert is written, so re-scanning an old sample never raises
    a second alert for it.

    Args:
        repository: Alert store used for the cooldown lookup and the insert
        cooldown_seconds: Minimum gap between the samples behind two accepted
            alerts of the same type for the same vehicle. 0 only rejects
            samples not newer than the last alerted one.
        clock: Returns the current aware datetime; injectable for tests
    """

    def __init__(
        self,
        repository: AlertRepository,
        cooldown_seconds: float = DEFAULT_COOLDOWN_SECONDS,
        clock: Callable[[], datetime] = utc_now,
    ):
        if cooldown_seconds < 0:
            raise ValueError("cooldown_seconds must not be negative")
        self.repository = repository
        self.cooldown = timedelta(seconds=cooldown_seconds)
        self.clock = clock
        self._locks = KeyedLock()

    def _is_duplicate(self, latest: Optional[Alert], recorded_at: datetime) -> bool:
        if latest is None:
            return False
        gap = recorded_at - ensure_utc(latest.recorded_at)
        return gap <= timedelta(0) or gap < self.cooldown

    async def submit(
        self,
        vehicle_id: str,
        candidate: AlertCandidate,
        recorded_at: Optional[datetime] = None,
    ) -> Optional[Alert]:
        """
        Persist the candidate unless the vehicle already has an alert of the
        same type for this sample, a later one, or one within the cooldown
        before it.

        Args:
            recorded_at: Time of the triggering sample; defaults to now

        Returns:
            The persisted alert, or None when deduplicated

        Raises:
            PersistenceError: lookup or insert failed; nothing was written
        """
        async with self._locks.hold((vehicle_id, candidate.type)):
            now = self.clock()
            recorded_at = ensure_utc(recorded_at) if recorded_at else now
            latest = await self.repository.latest_alert(vehicle_id, candidate.type)
            if self._is_duplicate(latest, recorded_at):
                logger.debug(
                    f"Suppressed duplicate {candidate.type.value} alert for vehicle {vehicle_id} "
                    f"(sample {recorded_at.isoformat()}, last alerted sample {latest.recorded_at.isoformat()})"
                )
                return None

            alert = await self.repository.insert_alert(vehicle_id, candidate, now, recorded_at)
            logger.info(f"Raised {alert.type.value} alert {alert.id} for vehicle {vehicle_id}")
            return alert
