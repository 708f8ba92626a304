"""
Collaborator interfaces consumed by the alerting pipeline.

The SQLAlchemy store implements the resolver, repositories and location
tracker; notification sinks implement Notifier. Tests substitute fakes.
"""
from datetime import datetime
from typing import List, Optional, Protocol

from fleet_alerts.models.telemetry import Alert, AlertCandidate, AlertType, TelemetrySample


class VehicleResolver(Protocol):
    async def resolve_vehicle_id(self, device_id: str) -> Optional[str]:
        """Return the vehicle bound to the device, or None when unbound."""
        ...


class AlertRepository(Protocol):
    async def latest_alert(self, vehicle_id: str, alert_type: AlertType) -> Optional[Alert]:
        """The alert of this type raised for the most recent sample, or None."""
        ...

    async def insert_alert(
        self,
        vehicle_id: str,
        candidate: AlertCandidate,
        timestamp: datetime,
        recorded_at: datetime,
    ) -> Alert:
        ...


class TelemetryRepository(Protocol):
    async def recent_samples(self, limit: int) -> List[TelemetrySample]:
        """Most recent samples first."""
        ...


class LocationTracker(Protocol):
    async def record_location(self, vehicle_id: str, sample: TelemetrySample) -> None:
        ...


class Notifier(Protocol):
    async def notify(self, alert: Alert) -> None:
        ...
