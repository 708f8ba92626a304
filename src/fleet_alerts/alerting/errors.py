"""
Error taxonomy for the alerting pipeline.
"""
from typing import Any, Optional


class AlertingError(Exception):
    """Base class for alerting pipeline errors."""


class VehicleNotFound(AlertingError):
    """No vehicle is bound to the device. Samples are dropped, not escalated."""

    def __init__(self, device_id: Optional[str] = None, vehicle_id: Optional[str] = None):
        self.device_id = device_id
        self.vehicle_id = vehicle_id
        target = f"device {device_id}" if device_id else f"vehicle {vehicle_id}"
        super().__init__(f"No vehicle found for {target}")


class EvaluationError(AlertingError):
    """A raw telemetry row could not be turned into a sample."""

    def __init__(self, message: str, row: Any = None):
        self.row = row
        super().__init__(message)


class ResolverError(AlertingError):
    """The device-to-vehicle lookup itself failed."""

    def __init__(self, device_id: str, message: str = ""):
        self.device_id = device_id
        super().__init__(message or f"Vehicle lookup failed for device {device_id}")


class PersistenceError(AlertingError):
    """Alert store unavailable or write failed. Retryable."""


class NotificationError(AlertingError):
    """A notification sink failed. Never retried."""
