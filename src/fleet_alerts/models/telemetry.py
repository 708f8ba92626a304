"""
Telemetry and alert data models shared by the alerting pipeline, the store and the API.
"""
import math
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationInfo, field_validator

from fleet_alerts.utils.config import Settings


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes (e.g. read back from SQLite) as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class VehicleStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    MAINTENANCE = "maintenance"


class AlertType(str, Enum):
    SPEEDING = "speeding"
    UNUSUAL_MOVEMENT = "unusual_movement"


class Severity(str, Enum):
    CRITICAL = "critical"
    WARNING = "warning"


@dataclass(frozen=True)
class Thresholds:
    speed_limit_kmh: float = 100.0
    max_lateral_accel: float = 20.0
    max_vertical_accel: float = 30.0
    max_tilt_degrees: float = 45.0

    @classmethod
    def from_settings(cls, settings: Settings) -> "Thresholds":
        return cls(
            speed_limit_kmh=settings.SPEED_LIMIT_KMH,
            max_lateral_accel=settings.MAX_LATERAL_ACCEL,
            max_vertical_accel=settings.MAX_VERTICAL_ACCEL,
            max_tilt_degrees=settings.MAX_TILT_DEGREES,
        )


class TelemetrySample(BaseModel):
    """
    One positional/motion reading from a tracking device.

    Every motion field is independently optional: a missing value means
    "unknown", never zero. Coordinates outside their range are discarded
    as unknown. ``recorded_at`` falls back to ingestion time.
    """
    model_config = ConfigDict(
        frozen=True,
        populate_by_name=True,
        json_schema_extra={
            "example": {
                "device_id": "D1",
                "latitude": 33.5731,
                "longitude": -7.5898,
                "speed": 130.0,
                "accel_x": 1.2,
                "accel_y": -0.4,
                "accel_z": 9.8,
                "pitch": 2.0,
                "roll": -1.5,
                "recorded_at": "2025-09-04T12:01:00Z",
            }
        },
    )

    id: Optional[str] = Field(None, description="Sample identifier assigned by the telemetry store")
    device_id: str = Field(..., min_length=1, description="Opaque tracking device identifier")
    latitude: Optional[float] = Field(None, ge=-90, le=90, description="GPS latitude")
    longitude: Optional[float] = Field(None, ge=-180, le=180, description="GPS longitude")
    speed: Optional[float] = Field(None, description="Speed in km/h")
    accel_x: Optional[float] = None
    accel_y: Optional[float] = None
    accel_z: Optional[float] = None
    pitch: Optional[float] = Field(None, description="Pitch in degrees")
    roll: Optional[float] = Field(None, description="Roll in degrees")
    recorded_at: datetime = Field(
        default_factory=utc_now,
        validation_alias=AliasChoices("recorded_at", "created_at"),
    )

    @field_validator("id", mode="before")
    @classmethod
    def coerce_id(cls, v: Any) -> Any:
        return str(v) if v is not None else v

    @field_validator("latitude", "longitude", mode="before")
    @classmethod
    def discard_invalid_coordinate(cls, v: Any, info: ValidationInfo) -> Any:
        # A bad GPS fix only loses the position, never the motion readings
        if v is None:
            return v
        try:
            value = float(v)
        except (TypeError, ValueError):
            return None
        limit = 90.0 if info.field_name == "latitude" else 180.0
        if math.isnan(value) or abs(value) > limit:
            return None
        return value

    @field_validator("recorded_at", mode="before")
    @classmethod
    def default_recorded_at(cls, v: Any) -> Any:
        return utc_now() if v is None else v

    @field_validator("recorded_at")
    @classmethod
    def normalize_recorded_at(cls, v: datetime) -> datetime:
        return ensure_utc(v)

    @property
    def has_position(self) -> bool:
        return self.latitude is not None and self.longitude is not None


class Evaluation(BaseModel):
    """Threshold evaluation of a single sample."""
    model_config = ConfigDict(frozen=True)

    is_speeding: bool
    has_unusual_movement: bool


class AlertCandidate(BaseModel):
    """An alert the classifier wants raised, before the dedup gate sees it."""
    model_config = ConfigDict(frozen=True)

    type: AlertType
    severity: Severity
    description: str


class Alert(BaseModel):
    """A persisted alert. Immutable once created."""
    model_config = ConfigDict(
        frozen=True,
        from_attributes=True,
        json_schema_extra={
            "example": {
                "id": "0f8fad5b-d9cb-469f-a165-70867728950e",
                "vehicle_id": "V1",
                "type": "speeding",
                "severity": "critical",
                "description": "Vehicle is speeding at 130 km/h",
                "timestamp": "2025-09-04T12:01:00Z",
                "recorded_at": "2025-09-04T12:00:58Z",
            }
        },
    )

    id: str
    vehicle_id: str
    type: AlertType
    severity: Severity
    description: str
    timestamp: datetime
    # recorded_at of the sample that raised the alert
    recorded_at: datetime

    @field_validator("timestamp", "recorded_at")
    @classmethod
    def normalize_timestamp(cls, v: datetime) -> datetime:
        return ensure_utc(v)


class SampleFailure(BaseModel):
    sample_id: Optional[str] = None
    device_id: Optional[str] = None
    error: str


class SweepReport(BaseModel):
    """Outcome of one batch sweep: accepted alerts plus samples that failed."""
    scanned: int = 0
    accepted: List[Alert] = Field(default_factory=list)
    failed: List[SampleFailure] = Field(default_factory=list)

    @property
    def failed_sample_ids(self) -> List[Optional[str]]:
        return [failure.sample_id for failure in self.failed]
