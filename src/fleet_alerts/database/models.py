"""
Database models using SQLAlchemy ORM for the fleet alerting service.
"""
import uuid
from typing import Any, Dict

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    String,
    Text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.sql import func

from fleet_alerts.models.telemetry import AlertType, Severity, VehicleStatus, utc_now

# Create base class
Base = declarative_base()

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


def _new_id() -> str:
    return str(uuid.uuid4())


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


VehicleStatusEnum = Enum(
    VehicleStatus,
    name="vehicle_status",
    values_callable=_enum_values,
    native_enum=False,
    validate_strings=True,
)

AlertTypeEnum = Enum(
    AlertType,
    name="alert_type",
    values_callable=_enum_values,
    native_enum=False,
    validate_strings=True,
)

SeverityEnum = Enum(
    Severity,
    name="alert_severity",
    values_callable=_enum_values,
    native_enum=False,
    validate_strings=True,
)


class Vehicle(Base):
    """Fleet vehicle master data."""
    __tablename__ = 'vehicles'

    id = Column(String(36), primary_key=True, default=_new_id)
    plate_number = Column(String(32), nullable=False, unique=True)
    status = Column(VehicleStatusEnum, nullable=False, default=VehicleStatus.ACTIVE)
    owner_id = Column(String(36), nullable=False)
    current_location = Column(JSONType, nullable=True)
    # Most recent entry first
    location_history = Column(JSONType, nullable=False, default=list)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    # Relationships
    devices = relationship("Device", back_populates="vehicle", passive_deletes=True)
    alerts = relationship("AlertRecord", back_populates="vehicle", passive_deletes=True)

    def __repr__(self):
        return f"<Vehicle(id='{self.id}', plate='{self.plate_number}', status='{self.status}')>"

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for API responses."""
        return {
            'id': self.id,
            'plate_number': self.plate_number,
            'status': self.status.value if self.status else None,
            'owner_id': self.owner_id,
            'current_location': self.current_location,
            'location_history': self.location_history or [],
        }


class Device(Base):
    """Tracking unit bound to at most one vehicle."""
    __tablename__ = 'devices'

    id = Column(String(64), primary_key=True)
    vehicle_id = Column(String(36), ForeignKey('vehicles.id', ondelete='SET NULL'), nullable=True, index=True)

    vehicle = relationship("Vehicle", back_populates="devices")

    def __repr__(self):
        return f"<Device(id='{self.id}', vehicle='{self.vehicle_id}')>"


class AlertRecord(Base):
    """Raised alerts. Rows are only ever inserted and read."""
    __tablename__ = 'alerts'

    id = Column(String(36), primary_key=True, default=_new_id)
    vehicle_id = Column(String(36), ForeignKey('vehicles.id', ondelete='CASCADE'), nullable=False)
    type = Column(AlertTypeEnum, nullable=False)
    severity = Column(SeverityEnum, nullable=False)
    description = Column(Text, nullable=False)
    timestamp = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    # Sample time the alert was raised for; the dedup gate compares against it
    recorded_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index('ix_alerts_vehicle_type_recorded_at', 'vehicle_id', 'type', 'recorded_at'),
    )

    vehicle = relationship("Vehicle", back_populates="alerts")

    def __repr__(self):
        return f"<AlertRecord(vehicle='{self.vehicle_id}', type='{self.type}')>"


class TelemetryRecord(Base):
    """Raw telemetry samples as delivered by tracking devices."""
    __tablename__ = 'telemetry'

    id = Column(String(36), primary_key=True, default=_new_id)
    device_id = Column(String(64), nullable=False, index=True)
    latitude = Column(Float)
    longitude = Column(Float)
    speed = Column(Float)
    accel_x = Column(Float)
    accel_y = Column(Float)
    accel_z = Column(Float)
    pitch = Column(Float)
    roll = Column(Float)
    recorded_at = Column(DateTime(timezone=True), nullable=False, default=utc_now, index=True)

    # Processing metadata
    ingested_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    def __repr__(self):
        return f"<TelemetryRecord(device='{self.device_id}', recorded_at='{self.recorded_at}')>"

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the row shape published on the change feed."""
        return {
            'id': self.id,
            'device_id': self.device_id,
            'latitude': self.latitude,
            'longitude': self.longitude,
            'speed': self.speed,
            'accel_x': self.accel_x,
            'accel_y': self.accel_y,
            'accel_z': self.accel_z,
            'pitch': self.pitch,
            'roll': self.roll,
            'recorded_at': self.recorded_at.isoformat() if self.recorded_at else None,
        }
