"""
Async data access for the alerting pipeline on top of the SQLAlchemy session layer.

Every blocking database call runs in a worker thread so the event loop keeps
serving other samples while a query is in flight.
"""
import asyncio
import threading
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from pydantic import ValidationError
from sqlalchemy import desc
from sqlalchemy.exc import SQLAlchemyError

from fleet_alerts.alerting.errors import PersistenceError, ResolverError, VehicleNotFound
from fleet_alerts.database.connection import DatabaseManager
from fleet_alerts.database.models import AlertRecord, Device, TelemetryRecord, Vehicle
from fleet_alerts.models.telemetry import (
    Alert,
    AlertCandidate,
    AlertType,
    TelemetrySample,
    VehicleStatus,
)
from fleet_alerts.utils.logging_config import get_logger

logger = get_logger(__name__)

DEFAULT_HISTORY_LIMIT = 100


class FleetStore:
    """
    Repository over the vehicles, devices, alerts and telemetry tables.

    Implements the vehicle resolver, alert repository, telemetry repository
    and location tracker interfaces used by the pipeline.
    """

    def __init__(self, db: DatabaseManager, history_limit: int = DEFAULT_HISTORY_LIMIT):
        self.db = db
        self.history_limit = history_limit
        self._connection_lock = threading.Lock()

    async def _run(self, fn: Callable[..., Any], *args: Any) -> Any:
        return await asyncio.to_thread(self._call, fn, *args)

    def _call(self, fn: Callable[..., Any], *args: Any) -> Any:
        if self.db.single_connection:
            with self._connection_lock:
                return fn(*args)
        return fn(*args)

    # Device-to-vehicle resolution

    async def resolve_vehicle_id(self, device_id: str) -> Optional[str]:
        try:
            return await self._run(self._resolve_vehicle_id, device_id)
        except SQLAlchemyError as e:
            raise ResolverError(device_id, f"Vehicle lookup failed for device {device_id}: {e}") from e

    def _resolve_vehicle_id(self, device_id: str) -> Optional[str]:
        with self.db.get_db_session() as session:
            device = session.query(Device).filter(Device.id == device_id).first()
            return device.vehicle_id if device else None

    # Alerts

    async def latest_alert(self, vehicle_id: str, alert_type: AlertType) -> Optional[Alert]:
        try:
            return await self._run(self._latest_alert, vehicle_id, alert_type)
        except SQLAlchemyError as e:
            raise PersistenceError(f"Alert lookup failed for vehicle {vehicle_id}: {e}") from e

    def _latest_alert(self, vehicle_id: str, alert_type: AlertType) -> Optional[Alert]:
        with self.db.get_db_session() as session:
            record = (
                session.query(AlertRecord)
                .filter(AlertRecord.vehicle_id == vehicle_id, AlertRecord.type == alert_type)
                .order_by(desc(AlertRecord.recorded_at), desc(AlertRecord.timestamp))
                .first()
            )
            return Alert.model_validate(record) if record else None

    async def insert_alert(
        self,
        vehicle_id: str,
        candidate: AlertCandidate,
        timestamp: datetime,
        recorded_at: datetime,
    ) -> Alert:
        """
        Insert an alert row in its own transaction.

        Raises:
            VehicleNotFound: the vehicle was deleted in the meantime
            PersistenceError: the insert failed and was rolled back
        """
        try:
            alert = await self._run(self._insert_alert, vehicle_id, candidate, timestamp, recorded_at)
        except SQLAlchemyError as e:
            raise PersistenceError(f"Alert insert failed for vehicle {vehicle_id}: {e}") from e
        if alert is None:
            raise VehicleNotFound(vehicle_id=vehicle_id)
        return alert

    def _insert_alert(
        self,
        vehicle_id: str,
        candidate: AlertCandidate,
        timestamp: datetime,
        recorded_at: datetime,
    ) -> Optional[Alert]:
        with self.db.get_db_session() as session:
            if session.get(Vehicle, vehicle_id) is None:
                return None
            record = AlertRecord(
                vehicle_id=vehicle_id,
                type=candidate.type,
                severity=candidate.severity,
                description=candidate.description,
                timestamp=timestamp,
                recorded_at=recorded_at,
            )
            session.add(record)
            session.flush()
            return Alert.model_validate(record)

    async def list_alerts(
        self,
        vehicle_id: Optional[str] = None,
        alert_type: Optional[AlertType] = None,
        limit: int = 100,
    ) -> List[Alert]:
        try:
            return await self._run(self._list_alerts, vehicle_id, alert_type, limit)
        except SQLAlchemyError as e:
            raise PersistenceError(f"Alert listing failed: {e}") from e

    def _list_alerts(self, vehicle_id: Optional[str], alert_type: Optional[AlertType], limit: int) -> List[Alert]:
        with self.db.get_db_session() as session:
            query = session.query(AlertRecord)
            if vehicle_id:
                query = query.filter(AlertRecord.vehicle_id == vehicle_id)
            if alert_type:
                query = query.filter(AlertRecord.type == alert_type)
            records = query.order_by(desc(AlertRecord.timestamp)).limit(limit).all()
            return [Alert.model_validate(record) for record in records]

    # Telemetry

    async def save_sample(self, sample: TelemetrySample) -> Dict[str, Any]:
        """Store a sample and return the stored row, id included."""
        try:
            return await self._run(self._save_sample, sample)
        except SQLAlchemyError as e:
            raise PersistenceError(f"Telemetry insert failed for device {sample.device_id}: {e}") from e

    def _save_sample(self, sample: TelemetrySample) -> Dict[str, Any]:
        values = sample.model_dump(exclude={"id"})
        if sample.id:
            values["id"] = sample.id
        with self.db.get_db_session() as session:
            record = TelemetryRecord(**values)
            session.add(record)
            session.flush()
            return record.to_dict()

    async def recent_samples(self, limit: int) -> List[TelemetrySample]:
        try:
            rows = await self._run(self._recent_rows, limit)
        except SQLAlchemyError as e:
            raise PersistenceError(f"Telemetry scan failed: {e}") from e

        samples = []
        for row in rows:
            try:
                samples.append(TelemetrySample.model_validate(row))
            except ValidationError as e:
                logger.warning(f"Skipping malformed telemetry row {row.get('id')}: {e}")
        return samples

    def _recent_rows(self, limit: int) -> List[Dict[str, Any]]:
        with self.db.get_db_session() as session:
            records = (
                session.query(TelemetryRecord)
                .order_by(desc(TelemetryRecord.recorded_at), desc(TelemetryRecord.ingested_at))
                .limit(limit)
                .all()
            )
            return [record.to_dict() for record in records]

    # Vehicle location

    async def record_location(self, vehicle_id: str, sample: TelemetrySample) -> None:
        try:
            await self._run(self._record_location, vehicle_id, sample)
        except SQLAlchemyError as e:
            raise PersistenceError(f"Location update failed for vehicle {vehicle_id}: {e}") from e

    def _record_location(self, vehicle_id: str, sample: TelemetrySample) -> None:
        entry = {
            "lat": sample.latitude,
            "lng": sample.longitude,
            "timestamp": sample.recorded_at.isoformat(),
        }
        with self.db.get_db_session() as session:
            vehicle = session.get(Vehicle, vehicle_id)
            if vehicle is None:
                return
            vehicle.current_location = entry
            # New list so the JSON column change is detected
            vehicle.location_history = ([entry] + list(vehicle.location_history or []))[: self.history_limit]

    # Fleet records (used by fixtures and administration scripts)

    async def add_vehicle(
        self,
        plate_number: str,
        owner_id: str,
        status: VehicleStatus = VehicleStatus.ACTIVE,
        vehicle_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        return await self._run(self._add_vehicle, plate_number, owner_id, status, vehicle_id)

    def _add_vehicle(self, plate_number, owner_id, status, vehicle_id) -> Dict[str, Any]:
        with self.db.get_db_session() as session:
            vehicle = Vehicle(plate_number=plate_number, owner_id=owner_id, status=status, location_history=[])
            if vehicle_id:
                vehicle.id = vehicle_id
            session.add(vehicle)
            session.flush()
            logger.debug(f"Created vehicle {vehicle.id} ({plate_number})")
            return vehicle.to_dict()

    async def get_vehicle(self, vehicle_id: str) -> Optional[Dict[str, Any]]:
        return await self._run(self._get_vehicle, vehicle_id)

    def _get_vehicle(self, vehicle_id: str) -> Optional[Dict[str, Any]]:
        with self.db.get_db_session() as session:
            vehicle = session.get(Vehicle, vehicle_id)
            return vehicle.to_dict() if vehicle else None

    async def delete_vehicle(self, vehicle_id: str) -> bool:
        """Delete a vehicle; its alerts go with it and its devices become unbound."""
        return await self._run(self._delete_vehicle, vehicle_id)

    def _delete_vehicle(self, vehicle_id: str) -> bool:
        with self.db.get_db_session() as session:
            deleted = session.query(Vehicle).filter(Vehicle.id == vehicle_id).delete(synchronize_session=False)
            return deleted > 0

    async def bind_device(self, device_id: str, vehicle_id: Optional[str]) -> None:
        """Bind a device to a vehicle, replacing any previous binding."""
        await self._run(self._bind_device, device_id, vehicle_id)

    def _bind_device(self, device_id: str, vehicle_id: Optional[str]) -> None:
        with self.db.get_db_session() as session:
            device = session.get(Device, device_id)
            if device is None:
                session.add(Device(id=device_id, vehicle_id=vehicle_id))
            else:
                device.vehicle_id = vehicle_id
