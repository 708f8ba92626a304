"""
Alert query and sweep API endpoints.
"""
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status

from fleet_alerts.alerting.errors import PersistenceError
from fleet_alerts.alerting.pipeline import DEFAULT_SWEEP_LIMIT
from fleet_alerts.models.telemetry import AlertType
from fleet_alerts.runtime import AlertingRuntime, get_runtime
from fleet_alerts.utils.logging_config import get_logger

# Create router
router = APIRouter()
logger = get_logger(__name__)


@router.get("/alerts")
async def get_alerts(
    vehicle_id: Optional[str] = Query(None, description="Filter by vehicle ID"),
    alert_type: Optional[AlertType] = Query(None, description="Filter by alert type (e.g. 'speeding')"),
    limit: int = Query(100, ge=1, le=1000, description="Maximum number of alerts to return"),
    runtime: AlertingRuntime = Depends(get_runtime),
):
    """
    Get alerts, newest first.

    - **vehicle_id**: Filter by vehicle ID
    - **alert_type**: `speeding` or `unusual_movement`
    - **limit**: Maximum number of results
    """
    try:
        alerts = await runtime.store.list_alerts(vehicle_id=vehicle_id, alert_type=alert_type, limit=limit)
    except PersistenceError as e:
        logger.error(f"Error retrieving alerts: {e}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Alert store unavailable"
        )

    logger.info(f"Retrieved {len(alerts)} alerts with filters: type={alert_type}, vehicle={vehicle_id}")

    return {
        "alerts": [alert.model_dump(mode="json") for alert in alerts],
        "count": len(alerts),
        "filters_applied": {
            "vehicle_id": vehicle_id,
            "alert_type": alert_type.value if alert_type else None,
            "limit": limit,
        },
    }


@router.post("/alerts/sweep")
async def run_sweep(
    limit: int = Query(DEFAULT_SWEEP_LIMIT, ge=1, le=1000, description="Number of recent samples to scan"),
    runtime: AlertingRuntime = Depends(get_runtime),
):
    """Re-scan the most recent telemetry samples and raise any missing alerts."""
    try:
        report = await runtime.pipeline.run_batch_sweep(limit)
    except PersistenceError as e:
        logger.error(f"Batch sweep could not read telemetry: {e}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Telemetry store unavailable"
        )

    return {
        **report.model_dump(mode="json"),
        "failed_sample_ids": report.failed_sample_ids,
    }
