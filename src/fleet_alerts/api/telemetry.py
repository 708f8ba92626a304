"""
Telemetry ingestion API endpoints.
"""
import time
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel

from fleet_alerts.alerting.classifier import classify
from fleet_alerts.alerting.errors import PersistenceError
from fleet_alerts.alerting.evaluator import evaluate_sample
from fleet_alerts.alerting.live import TELEMETRY_TABLE
from fleet_alerts.models.telemetry import AlertCandidate, Evaluation, TelemetrySample
from fleet_alerts.realtime.change_feed import INSERT, ChangeEvent
from fleet_alerts.runtime import AlertingRuntime, get_runtime
from fleet_alerts.utils.logging_config import get_logger

# Create router
router = APIRouter()
logger = get_logger(__name__)


class IngestionResponse(BaseModel):
    status: str = "accepted"
    sample_id: str
    subscribers_notified: int
    processing_time_ms: float


class EvaluationResponse(BaseModel):
    evaluation: Evaluation
    alert: Optional[AlertCandidate] = None


@router.post("/telemetry", response_model=IngestionResponse, status_code=status.HTTP_202_ACCEPTED)
async def ingest_telemetry(
    sample: TelemetrySample,
    runtime: AlertingRuntime = Depends(get_runtime),
) -> IngestionResponse:
    """
    Store a telemetry sample and publish it on the change feed.

    Alert detection happens asynchronously in the live subscription; the
    response only confirms the sample was stored.
    """
    start_time = time.time()
    try:
        row = await runtime.store.save_sample(sample)
    except PersistenceError as e:
        logger.error(f"Telemetry ingestion failed: {e}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Telemetry store unavailable"
        )

    delivered = runtime.feed.publish(ChangeEvent(event_type=INSERT, table=TELEMETRY_TABLE, row=row))
    logger.debug(f"Stored sample {row['id']} from device {sample.device_id}, {delivered} subscribers")

    return IngestionResponse(
        sample_id=row["id"],
        subscribers_notified=delivered,
        processing_time_ms=(time.time() - start_time) * 1000,
    )


@router.post("/telemetry/evaluate", response_model=EvaluationResponse)
async def evaluate_telemetry(
    sample: TelemetrySample,
    runtime: AlertingRuntime = Depends(get_runtime),
) -> EvaluationResponse:
    """Dry run: evaluate and classify a sample without storing anything."""
    evaluation = evaluate_sample(sample, runtime.pipeline.thresholds)
    return EvaluationResponse(evaluation=evaluation, alert=classify(evaluation, sample))
