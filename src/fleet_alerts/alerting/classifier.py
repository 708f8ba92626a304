"""
Maps an evaluated sample to at most one alert candidate.
"""
from typing import Optional

from fleet_alerts.models.telemetry import (
    AlertCandidate,
    AlertType,
    Evaluation,
    Severity,
    TelemetrySample,
)

UNUSUAL_MOVEMENT_DESCRIPTION = "Vehicle has unusual movement pattern - possible accident or rough driving"

SEVERITY_BY_TYPE = {
    AlertType.SPEEDING: Severity.CRITICAL,
    AlertType.UNUSUAL_MOVEMENT: Severity.WARNING,
}


def speeding_description(speed: float) -> str:
    return f"Vehicle is speeding at {speed:g} km/h"


def classify(evaluation: Evaluation, sample: TelemetrySample) -> Optional[AlertCandidate]:
    """
    Return the alert to raise for a sample, or None.

    Speeding wins over unusual movement: a sample that trips both yields a
    single speeding alert.
    """
    if evaluation.is_speeding:
        return AlertCandidate(
            type=AlertType.SPEEDING,
            severity=SEVERITY_BY_TYPE[AlertType.SPEEDING],
            description=speeding_description(sample.speed),
        )

    if evaluation.has_unusual_movement:
        return AlertCandidate(
            type=AlertType.UNUSUAL_MOVEMENT,
            severity=SEVERITY_BY_TYPE[AlertType.UNUSUAL_MOVEMENT],
            description=UNUSUAL_MOVEMENT_DESCRIPTION,
        )

    return None
