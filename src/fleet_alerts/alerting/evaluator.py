"""
Threshold evaluation of telemetry samples.

Both checks are total: absent or NaN readings never trigger, infinite
readings always do.
"""
import math
from typing import Optional

from fleet_alerts.models.telemetry import Evaluation, TelemetrySample, Thresholds

DEFAULT_THRESHOLDS = Thresholds()


def _is_present(value: Optional[float]) -> bool:
    return value is not None and not math.isnan(value)


def _exceeds(value: Optional[float], limit: float) -> bool:
    return _is_present(value) and abs(value) > limit


def is_speeding(speed: Optional[float], thresholds: Thresholds = DEFAULT_THRESHOLDS) -> bool:
    """Strictly faster than the speed limit."""
    return _is_present(speed) and speed > thresholds.speed_limit_kmh


def has_unusual_movement(sample: TelemetrySample, thresholds: Thresholds = DEFAULT_THRESHOLDS) -> bool:
    """
    High acceleration on any axis or an unusual tilt.

    Each reading is compared on its own; a missing axis simply does not
    contribute.
    """
    high_acceleration = (
        _exceeds(sample.accel_x, thresholds.max_lateral_accel)
        or _exceeds(sample.accel_y, thresholds.max_lateral_accel)
        or _exceeds(sample.accel_z, thresholds.max_vertical_accel)
    )
    unusual_tilt = (
        _exceeds(sample.pitch, thresholds.max_tilt_degrees)
        or _exceeds(sample.roll, thresholds.max_tilt_degrees)
    )
    return high_acceleration or unusual_tilt


def evaluate_sample(sample: TelemetrySample, thresholds: Thresholds = DEFAULT_THRESHOLDS) -> Evaluation:
    return Evaluation(
        is_speeding=is_speeding(sample.speed, thresholds),
        has_unusual_movement=has_unusual_movement(sample, thresholds),
    )
