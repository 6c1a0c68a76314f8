"""SLA breach evaluation.

Turns raw quality samples into BreachEvents. A metric breaches only when it
is strictly worse than its threshold: latency, error rate and jitter must be
strictly above, uptime strictly below.
"""

from typing import List

from ..constants import CATASTROPHIC_LATENCY_MULTIPLIER, CATASTROPHIC_UPTIME_FLOOR
from ..models import BreachEvent, BreachType, QualitySample, SLAConfig


def qualifies(breach_type: BreachType, measured_value: float, sla: SLAConfig) -> bool:
    """Return True if ``measured_value`` strictly violates the SLA threshold."""
    threshold = sla.threshold_for(breach_type)
    if breach_type == BreachType.UPTIME:
        return measured_value < threshold
    return measured_value > threshold


def evaluate_sample(sample: QualitySample, sla: SLAConfig) -> List[BreachEvent]:
    """List the breaches in one quality sample, in a fixed metric order."""
    measurements = [
        (BreachType.LATENCY, sample.latency_ms),
        (BreachType.UPTIME, sample.uptime_percent),
        (BreachType.ERROR_RATE, sample.error_rate),
        (BreachType.JITTER, sample.jitter_ms),
    ]
    return [
        BreachEvent(
            breach_type=breach_type,
            measured_value=value,
            threshold=sla.threshold_for(breach_type),
            timestamp=sample.timestamp,
        )
        for breach_type, value in measurements
        if value is not None and qualifies(breach_type, value, sla)
    ]


def is_catastrophic(event: BreachEvent, sla: SLAConfig) -> bool:
    """A single breach bad enough to count as Severe on its own.

    Uptime below 99.00% or p99 latency above 2.5x the configured maximum.
    """
    if event.breach_type == BreachType.UPTIME:
        return event.measured_value < CATASTROPHIC_UPTIME_FLOOR
    if event.breach_type == BreachType.LATENCY:
        return event.measured_value > sla.max_latency_ms * CATASTROPHIC_LATENCY_MULTIPLIER
    return False
