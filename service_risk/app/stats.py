"""
Statistics shared by the risk scoring collaborators.
"""

import math
import time
from typing import Iterable, List, Optional, Sequence, Tuple

from shared.errors import DimensionMismatch

SECONDS_PER_DAY = 24 * 60 * 60


def _now() -> float:
    return time.time()


def herfindahl_index(shares: Sequence[float]) -> float:
    """Herfindahl-Hirschman index of normalized shares (0 when empty)."""
    if not shares:
        return 0.0
    total = sum(shares)
    if total == 0:
        return 0.0
    return sum((share / total) ** 2 for share in shares)


def standard_deviation(values: Sequence[float]) -> float:
    """Population standard deviation; 0 for fewer than two values."""
    if len(values) < 2:
        return 0.0
    mean = sum(values) / len(values)
    variance = sum((value - mean) ** 2 for value in values) / len(values)
    return math.sqrt(variance)


def coefficient_of_variation(values: Sequence[float]) -> float:
    if not values:
        return 0.0
    mean = sum(values) / len(values)
    if mean == 0:
        return 0.0
    return standard_deviation(values) / abs(mean)


def exponential_decay(event_times: Iterable[float], decay_rate: float = 0.1, now: Optional[float] = None) -> List[float]:
    """Weight per event, decaying with the age of the event in days."""
    current = _now() if now is None else now
    return [math.exp(-decay_rate * (current - event_time) / SECONDS_PER_DAY) for event_time in event_times]


def portfolio_variance(
    weights: Sequence[float],
    risks: Sequence[float],
    correlation_matrix: Sequence[Sequence[float]],
) -> float:
    """Markowitz portfolio variance.

    Raises DimensionMismatch when the weights, risks and correlation matrix
    do not describe the same number of positions.
    """
    size = len(weights)
    if len(risks) != size or len(correlation_matrix) != size:
        raise DimensionMismatch(
            "Dimension mismatch in portfolio variance calculation",
            details={"weights": size, "risks": len(risks), "correlation_rows": len(correlation_matrix)},
        )
    for index, row in enumerate(correlation_matrix):
        if len(row) != size:
            raise DimensionMismatch(
                "Correlation matrix is not square",
                details={"row": index, "columns": len(row), "expected": size},
            )

    variance = 0.0
    for i in range(size):
        for j in range(size):
            correlation = 1.0 if i == j else correlation_matrix[i][j]
            variance += weights[i] * weights[j] * risks[i] * risks[j] * correlation
    return variance


def time_weighted_score(
    events: Iterable[Tuple[float, float]],
    decay_rate: float = 0.1,
    now: Optional[float] = None,
) -> float:
    """Decay-weighted mean of (score, timestamp) pairs."""
    current = _now() if now is None else now
    weighted_sum = 0.0
    total_weight = 0.0
    for score, timestamp in events:
        weight = math.exp(-decay_rate * (current - timestamp) / SECONDS_PER_DAY)
        weighted_sum += score * weight
        total_weight += weight
    return weighted_sum / total_weight if total_weight > 0 else 0.0


def growth_rate(initial_value: float, final_value: float, periods: float) -> float:
    """Compound growth rate per period; 0 unless both values are positive."""
    if initial_value <= 0 or final_value <= 0 or periods <= 0:
        return 0.0
    return (final_value / initial_value) ** (1 / periods) - 1


def percentile_rank(value: float, dataset: Sequence[float]) -> float:
    if not dataset:
        return 0.0
    rank = sum(1 for item in dataset if item <= value)
    return rank / len(dataset) * 100


def confidence_score(
    data_points: int,
    time_span_days: float,
    has_slashing_data: bool = False,
    has_recent_activity: bool = False,
) -> float:
    """Confidence in a sub-score given how much data backs it, capped at 95."""
    confidence = 50

    if data_points >= 100:
        confidence += 20
    elif data_points >= 50:
        confidence += 15
    elif data_points >= 20:
        confidence += 10
    elif data_points >= 10:
        confidence += 5

    if time_span_days >= 90:
        confidence += 15
    elif time_span_days >= 30:
        confidence += 10
    elif time_span_days >= 7:
        confidence += 5

    if has_slashing_data:
        confidence += 10
    if has_recent_activity:
        confidence += 5

    return min(confidence, 95)
