"""Statistics used by aggregation and percentile normalization."""

from __future__ import annotations

import math
from datetime import datetime
from typing import Sequence

from pipelines.model import NORMALIZED_BUCKETS, Freshness

PERCENTILE_FRACTIONS: tuple[float, ...] = (0.1, 0.25, 0.5, 0.75, 0.9)
PERCENTILE_BUCKETS: tuple[float, ...] = NORMALIZED_BUCKETS[:-1]
TOP_BUCKET = NORMALIZED_BUCKETS[-1]

DEFAULT_SATURATION = 2.0
DEFAULT_RECENCY_FLOOR = 0.3
RECENCY_HORIZON_DAYS = 365.0

FRESH_DAYS = 7
RECENT_DAYS = 30


def lower_median(values: Sequence[float]) -> float:
    """Median that picks the lower-middle element for even-length inputs."""
    if not values:
        raise ValueError("lower_median() requires at least one value")
    ordered = sorted(values)
    return ordered[(len(ordered) - 1) // 2]


def sample_factor(count: int, saturation: float = DEFAULT_SATURATION) -> float:
    if count <= 0:
        return 0.0
    return min(1.0, math.log10(count + 1) / saturation)


def recency_factor(age_days: float, floor: float = DEFAULT_RECENCY_FLOOR) -> float:
    return min(1.0, max(floor, 1.0 - age_days / RECENCY_HORIZON_DAYS))


def age_in_days(moment: datetime, as_of: datetime) -> float:
    return (as_of - moment).total_seconds() / 86400.0


def confidence_score(
    count: int,
    last_seen: datetime,
    *,
    as_of: datetime,
    saturation: float = DEFAULT_SATURATION,
    recency_floor: float = DEFAULT_RECENCY_FLOOR,
) -> float:
    """Combine sample size (log-saturating) and recency (linear yearly decay).

    The result is clamped to ``[0, 1]``.
    """
    score = sample_factor(count, saturation) * recency_factor(
        age_in_days(last_seen, as_of), recency_floor
    )
    return min(1.0, max(0.0, score))


def weighted_average(values: Sequence[float], weights: Sequence[float]) -> float | None:
    """Weighted mean, or ``None`` when the weights sum to zero."""
    if len(values) != len(weights):
        raise ValueError("values and weights must have the same length")
    total_weight = sum(weights)
    if not values or total_weight == 0:
        return None
    return sum(v * w for v, w in zip(values, weights)) / total_weight


def percentile_cont(sorted_values: Sequence[float], fraction: float) -> float:
    """Continuous percentile with linear interpolation between order statistics."""
    if not sorted_values:
        raise ValueError("percentile_cont() requires at least one value")
    if not 0.0 <= fraction <= 1.0:
        raise ValueError(f"fraction {fraction} outside [0, 1]")
    position = fraction * (len(sorted_values) - 1)
    lower = math.floor(position)
    upper = math.ceil(position)
    if lower == upper:
        return float(sorted_values[lower])
    weight = position - lower
    return sorted_values[lower] + (sorted_values[upper] - sorted_values[lower]) * weight


def percentile_cut_points(values: Sequence[float]) -> tuple[float, ...]:
    ordered = sorted(values)
    return tuple(percentile_cont(ordered, fraction) for fraction in PERCENTILE_FRACTIONS)


def bucket_for(value: float, cut_points: Sequence[float]) -> float:
    """Coarse normalized score: first threshold ``value`` is at or below, else 1.0."""
    for bucket, cut in zip(PERCENTILE_BUCKETS, cut_points):
        if value <= cut:
            return bucket
    return TOP_BUCKET


def classify_freshness(last_seen: datetime | None, as_of: datetime) -> Freshness:
    if last_seen is None:
        return "stale"
    age = age_in_days(last_seen, as_of)
    if age <= FRESH_DAYS:
        return "fresh"
    if age <= RECENT_DAYS:
        return "recent"
    return "stale"


__all__ = [
    "DEFAULT_RECENCY_FLOOR",
    "DEFAULT_SATURATION",
    "PERCENTILE_BUCKETS",
    "PERCENTILE_FRACTIONS",
    "TOP_BUCKET",
    "age_in_days",
    "bucket_for",
    "classify_freshness",
    "confidence_score",
    "lower_median",
    "percentile_cont",
    "percentile_cut_points",
    "recency_factor",
    "sample_factor",
    "weighted_average",
]
