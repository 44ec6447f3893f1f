"""Fusion score aggregation.

- Dimension blend: 0.3 activity + 0.2 participation + 0.25 responsiveness + 0.25 throughput
  (coefficients file), scaled by the category weight into a fusion contribution.
- Source score: calibrated-weight average of the current normalized metrics;
  the 50 baseline when no metrics exist.
- Entity score: category-weighted average of source blends.
- Trend: mean of the latest 1-3 snapshots against the prior window (+/-2).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping, Optional, Sequence

from app.models.fusion_score import ScoreOrigin, Trend
from derive.core.coefficients import FusionCoefficients
from derive.core.variance import mean
from ingestion.core.categories import Category
from ingestion.core.normalizer import NEUTRAL, DimensionScores


TREND_THRESHOLD = 2.0
TREND_WINDOW = 3


def dimension_blend(dims: DimensionScores | Mapping[str, float], coefficients: FusionCoefficients) -> float:
    values = dims.as_dict() if isinstance(dims, DimensionScores) else dims
    return sum(float(values.get(d, 0.0)) * w for d, w in coefficients.dimension_blend.items())


def fusion_contribution(
    dims: DimensionScores | Mapping[str, float], category: Category, coefficients: FusionCoefficients
) -> float:
    return dimension_blend(dims, coefficients) * coefficients.category_weight(category)


@dataclass(frozen=True)
class WeightedValue:
    name: str
    value: float  # normalized 0-100
    weight: float


@dataclass(frozen=True)
class SourceScore:
    score: float
    origin: ScoreOrigin
    breakdown: dict[str, Any] = field(default_factory=dict)


def compute_source_score(values: Sequence[WeightedValue]) -> SourceScore:
    if not values:
        return SourceScore(score=NEUTRAL, origin=ScoreOrigin.BASELINE, breakdown={})

    total_weight = sum(v.weight for v in values if v.weight > 0)
    if total_weight > 0:
        effective = {v.name: (v.weight / total_weight if v.weight > 0 else 0.0) for v in values}
    else:
        effective = {v.name: 1.0 / len(values) for v in values}

    breakdown: dict[str, Any] = {}
    score = 0.0
    for v in values:
        contribution = v.value * effective[v.name]
        score += contribution
        breakdown[v.name] = {
            "value": round(v.value, 4),
            "weight": round(effective[v.name], 6),
            "contribution": round(contribution, 4),
        }
    return SourceScore(score=max(0.0, min(100.0, score)), origin=ScoreOrigin.COMPUTED, breakdown=breakdown)


def entity_score(parts: Sequence[tuple[Category, float]], coefficients: FusionCoefficients) -> float:
    """Category-weighted average of per-source blends; 50 when nothing is connected."""
    total_weight = 0.0
    weighted = 0.0
    for category, blend in parts:
        w = coefficients.category_weight(category)
        total_weight += w
        weighted += blend * w
    if total_weight <= 0:
        return NEUTRAL
    return max(0.0, min(100.0, weighted / total_weight))


def derive_trend(history_desc: Sequence[float], *, threshold: float = TREND_THRESHOLD) -> Trend:
    """Trend from a series ordered most-recent-first."""
    delta = trend_delta(history_desc)
    if delta is None:
        return Trend.STABLE
    if delta > threshold:
        return Trend.UP
    if delta < -threshold:
        return Trend.DOWN
    return Trend.STABLE


def trend_delta(history_desc: Sequence[float]) -> Optional[float]:
    """Mean of the latest 1-3 points minus the mean of the prior window; None without a prior window."""
    n = len(history_desc)
    if n < 2:
        return None
    k = min(TREND_WINDOW, n - 1)
    return mean(history_desc[:k]) - mean(history_desc[k:k + TREND_WINDOW])
