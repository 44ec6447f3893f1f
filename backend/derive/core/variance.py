"""Variance and confidence estimation.

Deterministic, additive rules. Every confidence contribution carries a reason
so the audit trail can say why a value is what it is.

Confidence contributions (capped, summed, clamped to [0, 1]):
- snapshot sufficiency: +0.3 at >=14, +0.2 at >=7, +0.1 at >=3
- metric sufficiency:   +0.3 at >=20, +0.2 at >=10, +0.1 at >=3
- low variance:         +0.2 below 5, +0.1 below 15 (raw variance, recent window)
- computed score:       +0.2
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Sequence


# Configuration (Locked)
RECENT_WINDOW = 7
HISTORY_LIMIT = 30
DEFAULT_VARIANCE_SIGNAL = 0.5


def mean(values: Sequence[float]) -> float:
    if not values:
        return 0.0
    return sum(values) / len(values)


def population_variance(values: Sequence[float]) -> float:
    """mean((x - mu)^2); 0 for fewer than two points."""
    if len(values) < 2:
        return 0.0
    mu = mean(values)
    return sum((v - mu) ** 2 for v in values) / len(values)


def variance_signal(values: Sequence[float]) -> float:
    """Coefficient of variation clamped to [0, 1].

    Falls back to 0.5 (unknown) when there are fewer than two points or the
    mean is not positive.
    """
    if len(values) < 2:
        return DEFAULT_VARIANCE_SIGNAL
    mu = mean(values)
    if mu <= 0:
        return DEFAULT_VARIANCE_SIGNAL
    cv = math.sqrt(population_variance(values)) / mu
    return max(0.0, min(1.0, cv))


@dataclass(frozen=True)
class VarianceEstimate:
    signal: float  # coefficient of variation in [0, 1], used by the calibrator
    recent_variance: float  # raw sigma^2 over the most recent window, used by confidence and tiers
    points: int


def estimate_variance(history_desc: Sequence[float]) -> VarianceEstimate:
    """Estimate variance from a score series ordered most-recent-first."""
    series = list(history_desc[:HISTORY_LIMIT])
    return VarianceEstimate(
        signal=variance_signal(series),
        recent_variance=population_variance(series[:RECENT_WINDOW]),
        points=len(series),
    )


@dataclass(frozen=True)
class ConfidenceResult:
    confidence: float  # 0.0 to 1.0
    reasoning: list[str]  # Explainable factors


class ConfidenceEstimator:
    """Deterministic additive confidence estimator."""

    def estimate(
        self,
        *,
        snapshot_count: int,
        metric_count: int,
        variance_level: float,
        has_computed_score: bool,
    ) -> ConfidenceResult:
        score_components = []
        reasoning = []

        # 1. Snapshot sufficiency - Max 0.3
        if snapshot_count >= 14:
            score_components.append(0.3)
            reasoning.append(f"Long score history ({snapshot_count} snapshots, 14+)")
        elif snapshot_count >= 7:
            score_components.append(0.2)
            reasoning.append(f"Moderate score history ({snapshot_count} snapshots, 7+)")
        elif snapshot_count >= 3:
            score_components.append(0.1)
            reasoning.append(f"Short score history ({snapshot_count} snapshots, 3+)")
        else:
            reasoning.append(f"Insufficient score history ({snapshot_count} snapshots)")

        # 2. Metric sufficiency - Max 0.3
        if metric_count >= 20:
            score_components.append(0.3)
            reasoning.append(f"Rich metric coverage ({metric_count} metrics, 20+)")
        elif metric_count >= 10:
            score_components.append(0.2)
            reasoning.append(f"Moderate metric coverage ({metric_count} metrics, 10+)")
        elif metric_count >= 3:
            score_components.append(0.1)
            reasoning.append(f"Thin metric coverage ({metric_count} metrics, 3+)")
        else:
            reasoning.append(f"Insufficient metrics ({metric_count})")

        # 3. Low variance bonus - Max 0.2
        if variance_level < 5:
            score_components.append(0.2)
            reasoning.append(f"Stable scores (variance {variance_level:.1f} < 5)")
        elif variance_level < 15:
            score_components.append(0.1)
            reasoning.append(f"Moderately stable scores (variance {variance_level:.1f} < 15)")
        else:
            reasoning.append(f"Volatile scores (variance {variance_level:.1f})")

        # 4. Computed score bonus - Max 0.2
        if has_computed_score:
            score_components.append(0.2)
            reasoning.append("Score computed from real metrics")
        else:
            reasoning.append("Score is still a baseline placeholder")

        confidence = max(0.0, min(1.0, round(sum(score_components), 10)))
        return ConfidenceResult(confidence=confidence, reasoning=reasoning)
