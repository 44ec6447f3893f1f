"""Adaptive weight calibration.

raw_weight   = base_weight * (1 + alpha*variance + beta*confidence - gamma*correlation_penalty)
final_weight = raw_weight / sum(raw_weight)

When the raw weights cannot be renormalized (non-positive total, a negative or
non-finite raw weight) every metric gets 1/N and the adjustment reason says so.
Pure and deterministic: identical inputs give identical weights.
"""

from __future__ import annotations

import math
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from itertools import combinations
from typing import Iterable, Mapping, Optional, Sequence

from derive.core.coefficients import FusionCoefficients
from derive.core.errors import CalibrationError


DEFAULT_BASE_WEIGHT = 1.0
MIN_ALIGNED_POINTS = 3


@dataclass(frozen=True)
class MetricInput:
    name: str
    base_weight: Optional[float] = None
    correlation_penalty: float = 0.0


@dataclass(frozen=True)
class WeightResult:
    metric_name: str
    raw_weight: float
    final_weight: float
    previous_weight: Optional[float]
    variance: float
    confidence: float
    correlation_penalty: float

    @property
    def delta(self) -> Optional[float]:
        if self.previous_weight is None:
            return None
        return self.final_weight - self.previous_weight


@dataclass(frozen=True)
class CalibrationResult:
    weights: list[WeightResult]
    uniform_fallback: bool
    adjustment_reason: str
    coefficients_version: str

    def total(self) -> float:
        return sum(w.final_weight for w in self.weights)

    def weight_changes(self) -> dict[str, dict[str, Optional[float]]]:
        return {w.metric_name: {"old": w.previous_weight, "new": w.final_weight} for w in self.weights}


class WeightCalibrator:
    """Fixed linear calibration model parameterized by versioned coefficients."""

    def __init__(self, coefficients: FusionCoefficients) -> None:
        self.coefficients = coefficients

    def raw_weight(self, base_weight: Optional[float], *, variance: float, confidence: float, correlation_penalty: float) -> float:
        base = DEFAULT_BASE_WEIGHT if base_weight is None else float(base_weight)
        c = self.coefficients
        return base * (1.0 + c.alpha * variance + c.beta * confidence - c.gamma * correlation_penalty)

    def calibrate(
        self,
        metrics: Sequence[MetricInput],
        *,
        variance: float,
        confidence: float,
        previous: Optional[Mapping[str, float]] = None,
    ) -> CalibrationResult:
        if not metrics:
            raise CalibrationError("cannot calibrate an empty metric set")

        previous = previous or {}
        raws = [
            self.raw_weight(
                m.base_weight,
                variance=variance,
                confidence=confidence,
                correlation_penalty=m.correlation_penalty,
            )
            for m in metrics
        ]
        total = sum(raws)
        n = len(metrics)

        fallback_reason: Optional[str] = None
        if any(not math.isfinite(r) for r in raws):
            fallback_reason = "non-finite raw weight"
        elif any(r < 0 for r in raws):
            fallback_reason = "negative raw weight"
        elif total <= 0:
            fallback_reason = f"raw weight total {total:.4f} <= 0"

        if fallback_reason is not None:
            finals = [1.0 / n] * n
            reason = f"Uniform fallback 1/{n}: {fallback_reason}"
        else:
            finals = [r / total for r in raws]
            reason = f"Adaptive recalibration (coefficients {self.coefficients.version})"

        weights = [
            WeightResult(
                metric_name=m.name,
                raw_weight=raw,
                final_weight=final,
                previous_weight=previous.get(m.name),
                variance=variance,
                confidence=confidence,
                correlation_penalty=m.correlation_penalty,
            )
            for m, raw, final in zip(metrics, raws, finals)
        ]
        return CalibrationResult(
            weights=weights,
            uniform_fallback=fallback_reason is not None,
            adjustment_reason=reason,
            coefficients_version=self.coefficients.version,
        )


def pearson(xs: Sequence[float], ys: Sequence[float]) -> float:
    """Pearson correlation; 0 when undefined (too short or zero spread)."""
    n = len(xs)
    if n != len(ys) or n < 2:
        return 0.0
    mx = sum(xs) / n
    my = sum(ys) / n
    sxx = sum((x - mx) ** 2 for x in xs)
    syy = sum((y - my) ** 2 for y in ys)
    if sxx == 0 or syy == 0:
        return 0.0
    sxy = sum((x - mx) * (y - my) for x, y in zip(xs, ys))
    return max(-1.0, min(1.0, sxy / math.sqrt(sxx * syy)))


def correlation_penalties(
    captures: Iterable[tuple[str, datetime, float]],
    *,
    min_points: int = MIN_ALIGNED_POINTS,
) -> dict[str, float]:
    """Max |r| of each metric against every other metric of the same source.

    Captures are aligned on `captured_at`; a pair with fewer than `min_points`
    aligned captures contributes nothing.
    """
    by_name: dict[str, dict[datetime, float]] = defaultdict(dict)
    for name, captured_at, value in captures:
        by_name[name][captured_at] = float(value)

    penalties = {name: 0.0 for name in by_name}
    for a, b in combinations(sorted(by_name), 2):
        common = sorted(set(by_name[a]) & set(by_name[b]))
        if len(common) < min_points:
            continue
        r = abs(pearson([by_name[a][t] for t in common], [by_name[b][t] for t in common]))
        penalties[a] = max(penalties[a], r)
        penalties[b] = max(penalties[b], r)
    return penalties
