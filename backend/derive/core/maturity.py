"""Maturity tier classification.

Tiers gate which language and features downstream consumers may surface:
- OBSERVE: baseline score or fewer than 5 snapshots. Descriptive only.
- ANALYZE: computed score, not yet stable enough to predict.
- PREDICT: computed, confidence >= 0.7, variance < 10, 14+ snapshots.
  Forward-looking phrasing is allowed only here.

The tier is recomputed from current signals on every call: a source that
reached PREDICT drops back to ANALYZE when its variance or confidence regresses.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from app.models.fusion_score import ScoreOrigin


# Configuration (Locked)
MIN_SNAPSHOTS_ANALYZE = 5
MIN_SNAPSHOTS_PREDICT = 14
MIN_CONFIDENCE_PREDICT = 0.7
MAX_VARIANCE_PREDICT = 10.0


class MaturityTier(str, Enum):
    OBSERVE = "observe"
    ANALYZE = "analyze"
    PREDICT = "predict"


@dataclass(frozen=True)
class TierResult:
    tier: MaturityTier
    reasoning: list[str]


def classify_tier(
    score_origin: ScoreOrigin | str,
    snapshot_count: int,
    variance: float,
    confidence: float,
) -> TierResult:
    """Pure function of (score_origin, snapshot_count, variance, confidence)."""
    origin = ScoreOrigin(score_origin)

    if origin is ScoreOrigin.BASELINE:
        return TierResult(MaturityTier.OBSERVE, ["Score is a baseline placeholder"])
    if snapshot_count < MIN_SNAPSHOTS_ANALYZE:
        return TierResult(
            MaturityTier.OBSERVE,
            [f"Only {snapshot_count} snapshots (need {MIN_SNAPSHOTS_ANALYZE} to analyze)"],
        )

    missing: list[str] = []
    if confidence < MIN_CONFIDENCE_PREDICT:
        missing.append(f"confidence {confidence:.2f} < {MIN_CONFIDENCE_PREDICT}")
    if variance >= MAX_VARIANCE_PREDICT:
        missing.append(f"variance {variance:.1f} >= {MAX_VARIANCE_PREDICT:g}")
    if snapshot_count < MIN_SNAPSHOTS_PREDICT:
        missing.append(f"{snapshot_count} snapshots < {MIN_SNAPSHOTS_PREDICT}")

    if not missing:
        return TierResult(MaturityTier.PREDICT, ["Stable, confident and sufficiently long history"])
    return TierResult(MaturityTier.ANALYZE, ["Not predict-ready: " + ", ".join(missing)])


def allows_forward_looking(tier: MaturityTier) -> bool:
    return tier is MaturityTier.PREDICT


def allows_analysis(tier: MaturityTier) -> bool:
    return tier in (MaturityTier.ANALYZE, MaturityTier.PREDICT)
