"""Learning events and learning state.

Both are pure projections over the append-only score history: nothing here is
persisted and nothing here writes back to history. Identical stored rows always
produce identical events (ids included) and identical state.

Event rules (history ordered most-recent-first, recent window = 7 points):
- BASELINE_ESTABLISHED   history exists; stamped at the oldest point
- CONFIDENCE_INCREASED   recent variance < 70% of older-window variance
- CONFIDENCE_DECREASED   recent variance > 130% of older-window variance
- VARIANCE_STABILIZED    recent variance < 5 while older variance >= 5
- MATURITY_PROMOTED      latest 7 points have variance < 10 and a computed score exists
- ANOMALY_PATTERN_LEARNED 14+ points with anomalies in (0, 20%); 20%+ is noise
"""

from __future__ import annotations

import math
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Iterable, Optional, Protocol, Sequence

from app.models.fusion_score import ScoreOrigin
from derive.core.maturity import MaturityTier, classify_tier
from derive.core.variance import RECENT_WINDOW, ConfidenceEstimator, mean, population_variance


# Configuration (Locked)
ANOMALY_Z = 2.0
ANOMALY_MIN_POINTS = 14
ANOMALY_NOISE_RATE = 0.2
CONFIDENCE_UP_RATIO = 0.7
CONFIDENCE_DOWN_RATIO = 1.3
STABLE_VARIANCE = 5.0
PROMOTION_VARIANCE = 10.0
VARIANCE_TREND_THRESHOLD = 2.0
CONFIDENCE_DELTA_DAYS = 30

_EVENT_NAMESPACE = uuid.UUID("6f1c2a4e-9a53-4c1b-9d0e-51c7a3f2b8d4")


class ScorePoint(Protocol):
    score: float
    recorded_at: datetime


class LearningEventType(str, Enum):
    BASELINE_ESTABLISHED = "BASELINE_ESTABLISHED"
    CONFIDENCE_INCREASED = "CONFIDENCE_INCREASED"
    CONFIDENCE_DECREASED = "CONFIDENCE_DECREASED"
    VARIANCE_STABILIZED = "VARIANCE_STABILIZED"
    MATURITY_PROMOTED = "MATURITY_PROMOTED"
    ANOMALY_PATTERN_LEARNED = "ANOMALY_PATTERN_LEARNED"


class VarianceTrend(str, Enum):
    INCREASING = "increasing"
    DECREASING = "decreasing"
    STABLE = "stable"


class LearningVelocity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


@dataclass(frozen=True)
class LearningEvent:
    id: str
    event_type: LearningEventType
    occurred_at: datetime
    explanation: str
    entity_id: uuid.UUID
    source_id: uuid.UUID
    source_name: str


def _sorted_desc(history: Iterable[ScorePoint]) -> list[ScorePoint]:
    return sorted(history, key=lambda p: p.recorded_at, reverse=True)


def zscores(values: Sequence[float]) -> list[float]:
    """|x - mu| / sigma per point; all zero when sigma is zero."""
    if not values:
        return []
    sigma = math.sqrt(population_variance(values))
    if sigma == 0:
        return [0.0] * len(values)
    mu = mean(values)
    return [abs(v - mu) / sigma for v in values]


def anomaly_indices(values: Sequence[float], *, threshold: float = ANOMALY_Z) -> list[int]:
    return [i for i, z in enumerate(zscores(values)) if z > threshold]


def _event_id(entity_id: uuid.UUID, source_id: uuid.UUID, event_type: LearningEventType, at: datetime) -> str:
    return str(uuid.uuid5(_EVENT_NAMESPACE, f"{entity_id}:{source_id}:{event_type.value}:{at.isoformat()}"))


def detect_learning_events(
    *,
    entity_id: uuid.UUID,
    source_id: uuid.UUID,
    source_name: str,
    history: Iterable[ScorePoint],
    has_computed_score: bool,
    metrics_count: int = 0,
) -> list[LearningEvent]:
    """Learning events for one source, most recent first."""
    points = _sorted_desc(history)
    events: list[LearningEvent] = []

    def emit(event_type: LearningEventType, at: datetime, explanation: str) -> None:
        events.append(
            LearningEvent(
                id=_event_id(entity_id, source_id, event_type, at),
                event_type=event_type,
                occurred_at=at,
                explanation=explanation,
                entity_id=entity_id,
                source_id=source_id,
                source_name=source_name,
            )
        )

    if not points:
        return events

    emit(
        LearningEventType.BASELINE_ESTABLISHED,
        points[-1].recorded_at,
        f"Baseline established for {source_name} after {metrics_count} observations.",
    )

    scores = [p.score for p in points]
    recent = scores[:RECENT_WINDOW]
    older = scores[RECENT_WINDOW:]
    latest_at = points[0].recorded_at

    if len(points) >= 2 and older:
        recent_var = population_variance(recent)
        older_var = population_variance(older)
        if recent_var < older_var * CONFIDENCE_UP_RATIO:
            emit(
                LearningEventType.CONFIDENCE_INCREASED,
                latest_at,
                f"Confidence increased for {source_name} as variance declined from {older_var:.1f} to {recent_var:.1f}.",
            )
        elif recent_var > older_var * CONFIDENCE_DOWN_RATIO:
            emit(
                LearningEventType.CONFIDENCE_DECREASED,
                latest_at,
                f"Confidence decreased for {source_name} as variance increased from {older_var:.1f} to {recent_var:.1f}.",
            )
        if recent_var < STABLE_VARIANCE and older_var >= STABLE_VARIANCE:
            emit(
                LearningEventType.VARIANCE_STABILIZED,
                latest_at,
                f"Variance stabilized for {source_name}. Patterns are now consistent.",
            )

    if len(points) >= RECENT_WINDOW and has_computed_score:
        if population_variance(recent) < PROMOTION_VARIANCE:
            emit(
                LearningEventType.MATURITY_PROMOTED,
                latest_at,
                f"{source_name} reached analysis readiness after stability window met.",
            )

    if len(points) >= ANOMALY_MIN_POINTS:
        anomalies = len(anomaly_indices(scores))
        if 0 < anomalies < len(scores) * ANOMALY_NOISE_RATE:
            plural = "s" if anomalies != 1 else ""
            emit(
                LearningEventType.ANOMALY_PATTERN_LEARNED,
                latest_at,
                f"{source_name}: {anomalies} anomaly pattern{plural} identified and incorporated into baseline.",
            )

    return sort_events(events)


_TYPE_ORDER = {t: i for i, t in enumerate(LearningEventType)}


def sort_events(events: Iterable[LearningEvent]) -> list[LearningEvent]:
    """Most recent first; ties broken by event type then id for a stable order."""
    ordered = sorted(events, key=lambda e: (_TYPE_ORDER[e.event_type], e.id))
    return sorted(ordered, key=lambda e: e.occurred_at, reverse=True)


@dataclass(frozen=True)
class LearningState:
    entity_id: uuid.UUID
    source_id: uuid.UUID
    source_name: str
    baseline_established_at: Optional[datetime]
    snapshot_count: int
    confidence_current: float
    confidence_delta_30: float
    variance_current: float
    variance_trend: VarianceTrend
    maturity_stage: MaturityTier
    learning_velocity: LearningVelocity
    last_promotion_event: Optional[datetime]
    suppression_events_count: int


def derive_variance_trend(recent_variance: float, older_variance: float) -> VarianceTrend:
    if recent_variance < older_variance - VARIANCE_TREND_THRESHOLD:
        return VarianceTrend.DECREASING
    if recent_variance > older_variance + VARIANCE_TREND_THRESHOLD:
        return VarianceTrend.INCREASING
    return VarianceTrend.STABLE


def derive_learning_velocity(snapshot_count: int, days_since_baseline: int, confidence_delta: float) -> LearningVelocity:
    if days_since_baseline <= 0:
        return LearningVelocity.LOW
    per_day = snapshot_count / days_since_baseline
    if per_day >= 2 and confidence_delta > 0.1:
        return LearningVelocity.HIGH
    if per_day >= 0.5 or confidence_delta > 0:
        return LearningVelocity.MEDIUM
    return LearningVelocity.LOW


def derive_learning_state(
    *,
    entity_id: uuid.UUID,
    source_id: uuid.UUID,
    source_name: str,
    history: Iterable[ScorePoint],
    metrics_count: int,
    score_origin: Optional[ScoreOrigin],
    baseline_at: Optional[datetime],
    now: datetime,
) -> LearningState:
    points = _sorted_desc(history)
    scores = [p.score for p in points]
    origin = score_origin or ScoreOrigin.BASELINE
    computed = origin is ScoreOrigin.COMPUTED
    estimator = ConfidenceEstimator()

    variance_current = population_variance(scores[:RECENT_WINDOW])
    variance_older = population_variance(scores[RECENT_WINDOW:])

    confidence_current = estimator.estimate(
        snapshot_count=len(points),
        metric_count=metrics_count,
        variance_level=variance_current,
        has_computed_score=computed,
    ).confidence

    cutoff = now - timedelta(days=CONFIDENCE_DELTA_DAYS)
    recent_window = [p.score for p in points if p.recorded_at > cutoff]
    older_window = [p.score for p in points if p.recorded_at <= cutoff]
    confidence_delta = 0.0
    if recent_window and older_window:
        recent_conf = estimator.estimate(
            snapshot_count=len(recent_window),
            metric_count=metrics_count,
            variance_level=population_variance(recent_window),
            has_computed_score=True,
        ).confidence
        # Older metric count is approximated as 70% of today's.
        older_conf = estimator.estimate(
            snapshot_count=len(older_window),
            metric_count=math.floor(metrics_count * 0.7),
            variance_level=population_variance(older_window),
            has_computed_score=True,
        ).confidence
        confidence_delta = recent_conf - older_conf

    tier = classify_tier(origin, len(points), variance_current, confidence_current).tier

    baseline = baseline_at or now
    days_since_baseline = max(1, math.floor((now - baseline).total_seconds() / 86400))

    last_promotion: Optional[datetime] = None
    if tier is not MaturityTier.OBSERVE and len(points) >= RECENT_WINDOW:
        last_promotion = points[RECENT_WINDOW - 1].recorded_at

    return LearningState(
        entity_id=entity_id,
        source_id=source_id,
        source_name=source_name,
        baseline_established_at=baseline_at,
        snapshot_count=len(points),
        confidence_current=confidence_current,
        confidence_delta_30=confidence_delta,
        variance_current=variance_current,
        variance_trend=derive_variance_trend(variance_current, variance_older),
        maturity_stage=tier,
        learning_velocity=derive_learning_velocity(len(points), days_since_baseline, confidence_delta),
        last_promotion_event=last_promotion,
        suppression_events_count=len(anomaly_indices(scores)),
    )


@dataclass(frozen=True)
class GlobalLearningSummary:
    total_sources: int
    sources_with_baseline: int
    total_snapshot_count: int
    average_confidence: float
    overall_maturity_stage: MaturityTier
    learning_in_progress: bool
    confidence_explanation: str


def summarize_learning(states: Sequence[LearningState]) -> GlobalLearningSummary:
    n = len(states)
    if n == 0:
        return GlobalLearningSummary(
            total_sources=0,
            sources_with_baseline=0,
            total_snapshot_count=0,
            average_confidence=0.0,
            overall_maturity_stage=MaturityTier.OBSERVE,
            learning_in_progress=False,
            confidence_explanation="No sources connected. Connect sources to begin system learning.",
        )

    total_snapshots = sum(s.snapshot_count for s in states)
    avg_conf = sum(s.confidence_current for s in states) / n
    predict = sum(1 for s in states if s.maturity_stage is MaturityTier.PREDICT)
    analyze = sum(1 for s in states if s.maturity_stage is MaturityTier.ANALYZE)

    overall = MaturityTier.OBSERVE
    if predict > n / 2:
        overall = MaturityTier.PREDICT
    elif analyze + predict > n / 2:
        overall = MaturityTier.ANALYZE

    plural = "s" if n != 1 else ""
    if avg_conf >= 0.7:
        text = f"System confidence is high based on {n} connected source{plural} and {total_snapshots} observed signals."
    elif avg_conf >= 0.4:
        text = f"System confidence is building with {n} source{plural} and {total_snapshots} signals observed."
    else:
        text = f"System confidence is establishing while behavioral data accumulates from {n} source{plural}."

    return GlobalLearningSummary(
        total_sources=n,
        sources_with_baseline=sum(1 for s in states if s.baseline_established_at is not None),
        total_snapshot_count=total_snapshots,
        average_confidence=avg_conf,
        overall_maturity_stage=overall,
        learning_in_progress=any(
            s.maturity_stage is MaturityTier.OBSERVE or s.confidence_current < 0.5 for s in states
        ),
        confidence_explanation=text,
    )
