from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone

from app.models.fusion_score import ScoreOrigin
from app.repositories.fusion_repo import FusionRepository, ScorePointDTO
from derive.core.coefficients import load_coefficients
from derive.core.learning import (
    LearningEventType,
    LearningVelocity,
    VarianceTrend,
    derive_learning_state,
    derive_learning_velocity,
    derive_variance_trend,
    detect_learning_events,
    summarize_learning,
)
from derive.core.maturity import MaturityTier
from derive.job.run_learning_report import learning_report
from ingestion.core.signal_ingest import ingest_source_event

from conftest import seed_connection, seed_history


NOW = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)
ENTITY = uuid.UUID("00000000-0000-0000-0000-00000000e001")
SOURCE = uuid.UUID("00000000-0000-0000-0000-00000000a001")


def _history(scores_oldest_first, *, step=timedelta(hours=1)):
    n = len(scores_oldest_first)
    return [
        ScorePointDTO(score=float(s), recorded_at=NOW - step * (n - 1 - i), change_reason="seed")
        for i, s in enumerate(scores_oldest_first)
    ]


def _events(history, *, computed=True):
    return detect_learning_events(
        entity_id=ENTITY,
        source_id=SOURCE,
        source_name="slack",
        history=history,
        has_computed_score=computed,
        metrics_count=4,
    )


def _types(events):
    return [e.event_type for e in events]


def test_no_history_no_events():
    assert _events([]) == []


def test_flat_week_promotes_and_baseline_sorts_last():
    events = _events(_history([60] * 7))
    assert _types(events) == [LearningEventType.MATURITY_PROMOTED, LearningEventType.BASELINE_ESTABLISHED]
    assert events[-1].occurred_at == NOW - timedelta(hours=6)
    assert "4 observations" in events[-1].explanation


def test_promotion_requires_computed_score_and_low_variance():
    assert LearningEventType.MATURITY_PROMOTED not in _types(_events(_history([60] * 7), computed=False))
    # population variance of 50..80 step 5 is 100
    assert LearningEventType.MATURITY_PROMOTED not in _types(_events(_history([50, 55, 60, 65, 70, 75, 80])))


def test_recent_stability_over_volatile_past():
    history = _history([10, 90] * 5 + [50] * 7)
    types = _types(_events(history))
    assert LearningEventType.CONFIDENCE_INCREASED in types
    assert LearningEventType.VARIANCE_STABILIZED in types
    assert LearningEventType.CONFIDENCE_DECREASED not in types
    assert LearningEventType.ANOMALY_PATTERN_LEARNED not in types


def test_recent_volatility_decreases_confidence():
    history = _history([50] * 10 + [10, 90, 10, 90, 10, 90, 10])
    types = _types(_events(history))
    assert LearningEventType.CONFIDENCE_DECREASED in types
    assert LearningEventType.MATURITY_PROMOTED not in types


def test_single_outlier_is_learned_as_anomaly():
    history = _history([50] * 10 + [90] + [50] * 9)
    events = _events(history)
    anomaly = [e for e in events if e.event_type is LearningEventType.ANOMALY_PATTERN_LEARNED]
    assert len(anomaly) == 1
    assert "1 anomaly pattern identified" in anomaly[0].explanation


def test_high_anomaly_rate_is_suppressed_as_noise():
    # 4 outliers in 20 points is a 20% rate
    noisy = _events(_history([50] * 16 + [0, 0, 100, 100]))
    assert LearningEventType.ANOMALY_PATTERN_LEARNED not in _types(noisy)

    sparse = _events(_history([50] * 19 + [90]))
    assert LearningEventType.ANOMALY_PATTERN_LEARNED in _types(sparse)


def test_event_ids_are_deterministic():
    history = _history([60] * 7)
    assert [e.id for e in _events(history)] == [e.id for e in _events(list(reversed(history)))]


def test_learning_state_for_mature_source():
    state = derive_learning_state(
        entity_id=ENTITY,
        source_id=SOURCE,
        source_name="slack",
        history=_history([70] * 14),
        metrics_count=20,
        score_origin=ScoreOrigin.COMPUTED,
        baseline_at=NOW - timedelta(days=10),
        now=NOW,
    )
    assert state.snapshot_count == 14
    assert state.confidence_current == 1.0
    assert state.variance_current == 0.0
    assert state.variance_trend is VarianceTrend.STABLE
    assert state.maturity_stage is MaturityTier.PREDICT
    assert state.last_promotion_event == NOW - timedelta(hours=6)
    assert state.suppression_events_count == 0


def test_learning_state_without_score_origin_observes():
    state = derive_learning_state(
        entity_id=ENTITY,
        source_id=SOURCE,
        source_name="slack",
        history=_history([70] * 14),
        metrics_count=20,
        score_origin=None,
        baseline_at=None,
        now=NOW,
    )
    assert state.maturity_stage is MaturityTier.OBSERVE
    assert state.last_promotion_event is None


def test_variance_trend_and_velocity():
    assert derive_variance_trend(1.0, 10.0) is VarianceTrend.DECREASING
    assert derive_variance_trend(10.0, 1.0) is VarianceTrend.INCREASING
    assert derive_variance_trend(5.0, 6.0) is VarianceTrend.STABLE
    assert derive_learning_velocity(40, 10, 0.2) is LearningVelocity.HIGH
    assert derive_learning_velocity(5, 10, 0.0) is LearningVelocity.MEDIUM
    assert derive_learning_velocity(1, 10, 0.0) is LearningVelocity.LOW
    assert derive_learning_velocity(10, 0, 0.5) is LearningVelocity.LOW


def test_summary_empty_and_majority():
    empty = summarize_learning([])
    assert empty.total_sources == 0
    assert empty.overall_maturity_stage is MaturityTier.OBSERVE
    assert empty.learning_in_progress is False

    def state(history, origin):
        return derive_learning_state(
            entity_id=ENTITY,
            source_id=uuid.uuid4(),
            source_name="jira",
            history=_history(history),
            metrics_count=20,
            score_origin=origin,
            baseline_at=NOW - timedelta(days=3),
            now=NOW,
        )

    states = [
        state([70] * 14, ScoreOrigin.COMPUTED),
        state([70] * 14, ScoreOrigin.COMPUTED),
        state([70] * 2, ScoreOrigin.BASELINE),
    ]
    summary = summarize_learning(states)
    assert summary.total_sources == 3
    assert summary.sources_with_baseline == 3
    assert summary.total_snapshot_count == 30
    assert summary.overall_maturity_stage is MaturityTier.PREDICT
    assert summary.learning_in_progress is True


def test_learning_report_projects_stored_history(db_session):
    conn = seed_connection(db_session, service_name="slack")
    seed_history(db_session, conn, [60] * 6)
    dto = FusionRepository(db_session).get_connection(conn.entity_id, conn.source_id)
    ingest_source_event(db_session, dto, {"message_count": 200, "active_channels": 10}, coefficients=load_coefficients())

    report = learning_report(db_session, conn.entity_id)
    assert report["summary"]["total_sources"] == 1
    (state,) = report["sources"]
    assert state["snapshot_count"] == 7
    assert state["source_name"] == "slack"
    types = [e["event_type"] for e in report["events"]]
    assert types[-1] == "BASELINE_ESTABLISHED"
