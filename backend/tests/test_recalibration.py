from __future__ import annotations

import math
import uuid

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from app.models.fusion_audit_record import AuditStatus, FusionAuditRecord
from app.models.score_history import ScoreHistorySnapshot
from app.models.source_connection import ConnectionStatus
from app.repositories.fusion_repo import FusionRepository
from app.schemas.recalibration import RecalibrationRequest
from derive.core import locks
from derive.core.coefficients import load_coefficients
from derive.core.explain import ExplanationContext, ExplanationProvider
from derive.job import run_recalibration
from derive.job.run_recalibration import (
    recalibrate_entity,
    run_sweep,
    start_sweep,
    sweep_run_id,
    trigger_recalibration,
)
from ingestion.core.signal_ingest import DEFAULT_METRIC_WEIGHT, ingest_source_event

from conftest import seed_connection, seed_history, seed_metric, utc


@pytest.fixture(scope="module")
def coeffs():
    return load_coefficients()


def _seed_source(db, *, entity_id=None, service_name="slack", scores=(60, 61, 59, 60, 60, 61, 60)):
    conn = seed_connection(db, entity_id=entity_id, service_name=service_name)
    for i, name in enumerate(("activity_volume", "participation_level", "responsiveness")):
        seed_metric(db, conn, name=f"{service_name}_{name}", value=40.0 + 10 * i)
    seed_history(db, conn, list(scores))
    return conn


def _audit_count(db, **filters) -> int:
    stmt = select(func.count(FusionAuditRecord.id))
    for k, v in filters.items():
        stmt = stmt.where(getattr(FusionAuditRecord, k) == v)
    return int(db.execute(stmt).scalar_one())


def test_recalibration_writes_normalized_weights_and_one_audit(db_session, coeffs):
    conn = _seed_source(db_session)
    result = trigger_recalibration(db_session, RecalibrationRequest(entity_id=conn.entity_id), coefficients=coeffs)

    assert result.coefficients_version == coeffs.version
    assert result.totals.sources_processed == 1
    assert result.totals.sources_succeeded == 1
    src = result.per_source_results[0]
    assert src.status == "success"
    assert src.metrics_count == 3
    assert src.audit_written is True
    # 7 snapshots (0.2) + 3 metrics (0.1) + stable (0.2) + computed (0.2)
    assert src.confidence == pytest.approx(0.7)
    assert src.maturity_tier == "analyze"
    assert result.totals.avg_confidence == pytest.approx(0.7)

    weights = FusionRepository(db_session).current_weightings(conn.entity_id, conn.source_id)
    assert set(weights) == {"slack_activity_volume", "slack_participation_level", "slack_responsiveness"}
    assert math.isclose(sum(w.final_weight for w in weights.values()), 1.0, abs_tol=1e-9)
    assert all(w.is_adaptive and w.coefficients_version == coeffs.version for w in weights.values())

    assert _audit_count(db_session, run_id=result.run_id) == 1
    audit = db_session.execute(select(FusionAuditRecord).where(FusionAuditRecord.run_id == result.run_id)).scalar_one()
    assert audit.status is AuditStatus.SUCCESS
    assert audit.metrics_count == 3
    assert audit.explanation and audit.explanation.startswith("slack: recalibrated 3 metrics")
    assert set(audit.weight_changes) == set(weights)


def test_repeated_cycles_keep_a_stable_base_weight(db_session, coeffs):
    conn = seed_connection(db_session, service_name="slack")
    dto = FusionRepository(db_session).get_connection(conn.entity_id, conn.source_id)
    volumes = [100, 600, 250, 900, 400, 800, 150, 700, 300, 950, 200, 650]
    channels = [10, 12, 9, 11, 10, 13, 9, 10, 12, 11, 10, 9]

    for i, (volume, active) in enumerate(zip(volumes, channels)):
        ingest_source_event(
            db_session,
            dto,
            {"message_count": volume, "active_channels": active},
            coefficients=coeffs,
            captured_at=utc((len(volumes) - i) * 60),
        )
        trigger_recalibration(db_session, RecalibrationRequest(entity_id=conn.entity_id), coefficients=coeffs)

        repo = FusionRepository(db_session)
        assert all(m.weight == DEFAULT_METRIC_WEIGHT for m in repo.metric_series(conn.entity_id, conn.source_id))
        finals = [w.final_weight for w in repo.current_weightings(conn.entity_id, conn.source_id).values()]
        # equal base weights: one step of the linear model bounds the spread by gamma
        assert min(finals) / max(finals) >= 1.0 - coeffs.gamma - 1e-9, i

    weights = FusionRepository(db_session).current_weightings(conn.entity_id, conn.source_id)
    # activity tracks message volume; participation follows channels independently
    assert weights["slack_activity_volume"].correlation_penalty > weights["slack_participation_level"].correlation_penalty
    assert weights["slack_activity_volume"].final_weight >= (1.0 - coeffs.gamma) * weights["slack_participation_level"].final_weight


def test_recalibration_is_idempotent(db_session, coeffs):
    conn = _seed_source(db_session)
    history_before = FusionRepository(db_session).snapshot_count(conn.entity_id, conn.source_id)

    first = trigger_recalibration(db_session, RecalibrationRequest(entity_id=conn.entity_id), coefficients=coeffs)
    w1 = {k: v.final_weight for k, v in FusionRepository(db_session).current_weightings(conn.entity_id, conn.source_id).items()}
    second = trigger_recalibration(db_session, RecalibrationRequest(entity_id=conn.entity_id), coefficients=coeffs)
    w2 = {k: v.final_weight for k, v in FusionRepository(db_session).current_weightings(conn.entity_id, conn.source_id).items()}

    assert w1 == pytest.approx(w2)
    assert FusionRepository(db_session).snapshot_count(conn.entity_id, conn.source_id) == history_before
    changes = second.per_source_results[0].weight_changes
    assert all(c["old"] == pytest.approx(c["new"]) for c in changes.values())
    assert first.run_id != second.run_id
    assert _audit_count(db_session, entity_id=conn.entity_id) == 2


def test_reused_run_id_does_not_double_count(db_session, coeffs):
    conn = _seed_source(db_session)
    run_id = uuid.uuid4()
    request = RecalibrationRequest(entity_id=conn.entity_id, run_id=run_id)

    first = trigger_recalibration(db_session, request, coefficients=coeffs)
    retry = trigger_recalibration(db_session, request, coefficients=coeffs)

    assert first.per_source_results[0].audit_written is True
    assert retry.per_source_results[0].audit_written is False
    assert retry.per_source_results[0].status == "success"
    assert _audit_count(db_session, run_id=run_id) == 1


def test_source_without_metrics_fails_and_is_excluded_from_confidence(db_session, coeffs):
    good = _seed_source(db_session)
    empty = seed_connection(db_session, entity_id=good.entity_id, service_name="zoom")

    result = trigger_recalibration(db_session, RecalibrationRequest(entity_id=good.entity_id), coefficients=coeffs)

    by_source = {r.source_id: r for r in result.per_source_results}
    failed = by_source[empty.source_id]
    assert failed.status == "failed"
    assert failed.metrics_count == 0
    assert failed.error.startswith("insufficient data")
    assert result.totals.sources_failed == 1
    assert result.totals.avg_confidence == pytest.approx(by_source[good.source_id].confidence)

    audit = db_session.execute(
        select(FusionAuditRecord).where(
            FusionAuditRecord.run_id == result.run_id, FusionAuditRecord.source_id == empty.source_id
        )
    ).scalar_one()
    assert audit.status is AuditStatus.FAILED
    assert audit.metrics_count == 0
    assert audit.error


def test_all_sources_failing_yields_zero_average(db_session, coeffs):
    conn = seed_connection(db_session, service_name="notion")
    result = trigger_recalibration(db_session, RecalibrationRequest(entity_id=conn.entity_id), coefficients=coeffs)
    assert result.totals.sources_succeeded == 0
    assert result.totals.avg_confidence == 0.0


def test_persistence_failure_is_isolated_per_source(db_session, coeffs, monkeypatch):
    first = _seed_source(db_session)
    second = _seed_source(db_session, entity_id=first.entity_id, service_name="jira")
    real_upsert = run_recalibration.upsert_weightings

    def flaky_upsert(session, *, source_id, **kwargs):
        if source_id == first.source_id:
            raise OperationalError("INSERT INTO fusion_weightings", {}, Exception("disk I/O error"))
        return real_upsert(session, source_id=source_id, **kwargs)

    monkeypatch.setattr(run_recalibration, "upsert_weightings", flaky_upsert)
    result = trigger_recalibration(db_session, RecalibrationRequest(entity_id=first.entity_id), coefficients=coeffs)

    by_source = {r.source_id: r for r in result.per_source_results}
    assert by_source[first.source_id].status == "failed"
    assert by_source[first.source_id].metrics_count == 3
    assert by_source[first.source_id].error.startswith("persistence failure")
    assert by_source[second.source_id].status == "success"

    repo = FusionRepository(db_session)
    assert repo.current_weightings(first.entity_id, first.source_id) == {}
    assert len(repo.current_weightings(second.entity_id, second.source_id)) == 3
    assert _audit_count(db_session, run_id=result.run_id) == 2


def test_single_source_request(db_session, coeffs):
    conn = _seed_source(db_session)
    paused = _seed_source(db_session, entity_id=conn.entity_id, service_name="jira")
    paused.status = ConnectionStatus.PAUSED
    db_session.flush()

    only = trigger_recalibration(
        db_session,
        RecalibrationRequest(entity_id=conn.entity_id, source_id=paused.source_id),
        coefficients=coeffs,
    )
    assert [r.source_id for r in only.per_source_results] == [paused.source_id]
    assert only.per_source_results[0].status == "success"

    every = trigger_recalibration(db_session, RecalibrationRequest(entity_id=conn.entity_id), coefficients=coeffs)
    assert [r.source_id for r in every.per_source_results] == [conn.source_id]


def test_unconnected_source_is_reported_as_failure(db_session, coeffs):
    conn = _seed_source(db_session)
    stranger = uuid.uuid4()
    result = trigger_recalibration(
        db_session,
        RecalibrationRequest(entity_id=conn.entity_id, source_id=stranger),
        coefficients=coeffs,
    )
    (only,) = result.per_source_results
    assert only.source_id == stranger
    assert only.status == "failed"
    assert "not connected" in only.error
    assert _audit_count(db_session, run_id=result.run_id, source_id=stranger) == 1


class _FixedProvider(ExplanationProvider):
    name = "fixed"

    def explain(self, context: ExplanationContext):
        return f"{context.source_name} weights refreshed."


def test_provider_explanation_is_stored(db_session, coeffs):
    conn = _seed_source(db_session)
    result = recalibrate_entity(
        db_session,
        RecalibrationRequest(entity_id=conn.entity_id, triggered_by="system"),
        coefficients=coeffs,
        provider=_FixedProvider(),
    )
    db_session.commit()
    assert result.per_source_results[0].explanation == "slack weights refreshed."
    audit = db_session.execute(select(FusionAuditRecord).where(FusionAuditRecord.run_id == result.run_id)).scalar_one()
    assert audit.explanation == "slack weights refreshed."
    assert audit.triggered_by.value == "system"


class _LockAwareProvider(ExplanationProvider):
    name = "lock-aware"

    def __init__(self) -> None:
        self.held_pairs = []

    def explain(self, context: ExplanationContext):
        self.held_pairs.append(locks._PAIR_LOCKS.active_keys())
        return "ok"


def test_explanation_is_built_outside_the_pair_lock(db_session, coeffs):
    conn = _seed_source(db_session)
    provider = _LockAwareProvider()
    result = trigger_recalibration(
        db_session,
        RecalibrationRequest(entity_id=conn.entity_id),
        coefficients=coeffs,
        provider=provider,
    )
    assert result.per_source_results[0].explanation == "ok"
    assert provider.held_pairs == [0]


def test_sweep_covers_every_entity(db_session, session_factory, coeffs):
    a = _seed_source(db_session)
    b = _seed_source(db_session, service_name="github")
    seed_connection(db_session, entity_id=b.entity_id, service_name="gitlab")
    db_session.commit()

    run_id = uuid.uuid4()
    results = run_sweep(session_factory=session_factory, coefficients=coeffs, max_workers=1, run_id=run_id)

    by_entity = {r.entity_id: r for r in results}
    assert set(by_entity) == {a.entity_id, b.entity_id}
    assert by_entity[a.entity_id].run_id == sweep_run_id(run_id, a.entity_id)
    assert by_entity[a.entity_id].totals.sources_failed == 0
    assert by_entity[b.entity_id].totals.sources_processed == 2
    assert by_entity[b.entity_id].totals.sources_failed == 1

    with session_factory() as db:
        assert _audit_count(db, run_id=sweep_run_id(run_id, b.entity_id)) == 2
        assert db.execute(select(func.count(ScoreHistorySnapshot.id))).scalar_one() == 14


def test_start_sweep_runs_in_background(db_session, session_factory, coeffs):
    conn = _seed_source(db_session)
    db_session.commit()

    future = start_sweep(session_factory=session_factory, coefficients=coeffs, max_workers=1)
    results = future.result(timeout=30)
    assert [r.entity_id for r in results] == [conn.entity_id]
    assert results[0].per_source_results[0].status == "success"
