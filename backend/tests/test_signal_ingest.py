from __future__ import annotations

import json
import uuid
from datetime import timedelta

import pytest
from sqlalchemy import func, select

from app.models.fusion_metric import FusionMetric
from app.models.fusion_score import FusionScore, ScoreOrigin, Trend
from app.repositories.fusion_repo import FusionRepository
from derive.core.coefficients import load_coefficients
from ingestion.core.signal_ingest import DEFAULT_METRIC_WEIGHT, ingest_source_event, metric_name
from ingestion.jobs.run_ingestion import ingest_lines

from conftest import seed_connection, utc


JIRA_PAYLOAD = {"issue_count": 40, "done_issues": 30, "open_issues": 10, "project_count": 2}


@pytest.fixture(scope="module")
def coeffs():
    return load_coefficients()


def _connection_dto(db, conn):
    return FusionRepository(db).get_connection(conn.entity_id, conn.source_id)


def test_metric_names_are_service_scoped():
    assert metric_name(" Jira ", "throughput") == "jira_throughput"


def test_first_ingest_computes_score_and_history(db_session, coeffs):
    conn = seed_connection(db_session, service_name="jira")
    result = ingest_source_event(db_session, _connection_dto(db_session, conn), JIRA_PAYLOAD, coefficients=coeffs)

    assert result.metrics_written == 4
    # (8 + 10 + 75 + 75) / 4 with equal default weights
    assert result.score == pytest.approx(42.0)
    assert result.trend is Trend.STABLE
    # blend 41.9 x project_management 0.25
    assert result.contribution == pytest.approx(10.475)

    repo = FusionRepository(db_session)
    metrics = repo.current_metrics(conn.entity_id, conn.source_id)
    assert [m.name for m in metrics] == [
        "jira_activity_volume",
        "jira_participation_level",
        "jira_responsiveness",
        "jira_throughput",
    ]
    assert all(m.weight == DEFAULT_METRIC_WEIGHT for m in metrics)
    # issue_count, project_count, open/total, done/total
    assert [m.raw_value for m in metrics] == pytest.approx([40.0, 2.0, 0.25, 0.75])
    assert [m.normalized_value for m in metrics] == pytest.approx([8.0, 10.0, 75.0, 75.0])

    score = repo.current_score(conn.entity_id, conn.source_id)
    assert score.score_origin is ScoreOrigin.COMPUTED
    assert score.score == pytest.approx(42.0)
    assert set(score.score_breakdown) == {m.name for m in metrics}
    assert repo.snapshot_count(conn.entity_id, conn.source_id) == 1


def test_zero_dimensions_are_not_captured(db_session, coeffs):
    conn = seed_connection(db_session, service_name="github")
    result = ingest_source_event(db_session, _connection_dto(db_session, conn), {"repo_count": 5}, coefficients=coeffs)
    # participation (no PRs or issues) reads 0 and is skipped
    assert result.metrics_written == 3
    assert result.score == pytest.approx((10.0 + 50.0 + 50.0) / 3)


def test_repeat_ingest_keeps_one_current_score(db_session, coeffs):
    conn = seed_connection(db_session, service_name="jira")
    dto = _connection_dto(db_session, conn)
    t0 = utc(120)

    ingest_source_event(db_session, dto, JIRA_PAYLOAD, coefficients=coeffs, captured_at=t0)
    second = ingest_source_event(
        db_session,
        dto,
        {"issue_count": 40, "done_issues": 40, "open_issues": 0, "project_count": 2},
        coefficients=coeffs,
        captured_at=t0 + timedelta(hours=1),
    )

    # throughput 100, responsiveness 100
    assert second.score == pytest.approx((8 + 10 + 100 + 100) / 4)
    assert second.trend is Trend.UP

    rows = db_session.execute(
        select(func.count(FusionScore.id)).where(FusionScore.entity_id == conn.entity_id)
    ).scalar_one()
    assert rows == 1
    repo = FusionRepository(db_session)
    history = repo.score_history(conn.entity_id, conn.source_id)
    assert [round(p.score, 4) for p in history] == [54.5, 42.0]
    assert db_session.execute(
        select(func.count(FusionMetric.id)).where(FusionMetric.source_id == conn.source_id)
    ).scalar_one() == 8


def test_ingest_lines_isolates_bad_records(db_session, coeffs):
    conn = seed_connection(db_session, service_name="zendesk")
    lines = [
        json.dumps(
            {
                "entity_id": str(conn.entity_id),
                "source_id": str(conn.source_id),
                "payload": {"ticket_count": 100, "open_tickets": 20, "resolved_tickets": 60},
            }
        ),
        "",
        "{not json",
        json.dumps({"entity_id": str(conn.entity_id), "source_id": str(uuid.uuid4()), "payload": {}}),
        json.dumps(
            {
                "entity_id": str(conn.entity_id),
                "source_id": str(conn.source_id),
                "payload": {},
                "captured_at": "2025-01-01T00:00:00",
            }
        ),
    ]

    responses, totals = ingest_lines(db_session, lines, coefficients=coeffs)

    assert totals == {
        "records": 4,
        "ingested": 1,
        "unknown_source": 1,
        "invalid": 2,
        "errors": 0,
        "metrics_written": 4,
    }
    assert [r.outcome for r in responses] == ["ingested", "validation_error", "unknown_source", "validation_error"]
    assert [r.line for r in responses] == [1, 3, 4, 5]
    # activity 20, participation 50, responsiveness 80, throughput 60
    assert responses[0].score == pytest.approx(52.5)
    assert FusionRepository(db_session).snapshot_count(conn.entity_id, conn.source_id) == 1
