"""Fusion engine baseline: connections, metrics, weightings, scores, history, audit."""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql


# Revision identifiers, used by Alembic.
revision = "0001_fusion_baseline"
down_revision = None
branch_labels = None
depends_on = None


JSONB = sa.JSON().with_variant(postgresql.JSONB(astext_type=sa.Text()), "postgresql")


def _enum(name: str, *values: str) -> sa.Enum:
    return sa.Enum(*values, name=name)


CATEGORY = _enum(
    "fusion_category",
    "communication",
    "meetings",
    "project_management",
    "engineering",
    "documentation",
    "support",
    "design",
    "data",
    "general",
)
CONNECTION_STATUS = _enum("fusion_connection_status", "active", "paused", "disconnected")
TREND = _enum("fusion_trend", "up", "down", "stable")
SCORE_ORIGIN = _enum("fusion_score_origin", "baseline", "computed")
TRIGGERED_BY = _enum("fusion_triggered_by", "user", "system")
AUDIT_STATUS = _enum("fusion_audit_status", "success", "failed")


def upgrade() -> None:
    # -------------------------------------------------------------------------
    # 1. source_connections (mutable registry)
    # -------------------------------------------------------------------------
    op.create_table(
        "source_connections",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("entity_id", sa.Uuid(as_uuid=True), nullable=False),
        sa.Column("source_id", sa.Uuid(as_uuid=True), nullable=False),
        sa.Column("service_name", sa.Text(), nullable=False),
        sa.Column("category", CATEGORY, nullable=False),
        sa.Column("status", CONNECTION_STATUS, nullable=False),
        sa.Column("connected_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("entity_id", "source_id", name="uq_source_connections_entity_source"),
    )
    op.create_index("ix_source_connections_entity_status", "source_connections", ["entity_id", "status"])

    # -------------------------------------------------------------------------
    # 2. fusion_metrics (append-only)
    # -------------------------------------------------------------------------
    op.create_table(
        "fusion_metrics",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("entity_id", sa.Uuid(as_uuid=True), nullable=False),
        sa.Column("source_id", sa.Uuid(as_uuid=True), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("raw_value", sa.Float(), nullable=False),
        sa.Column("normalized_value", sa.Float(), nullable=False),
        sa.Column("weight", sa.Float(), nullable=True),
        sa.Column("captured_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint(
            "normalized_value >= 0 AND normalized_value <= 100",
            name="ck_fusion_metrics_normalized_range",
        ),
        sa.CheckConstraint(
            "weight IS NULL OR (weight >= 0 AND weight <= 1)",
            name="ck_fusion_metrics_weight_range",
        ),
    )
    op.create_index(
        "ix_fusion_metrics_entity_source_name_time",
        "fusion_metrics",
        ["entity_id", "source_id", "name", "captured_at"],
    )

    # -------------------------------------------------------------------------
    # 3. fusion_weightings (one current row per entity/source/metric)
    # -------------------------------------------------------------------------
    op.create_table(
        "fusion_weightings",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("entity_id", sa.Uuid(as_uuid=True), nullable=False),
        sa.Column("source_id", sa.Uuid(as_uuid=True), nullable=False),
        sa.Column("metric_name", sa.Text(), nullable=False),
        sa.Column("final_weight", sa.Float(), nullable=False),
        sa.Column("variance", sa.Float(), nullable=False),
        sa.Column("confidence", sa.Float(), nullable=False),
        sa.Column("correlation_penalty", sa.Float(), nullable=False),
        sa.Column("adjustment_reason", sa.Text(), nullable=False),
        sa.Column("is_adaptive", sa.Boolean(), nullable=False),
        sa.Column("coefficients_version", sa.Text(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint(
            "entity_id", "source_id", "metric_name", name="uq_fusion_weightings_entity_source_metric"
        ),
    )
    op.create_index("ix_fusion_weightings_entity_source", "fusion_weightings", ["entity_id", "source_id"])

    # -------------------------------------------------------------------------
    # 4. fusion_scores (one current row per entity/source)
    # -------------------------------------------------------------------------
    op.create_table(
        "fusion_scores",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("entity_id", sa.Uuid(as_uuid=True), nullable=False),
        sa.Column("source_id", sa.Uuid(as_uuid=True), nullable=False),
        sa.Column("score", sa.Float(), nullable=False),
        sa.Column("trend", TREND, nullable=False),
        sa.Column("score_origin", SCORE_ORIGIN, nullable=False),
        sa.Column("score_breakdown", JSONB, nullable=False),
        sa.Column("calculated_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("entity_id", "source_id", name="uq_fusion_scores_entity_source"),
        sa.CheckConstraint("score >= 0 AND score <= 100", name="ck_fusion_scores_score_range"),
    )

    # -------------------------------------------------------------------------
    # 5. score_history_snapshots (append-only)
    # -------------------------------------------------------------------------
    op.create_table(
        "score_history_snapshots",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("entity_id", sa.Uuid(as_uuid=True), nullable=False),
        sa.Column("source_id", sa.Uuid(as_uuid=True), nullable=False),
        sa.Column("score", sa.Float(), nullable=False),
        sa.Column("recorded_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("change_reason", sa.Text(), nullable=False),
        sa.CheckConstraint("score >= 0 AND score <= 100", name="ck_score_history_snapshots_score_range"),
    )
    op.create_index(
        "ix_score_history_snapshots_entity_source_time",
        "score_history_snapshots",
        ["entity_id", "source_id", "recorded_at"],
    )

    # -------------------------------------------------------------------------
    # 6. fusion_audit_records (append-only, idempotent on run_id + source_id)
    # -------------------------------------------------------------------------
    op.create_table(
        "fusion_audit_records",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("run_id", sa.Uuid(as_uuid=True), nullable=False),
        sa.Column("entity_id", sa.Uuid(as_uuid=True), nullable=False),
        sa.Column("source_id", sa.Uuid(as_uuid=True), nullable=False),
        sa.Column("event_type", sa.Text(), nullable=False),
        sa.Column("triggered_by", TRIGGERED_BY, nullable=False),
        sa.Column("metrics_count", sa.Integer(), nullable=False),
        sa.Column("variance", sa.Float(), nullable=True),
        sa.Column("confidence", sa.Float(), nullable=True),
        sa.Column("confidence_reasons", JSONB, nullable=False),
        sa.Column("weight_changes", JSONB, nullable=False),
        sa.Column("status", AUDIT_STATUS, nullable=False),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("duration_ms", sa.Integer(), nullable=False),
        sa.Column("explanation", sa.Text(), nullable=True),
        sa.Column("coefficients_version", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("run_id", "source_id", name="uq_fusion_audit_records_run_source"),
    )
    op.create_index(
        "ix_fusion_audit_records_entity_source_time",
        "fusion_audit_records",
        ["entity_id", "source_id", "created_at"],
    )


def downgrade() -> None:
    # Drop tables in strict reverse order.
    op.drop_index("ix_fusion_audit_records_entity_source_time", table_name="fusion_audit_records")
    op.drop_table("fusion_audit_records")

    op.drop_index("ix_score_history_snapshots_entity_source_time", table_name="score_history_snapshots")
    op.drop_table("score_history_snapshots")

    op.drop_table("fusion_scores")

    op.drop_index("ix_fusion_weightings_entity_source", table_name="fusion_weightings")
    op.drop_table("fusion_weightings")

    op.drop_index("ix_fusion_metrics_entity_source_name_time", table_name="fusion_metrics")
    op.drop_table("fusion_metrics")

    op.drop_index("ix_source_connections_entity_status", table_name="source_connections")
    op.drop_table("source_connections")

    bind = op.get_bind()
    for enum_type in (AUDIT_STATUS, TRIGGERED_BY, SCORE_ORIGIN, TREND, CONNECTION_STATUS, CATEGORY):
        enum_type.drop(bind, checkfirst=True)
