"""Write paths for the mutable fusion tables.

FusionWeighting and FusionScore hold exactly one current row per key and are
overwritten with a conditional upsert (INSERT ... ON CONFLICT DO UPDATE), so
concurrent writers never produce duplicates. PostgreSQL is the production
dialect; SQLite shares the same ON CONFLICT grammar and is used in tests.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Mapping

from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from app.models.fusion_score import FusionScore, ScoreOrigin, Trend
from app.models.fusion_weighting import FusionWeighting
from derive.core.errors import PersistenceError
from derive.core.weighting import CalibrationResult


def _insert_for(session: Session):
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return pg_insert
    if dialect == "sqlite":
        return sqlite_insert
    raise PersistenceError(f"unsupported dialect for upsert: {dialect}")


def upsert_weightings(
    session: Session,
    *,
    entity_id: uuid.UUID,
    source_id: uuid.UUID,
    calibration: CalibrationResult,
    updated_at: datetime,
) -> int:
    """Overwrite the current weighting row of every calibrated metric."""
    insert = _insert_for(session)
    rows = [
        {
            "id": uuid.uuid4(),
            "entity_id": entity_id,
            "source_id": source_id,
            "metric_name": w.metric_name,
            "final_weight": w.final_weight,
            "variance": w.variance,
            "confidence": w.confidence,
            "correlation_penalty": w.correlation_penalty,
            "adjustment_reason": calibration.adjustment_reason,
            "is_adaptive": not calibration.uniform_fallback,
            "coefficients_version": calibration.coefficients_version,
            "updated_at": updated_at,
        }
        for w in calibration.weights
    ]
    if not rows:
        return 0

    stmt = insert(FusionWeighting).values(rows)
    stmt = stmt.on_conflict_do_update(
        index_elements=["entity_id", "source_id", "metric_name"],
        set_={
            "final_weight": stmt.excluded.final_weight,
            "variance": stmt.excluded.variance,
            "confidence": stmt.excluded.confidence,
            "correlation_penalty": stmt.excluded.correlation_penalty,
            "adjustment_reason": stmt.excluded.adjustment_reason,
            "is_adaptive": stmt.excluded.is_adaptive,
            "coefficients_version": stmt.excluded.coefficients_version,
            "updated_at": stmt.excluded.updated_at,
        },
    )
    session.execute(stmt)
    return len(rows)


def upsert_score(
    session: Session,
    *,
    entity_id: uuid.UUID,
    source_id: uuid.UUID,
    score: float,
    trend: Trend,
    score_origin: ScoreOrigin,
    breakdown: Mapping[str, Any],
    calculated_at: datetime,
) -> None:
    if not 0.0 <= score <= 100.0:
        raise PersistenceError(f"score out of range: {score}")

    insert = _insert_for(session)
    stmt = insert(FusionScore).values(
        id=uuid.uuid4(),
        entity_id=entity_id,
        source_id=source_id,
        score=score,
        trend=trend,
        score_origin=score_origin,
        score_breakdown=dict(breakdown),
        calculated_at=calculated_at,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=["entity_id", "source_id"],
        set_={
            "score": stmt.excluded.score,
            "trend": stmt.excluded.trend,
            "score_origin": stmt.excluded.score_origin,
            "score_breakdown": stmt.excluded.score_breakdown,
            "calculated_at": stmt.excluded.calculated_at,
        },
    )
    session.execute(stmt)
