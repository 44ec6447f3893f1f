"""Recalibration audit trail.

One immutable record per (run_id, source_id), written on success and failure
alike. Inserts are insert-or-ignore on that key so a retried trigger reusing a
run_id never double-counts.
"""

import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from app.models.fusion_audit_record import AuditStatus, FusionAuditRecord, TriggeredBy

logger = logging.getLogger(__name__)

EVENT_RECALIBRATION = "weight_recalibration"


def log_recalibration_success(
    db: Session,
    *,
    run_id: uuid.UUID,
    entity_id: uuid.UUID,
    source_id: uuid.UUID,
    triggered_by: TriggeredBy,
    metrics_count: int,
    variance: float,
    confidence: float,
    confidence_reasons: List[str],
    weight_changes: Dict[str, Any],
    duration_ms: int,
    coefficients_version: str,
    explanation: Optional[str] = None,
) -> bool:
    """Record a successful recalibration. Returns False when the key already existed."""
    return _create_record(
        db,
        run_id=run_id,
        entity_id=entity_id,
        source_id=source_id,
        triggered_by=triggered_by,
        status=AuditStatus.SUCCESS,
        metrics_count=metrics_count,
        variance=variance,
        confidence=confidence,
        confidence_reasons=confidence_reasons,
        weight_changes=weight_changes,
        duration_ms=duration_ms,
        coefficients_version=coefficients_version,
        explanation=explanation,
    )


def log_recalibration_failure(
    db: Session,
    *,
    run_id: uuid.UUID,
    entity_id: uuid.UUID,
    source_id: uuid.UUID,
    triggered_by: TriggeredBy,
    error: str,
    duration_ms: int,
    coefficients_version: str,
    metrics_count: int = 0,
) -> bool:
    """Record a failed attempt; the reason must be human-readable."""
    return _create_record(
        db,
        run_id=run_id,
        entity_id=entity_id,
        source_id=source_id,
        triggered_by=triggered_by,
        status=AuditStatus.FAILED,
        metrics_count=metrics_count,
        error=error,
        duration_ms=duration_ms,
        coefficients_version=coefficients_version,
    )


def _create_record(
    db: Session,
    *,
    run_id: uuid.UUID,
    entity_id: uuid.UUID,
    source_id: uuid.UUID,
    triggered_by: TriggeredBy,
    status: AuditStatus,
    metrics_count: int,
    duration_ms: int,
    coefficients_version: str,
    variance: Optional[float] = None,
    confidence: Optional[float] = None,
    confidence_reasons: Optional[List[str]] = None,
    weight_changes: Optional[Dict[str, Any]] = None,
    error: Optional[str] = None,
    explanation: Optional[str] = None,
) -> bool:
    dialect = db.get_bind().dialect.name
    insert = pg_insert if dialect == "postgresql" else sqlite_insert

    stmt = (
        insert(FusionAuditRecord)
        .values(
            id=uuid.uuid4(),
            run_id=run_id,
            entity_id=entity_id,
            source_id=source_id,
            event_type=EVENT_RECALIBRATION,
            triggered_by=triggered_by,
            metrics_count=int(metrics_count),
            variance=variance,
            confidence=confidence,
            confidence_reasons=list(confidence_reasons or []),
            weight_changes=dict(weight_changes or {}),
            status=status,
            error=error,
            duration_ms=max(0, int(duration_ms)),
            explanation=explanation,
            coefficients_version=coefficients_version,
            created_at=datetime.now(timezone.utc),
        )
        .on_conflict_do_nothing(index_elements=["run_id", "source_id"])
    )
    result = db.execute(stmt)
    inserted = bool(result.rowcount)
    if not inserted:
        logger.info("audit_duplicate_ignored run_id=%s source_id=%s", run_id, source_id)
    return inserted
