"""FusionAuditRecord model.

One row per recalibration attempt for one (run, source), written on success
and on failure alike. `(run_id, source_id)` is the idempotency key: a retried
trigger reusing the same run_id cannot double-count.

Records are immutable and never deleted.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from sqlalchemy import Float, Index, Integer, UniqueConstraint, Uuid, event, inspect
from sqlalchemy.orm import Mapped, mapped_column, validates
from sqlalchemy.sql.sqltypes import Enum as SAEnum, Text

from app.core.base import Base, CreatedAtMixin, JSONType, UUIDPrimaryKeyMixin, require_utc


class FusionAuditImmutabilityError(RuntimeError):
    """Raised when an attempt is made to mutate or delete a FusionAuditRecord."""


class AuditStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"


class TriggeredBy(str, Enum):
    USER = "user"
    SYSTEM = "system"


class FusionAuditRecord(UUIDPrimaryKeyMixin, CreatedAtMixin, Base):
    """Immutable recalibration audit entry."""

    __tablename__ = "fusion_audit_records"

    run_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)

    entity_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)

    source_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)

    event_type: Mapped[str] = mapped_column(Text, nullable=False)

    triggered_by: Mapped[TriggeredBy] = mapped_column(
        SAEnum(TriggeredBy, name="fusion_triggered_by", values_callable=lambda e: [m.value for m in e]),
        nullable=False,
    )

    metrics_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    variance: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    confidence: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    # Human-readable reasons behind `confidence`.
    confidence_reasons: Mapped[list[str]] = mapped_column(JSONType, nullable=False, default=list)

    # metric_name -> {"old": float | None, "new": float}
    weight_changes: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)

    status: Mapped[AuditStatus] = mapped_column(
        SAEnum(AuditStatus, name="fusion_audit_status", values_callable=lambda e: [m.value for m in e]),
        nullable=False,
    )

    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    duration_ms: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    explanation: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    coefficients_version: Mapped[str] = mapped_column(Text, nullable=False)

    __table_args__ = (
        UniqueConstraint("run_id", "source_id", name="uq_fusion_audit_records_run_source"),
        Index("ix_fusion_audit_records_entity_source_time", "entity_id", "source_id", "created_at"),
    )

    @validates("created_at")
    def _validate_utc(self, key: str, value: datetime) -> datetime:
        return require_utc(key, value)


@event.listens_for(FusionAuditRecord, "before_update", propagate=True)
def _fusion_audit_prevent_updates(mapper, connection, target) -> None:
    state = inspect(target)
    if not state.persistent:
        return

    changed = [a.key for a in state.attrs if a.history.has_changes()]
    if changed:
        raise FusionAuditImmutabilityError(
            "FusionAuditRecord is immutable; updates are forbidden (changed: "
            + ", ".join(sorted(changed))
            + ")."
        )


@event.listens_for(FusionAuditRecord, "before_delete", propagate=True)
def _fusion_audit_prevent_delete(mapper, connection, target) -> None:
    raise FusionAuditImmutabilityError(
        "FusionAuditRecord deletion is forbidden. The audit trail must remain immutable."
    )
