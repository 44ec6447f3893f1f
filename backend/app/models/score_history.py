"""ScoreHistorySnapshot model.

Append-only series of scores per (entity, source). This is the authoritative
input for variance, trend, anomaly and learning-event derivation; derived
conclusions are never written back into it.
"""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import CheckConstraint, DateTime, Float, Index, Uuid, event, inspect
from sqlalchemy.orm import Mapped, mapped_column, validates
from sqlalchemy.sql.sqltypes import Text

from app.core.base import Base, UUIDPrimaryKeyMixin, require_utc


class ScoreHistoryImmutabilityError(RuntimeError):
    """Raised when an attempt is made to mutate or delete a ScoreHistorySnapshot."""


class ScoreHistorySnapshot(UUIDPrimaryKeyMixin, Base):
    """Immutable point-in-time score."""

    __tablename__ = "score_history_snapshots"

    entity_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)

    source_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)

    score: Mapped[float] = mapped_column(Float, nullable=False)

    recorded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    change_reason: Mapped[str] = mapped_column(Text, nullable=False)

    __table_args__ = (
        CheckConstraint("score >= 0 AND score <= 100", name="ck_score_history_snapshots_score_range"),
        Index("ix_score_history_snapshots_entity_source_time", "entity_id", "source_id", "recorded_at"),
    )

    @validates("recorded_at")
    def _validate_utc(self, key: str, value: datetime) -> datetime:
        return require_utc(key, value)


@event.listens_for(ScoreHistorySnapshot, "before_update", propagate=True)
def _score_history_prevent_updates(mapper, connection, target) -> None:
    state = inspect(target)
    if not state.persistent:
        return

    changed = [a.key for a in state.attrs if a.history.has_changes()]
    if changed:
        raise ScoreHistoryImmutabilityError(
            "ScoreHistorySnapshot is immutable; updates are forbidden (changed: "
            + ", ".join(sorted(changed))
            + "). History is always additive."
        )


@event.listens_for(ScoreHistorySnapshot, "before_delete", propagate=True)
def _score_history_prevent_delete(mapper, connection, target) -> None:
    raise ScoreHistoryImmutabilityError(
        "ScoreHistorySnapshot deletion is forbidden. Score history must remain intact for learning-state derivation."
    )
