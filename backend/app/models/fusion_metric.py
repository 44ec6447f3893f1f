"""FusionMetric model.

A captured, normalized signal for one (entity, source, metric name).

Metrics are append-only: a newer capture supersedes an older one, it never
rewrites it. The current metric set of a source is the latest capture per name.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import CheckConstraint, DateTime, Float, Index, Uuid, event, inspect
from sqlalchemy.orm import Mapped, mapped_column, validates
from sqlalchemy.sql.sqltypes import Text

from app.core.base import Base, UUIDPrimaryKeyMixin, require_utc


class FusionMetricImmutabilityError(RuntimeError):
    """Raised when an attempt is made to mutate or delete a FusionMetric."""


class FusionMetric(UUIDPrimaryKeyMixin, Base):
    """Immutable metric capture."""

    __tablename__ = "fusion_metrics"

    entity_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)

    source_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)

    name: Mapped[str] = mapped_column(Text, nullable=False)

    raw_value: Mapped[float] = mapped_column(Float, nullable=False)

    normalized_value: Mapped[float] = mapped_column(Float, nullable=False)

    # NULL means "no base weight supplied"; calibration then starts from 1.0.
    weight: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    captured_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        CheckConstraint(
            "normalized_value >= 0 AND normalized_value <= 100",
            name="ck_fusion_metrics_normalized_range",
        ),
        CheckConstraint(
            "weight IS NULL OR (weight >= 0 AND weight <= 1)",
            name="ck_fusion_metrics_weight_range",
        ),
        Index("ix_fusion_metrics_entity_source_name_time", "entity_id", "source_id", "name", "captured_at"),
    )

    @validates("captured_at")
    def _validate_utc(self, key: str, value: datetime) -> datetime:
        return require_utc(key, value)


@event.listens_for(FusionMetric, "before_update", propagate=True)
def _fusion_metric_prevent_updates(mapper, connection, target) -> None:
    state = inspect(target)
    if not state.persistent:
        return

    changed = [a.key for a in state.attrs if a.history.has_changes()]
    if changed:
        raise FusionMetricImmutabilityError(
            "FusionMetric is immutable; updates are forbidden (changed: "
            + ", ".join(sorted(changed))
            + "). Capture a new metric instead."
        )


@event.listens_for(FusionMetric, "before_delete", propagate=True)
def _fusion_metric_prevent_delete(mapper, connection, target) -> None:
    raise FusionMetricImmutabilityError("FusionMetric deletion is forbidden; captures are append-only.")
