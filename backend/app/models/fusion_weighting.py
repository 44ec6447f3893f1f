"""FusionWeighting model.

Current calibrated weight for one (entity, source, metric). Overwritten in place
by every recalibration; the previous value lives in the audit record's
weight_changes.
"""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import Boolean, DateTime, Float, Index, UniqueConstraint, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql.sqltypes import Text

from app.core.base import Base, UUIDPrimaryKeyMixin


class FusionWeighting(UUIDPrimaryKeyMixin, Base):
    __tablename__ = "fusion_weightings"

    entity_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)

    source_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)

    metric_name: Mapped[str] = mapped_column(Text, nullable=False)

    final_weight: Mapped[float] = mapped_column(Float, nullable=False)

    variance: Mapped[float] = mapped_column(Float, nullable=False)

    confidence: Mapped[float] = mapped_column(Float, nullable=False)

    correlation_penalty: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)

    adjustment_reason: Mapped[str] = mapped_column(Text, nullable=False)

    is_adaptive: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    coefficients_version: Mapped[str] = mapped_column(Text, nullable=False)

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    __table_args__ = (
        UniqueConstraint("entity_id", "source_id", "metric_name", name="uq_fusion_weightings_entity_source_metric"),
        Index("ix_fusion_weightings_entity_source", "entity_id", "source_id"),
    )
