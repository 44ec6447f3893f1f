"""FusionScore model.

Current score for one (entity, source). `score_origin` starts as BASELINE
(placeholder 50) and flips to COMPUTED once real metrics exist; it is the
primary gate for maturity tiers.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import Any

from sqlalchemy import CheckConstraint, DateTime, Float, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column, validates
from sqlalchemy.sql.sqltypes import Enum as SAEnum

from app.core.base import Base, JSONType, UUIDPrimaryKeyMixin, require_utc


class Trend(str, Enum):
    UP = "up"
    DOWN = "down"
    STABLE = "stable"


class ScoreOrigin(str, Enum):
    BASELINE = "baseline"
    COMPUTED = "computed"


class FusionScore(UUIDPrimaryKeyMixin, Base):
    __tablename__ = "fusion_scores"

    entity_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)

    source_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)

    score: Mapped[float] = mapped_column(Float, nullable=False)

    trend: Mapped[Trend] = mapped_column(
        SAEnum(Trend, name="fusion_trend", values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        default=Trend.STABLE,
    )

    score_origin: Mapped[ScoreOrigin] = mapped_column(
        SAEnum(ScoreOrigin, name="fusion_score_origin", values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        default=ScoreOrigin.BASELINE,
    )

    # Per-metric value/weight/contribution used to build `score`.
    score_breakdown: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)

    calculated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        UniqueConstraint("entity_id", "source_id", name="uq_fusion_scores_entity_source"),
        CheckConstraint("score >= 0 AND score <= 100", name="ck_fusion_scores_score_range"),
    )

    @validates("calculated_at")
    def _validate_utc(self, key: str, value: datetime) -> datetime:
        return require_utc(key, value)
