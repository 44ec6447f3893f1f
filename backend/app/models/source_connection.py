"""SourceConnection model.

Registry of external services connected for an entity. Recalibration sweeps
iterate the ACTIVE rows; paused or disconnected sources keep their history but
are not recalibrated.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum

from sqlalchemy import DateTime, Index, UniqueConstraint, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column, validates
from sqlalchemy.sql.sqltypes import Enum as SAEnum, Text

from app.core.base import Base, UpdatedAtMixin, UUIDPrimaryKeyMixin, require_utc
from ingestion.core.categories import Category


class ConnectionStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    DISCONNECTED = "disconnected"


class SourceConnection(UUIDPrimaryKeyMixin, UpdatedAtMixin, Base):
    """One connected source for one entity."""

    __tablename__ = "source_connections"

    entity_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)

    source_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)

    service_name: Mapped[str] = mapped_column(Text, nullable=False)

    category: Mapped[Category] = mapped_column(
        SAEnum(Category, name="fusion_category", values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        default=Category.GENERAL,
    )

    status: Mapped[ConnectionStatus] = mapped_column(
        SAEnum(ConnectionStatus, name="fusion_connection_status", values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        default=ConnectionStatus.ACTIVE,
    )

    connected_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    __table_args__ = (
        UniqueConstraint("entity_id", "source_id", name="uq_source_connections_entity_source"),
        Index("ix_source_connections_entity_status", "entity_id", "status"),
    )

    @validates("connected_at")
    def _validate_utc(self, key: str, value: datetime) -> datetime:
        return require_utc(key, value)
