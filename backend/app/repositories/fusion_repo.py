"""Fusion repository (read-only)."""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional, Sequence

from sqlalchemy import Select, func, select

from app.models.fusion_audit_record import FusionAuditRecord
from app.models.fusion_metric import FusionMetric
from app.models.fusion_score import FusionScore, ScoreOrigin, Trend
from app.models.fusion_weighting import FusionWeighting
from app.models.score_history import ScoreHistorySnapshot
from app.models.source_connection import ConnectionStatus, SourceConnection
from app.repositories.base import BaseRepository, ensure_utc
from ingestion.core.categories import Category


@dataclass(frozen=True, slots=True)
class SourceConnectionDTO:
    entity_id: uuid.UUID
    source_id: uuid.UUID
    service_name: str
    category: Category
    status: ConnectionStatus
    connected_at: datetime


@dataclass(frozen=True, slots=True)
class MetricDTO:
    entity_id: uuid.UUID
    source_id: uuid.UUID
    name: str
    raw_value: float
    normalized_value: float
    weight: Optional[float]
    captured_at: datetime


@dataclass(frozen=True, slots=True)
class ScorePointDTO:
    score: float
    recorded_at: datetime
    change_reason: str


@dataclass(frozen=True, slots=True)
class FusionScoreDTO:
    entity_id: uuid.UUID
    source_id: uuid.UUID
    score: float
    trend: Trend
    score_origin: ScoreOrigin
    score_breakdown: dict[str, Any]
    calculated_at: datetime


@dataclass(frozen=True, slots=True)
class WeightingDTO:
    metric_name: str
    final_weight: float
    variance: float
    confidence: float
    correlation_penalty: float
    adjustment_reason: str
    is_adaptive: bool
    coefficients_version: str
    updated_at: datetime


@dataclass(frozen=True, slots=True)
class AuditDTO:
    run_id: uuid.UUID
    entity_id: uuid.UUID
    source_id: uuid.UUID
    event_type: str
    status: str
    metrics_count: int
    variance: Optional[float]
    confidence: Optional[float]
    weight_changes: dict[str, Any]
    error: Optional[str]
    duration_ms: int
    created_at: datetime


class FusionRepository(BaseRepository[FusionMetric]):
    """Read access for metrics, weightings, scores, history and audits."""

    def list_active_sources(self, entity_id: uuid.UUID) -> Sequence[SourceConnectionDTO]:
        stmt: Select = (
            select(SourceConnection)
            .where(SourceConnection.entity_id == entity_id)
            .where(SourceConnection.status == ConnectionStatus.ACTIVE)
            .order_by(SourceConnection.connected_at.asc(), SourceConnection.source_id.asc())
        )
        return [_to_connection_dto(r) for r in self._execute(stmt).scalars().all()]

    def get_connection(self, entity_id: uuid.UUID, source_id: uuid.UUID) -> Optional[SourceConnectionDTO]:
        stmt: Select = select(SourceConnection).where(
            SourceConnection.entity_id == entity_id,
            SourceConnection.source_id == source_id,
        )
        row = self._execute(stmt).scalars().first()
        return _to_connection_dto(row) if row is not None else None

    def list_entities_with_active_sources(self) -> Sequence[uuid.UUID]:
        stmt: Select = (
            select(SourceConnection.entity_id)
            .where(SourceConnection.status == ConnectionStatus.ACTIVE)
            .distinct()
            .order_by(SourceConnection.entity_id)
        )
        return list(self._execute(stmt).scalars().all())

    def current_metrics(self, entity_id: uuid.UUID, source_id: uuid.UUID) -> Sequence[MetricDTO]:
        """Latest capture per metric name, ordered by name."""
        stmt: Select = (
            select(FusionMetric)
            .where(FusionMetric.entity_id == entity_id, FusionMetric.source_id == source_id)
            .order_by(FusionMetric.name.asc(), FusionMetric.captured_at.desc(), FusionMetric.id.asc())
        )
        latest: dict[str, MetricDTO] = {}
        for row in self._execute(stmt).scalars():
            if row.name not in latest:
                latest[row.name] = _to_metric_dto(row)
        return list(latest.values())

    def metric_series(self, entity_id: uuid.UUID, source_id: uuid.UUID, *, limit: int = 500) -> Sequence[MetricDTO]:
        """Most recent captures for a source, oldest first."""
        stmt: Select = (
            select(FusionMetric)
            .where(FusionMetric.entity_id == entity_id, FusionMetric.source_id == source_id)
            .order_by(FusionMetric.captured_at.desc(), FusionMetric.name.asc())
            .limit(limit)
        )
        rows = [_to_metric_dto(r) for r in self._execute(stmt).scalars().all()]
        rows.reverse()
        return rows

    def score_history(
        self, entity_id: uuid.UUID, source_id: uuid.UUID, *, limit: Optional[int] = None
    ) -> Sequence[ScorePointDTO]:
        """Score history, most recent first."""
        stmt: Select = (
            select(ScoreHistorySnapshot)
            .where(ScoreHistorySnapshot.entity_id == entity_id, ScoreHistorySnapshot.source_id == source_id)
            .order_by(ScoreHistorySnapshot.recorded_at.desc(), ScoreHistorySnapshot.id.asc())
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        return [
            ScorePointDTO(score=float(r.score), recorded_at=ensure_utc(r.recorded_at), change_reason=r.change_reason)
            for r in self._execute(stmt).scalars().all()
        ]

    def snapshot_count(self, entity_id: uuid.UUID, source_id: uuid.UUID) -> int:
        stmt: Select = select(func.count(ScoreHistorySnapshot.id)).where(
            ScoreHistorySnapshot.entity_id == entity_id,
            ScoreHistorySnapshot.source_id == source_id,
        )
        return int(self._execute(stmt).scalar_one())

    def current_weightings(self, entity_id: uuid.UUID, source_id: uuid.UUID) -> dict[str, WeightingDTO]:
        stmt: Select = (
            select(FusionWeighting)
            .where(FusionWeighting.entity_id == entity_id, FusionWeighting.source_id == source_id)
            .order_by(FusionWeighting.metric_name.asc())
        )
        return {r.metric_name: _to_weighting_dto(r) for r in self._execute(stmt).scalars().all()}

    def current_score(self, entity_id: uuid.UUID, source_id: uuid.UUID) -> Optional[FusionScoreDTO]:
        stmt: Select = select(FusionScore).where(
            FusionScore.entity_id == entity_id,
            FusionScore.source_id == source_id,
        )
        row = self._execute(stmt).scalars().first()
        return _to_score_dto(row) if row is not None else None

    def list_scores(self, entity_id: uuid.UUID) -> Sequence[FusionScoreDTO]:
        stmt: Select = (
            select(FusionScore)
            .where(FusionScore.entity_id == entity_id)
            .order_by(FusionScore.source_id.asc())
        )
        return [_to_score_dto(r) for r in self._execute(stmt).scalars().all()]

    def list_audits(
        self,
        *,
        entity_id: Optional[uuid.UUID] = None,
        run_id: Optional[uuid.UUID] = None,
        since: Optional[datetime] = None,
        limit: int = 1000,
    ) -> Sequence[AuditDTO]:
        """Audit records, most recent first."""
        stmt: Select = select(FusionAuditRecord)
        if entity_id is not None:
            stmt = stmt.where(FusionAuditRecord.entity_id == entity_id)
        if run_id is not None:
            stmt = stmt.where(FusionAuditRecord.run_id == run_id)
        if since is not None:
            stmt = stmt.where(FusionAuditRecord.created_at >= since)
        stmt = stmt.order_by(FusionAuditRecord.created_at.desc(), FusionAuditRecord.id.asc()).limit(limit)
        return [_to_audit_dto(r) for r in self._execute(stmt).scalars().all()]


def _to_connection_dto(m: SourceConnection) -> SourceConnectionDTO:
    return SourceConnectionDTO(
        entity_id=m.entity_id,
        source_id=m.source_id,
        service_name=m.service_name,
        category=m.category,
        status=m.status,
        connected_at=ensure_utc(m.connected_at),
    )


def _to_metric_dto(m: FusionMetric) -> MetricDTO:
    return MetricDTO(
        entity_id=m.entity_id,
        source_id=m.source_id,
        name=m.name,
        raw_value=float(m.raw_value),
        normalized_value=float(m.normalized_value),
        weight=float(m.weight) if m.weight is not None else None,
        captured_at=ensure_utc(m.captured_at),
    )


def _to_score_dto(m: FusionScore) -> FusionScoreDTO:
    return FusionScoreDTO(
        entity_id=m.entity_id,
        source_id=m.source_id,
        score=float(m.score),
        trend=m.trend,
        score_origin=m.score_origin,
        score_breakdown=dict(m.score_breakdown or {}),
        calculated_at=ensure_utc(m.calculated_at),
    )


def _to_weighting_dto(m: FusionWeighting) -> WeightingDTO:
    return WeightingDTO(
        metric_name=m.metric_name,
        final_weight=float(m.final_weight),
        variance=float(m.variance),
        confidence=float(m.confidence),
        correlation_penalty=float(m.correlation_penalty),
        adjustment_reason=m.adjustment_reason,
        is_adaptive=bool(m.is_adaptive),
        coefficients_version=m.coefficients_version,
        updated_at=ensure_utc(m.updated_at),
    )


def _to_audit_dto(m: FusionAuditRecord) -> AuditDTO:
    return AuditDTO(
        run_id=m.run_id,
        entity_id=m.entity_id,
        source_id=m.source_id,
        event_type=m.event_type,
        status=m.status.value,
        metrics_count=int(m.metrics_count),
        variance=m.variance,
        confidence=m.confidence,
        weight_changes=dict(m.weight_changes or {}),
        error=m.error,
        duration_ms=int(m.duration_ms),
        created_at=ensure_utc(m.created_at),
    )
