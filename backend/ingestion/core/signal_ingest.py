"""Signal ingest for one connected source.

payload -> category counters -> four dimensions -> append metric captures ->
recompute source score with the current calibrated weights -> upsert current
score -> append one history snapshot.

The caller owns the transaction; nothing here commits.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Mapping, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.models.fusion_score import Trend
from app.repositories.fusion_repo import FusionRepository, SourceConnectionDTO
from derive.core.coefficients import FusionCoefficients
from derive.core.fusion import WeightedValue, compute_source_score, derive_trend, fusion_contribution
from derive.core.persistence import upsert_score
from derive.core.snapshot import append_score_snapshot, capture_metric
from derive.core.variance import HISTORY_LIMIT
from ingestion.core.errors import InsertError
from ingestion.core.extractor import extract_counters
from ingestion.core.normalizer import DimensionScores, compute_dimensions


DEFAULT_METRIC_WEIGHT = 0.25
CHANGE_REASON = "signal_ingest"


@dataclass(frozen=True)
class IngestResult:
    entity_id: uuid.UUID
    source_id: uuid.UUID
    dimensions: DimensionScores
    metrics_written: int
    score: float
    trend: Trend
    contribution: float


def metric_name(service_name: str, dimension: str) -> str:
    return f"{service_name.strip().lower()}_{dimension}"


def ingest_source_event(
    session: Session,
    connection: SourceConnectionDTO,
    payload: Optional[Mapping[str, Any]],
    *,
    coefficients: FusionCoefficients,
    captured_at: Optional[datetime] = None,
) -> IngestResult:
    captured_at = captured_at or datetime.now(timezone.utc)
    entity_id = connection.entity_id
    source_id = connection.source_id
    repo = FusionRepository(session)

    counters = extract_counters(connection.category, payload)
    dims = compute_dimensions(connection.category, counters)
    weights = repo.current_weightings(entity_id, source_id)

    written = 0
    try:
        for dimension, value in dims.as_dict().items():
            if value <= 0:
                continue
            # Captures carry the fixed base weight; calibrated weights live in
            # fusion_weightings and are only applied when scoring.
            capture_metric(
                session,
                entity_id=entity_id,
                source_id=source_id,
                name=metric_name(connection.service_name, dimension),
                raw_value=dims.raw_value(dimension),
                normalized_value=value,
                captured_at=captured_at,
                weight=DEFAULT_METRIC_WEIGHT,
            )
            written += 1
        session.flush()
    except SQLAlchemyError as ex:
        raise InsertError(f"metric capture failed ({type(ex).__name__})") from ex

    values = []
    for m in repo.current_metrics(entity_id, source_id):
        calibrated = weights.get(m.name)
        if calibrated is not None:
            weight = calibrated.final_weight
        elif m.weight is not None:
            weight = m.weight
        else:
            weight = DEFAULT_METRIC_WEIGHT
        values.append(WeightedValue(name=m.name, value=m.normalized_value, weight=weight))
    source_score = compute_source_score(values)

    history = [p.score for p in repo.score_history(entity_id, source_id, limit=HISTORY_LIMIT)]
    trend = derive_trend([source_score.score] + history)

    try:
        upsert_score(
            session,
            entity_id=entity_id,
            source_id=source_id,
            score=source_score.score,
            trend=trend,
            score_origin=source_score.origin,
            breakdown=source_score.breakdown,
            calculated_at=captured_at,
        )
        append_score_snapshot(
            session,
            entity_id=entity_id,
            source_id=source_id,
            score=source_score.score,
            recorded_at=captured_at,
            change_reason=CHANGE_REASON,
        )
        session.flush()
    except SQLAlchemyError as ex:
        raise InsertError(f"score persistence failed ({type(ex).__name__})") from ex

    return IngestResult(
        entity_id=entity_id,
        source_id=source_id,
        dimensions=dims,
        metrics_written=written,
        score=source_score.score,
        trend=trend,
        contribution=fusion_contribution(dims, connection.category, coefficients),
    )
