"""Append-only capture of metrics and score history.

Both tables only ever grow: a new capture supersedes an older one, history is
never rewritten. Objects are added to the session but not committed; the caller
owns the transaction.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from app.models.fusion_metric import FusionMetric
from app.models.score_history import ScoreHistorySnapshot


def append_score_snapshot(
    db: Session,
    *,
    entity_id: uuid.UUID,
    source_id: uuid.UUID,
    score: float,
    recorded_at: datetime,
    change_reason: str,
) -> ScoreHistorySnapshot:
    """Create a single score history snapshot.

    Args:
        db: Database session
        entity_id: Owning entity
        source_id: Source the score belongs to
        score: Score in [0, 100]
        recorded_at: UTC timestamp of the snapshot
        change_reason: Why the score was recorded (e.g. "signal_ingest")

    Returns:
        The created snapshot object (not committed yet)
    """
    snapshot = ScoreHistorySnapshot(
        id=uuid.uuid4(),
        entity_id=entity_id,
        source_id=source_id,
        score=max(0.0, min(100.0, float(score))),
        recorded_at=recorded_at,
        change_reason=change_reason,
    )
    db.add(snapshot)
    return snapshot


def capture_metric(
    db: Session,
    *,
    entity_id: uuid.UUID,
    source_id: uuid.UUID,
    name: str,
    raw_value: float,
    normalized_value: float,
    captured_at: datetime,
    weight: Optional[float] = None,
) -> FusionMetric:
    metric = FusionMetric(
        id=uuid.uuid4(),
        entity_id=entity_id,
        source_id=source_id,
        name=name,
        raw_value=float(raw_value),
        normalized_value=max(0.0, min(100.0, float(normalized_value))),
        weight=weight,
        captured_at=captured_at,
    )
    db.add(metric)
    return metric
