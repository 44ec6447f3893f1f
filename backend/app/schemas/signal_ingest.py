"""Schemas for signal ingestion records.

One record per line of an ingest file: the payload a connected service
reported for one (entity, source). Payload fields are never validated beyond
"is a mapping"; absent counters read as zero.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field, field_validator


IngestOutcome = Literal["ingested", "unknown_source", "validation_error", "error"]


class SignalIngestRecord(BaseModel):
    """A single signal payload for one connected source."""

    entity_id: uuid.UUID = Field(..., description="Entity the source is connected to")
    source_id: uuid.UUID = Field(..., description="Connected source identifier")
    payload: dict[str, Any] = Field(
        default_factory=dict,
        description="Raw counters as the external service names them",
    )
    captured_at: Optional[datetime] = Field(
        None,
        description="Capture timestamp (must be UTC); defaults to ingest time",
    )

    @field_validator("captured_at")
    @classmethod
    def validate_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        if v is None:
            return v
        if v.tzinfo is None or v.utcoffset() is None:
            raise ValueError("captured_at must be timezone-aware (UTC)")
        return v


class SignalIngestResponse(BaseModel):
    """Result of a single ingest attempt."""

    outcome: IngestOutcome
    line: int = Field(..., ge=1, description="1-based line number in the ingest file")
    score: Optional[float] = Field(None, ge=0, le=100)
    contribution: Optional[float] = None
    metrics_written: int = 0
    message: Optional[str] = None
