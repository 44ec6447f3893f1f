"""Schemas for the recalibration trigger surface."""

from __future__ import annotations

import uuid
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class RecalibrationRequest(BaseModel):
    """Recalibrate one entity; all active sources unless `source_id` is given.

    Reusing a `run_id` is safe: audit records are keyed on (run_id, source_id).
    """

    entity_id: uuid.UUID
    source_id: Optional[uuid.UUID] = None
    run_id: Optional[uuid.UUID] = None
    triggered_by: Literal["user", "system"] = "user"

    model_config = ConfigDict(frozen=True)


class SourceRecalibrationResult(BaseModel):
    source_id: uuid.UUID
    service_name: Optional[str] = None
    status: Literal["success", "failed"]
    metrics_count: int = Field(ge=0)
    variance: Optional[float] = None
    confidence: Optional[float] = None
    confidence_reasons: list[str] = Field(default_factory=list)
    maturity_tier: Optional[str] = None
    uniform_fallback: bool = False
    weight_changes: dict[str, Any] = Field(default_factory=dict)
    explanation: Optional[str] = None
    error: Optional[str] = None
    duration_ms: int = Field(ge=0)
    audit_written: bool = True


class RecalibrationTotals(BaseModel):
    sources_processed: int = 0
    sources_succeeded: int = 0
    sources_failed: int = 0
    # Mean over successful sources only; 0.0 when none succeeded.
    avg_confidence: float = 0.0
    total_metrics: int = 0
    elapsed_ms: int = 0


class RecalibrationResult(BaseModel):
    run_id: uuid.UUID
    entity_id: uuid.UUID
    coefficients_version: str
    per_source_results: list[SourceRecalibrationResult] = Field(default_factory=list)
    totals: RecalibrationTotals = Field(default_factory=RecalibrationTotals)
