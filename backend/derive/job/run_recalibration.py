from __future__ import annotations

"""Recalibration job: adaptive weight calibration per (entity, source).

Per source:
  current metrics -> variance/confidence -> calibrated weights -> upsert
  fusion_weightings -> one fusion_audit_records row (success or failure).

STRICT:
- READ metrics, score history, connections and current weightings.
- UPSERT fusion_weightings only (one row per entity/source/metric).
- INSERT (append-only, insert-or-ignore on run_id+source_id) fusion_audit_records.

MUST NOT:
- Append score history or rewrite metrics (recalibration is idempotent).
- Let one failing source abort its entity, or one entity abort a sweep.

Run:
  python derive/job/run_recalibration.py --entity-id <uuid> [--source-id <uuid>]
  python derive/job/run_recalibration.py --sweep
"""

import argparse
import json
import logging
import sys
import threading
import time
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

# Ensure `backend/` is importable as top-level `app`.
BASE_DIR = Path(__file__).resolve().parents[2]
if str(BASE_DIR) not in sys.path:
    sys.path.insert(0, str(BASE_DIR))

import app.models as _models  # noqa: F401,E402  (register ORM classes deterministically)
from app.core.env import load_env_if_present  # noqa: E402
from app.core.settings import FusionSettings, load_settings  # noqa: E402
from app.models.fusion_audit_record import TriggeredBy  # noqa: E402
from app.models.fusion_score import ScoreOrigin  # noqa: E402
from app.repositories.fusion_repo import FusionRepository, SourceConnectionDTO  # noqa: E402
from app.schemas.recalibration import (  # noqa: E402
    RecalibrationRequest,
    RecalibrationResult,
    RecalibrationTotals,
    SourceRecalibrationResult,
)
from audit.core.tracer import log_recalibration_failure, log_recalibration_success  # noqa: E402
from derive.core.coefficients import FusionCoefficients, load_coefficients  # noqa: E402
from derive.core.errors import InsufficientDataError, PersistenceError  # noqa: E402
from derive.core.explain import (  # noqa: E402
    ExplanationContext,
    ExplanationProvider,
    NoOpExplanationProvider,
    explain,
)
from derive.core.locks import source_lock  # noqa: E402
from derive.core.maturity import classify_tier  # noqa: E402
from derive.core.persistence import upsert_weightings  # noqa: E402
from derive.core.variance import HISTORY_LIMIT, ConfidenceEstimator, estimate_variance  # noqa: E402
from derive.core.weighting import MetricInput, WeightCalibrator, correlation_penalties  # noqa: E402


UTC = timezone.utc
logger = logging.getLogger("fusion.derive")
logger.setLevel(logging.INFO)
if not logging.getLogger().handlers:
    logging.basicConfig(level=logging.INFO, format="%(message)s")


def _log(event: dict) -> None:
    logger.info(json.dumps(event, ensure_ascii=False, default=str))


def _utc_now() -> datetime:
    return datetime.now(tz=UTC)


def _elapsed_ms(started: float) -> int:
    return max(0, int((time.monotonic() - started) * 1000))


def _failure_reason(ex: Exception) -> str:
    if isinstance(ex, InsufficientDataError):
        return f"insufficient data: {ex}"
    if isinstance(ex, PersistenceError):
        return f"persistence failure: {ex}"
    return f"{type(ex).__name__}: {ex}"[:500]


def recalibrate_source(
    session: Session,
    *,
    run_id: uuid.UUID,
    entity_id: uuid.UUID,
    connection: SourceConnectionDTO,
    coefficients: FusionCoefficients,
    triggered_by: TriggeredBy,
    provider: Optional[ExplanationProvider] = None,
    explain_timeout_seconds: float = 3.0,
) -> SourceRecalibrationResult:
    """Recalibrate one source and write its success audit record.

    Raises InsufficientDataError for a source without metrics and
    PersistenceError when the weighting upsert fails; the caller records the
    failure audit.
    """
    started = time.monotonic()
    source_id = connection.source_id
    repo = FusionRepository(session)

    with source_lock(session, entity_id, source_id):
        metrics = repo.current_metrics(entity_id, source_id)
        if not metrics:
            raise InsufficientDataError("no metrics captured for source")

        history = repo.score_history(entity_id, source_id, limit=HISTORY_LIMIT)
        snapshot_count = repo.snapshot_count(entity_id, source_id)
        variance = estimate_variance([p.score for p in history])

        # A source with at least one metric always has a computed score.
        confidence = ConfidenceEstimator().estimate(
            snapshot_count=snapshot_count,
            metric_count=len(metrics),
            variance_level=variance.recent_variance,
            has_computed_score=True,
        )

        series = repo.metric_series(entity_id, source_id)
        penalties = correlation_penalties((m.name, m.captured_at, m.normalized_value) for m in series)
        previous = {name: w.final_weight for name, w in repo.current_weightings(entity_id, source_id).items()}

        calibration = WeightCalibrator(coefficients).calibrate(
            [
                MetricInput(name=m.name, base_weight=m.weight, correlation_penalty=penalties.get(m.name, 0.0))
                for m in metrics
            ],
            variance=variance.signal,
            confidence=confidence.confidence,
            previous=previous,
        )

        try:
            upsert_weightings(
                session,
                entity_id=entity_id,
                source_id=source_id,
                calibration=calibration,
                updated_at=_utc_now(),
            )
        except SQLAlchemyError as ex:
            raise PersistenceError(
                f"weighting upsert failed ({type(ex).__name__})", metrics_count=len(metrics)
            ) from ex

    # Weights are fixed at this point; a slow provider must not hold the pair lock.
    tier = classify_tier(ScoreOrigin.COMPUTED, snapshot_count, variance.recent_variance, confidence.confidence)
    weight_changes = calibration.weight_changes()
    explanation = explain(
        ExplanationContext(
            source_name=connection.service_name,
            metrics_count=len(metrics),
            variance=variance.signal,
            confidence=confidence.confidence,
            tier=tier.tier,
            confidence_reasons=confidence.reasoning,
            weight_changes=weight_changes,
            adjustment_reason=calibration.adjustment_reason,
            uniform_fallback=calibration.uniform_fallback,
        ),
        provider,
        timeout_seconds=explain_timeout_seconds,
    )

    duration_ms = _elapsed_ms(started)
    try:
        written = log_recalibration_success(
            session,
            run_id=run_id,
            entity_id=entity_id,
            source_id=source_id,
            triggered_by=triggered_by,
            metrics_count=len(metrics),
            variance=variance.signal,
            confidence=confidence.confidence,
            confidence_reasons=confidence.reasoning,
            weight_changes=weight_changes,
            duration_ms=duration_ms,
            coefficients_version=coefficients.version,
            explanation=explanation.text,
        )
    except SQLAlchemyError as ex:
        raise PersistenceError(f"audit insert failed ({type(ex).__name__})", metrics_count=len(metrics)) from ex

    return SourceRecalibrationResult(
        source_id=source_id,
        service_name=connection.service_name,
        status="success",
        metrics_count=len(metrics),
        variance=variance.signal,
        confidence=confidence.confidence,
        confidence_reasons=confidence.reasoning,
        maturity_tier=tier.tier.value,
        uniform_fallback=calibration.uniform_fallback,
        weight_changes=weight_changes,
        explanation=explanation.text,
        duration_ms=duration_ms,
        audit_written=written,
    )


def _record_failure(
    session: Session,
    *,
    run_id: uuid.UUID,
    entity_id: uuid.UUID,
    source_id: uuid.UUID,
    service_name: Optional[str],
    triggered_by: TriggeredBy,
    coefficients: FusionCoefficients,
    ex: Exception,
    metrics_count: int,
    duration_ms: int,
) -> SourceRecalibrationResult:
    reason = _failure_reason(ex)
    written = False
    try:
        with session.begin_nested():
            written = log_recalibration_failure(
                session,
                run_id=run_id,
                entity_id=entity_id,
                source_id=source_id,
                triggered_by=triggered_by,
                error=reason,
                duration_ms=duration_ms,
                coefficients_version=coefficients.version,
                metrics_count=metrics_count,
            )
    except Exception as audit_ex:  # noqa: BLE001
        _log(
            {
                "event": "recalibration_audit_error",
                "run_id": str(run_id),
                "entity_id": str(entity_id),
                "source_id": str(source_id),
                "error_type": type(audit_ex).__name__,
            }
        )

    _log(
        {
            "event": "recalibration_source_failed",
            "run_id": str(run_id),
            "entity_id": str(entity_id),
            "source_id": str(source_id),
            "metrics_count": metrics_count,
            "error": reason,
            "duration_ms": duration_ms,
        }
    )
    return SourceRecalibrationResult(
        source_id=source_id,
        service_name=service_name,
        status="failed",
        metrics_count=metrics_count,
        error=reason,
        duration_ms=duration_ms,
        audit_written=written,
    )


def _totals(results: list[SourceRecalibrationResult], started: float) -> RecalibrationTotals:
    succeeded = [r for r in results if r.status == "success"]
    confidences = [r.confidence for r in succeeded if r.confidence is not None]
    return RecalibrationTotals(
        sources_processed=len(results),
        sources_succeeded=len(succeeded),
        sources_failed=len(results) - len(succeeded),
        avg_confidence=round(sum(confidences) / len(confidences), 6) if confidences else 0.0,
        total_metrics=sum(r.metrics_count for r in results),
        elapsed_ms=_elapsed_ms(started),
    )


def recalibrate_entity(
    session: Session,
    request: RecalibrationRequest,
    *,
    coefficients: FusionCoefficients,
    provider: Optional[ExplanationProvider] = None,
    explain_timeout_seconds: float = 3.0,
) -> RecalibrationResult:
    """Recalibrate every requested source of one entity; does not commit."""
    started = time.monotonic()
    run_id = request.run_id or uuid.uuid4()
    triggered_by = TriggeredBy(request.triggered_by)
    repo = FusionRepository(session)

    if request.source_id is not None:
        connection = repo.get_connection(request.entity_id, request.source_id)
        targets: list[tuple[uuid.UUID, Optional[SourceConnectionDTO]]] = [(request.source_id, connection)]
    else:
        targets = [(c.source_id, c) for c in repo.list_active_sources(request.entity_id)]

    results: list[SourceRecalibrationResult] = []
    for source_id, connection in targets:
        source_started = time.monotonic()

        # Failure isolation per source.
        try:
            if connection is None:
                raise InsufficientDataError("source is not connected for this entity")
            with session.begin_nested():
                result = recalibrate_source(
                    session,
                    run_id=run_id,
                    entity_id=request.entity_id,
                    connection=connection,
                    coefficients=coefficients,
                    triggered_by=triggered_by,
                    provider=provider,
                    explain_timeout_seconds=explain_timeout_seconds,
                )
        except Exception as ex:  # noqa: BLE001
            results.append(
                _record_failure(
                    session,
                    run_id=run_id,
                    entity_id=request.entity_id,
                    source_id=source_id,
                    service_name=connection.service_name if connection is not None else None,
                    triggered_by=triggered_by,
                    coefficients=coefficients,
                    ex=ex,
                    metrics_count=getattr(ex, "metrics_count", 0),
                    duration_ms=_elapsed_ms(source_started),
                )
            )
            continue

        results.append(result)
        _log(
            {
                "event": "recalibration_source_done",
                "run_id": str(run_id),
                "entity_id": str(request.entity_id),
                "source_id": str(source_id),
                "metrics_count": result.metrics_count,
                "variance": result.variance,
                "confidence": result.confidence,
                "maturity_tier": result.maturity_tier,
                "uniform_fallback": result.uniform_fallback,
                "audit_written": result.audit_written,
                "duration_ms": result.duration_ms,
            }
        )

    return RecalibrationResult(
        run_id=run_id,
        entity_id=request.entity_id,
        coefficients_version=coefficients.version,
        per_source_results=results,
        totals=_totals(results, started),
    )


def trigger_recalibration(
    session: Session,
    request: RecalibrationRequest,
    *,
    coefficients: Optional[FusionCoefficients] = None,
    provider: Optional[ExplanationProvider] = None,
    explain_timeout_seconds: float = 3.0,
) -> RecalibrationResult:
    """On-demand recalibration of one entity; commits and returns per-source results."""
    coefficients = coefficients or load_coefficients()
    result = recalibrate_entity(
        session,
        request,
        coefficients=coefficients,
        provider=provider,
        explain_timeout_seconds=explain_timeout_seconds,
    )
    session.commit()

    _log(
        {
            "event": "recalibration_run_summary",
            "run_id": str(result.run_id),
            "entity_id": str(result.entity_id),
            "triggered_by": request.triggered_by,
            "coefficients_version": result.coefficients_version,
            **result.totals.model_dump(),
        }
    )
    return result


def build_explanation_provider(settings: FusionSettings) -> ExplanationProvider:
    if settings.explain_provider == "gemini":
        # Imported lazily so the default path never loads the Gemini client.
        from derive.core.gemini_provider import GeminiExplanationProvider

        return GeminiExplanationProvider(api_key=settings.gemini_api_key, model_name=settings.gemini_model)
    return NoOpExplanationProvider()


def sweep_run_id(run_id: uuid.UUID, entity_id: uuid.UUID) -> uuid.UUID:
    """Per-entity run id; source ids are only unique within an entity."""
    return uuid.uuid5(run_id, str(entity_id))


def run_sweep(
    *,
    session_factory: Callable[[], Session],
    coefficients: FusionCoefficients,
    max_workers: int = 4,
    provider: Optional[ExplanationProvider] = None,
    explain_timeout_seconds: float = 3.0,
    run_id: Optional[uuid.UUID] = None,
) -> list[RecalibrationResult]:
    """Recalibrate every entity with an active source on a bounded pool.

    Each entity gets its own session; a failing entity is logged and skipped.
    """
    run_id = run_id or uuid.uuid4()
    with session_factory() as db:
        entity_ids = list(FusionRepository(db).list_entities_with_active_sources())

    def _one(entity_id: uuid.UUID) -> Optional[RecalibrationResult]:
        with session_factory() as db:
            try:
                return trigger_recalibration(
                    db,
                    RecalibrationRequest(
                        entity_id=entity_id,
                        run_id=sweep_run_id(run_id, entity_id),
                        triggered_by="system",
                    ),
                    coefficients=coefficients,
                    provider=provider,
                    explain_timeout_seconds=explain_timeout_seconds,
                )
            except Exception as ex:  # noqa: BLE001
                db.rollback()
                _log(
                    {
                        "event": "recalibration_entity_error",
                        "run_id": str(run_id),
                        "entity_id": str(entity_id),
                        "error_type": type(ex).__name__,
                    }
                )
                return None

    results: list[RecalibrationResult] = []
    with ThreadPoolExecutor(max_workers=max(1, max_workers), thread_name_prefix="fusion-recal") as pool:
        for res in pool.map(_one, entity_ids):
            if res is not None:
                results.append(res)

    _log(
        {
            "event": "recalibration_sweep_summary",
            "run_id": str(run_id),
            "entities": len(entity_ids),
            "entities_succeeded": len(results),
            "sources_processed": sum(r.totals.sources_processed for r in results),
            "sources_failed": sum(r.totals.sources_failed for r in results),
        }
    )
    return results


_SWEEP_LOCK = threading.Lock()
_SWEEP_EXECUTOR: Optional[ThreadPoolExecutor] = None


def start_sweep(**kwargs) -> Future:
    """Fire-and-forget sweep; results are observable through audit records."""
    global _SWEEP_EXECUTOR
    with _SWEEP_LOCK:
        if _SWEEP_EXECUTOR is None:
            _SWEEP_EXECUTOR = ThreadPoolExecutor(max_workers=1, thread_name_prefix="fusion-sweep")
        return _SWEEP_EXECUTOR.submit(run_sweep, **kwargs)


def main() -> int:
    load_env_if_present()

    p = argparse.ArgumentParser(add_help=True)
    p.add_argument("--entity-id", type=uuid.UUID, default=None, help="Recalibrate a single entity.")
    p.add_argument("--source-id", type=uuid.UUID, default=None, help="Restrict to one source of --entity-id.")
    p.add_argument("--run-id", type=uuid.UUID, default=None, help="Reuse a run id (audit inserts are idempotent).")
    p.add_argument("--sweep", action="store_true", help="Recalibrate every entity with an active source.")
    args = p.parse_args()

    if not args.sweep and args.entity_id is None:
        p.error("either --entity-id or --sweep is required")
    if args.source_id is not None and args.entity_id is None:
        p.error("--source-id requires --entity-id")

    from app.core.db import SessionLocal

    settings = load_settings()
    coefficients = load_coefficients(settings.coefficients_path)
    provider = build_explanation_provider(settings)

    if args.sweep:
        results = run_sweep(
            session_factory=SessionLocal,
            coefficients=coefficients,
            max_workers=settings.max_workers,
            provider=provider,
            explain_timeout_seconds=settings.explain_timeout_seconds,
            run_id=args.run_id,
        )
        failed = sum(r.totals.sources_failed for r in results)
        return 0 if failed == 0 else 1

    db = SessionLocal()
    try:
        result = trigger_recalibration(
            db,
            RecalibrationRequest(entity_id=args.entity_id, source_id=args.source_id, run_id=args.run_id, triggered_by="user"),
            coefficients=coefficients,
            provider=provider,
            explain_timeout_seconds=settings.explain_timeout_seconds,
        )
    finally:
        db.close()
    return 0 if result.totals.sources_failed == 0 else 1


if __name__ == "__main__":
    raise SystemExit(main())
