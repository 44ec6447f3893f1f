from __future__ import annotations

"""Signal ingest job: JSON lines -> extract -> normalize -> metrics, score, history.

STRICT:
- Appends fusion_metrics and score_history_snapshots (append-only).
- Upserts fusion_scores (one current row per entity/source).
- Never touches weightings or audit records (that is the recalibration job).
- Failure isolated per record; partial ingestion is success.

Run:
  python ingestion/jobs/run_ingestion.py --file signals.jsonl
"""

import argparse
import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable

from pydantic import ValidationError
from sqlalchemy.orm import Session

# Ensure `backend/` is on sys.path so `import app...` works when run from repo root.
BASE_DIR = Path(__file__).resolve().parents[2]
if str(BASE_DIR) not in sys.path:
    sys.path.insert(0, str(BASE_DIR))

import app.models as _models  # noqa: F401,E402  (register ORM classes deterministically)
from app.core.env import load_env_if_present  # noqa: E402
from app.repositories.fusion_repo import FusionRepository  # noqa: E402
from app.schemas.signal_ingest import SignalIngestRecord, SignalIngestResponse  # noqa: E402
from derive.core.coefficients import FusionCoefficients, load_coefficients  # noqa: E402
from ingestion.core.errors import IngestionError, UnknownSourceError  # noqa: E402
from ingestion.core.signal_ingest import ingest_source_event  # noqa: E402


UTC = timezone.utc
logger = logging.getLogger("fusion.ingestion")
logger.setLevel(logging.INFO)

# Ensure logs are visible when run from a scheduler / console.
if not logging.getLogger().handlers:
    logging.basicConfig(level=logging.INFO, format="%(message)s")


def _log(event: dict) -> None:
    # Structured logs only; never log raw payloads.
    logger.info(json.dumps(event, ensure_ascii=False))


def _ingest_one(
    session: Session,
    record: SignalIngestRecord,
    *,
    line: int,
    coefficients: FusionCoefficients,
) -> SignalIngestResponse:
    connection = FusionRepository(session).get_connection(record.entity_id, record.source_id)
    if connection is None:
        raise UnknownSourceError(f"source {record.source_id} is not connected for entity {record.entity_id}")

    result = ingest_source_event(
        session,
        connection,
        record.payload,
        coefficients=coefficients,
        captured_at=record.captured_at.astimezone(UTC) if record.captured_at else None,
    )
    _log(
        {
            "event": "ingest_source_done",
            "line": line,
            "entity_id": str(result.entity_id),
            "source_id": str(result.source_id),
            "service_name": connection.service_name,
            "category": connection.category.value,
            "metrics_written": result.metrics_written,
            "score": round(result.score, 4),
            "trend": result.trend.value,
        }
    )
    return SignalIngestResponse(
        outcome="ingested",
        line=line,
        score=result.score,
        contribution=result.contribution,
        metrics_written=result.metrics_written,
    )


def ingest_lines(
    session: Session,
    lines: Iterable[str],
    *,
    coefficients: FusionCoefficients,
) -> tuple[list[SignalIngestResponse], dict[str, int]]:
    """Ingest JSON lines with a savepoint per record; commits once at the end."""
    totals = {"records": 0, "ingested": 0, "unknown_source": 0, "invalid": 0, "errors": 0, "metrics_written": 0}
    responses: list[SignalIngestResponse] = []

    for line_no, raw in enumerate(lines, start=1):
        raw = raw.strip()
        if not raw:
            continue
        totals["records"] += 1

        try:
            record = SignalIngestRecord.model_validate(json.loads(raw))
        except (ValueError, ValidationError) as ex:
            totals["invalid"] += 1
            responses.append(
                SignalIngestResponse(outcome="validation_error", line=line_no, message=type(ex).__name__)
            )
            continue

        # Failure isolation per record.
        try:
            with session.begin_nested():
                resp = _ingest_one(session, record, line=line_no, coefficients=coefficients)
        except UnknownSourceError as ex:
            totals["unknown_source"] += 1
            responses.append(SignalIngestResponse(outcome="unknown_source", line=line_no, message=str(ex)))
            continue
        except Exception as ex:  # noqa: BLE001
            totals["errors"] += 1
            _log(
                {
                    "event": "ingest_record_error",
                    "line": line_no,
                    "entity_id": str(record.entity_id),
                    "source_id": str(record.source_id),
                    "error_type": type(ex).__name__,
                    "controlled": isinstance(ex, IngestionError),
                }
            )
            responses.append(SignalIngestResponse(outcome="error", line=line_no, message=type(ex).__name__))
            continue

        totals["ingested"] += 1
        totals["metrics_written"] += resp.metrics_written
        responses.append(resp)

    session.commit()
    return responses, totals


def main() -> int:
    load_env_if_present()

    p = argparse.ArgumentParser(add_help=True)
    p.add_argument("--file", type=Path, required=True, help="JSON lines file of {entity_id, source_id, payload}.")
    p.add_argument("--coefficients", type=Path, default=None, help="Override the fusion coefficients YAML.")
    args = p.parse_args()

    from app.core.db import SessionLocal

    coefficients = load_coefficients(args.coefficients)
    started_at = datetime.now(tz=UTC).isoformat()

    session = SessionLocal()
    try:
        with args.file.open("r", encoding="utf-8") as fh:
            _, totals = ingest_lines(session, fh, coefficients=coefficients)
    except Exception:  # noqa: BLE001
        session.rollback()
        raise
    finally:
        session.close()

    _log(
        {
            "event": "ingest_run_summary",
            "started_at": started_at,
            "coefficients_version": coefficients.version,
            **totals,
        }
    )

    # Partial ingestion is success.
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
