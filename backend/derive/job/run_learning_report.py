from __future__ import annotations

"""Learning report job: learning events and learning state per source (READ-ONLY).

STRICT:
- Reads score history, metrics, current scores and connections.
- NO database writes; the report is a pure projection of stored rows.

Run:
  python derive/job/run_learning_report.py --entity-id <uuid> [--out learning_report.json]
"""

import argparse
import json
import logging
import sys
import uuid
from dataclasses import asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from sqlalchemy.orm import Session

# Ensure `backend/` is importable as top-level `app`.
BASE_DIR = Path(__file__).resolve().parents[2]
if str(BASE_DIR) not in sys.path:
    sys.path.insert(0, str(BASE_DIR))

import app.models as _models  # noqa: F401,E402
from app.core.env import load_env_if_present  # noqa: E402
from app.models.fusion_score import ScoreOrigin  # noqa: E402
from app.repositories.fusion_repo import FusionRepository  # noqa: E402
from derive.core.learning import (  # noqa: E402
    derive_learning_state,
    detect_learning_events,
    sort_events,
    summarize_learning,
)


UTC = timezone.utc
logger = logging.getLogger("fusion.learning")
logger.setLevel(logging.INFO)
if not logging.getLogger().handlers:
    logging.basicConfig(level=logging.INFO, format="%(message)s")


def _log(event: dict) -> None:
    logger.info(json.dumps(event, ensure_ascii=False, default=str))


def _jsonable(obj: Any) -> Any:
    return json.loads(json.dumps(obj, default=str))


def learning_report(db: Session, entity_id: uuid.UUID, *, now: Optional[datetime] = None) -> dict:
    now = now or datetime.now(tz=UTC)
    repo = FusionRepository(db)

    states = []
    events = []
    for conn in repo.list_active_sources(entity_id):
        history = repo.score_history(entity_id, conn.source_id)
        metrics_count = len(repo.current_metrics(entity_id, conn.source_id))
        current = repo.current_score(entity_id, conn.source_id)
        origin = current.score_origin if current is not None else None

        events.extend(
            detect_learning_events(
                entity_id=entity_id,
                source_id=conn.source_id,
                source_name=conn.service_name,
                history=history,
                has_computed_score=origin is ScoreOrigin.COMPUTED,
                metrics_count=metrics_count,
            )
        )
        states.append(
            derive_learning_state(
                entity_id=entity_id,
                source_id=conn.source_id,
                source_name=conn.service_name,
                history=history,
                metrics_count=metrics_count,
                score_origin=origin,
                baseline_at=history[-1].recorded_at if history else None,
                now=now,
            )
        )

    summary = summarize_learning(states)
    return _jsonable(
        {
            "entity_id": entity_id,
            "generated_at": now.isoformat(),
            "summary": asdict(summary),
            "sources": [asdict(s) for s in states],
            "events": [asdict(e) for e in sort_events(events)],
        }
    )


def main() -> int:
    load_env_if_present()

    p = argparse.ArgumentParser(add_help=True)
    p.add_argument("--entity-id", type=uuid.UUID, required=True)
    p.add_argument("--out", type=Path, default=Path("learning_report.json"))
    args = p.parse_args()

    from app.core.db import SessionLocal

    db = SessionLocal()
    try:
        report = learning_report(db, args.entity_id)
    finally:
        db.close()

    args.out.parent.mkdir(parents=True, exist_ok=True)
    args.out.write_text(json.dumps(report, ensure_ascii=False, indent=2) + "\n", encoding="utf-8")

    summary = report["summary"]
    _log(
        {
            "event": "learning_report_written",
            "entity_id": str(args.entity_id),
            "path": str(args.out),
            "total_sources": summary["total_sources"],
            "overall_maturity_stage": summary["overall_maturity_stage"],
            "events": len(report["events"]),
        }
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
