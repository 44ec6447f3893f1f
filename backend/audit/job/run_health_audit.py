from __future__ import annotations

"""Audit job entry point: recalibration health & weighting integrity (READ-ONLY).

STRICT:
- Reads from DB only.
- Writes health_report.json and logs warnings.
- NO database writes.

Run:
  python audit/job/run_health_audit.py [--window-hours 24]
"""

import argparse
import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path

# Ensure backend/ is importable as top-level `app`.
BASE_DIR = Path(__file__).resolve().parents[2]
if str(BASE_DIR) not in sys.path:
    sys.path.insert(0, str(BASE_DIR))

import app.models as _models  # noqa: F401,E402
from app.core.env import env_int, load_env_if_present  # noqa: E402
from audit.checks import recalibration_health_check, weighting_integrity_check  # noqa: E402
from audit.report.health_report import Check, build_report, write_report  # noqa: E402
from derive.core.coefficients import load_coefficients  # noqa: E402


UTC = timezone.utc
logger = logging.getLogger("fusion.audit")
logger.setLevel(logging.INFO)
if not logging.getLogger().handlers:
    logging.basicConfig(level=logging.INFO, format="%(message)s")


def _log(event: dict) -> None:
    logger.info(json.dumps(event, ensure_ascii=False))


def run_checks(db, *, now: datetime, window_hours: int) -> list[Check]:
    checks: list[Check] = []

    st, details = recalibration_health_check.run(db, now=now, window_hours=window_hours)
    checks.append(Check(name="recalibration_health_check", status=st, details=details))
    _log({"event": "audit_check", "name": "recalibration_health_check", "status": st})

    st, details = weighting_integrity_check.run(db)
    checks.append(Check(name="weighting_integrity_check", status=st, details=details))
    _log({"event": "audit_check", "name": "weighting_integrity_check", "status": st})

    return checks


def main() -> int:
    load_env_if_present()

    p = argparse.ArgumentParser(add_help=True)
    p.add_argument(
        "--window-hours",
        type=int,
        default=env_int("FUSION_AUDIT_WINDOW_HOURS", 24),
        help="Look-back window for recalibration audit records.",
    )
    p.add_argument("--out", type=Path, default=Path(__file__).resolve().parents[1] / "report" / "health_report.json")
    args = p.parse_args()

    from app.core.db import SessionLocal

    now = datetime.now(tz=UTC)
    db = SessionLocal()
    try:
        checks = run_checks(db, now=now, window_hours=args.window_hours)

        # Enforce read-only invariant at runtime.
        if db.new or db.dirty or db.deleted:
            _log({"event": "audit_failed", "error": "read_only_invariant_violated"})
            return 1

        report = build_report(now=now, checks=checks, coefficients_version=load_coefficients().version)
        write_report(args.out, report)
        _log({"event": "audit_report_written", "path": str(args.out), "overall_status": report["overall_status"]})
        return 0
    except Exception as ex:  # noqa: BLE001
        _log({"event": "audit_job_failed", "error_type": type(ex).__name__})
        return 1
    finally:
        db.close()


if __name__ == "__main__":
    raise SystemExit(main())
