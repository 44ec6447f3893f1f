from __future__ import annotations

"""Recalibration health check (audit job).

Governance intent:
- Surface sources whose recalibrations keep failing.
- Surface active sources with no successful recalibration in the window.
- Warn loudly; never re-run or auto-correct.
"""

from collections import defaultdict
from datetime import datetime, timedelta, timezone

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.models.fusion_audit_record import AuditStatus, FusionAuditRecord
from app.models.source_connection import ConnectionStatus, SourceConnection


UTC = timezone.utc


def run(
    db: Session,
    *,
    now: datetime,
    window_hours: int = 24,
    max_failure_rate: float = 0.5,
    min_attempts: int = 3,
) -> tuple[str, dict]:
    """Return (status, details) where status is OK|DEGRADED|CRITICAL."""
    since = now - timedelta(hours=window_hours)

    rows = db.execute(
        select(FusionAuditRecord.entity_id, FusionAuditRecord.source_id, FusionAuditRecord.status).where(
            FusionAuditRecord.created_at >= since
        )
    ).all()
    active = db.execute(
        select(SourceConnection.entity_id, SourceConnection.source_id).where(
            SourceConnection.status == ConnectionStatus.ACTIVE
        )
    ).all()

    warnings: list[str] = []
    status = "OK"

    def warn(level: str, msg: str) -> None:
        nonlocal status
        warnings.append(msg)
        if level == "CRITICAL":
            status = "CRITICAL"
        elif level == "DEGRADED" and status != "CRITICAL":
            status = "DEGRADED"

    attempts: dict[tuple, int] = defaultdict(int)
    failures: dict[tuple, int] = defaultdict(int)
    for entity_id, source_id, st in rows:
        key = (entity_id, source_id)
        attempts[key] += 1
        if AuditStatus(st) is AuditStatus.FAILED:
            failures[key] += 1

    failing_sources = []
    for key, n in sorted(attempts.items(), key=lambda kv: (str(kv[0][0]), str(kv[0][1]))):
        rate = failures[key] / n
        if n >= min_attempts and rate > max_failure_rate:
            failing_sources.append({"entity_id": str(key[0]), "source_id": str(key[1]), "attempts": n, "failure_rate": round(rate, 4)})
            warn("DEGRADED", f"Source {key[1]} of entity {key[0]} failed {failures[key]}/{n} recalibrations in {window_hours}h.")

    never_succeeded = []
    for entity_id, source_id in active:
        key = (entity_id, source_id)
        if attempts[key] - failures[key] <= 0:
            never_succeeded.append({"entity_id": str(entity_id), "source_id": str(source_id)})

    if active and len(never_succeeded) == len(active):
        warn("CRITICAL", f"No active source recalibrated successfully in {window_hours}h (recalibration appears not running).")
    elif never_succeeded:
        warn("DEGRADED", f"{len(never_succeeded)} active source(s) without a successful recalibration in {window_hours}h.")

    total = len(rows)
    failed_total = sum(failures.values())
    details = {
        "window_hours": window_hours,
        "audit_records": total,
        "failed_records": failed_total,
        "failure_rate": round(failed_total / total, 4) if total else 0.0,
        "active_sources": len(active),
        "failing_sources": failing_sources,
        "sources_without_success": never_succeeded,
        "warnings": warnings,
    }
    return status, details
