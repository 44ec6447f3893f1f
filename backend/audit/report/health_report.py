from __future__ import annotations

"""Fusion health report (audit job).

Output: health_report.json
No DB writes. No auto-fixes.
"""

import json
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Literal


UTC = timezone.utc
Overall = Literal["OK", "DEGRADED", "CRITICAL"]
_SEVERITY = {"OK": 0, "DEGRADED": 1, "CRITICAL": 2}

# Suggested follow-up per check; only listed when that check is not OK.
ACTIONS = {
    "recalibration_health_check": "Inspect failed fusion_audit_records.error for the listed sources; verify the recalibration sweep is scheduled.",
    "weighting_integrity_check": "Treat as a governance incident: re-run recalibration for the listed sources; do not edit weights by hand.",
}


@dataclass(frozen=True, slots=True)
class Check:
    name: str
    status: Overall
    details: dict[str, Any]


def overall_status(checks: list[Check]) -> Overall:
    worst: Overall = "OK"
    for c in checks:
        if _SEVERITY[c.status] > _SEVERITY[worst]:
            worst = c.status
    return worst


def build_report(*, now: datetime, checks: list[Check], coefficients_version: str | None = None) -> dict:
    warnings = [w for c in checks for w in c.details.get("warnings", [])]
    actions = [ACTIONS[c.name] for c in checks if c.status != "OK" and c.name in ACTIONS]
    return {
        "run_time": now.astimezone(UTC).isoformat(),
        "overall_status": overall_status(checks),
        "coefficients_version": coefficients_version,
        "checks": [{"name": c.name, "status": c.status, "details": c.details} for c in checks],
        "warnings": warnings,
        "recommended_actions": actions,
    }


def write_report(path: Path, report: dict) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(report, ensure_ascii=False, indent=2) + "\n", encoding="utf-8")
