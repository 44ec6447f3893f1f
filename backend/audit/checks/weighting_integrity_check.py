from __future__ import annotations

"""Weighting integrity check (audit job).

Governance intent:
- Weights of one (entity, source) must sum to 1 and each lie in [0, 1].
- Every row of one (entity, source) must carry the same coefficients version.
- Report violations; never renormalize in place.
"""

from collections import defaultdict

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.models.fusion_weighting import FusionWeighting


SUM_TOLERANCE = 1e-6


def run(db: Session) -> tuple[str, dict]:
    rows = db.execute(
        select(
            FusionWeighting.entity_id,
            FusionWeighting.source_id,
            FusionWeighting.final_weight,
            FusionWeighting.coefficients_version,
        )
    ).all()

    status = "OK"
    warnings: list[str] = []

    def warn(level: str, msg: str) -> None:
        nonlocal status
        warnings.append(msg)
        if level == "CRITICAL":
            status = "CRITICAL"
        elif level == "DEGRADED" and status != "CRITICAL":
            status = "DEGRADED"

    sums: dict[tuple, float] = defaultdict(float)
    versions: dict[tuple, set] = defaultdict(set)
    out_of_range = 0
    for entity_id, source_id, weight, version in rows:
        key = (entity_id, source_id)
        sums[key] += float(weight)
        versions[key].add(version)
        if not 0.0 <= float(weight) <= 1.0:
            out_of_range += 1

    if out_of_range:
        warn("CRITICAL", f"{out_of_range} weighting row(s) outside [0, 1].")

    bad_sums = [
        {"entity_id": str(k[0]), "source_id": str(k[1]), "sum": round(s, 9)}
        for k, s in sorted(sums.items(), key=lambda kv: (str(kv[0][0]), str(kv[0][1])))
        if abs(s - 1.0) > SUM_TOLERANCE
    ]
    if bad_sums:
        warn("CRITICAL", f"{len(bad_sums)} source(s) with weights not summing to 1.")

    mixed = [f"{k[0]}/{k[1]}" for k, v in versions.items() if len(v) > 1]
    if mixed:
        warn("DEGRADED", f"{len(mixed)} source(s) with mixed coefficients versions (partial recalibration).")

    details = {
        "weighting_rows": len(rows),
        "sources": len(sums),
        "out_of_range_rows": out_of_range,
        "bad_sums": bad_sums,
        "mixed_version_sources": sorted(mixed),
        "warnings": warnings,
    }
    return status, details
