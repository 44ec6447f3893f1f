"""Validate the fusion schema migration: upgrade to head, inspect, downgrade to base.

Usage:
  set DATABASE_URL=postgresql+psycopg://...
  python scripts/validate_migration_roundtrip.py [--upgrade-only]

Checks after upgrade:
- every fusion table exists
- idempotency keys (unique constraints) are in place
- PostgreSQL enum types exist (skipped on other dialects)

Checks after downgrade: none of the above remain.
"""

from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

from alembic import command
from alembic.config import Config
from sqlalchemy import create_engine, inspect, text
from sqlalchemy.engine import Engine


ROOT = Path(__file__).resolve().parents[1]

BACKEND_DIR = ROOT / "backend"
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

from app.core.env import load_env_if_present  # noqa: E402


EXPECTED_UNIQUES = {
    "source_connections": ("entity_id", "source_id"),
    "fusion_metrics": None,
    "fusion_weightings": ("entity_id", "source_id", "metric_name"),
    "fusion_scores": ("entity_id", "source_id"),
    "score_history_snapshots": None,
    "fusion_audit_records": ("run_id", "source_id"),
}

REQUIRED_ENUMS = [
    "fusion_category",
    "fusion_connection_status",
    "fusion_trend",
    "fusion_score_origin",
    "fusion_triggered_by",
    "fusion_audit_status",
]


def _alembic_config(url: str) -> Config:
    cfg = Config(str(BACKEND_DIR / "alembic.ini"))
    cfg.set_main_option("script_location", str(BACKEND_DIR / "alembic"))
    cfg.set_main_option("sqlalchemy.url", url)
    return cfg


def _enums(engine: Engine) -> set[str]:
    if engine.dialect.name != "postgresql":
        return set(REQUIRED_ENUMS)
    q = text(
        """
        select t.typname
        from pg_type t
        join pg_namespace n on n.oid = t.typnamespace
        where n.nspname = 'public' and t.typtype = 'e'
        """
    )
    with engine.connect() as c:
        return {r[0] for r in c.execute(q).fetchall()}


def _check_upgraded(engine: Engine) -> list[str]:
    problems: list[str] = []
    insp = inspect(engine)
    tables = set(insp.get_table_names())
    for table, key in EXPECTED_UNIQUES.items():
        if table not in tables:
            problems.append(f"missing table {table}")
            continue
        if key is None:
            continue
        uniques = {tuple(u["column_names"]) for u in insp.get_unique_constraints(table)}
        if key not in uniques:
            problems.append(f"missing unique key {table}{key}")
    missing_enums = [e for e in REQUIRED_ENUMS if e not in _enums(engine)]
    if missing_enums:
        problems.append(f"missing enums {missing_enums}")
    return problems


def _check_downgraded(engine: Engine) -> list[str]:
    problems: list[str] = []
    tables = set(inspect(engine).get_table_names())
    leftover = [t for t in EXPECTED_UNIQUES if t in tables]
    if leftover:
        problems.append(f"leftover tables {leftover}")
    if engine.dialect.name == "postgresql":
        leftover_enums = [e for e in REQUIRED_ENUMS if e in _enums(engine)]
        if leftover_enums:
            problems.append(f"leftover enums {leftover_enums}")
    return problems


def main() -> int:
    p = argparse.ArgumentParser(add_help=True)
    p.add_argument("--upgrade-only", action="store_true", help="Upgrade to head and verify; skip the downgrade.")
    args = p.parse_args()

    load_env_if_present()
    url = os.environ.get("DATABASE_URL")
    if not url:
        print("Missing DATABASE_URL (set env var or create .env).")
        return 2

    cfg = _alembic_config(url)
    engine = create_engine(url, future=True)

    print("Upgrading to head…")
    command.upgrade(cfg, "head")
    problems = _check_upgraded(engine)
    if problems:
        print("FAIL after upgrade:", "; ".join(problems))
        return 1
    if args.upgrade_only:
        print("PASS: upgraded to head.")
        return 0

    print("Downgrading to base…")
    command.downgrade(cfg, "base")
    problems = _check_downgraded(engine)
    if problems:
        print("FAIL after downgrade:", "; ".join(problems))
        return 1

    print("PASS: migration roundtrip clean.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
