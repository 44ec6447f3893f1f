from __future__ import annotations

import os
import sys
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Generator, Optional

import pytest
from alembic import command
from alembic.config import Config
from sqlalchemy import create_engine, event
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool


ROOT = Path(__file__).resolve().parents[2]

# Ensure `backend/app` is importable as top-level `app` for tests.
BACKEND_DIR = ROOT / "backend"
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

from app.core.base import Base  # noqa: E402
from app.core.env import load_env_if_present  # noqa: E402
import app.models as _models  # noqa: F401,E402
from app.models.fusion_metric import FusionMetric  # noqa: E402
from app.models.score_history import ScoreHistorySnapshot  # noqa: E402
from app.models.source_connection import ConnectionStatus, SourceConnection  # noqa: E402
from ingestion.core.categories import Category, category_for_service  # noqa: E402


UTC = timezone.utc


def _db_url() -> str | None:
    load_env_if_present()
    return os.environ.get("DATABASE_URL")


def _alembic_config(db_url: str) -> Config:
    cfg = Config(str(ROOT / "backend" / "alembic.ini"))
    cfg.set_main_option("script_location", str(ROOT / "backend" / "alembic"))
    cfg.set_main_option("sqlalchemy.url", db_url)
    return cfg


def _enable_sqlite_savepoints(engine: Engine) -> None:
    # pysqlite's own transaction handling breaks SAVEPOINT; emit BEGIN ourselves.
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record) -> None:
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _on_begin(conn) -> None:
        conn.exec_driver_sql("BEGIN")


@pytest.fixture(scope="session")
def engine() -> Generator[Engine, None, None]:
    """DATABASE_URL upgraded to Alembic head when set; in-memory SQLite otherwise."""
    url = _db_url()
    if url:
        eng = create_engine(url, future=True)
        command.upgrade(_alembic_config(url), "head")
    else:
        eng = create_engine(
            "sqlite+pysqlite://",
            future=True,
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )
        _enable_sqlite_savepoints(eng)
        Base.metadata.create_all(eng)
    yield eng
    eng.dispose()


@pytest.fixture()
def connection(engine: Engine) -> Generator[Connection, None, None]:
    """One outer transaction per test, always rolled back."""
    conn = engine.connect()
    trans = conn.begin()
    try:
        yield conn
    finally:
        if trans.is_active:
            trans.rollback()
        conn.close()


@pytest.fixture()
def session_factory(connection: Connection) -> sessionmaker:
    # Session.commit() only releases a savepoint inside the test transaction.
    return sessionmaker(
        bind=connection,
        class_=Session,
        autoflush=False,
        join_transaction_mode="create_savepoint",
    )


@pytest.fixture()
def db_session(session_factory: sessionmaker) -> Generator[Session, None, None]:
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


def utc(minutes_ago: int = 0) -> datetime:
    return datetime.now(tz=UTC).replace(microsecond=0) - timedelta(minutes=minutes_ago)


def seed_connection(
    db: Session,
    *,
    entity_id: Optional[uuid.UUID] = None,
    service_name: str = "jira",
    category: Optional[Category] = None,
    status: ConnectionStatus = ConnectionStatus.ACTIVE,
    connected_minutes_ago: int = 0,
) -> SourceConnection:
    conn = SourceConnection(
        entity_id=entity_id or uuid.uuid4(),
        source_id=uuid.uuid4(),
        service_name=service_name,
        category=category or category_for_service(service_name),
        status=status,
        connected_at=utc(connected_minutes_ago),
    )
    db.add(conn)
    db.flush()
    return conn


def seed_metric(
    db: Session,
    conn: SourceConnection,
    *,
    name: str,
    value: float,
    minutes_ago: int = 0,
    weight: Optional[float] = None,
) -> FusionMetric:
    m = FusionMetric(
        entity_id=conn.entity_id,
        source_id=conn.source_id,
        name=name,
        raw_value=value,
        normalized_value=value,
        weight=weight,
        captured_at=utc(minutes_ago),
    )
    db.add(m)
    db.flush()
    return m


def seed_history(db: Session, conn: SourceConnection, scores: list[float]) -> list[ScoreHistorySnapshot]:
    """Append scores oldest first, one hour apart, ending now."""
    rows = []
    n = len(scores)
    for i, s in enumerate(scores):
        snap = ScoreHistorySnapshot(
            entity_id=conn.entity_id,
            source_id=conn.source_id,
            score=s,
            recorded_at=utc((n - 1 - i) * 60),
            change_reason="seed",
        )
        db.add(snap)
        rows.append(snap)
    db.flush()
    return rows
