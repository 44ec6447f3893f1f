"""Per (entity, source) serialization of recalibration runs.

Two layers:
- an in-process keyed lock, held only for the read-calibrate-upsert block of
  one source; it is released before the owning transaction commits.
- a PostgreSQL transaction-scoped advisory lock, held until commit or
  rollback. This is the exclusion guarantee across transactions and processes
  (scheduler tick vs on-demand trigger).

On other dialects only the keyed lock applies, so a second run on the same
pair may read the first run's pre-commit state. Those dialects are for tests
and single-process tooling.
"""

from __future__ import annotations

import hashlib
import threading
import uuid
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import text
from sqlalchemy.orm import Session


class KeyedLock:
    """Reference-counted lock per key; idle keys are dropped."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[tuple, list] = {}  # key -> [lock, refcount]

    @contextmanager
    def hold(self, key: tuple) -> Iterator[None]:
        with self._guard:
            entry = self._locks.setdefault(key, [threading.Lock(), 0])
            entry[1] += 1
        entry[0].acquire()
        try:
            yield
        finally:
            entry[0].release()
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    self._locks.pop(key, None)

    def active_keys(self) -> int:
        with self._guard:
            return len(self._locks)


_PAIR_LOCKS = KeyedLock()


def advisory_key(entity_id: uuid.UUID, source_id: uuid.UUID) -> int:
    """Stable signed 63-bit key for pg_advisory_xact_lock."""
    digest = hashlib.sha256(f"fusion:{entity_id}:{source_id}".encode("utf-8")).digest()
    return int.from_bytes(digest[:8], "big") & 0x7FFFFFFFFFFFFFFF


def acquire_advisory_lock(session: Session, entity_id: uuid.UUID, source_id: uuid.UUID) -> bool:
    """Take the transaction-scoped advisory lock; returns False when not on PostgreSQL."""
    bind = session.get_bind()
    if bind.dialect.name != "postgresql":
        return False
    session.execute(text("SELECT pg_advisory_xact_lock(:k)"), {"k": advisory_key(entity_id, source_id)})
    return True


@contextmanager
def source_lock(session: Session, entity_id: uuid.UUID, source_id: uuid.UUID) -> Iterator[None]:
    with _PAIR_LOCKS.hold((entity_id, source_id)):
        acquire_advisory_lock(session, entity_id, source_id)
        yield
