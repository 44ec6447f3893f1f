from __future__ import annotations

import threading
import time
import uuid
from types import SimpleNamespace

from derive.core import locks
from derive.core.locks import KeyedLock, acquire_advisory_lock, advisory_key, source_lock


E = uuid.UUID("11111111-1111-1111-1111-111111111111")
S = uuid.UUID("22222222-2222-2222-2222-222222222222")


def test_advisory_key_is_stable_and_fits_bigint():
    k = advisory_key(E, S)
    assert k == advisory_key(E, S)
    assert 0 <= k < 2**63
    assert k != advisory_key(S, E)


def test_keyed_lock_serializes_same_key():
    lock = KeyedLock()
    inside = []
    overlaps = []

    def worker():
        with lock.hold(("e", "s")):
            if inside:
                overlaps.append(True)
            inside.append(1)
            time.sleep(0.01)
            inside.pop()

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert overlaps == []
    assert lock.active_keys() == 0


def test_keyed_lock_allows_distinct_keys():
    lock = KeyedLock()
    with lock.hold(("e", "a")):
        with lock.hold(("e", "b")):
            assert lock.active_keys() == 2
    assert lock.active_keys() == 0


class _FakeSession:
    def __init__(self, dialect: str) -> None:
        self._bind = SimpleNamespace(dialect=SimpleNamespace(name=dialect))
        self.executed = []

    def get_bind(self):
        return self._bind

    def execute(self, stmt, params=None):
        self.executed.append((str(stmt), params))


def test_advisory_lock_only_on_postgres():
    sqlite = _FakeSession("sqlite")
    assert acquire_advisory_lock(sqlite, E, S) is False
    assert sqlite.executed == []

    pg = _FakeSession("postgresql")
    assert acquire_advisory_lock(pg, E, S) is True
    assert pg.executed == [("SELECT pg_advisory_xact_lock(:k)", {"k": advisory_key(E, S)})]


def test_source_lock_takes_both_layers():
    pg = _FakeSession("postgresql")
    with source_lock(pg, E, S):
        assert len(pg.executed) == 1


def test_pair_lock_is_scoped_to_the_block_on_other_dialects():
    sqlite = _FakeSession("sqlite")
    with source_lock(sqlite, E, S):
        assert locks._PAIR_LOCKS.active_keys() == 1
    assert locks._PAIR_LOCKS.active_keys() == 0
    assert sqlite.executed == []
