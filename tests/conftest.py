# tests/conftest.py
from __future__ import annotations

import os
from collections.abc import Callable, Generator, Hashable, Mapping, Sequence
from itertools import count
from typing import Any

import pytest
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool

os.environ.setdefault("XCHAT_RELAY_DATABASE_URL", "sqlite://")

from xchat_core.core.errors import TransportError
from xchat_core.db.session import Base, make_session_factory
from xchat_core.services.identity import KeyPair, generate_key_pair
from xchat_core.services.ratchet import RatchetEngine
from xchat_core.services.row_store import STATUS_SUBSCRIBED, SqlRowStore

TEST_DB_URL = "sqlite://"


@pytest.fixture()
def engine() -> Generator[Engine, None, None]:
    engine = create_engine(
        TEST_DB_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    try:
        yield engine
    finally:
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture()
def sql_store(engine: Engine) -> SqlRowStore:
    return SqlRowStore(make_session_factory(engine))


class FakeSubscription:
    def __init__(self, store: InMemoryRowStore) -> None:
        self.store = store
        self.closed = False

    async def close(self) -> None:
        self.closed = True


class InMemoryRowStore:
    """Row store fake with failure injection and manual push control."""

    id_field = "id"
    payload_field = "data"

    def __init__(self) -> None:
        self.rows: dict[int, dict[str, Any]] = {}
        self._ids = count(1)
        self.fail_inserts = False
        self.fail_insert_after: int | None = None
        self.fail_selects = False
        self.fail_deletes = False
        self.insert_calls = 0
        self.deleted: list[Hashable] = []
        self.on_row: Callable[[dict[str, Any]], None] | None = None
        self.on_status: Callable[[str], None] | None = None
        self.subscription: FakeSubscription | None = None
        self.auto_confirm = False

    def _check_insert(self) -> None:
        self.insert_calls += 1
        if self.fail_inserts:
            raise TransportError("insert rejected")
        if self.fail_insert_after is not None and self.insert_calls > self.fail_insert_after:
            raise TransportError("insert rejected")

    def add_row(self, payload: str) -> int:
        key = next(self._ids)
        self.rows[key] = {self.id_field: key, self.payload_field: payload}
        return key

    async def insert(self, row: Mapping[str, Any]) -> Hashable:
        self._check_insert()
        return self.add_row(row[self.payload_field])

    async def insert_many(self, rows: Sequence[Mapping[str, Any]]) -> list[Hashable]:
        self._check_insert()
        return [self.add_row(row[self.payload_field]) for row in rows]

    async def select_all(self) -> list[dict[str, Any]]:
        if self.fail_selects:
            raise TransportError("select rejected")
        return [dict(self.rows[key]) for key in sorted(self.rows)]

    async def delete(self, key: Hashable) -> None:
        if self.fail_deletes:
            raise TransportError("delete rejected")
        self.rows.pop(key, None)
        self.deleted.append(key)

    async def subscribe_insert(self, on_row, on_status) -> FakeSubscription:
        self.on_row = on_row
        self.on_status = on_status
        self.subscription = FakeSubscription(self)
        if self.auto_confirm:
            on_status(STATUS_SUBSCRIBED)
        return self.subscription

    def push(self, key: int) -> None:
        assert self.on_row is not None
        self.on_row(dict(self.rows[key]))


class FakeTimer:
    def __init__(self, delay: float, callback: Callable[[], None]) -> None:
        self.delay = delay
        self.callback = callback
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class FakeScheduler:
    """Scheduler that only fires when told to."""

    def __init__(self) -> None:
        self.timers: list[FakeTimer] = []

    def schedule_after(self, delay: float, callback: Callable[[], None]) -> FakeTimer:
        timer = FakeTimer(delay, callback)
        self.timers.append(timer)
        return timer

    @property
    def active(self) -> list[FakeTimer]:
        return [timer for timer in self.timers if not timer.cancelled]

    def fire(self) -> None:
        timer = self.active[-1]
        timer.cancelled = True
        timer.callback()


@pytest.fixture()
def memory_store() -> InMemoryRowStore:
    return InMemoryRowStore()


@pytest.fixture()
def fake_scheduler() -> FakeScheduler:
    return FakeScheduler()


@pytest.fixture()
def alice_keys() -> KeyPair:
    return generate_key_pair()


@pytest.fixture()
def bob_keys() -> KeyPair:
    return generate_key_pair()


@pytest.fixture()
def ratchet_pair(alice_keys: KeyPair, bob_keys: KeyPair) -> tuple[RatchetEngine, RatchetEngine]:
    """Two engines with a completed handshake."""
    alice = RatchetEngine()
    bob = RatchetEngine()
    alice.establish(alice_keys, bob_keys.public_key)
    bob.establish(bob_keys, alice_keys.public_key)
    return alice, bob
