# src/xchat_core/services/row_store.py
"""Row-store contract used by the delivery layer, with a SQLAlchemy relay.

The core depends only on insert/select/delete/subscribe over rows keyed by a
primary key. Any relay that can offer those four operations can carry
messages; the stores here are two such relays.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from collections.abc import Callable, Hashable, Mapping, Sequence
from threading import Lock
from typing import Any, Protocol

from sqlalchemy import select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from xchat_core.core.errors import TransportError
from xchat_core.db.session import SessionLocal, make_session_factory
from xchat_core.models import RelayRow

logger = logging.getLogger(__name__)

Row = dict[str, Any]
RowCallback = Callable[[Row], None]
StatusCallback = Callable[[str], None]

STATUS_SUBSCRIBED = "SUBSCRIBED"
STATUS_CHANNEL_ERROR = "CHANNEL_ERROR"
STATUS_CLOSED = "CLOSED"


class SubscriptionHandle(Protocol):
    """Live push subscription."""

    async def close(self) -> None: ...


class RowStore(Protocol):
    """Relay contract.

    Every operation raises ``TransportError`` on failure. ``id_field`` and
    ``payload_field`` name the primary key and envelope columns of the rows
    this store returns.
    """

    id_field: str
    payload_field: str

    async def insert(self, row: Mapping[str, Any]) -> Hashable: ...

    async def insert_many(self, rows: Sequence[Mapping[str, Any]]) -> list[Hashable]: ...

    async def select_all(self) -> list[Row]: ...

    async def delete(self, key: Hashable) -> None: ...

    async def subscribe_insert(
        self, on_row: RowCallback, on_status: StatusCallback
    ) -> SubscriptionHandle: ...


class _LocalSubscription:
    """In-process insert listener bound to one event loop."""

    def __init__(
        self,
        registry_key: str,
        loop: asyncio.AbstractEventLoop,
        on_row: RowCallback,
    ) -> None:
        self._registry_key = registry_key
        self._loop = loop
        self._on_row = on_row
        self.closed = False

    def deliver(self, row: Row) -> None:
        if self.closed or self._loop.is_closed():
            return
        self._loop.call_soon_threadsafe(self._dispatch, row)

    def _dispatch(self, row: Row) -> None:
        if not self.closed:
            self._on_row(row)

    async def close(self) -> None:
        self.closed = True
        with _SUBSCRIBERS_LOCK:
            listeners = _SUBSCRIBERS.get(self._registry_key, [])
            if self in listeners:
                listeners.remove(self)


class SqlRowStore:
    """Relay backed by the ``xchat_relay`` table through SQLAlchemy.

    Blocking database calls run in a worker thread. Push delivery covers
    rows inserted by any ``SqlRowStore`` in this process that targets the
    same database.
    """

    id_field = "id"
    payload_field = "data"

    def __init__(self, session_factory: sessionmaker[Session] | None = None) -> None:
        self._session_factory = session_factory or SessionLocal
        self._registry_key = _registry_key(self._session_factory.kw.get("bind"))

    @classmethod
    def from_engine(cls, engine: Engine) -> SqlRowStore:
        return cls(make_session_factory(engine))

    def _to_row(self, record: RelayRow) -> Row:
        return {self.id_field: record.id, self.payload_field: record.data}

    def _insert_rows_sync(self, rows: Sequence[Mapping[str, Any]]) -> list[Row]:
        with self._session_factory() as db:
            records = [RelayRow(data=str(row[self.payload_field])) for row in rows]
            db.add_all(records)
            db.commit()
            return [self._to_row(record) for record in records]

    async def _insert_rows(self, rows: Sequence[Mapping[str, Any]]) -> list[Row]:
        try:
            inserted = await asyncio.to_thread(self._insert_rows_sync, rows)
        except (SQLAlchemyError, KeyError) as err:
            raise TransportError(f"Relay insert failed: {err}") from err

        with _SUBSCRIBERS_LOCK:
            listeners = list(_SUBSCRIBERS.get(self._registry_key, ()))
        for row in inserted:
            for listener in listeners:
                listener.deliver(dict(row))
        return inserted

    async def insert(self, row: Mapping[str, Any]) -> Hashable:
        inserted = await self._insert_rows([row])
        return inserted[0][self.id_field]

    async def insert_many(self, rows: Sequence[Mapping[str, Any]]) -> list[Hashable]:
        if not rows:
            return []
        inserted = await self._insert_rows(rows)
        return [row[self.id_field] for row in inserted]

    def _select_all_sync(self) -> list[Row]:
        with self._session_factory() as db:
            records = db.scalars(select(RelayRow).order_by(RelayRow.id)).all()
            return [self._to_row(record) for record in records]

    async def select_all(self) -> list[Row]:
        try:
            return await asyncio.to_thread(self._select_all_sync)
        except SQLAlchemyError as err:
            raise TransportError(f"Relay select failed: {err}") from err

    def _delete_sync(self, key: Hashable) -> None:
        with self._session_factory() as db:
            record = db.get(RelayRow, key)
            if record is not None:
                db.delete(record)
                db.commit()

    async def delete(self, key: Hashable) -> None:
        try:
            await asyncio.to_thread(self._delete_sync, key)
        except SQLAlchemyError as err:
            raise TransportError(f"Relay delete failed: {err}") from err

    async def subscribe_insert(
        self, on_row: RowCallback, on_status: StatusCallback
    ) -> SubscriptionHandle:
        loop = asyncio.get_running_loop()
        subscription = _LocalSubscription(self._registry_key, loop, on_row)
        with _SUBSCRIBERS_LOCK:
            _SUBSCRIBERS[self._registry_key].append(subscription)
        loop.call_soon(on_status, STATUS_SUBSCRIBED)
        logger.debug("Local push subscription registered")
        return subscription


def _registry_key(bind: Any) -> str:
    """Key shared by every store that writes to the same database.

    In-memory SQLite databases are private to their engine, so they are keyed
    by engine identity rather than by URL.
    """
    if not isinstance(bind, Engine):
        return f"bind:{id(bind)}"
    url = bind.url
    if url.get_backend_name() == "sqlite" and url.database in (None, "", ":memory:"):
        return f"{url.render_as_string(hide_password=False)}#{id(bind)}"
    return url.render_as_string(hide_password=False)


_SUBSCRIBERS: dict[str, list[_LocalSubscription]] = defaultdict(list)
_SUBSCRIBERS_LOCK = Lock()
