# src/xchat_core/services/delivery_sync.py
"""Synchronization between a conversation and its relay row store.

This module provides the DeliverySync class that moves ciphertext across the
relay. It sends direct or chunked envelopes, and receives them through two
paths that share one consumption routine:

- a poll loop that selects every row on a timer
- a best-effort push subscription delivering single inserted rows

While push is unconfirmed the poll loop runs at the configured interval; once
the relay confirms the subscription, polling relaxes to a long backup
interval and reverts as soon as push is lost.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Coroutine, Hashable, Iterable
from typing import Any

from xchat_core.core.errors import TransportError
from xchat_core.core.settings import settings
from xchat_core.schemas.envelope import (
    ChunkEnvelope,
    DirectEnvelope,
    encode_envelope,
    parse_envelope,
)
from xchat_core.services.chunks import ChunkAssembler, Complete
from xchat_core.services.events import ChatEventType, ChatObserver, emit
from xchat_core.services.row_store import (
    STATUS_SUBSCRIBED,
    Row,
    RowStore,
    SubscriptionHandle,
)
from xchat_core.services.scheduler import (
    AsyncioScheduler,
    CancelHandle,
    PollArbiter,
    PushState,
    Scheduler,
)

# Configure logger for this module
logger = logging.getLogger(__name__)

CiphertextHandler = Callable[[str], Awaitable[bool]]
ProgressCallback = Callable[[int, int], None]


class DeliverySync:
    """Moves envelopes between the local conversation and the relay.

    The receive handler is awaited with each complete ciphertext and returns
    True once the message has been applied; only then are its rows deleted.
    A False result leaves the rows in the relay so a later tick can retry.
    """

    def __init__(
        self,
        store: RowStore,
        own_fingerprint: str,
        on_ciphertext: CiphertextHandler,
        *,
        assembler: ChunkAssembler | None = None,
        scheduler: Scheduler | None = None,
        observer: ChatObserver | None = None,
        poll_interval: float | None = None,
        backup_interval: float | None = None,
        batch_size: int | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the delivery worker.

        Args:
            store: Relay row store; owned by this worker
            own_fingerprint: Our sender tag, used to skip our own rows
            on_ciphertext: Awaited with each complete ciphertext
            assembler: Chunk assembler; a fresh one is created if omitted
            scheduler: Timer source; defaults to the running asyncio loop
            observer: Receiver of progress and push-state events
            poll_interval: Short poll interval in seconds
            backup_interval: Poll interval while push is confirmed
            batch_size: Number of chunk rows inserted per request
            clock: Time source used for chunk eviction
        """
        self.store = store
        self.own_fingerprint = own_fingerprint
        self.on_ciphertext = on_ciphertext
        self.assembler = assembler if assembler is not None else ChunkAssembler()
        self.scheduler = scheduler or AsyncioScheduler()
        self.observer = observer
        self.batch_size = (
            batch_size if batch_size is not None else settings.chunk_insert_batch_size
        )
        self.arbiter = PollArbiter(
            poll_interval=(
                poll_interval if poll_interval is not None else settings.poll_interval_seconds
            ),
            backup_interval=(
                backup_interval
                if backup_interval is not None
                else settings.push_backup_interval_seconds
            ),
        )
        self._clock = clock

        self._running = False
        self._generation = 0
        self._timer: CancelHandle | None = None
        self._subscription: SubscriptionHandle | None = None
        self._tasks: set[asyncio.Task[Any]] = set()
        self._process_lock = asyncio.Lock()
        # Rows already applied whose deletion has not been observed yet.
        self._consumed: set[Hashable] = set()

    @property
    def running(self) -> bool:
        return self._running

    @property
    def push_state(self) -> PushState:
        return self.arbiter.state

    @property
    def timer_active(self) -> bool:
        return self._timer is not None

    # --- Lifecycle ------------------------------------------------------------------

    async def start(self) -> None:
        """Start polling and request a push subscription. No-op if running."""
        if self._running:
            return

        self._running = True
        self._generation += 1
        generation = self._generation
        logger.info(
            "Delivery sync started (poll interval %.0fs)", self.arbiter.poll_interval
        )

        self.arbiter.subscribe_requested()
        self._schedule_next(self.arbiter.interval)
        self._spawn(self._tick(generation, reschedule=False))
        await self._subscribe(generation)

    async def stop(self) -> None:
        """Stop the poll timer and push subscription. Safe to call repeatedly."""
        self._cancel_timer()
        if not self._running:
            return

        self._running = False
        self._generation += 1
        self.arbiter.reset()
        subscription, self._subscription = self._subscription, None
        self.assembler.clear()
        self._consumed.clear()

        if subscription is not None:
            try:
                await subscription.close()
            except Exception:
                logger.warning("Failed to close push subscription", exc_info=True)
        logger.info("Delivery sync stopped")

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Delivery sync task failed: %s", exc, exc_info=exc)

    # --- Poll loop ------------------------------------------------------------------

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _schedule_next(self, delay: float) -> None:
        self._cancel_timer()
        if not self._running:
            return
        self._timer = self.scheduler.schedule_after(delay, self._on_timer)

    def _on_timer(self) -> None:
        self._timer = None
        if not self._running:
            return
        self._spawn(self._tick(self._generation, reschedule=True))

    async def _tick(self, generation: int, *, reschedule: bool) -> None:
        try:
            await self._poll(generation)
        except TransportError as e:
            logger.warning("Delivery sync poll failed: %s", e)
        except (OSError, ConnectionError, TimeoutError) as e:
            logger.warning("Delivery sync encountered network error: %s", e)
        except (ValueError, TypeError, KeyError, AttributeError) as e:
            logger.error("Delivery sync encountered data processing error: %s", e, exc_info=True)
        finally:
            if reschedule and self._running and generation == self._generation:
                self._schedule_next(self.arbiter.interval)

    async def poll_once(self) -> int:
        """Run one poll immediately.

        Returns:
            Number of messages delivered to the receive handler
        """
        return await self._poll(self._generation)

    async def _poll(self, generation: int) -> int:
        await self._evict_stale()

        consumed_before = set(self._consumed)
        rows = await self.store.select_all()
        if generation != self._generation:
            logger.debug("Dropping poll result that completed after stop")
            return 0

        present = {row.get(self.store.id_field) for row in rows}
        # Deletions we have seen take effect no longer need tracking.
        self._consumed -= consumed_before - present
        await self._delete_rows(key for key in consumed_before & present)

        delivered = 0
        for row in rows:
            if await self._consume_row(row, generation):
                delivered += 1

        if delivered:
            logger.info("Polled %d new message(s)", delivered)
        return delivered

    async def _evict_stale(self) -> None:
        stale_keys = self.assembler.evict_stale(now=self._clock())
        if not stale_keys:
            return
        emit(self.observer, ChatEventType.CHUNK_EVICTED, rows=len(stale_keys))
        await self._delete_rows(stale_keys)

    async def _delete_rows(self, keys: Iterable[Hashable]) -> None:
        """Best-effort deletion; failures are logged and retried on a later poll."""
        for key in list(keys):
            try:
                await self.store.delete(key)
            except TransportError as e:
                logger.warning("Failed to delete relay row %s: %s", key, e)

    # --- Push -----------------------------------------------------------------------

    async def _subscribe(self, generation: int) -> None:
        try:
            subscription = await self.store.subscribe_insert(
                lambda row: self._on_push_row(row, generation),
                lambda status: self._on_push_status(status, generation),
            )
        except TransportError as e:
            logger.warning("Push subscription unavailable: %s", e)
            self._on_push_status("CHANNEL_ERROR", generation)
            return

        if generation != self._generation:
            await subscription.close()
            return
        self._subscription = subscription

    def _on_push_status(self, status: str, generation: int) -> None:
        if not self._running or generation != self._generation:
            return

        if status == STATUS_SUBSCRIBED:
            if self.arbiter.confirmed():
                logger.info(
                    "Push active; polling relaxed to backup interval (%.0fs)",
                    self.arbiter.backup_interval,
                )
                emit(self.observer, ChatEventType.PUSH_STATE_CHANGED, state=self.push_state.value)
                self._schedule_next(self.arbiter.interval)
            return

        was_confirmed = self.arbiter.lost()
        logger.warning("Push unavailable (%s); polling at configured interval", status)
        emit(self.observer, ChatEventType.PUSH_STATE_CHANGED, state=self.push_state.value)
        if was_confirmed:
            self._schedule_next(self.arbiter.interval)

    def _on_push_row(self, row: Row, generation: int) -> None:
        if not self._running or generation != self._generation:
            return
        self._spawn(self._consume_push_row(row, generation))

    async def _consume_push_row(self, row: Row, generation: int) -> None:
        try:
            await self._consume_row(row, generation)
        except (ValueError, TypeError, KeyError, AttributeError) as e:
            logger.error("Failed to process pushed row: %s", e, exc_info=True)

    # --- Consumption ----------------------------------------------------------------

    async def _consume_row(self, row: Row, generation: int) -> bool:
        """Classify one row and hand completed ciphertext to the receive handler.

        Returns:
            True if a message was delivered and accepted
        """
        async with self._process_lock:
            if generation != self._generation:
                return False

            key = row.get(self.store.id_field)
            raw = row.get(self.store.payload_field)
            if key is None or not raw or key in self._consumed:
                return False

            try:
                envelope = parse_envelope(raw)
            except ValueError as e:
                logger.debug("Skipping malformed relay row %s: %s", key, e)
                return False

            if envelope.sender_fingerprint == self.own_fingerprint:
                return False

            if isinstance(envelope, DirectEnvelope):
                return await self._deliver(envelope.ciphertext, [key], generation)

            try:
                result = self.assembler.ingest(envelope, key, now=self._clock())
            except ValueError as e:
                logger.warning("Rejecting chunk row %s: %s", key, e)
                return False

            if not isinstance(result, Complete):
                emit(
                    self.observer,
                    ChatEventType.CHUNK_PROGRESS,
                    message_id=result.message_id,
                    received=result.received,
                    total=result.total,
                    direction="in",
                )
                return False

            return await self._deliver(result.assembled, result.source_row_keys, generation)

    async def _deliver(self, ciphertext: str, keys: list[Hashable], generation: int) -> bool:
        accepted = await self.on_ciphertext(ciphertext)
        if not accepted:
            return False

        self._consumed.update(keys)
        if generation == self._generation:
            await self._delete_rows(keys)
        return True

    # --- Send -----------------------------------------------------------------------

    async def send(self, ciphertext: str, on_progress: ProgressCallback | None = None) -> None:
        """Insert a ciphertext into the relay, chunking it when it is too large.

        Raises:
            TransportError: If any insert fails. Chunk rows already inserted
                are deleted best-effort.
        """
        chunks = self.assembler.split(ciphertext, self.own_fingerprint)
        if not chunks:
            envelope = DirectEnvelope(sender_fingerprint=self.own_fingerprint, ciphertext=ciphertext)
            await self.store.insert({self.store.payload_field: encode_envelope(envelope)})
            if on_progress is not None:
                on_progress(1, 1)
            logger.info("Message sent to relay")
            return

        await self._send_chunked(chunks, on_progress)

    async def _send_chunked(
        self, chunks: list[ChunkEnvelope], on_progress: ProgressCallback | None
    ) -> None:
        total = len(chunks)
        message_id = chunks[0].message_id
        inserted: list[Hashable] = []
        sent = 0

        for start in range(0, total, self.batch_size):
            batch = chunks[start:start + self.batch_size]
            rows = [{self.store.payload_field: encode_envelope(chunk)} for chunk in batch]
            try:
                keys = await self.store.insert_many(rows)
            except TransportError:
                logger.error(
                    "Chunked insert failed at batch %d (mid=%s)",
                    start // self.batch_size + 1,
                    message_id,
                )
                await self._delete_rows(key for key in inserted if key is not None)
                raise
            inserted.extend(keys)
            sent += len(batch)
            if on_progress is not None:
                on_progress(sent, total)
            emit(
                self.observer,
                ChatEventType.CHUNK_PROGRESS,
                message_id=message_id,
                received=sent,
                total=total,
                direction="out",
            )

        logger.info("All %d chunks sent (mid=%s)", total, message_id)
