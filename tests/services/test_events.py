import asyncio
import logging

import pytest

from xchat_core.services.events import (
    ChatEvent,
    ChatEventType,
    LoggingObserver,
    RecordingObserver,
    emit,
)
from xchat_core.services.scheduler import AsyncioScheduler, PollArbiter, PushState


def test_emit_without_observer_is_a_no_op():
    emit(None, ChatEventType.MESSAGE_SENT, count=1)


def test_recording_observer_keeps_events_in_order():
    observer = RecordingObserver()
    emit(observer, ChatEventType.MESSAGE_SENT, count=1)
    emit(observer, ChatEventType.MESSAGE_RECEIVED, count=1)
    emit(observer, ChatEventType.MESSAGE_SENT, count=2)

    assert [e.type for e in observer.events] == [
        ChatEventType.MESSAGE_SENT,
        ChatEventType.MESSAGE_RECEIVED,
        ChatEventType.MESSAGE_SENT,
    ]
    assert [e.details["count"] for e in observer.of_type(ChatEventType.MESSAGE_SENT)] == [1, 2]


def test_observer_failure_is_contained(caplog):
    class Broken:
        def notify(self, event: ChatEvent) -> None:
            raise RuntimeError("observer bug")

    with caplog.at_level(logging.ERROR):
        emit(Broken(), ChatEventType.CHUNK_PROGRESS, received=1, total=2)

    assert "Observer failed" in caplog.text


def test_logging_observer_levels(caplog):
    observer = LoggingObserver(logging.getLogger("xchat.test"))

    with caplog.at_level(logging.INFO, logger="xchat.test"):
        observer.notify(ChatEvent(ChatEventType.MESSAGE_SENT, {"count": 3}))
        observer.notify(ChatEvent(ChatEventType.MESSAGE_REJECTED, {"reason": "bad"}))

    levels = [(r.levelno, r.getMessage()) for r in caplog.records]
    assert levels == [
        (logging.INFO, "[message_sent] count=3"),
        (logging.WARNING, "[message_rejected] reason=bad"),
    ]


def test_poll_arbiter_transitions():
    arbiter = PollArbiter(poll_interval=30, backup_interval=300)
    assert arbiter.state is PushState.NO_PUSH
    assert arbiter.interval == 30

    assert arbiter.subscribe_requested()
    assert arbiter.interval == 30
    assert arbiter.confirmed()
    assert not arbiter.confirmed()
    assert arbiter.interval == 300

    assert arbiter.lost() is True
    assert arbiter.state is PushState.NO_PUSH
    assert arbiter.interval == 30
    assert arbiter.lost() is False


def test_poll_arbiter_reset():
    arbiter = PollArbiter(poll_interval=30, backup_interval=300)
    arbiter.subscribe_requested()
    arbiter.confirmed()
    arbiter.reset()
    assert arbiter.state is PushState.NO_PUSH


@pytest.mark.asyncio
async def test_asyncio_scheduler_runs_and_cancels_callbacks():
    scheduler = AsyncioScheduler()
    fired = []

    scheduler.schedule_after(0.01, lambda: fired.append("kept"))
    handle = scheduler.schedule_after(0.01, lambda: fired.append("cancelled"))
    handle.cancel()
    await asyncio.sleep(0.05)

    assert fired == ["kept"]
