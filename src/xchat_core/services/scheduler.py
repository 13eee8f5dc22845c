# src/xchat_core/services/scheduler.py
"""Timer abstraction and the push/poll cadence state machine."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from enum import Enum
from typing import Protocol

logger = logging.getLogger(__name__)


class CancelHandle(Protocol):
    """Handle returned by ``Scheduler.schedule_after``."""

    def cancel(self) -> None: ...


class Scheduler(Protocol):
    """Runs a callback once after a delay."""

    def schedule_after(self, delay: float, callback: Callable[[], None]) -> CancelHandle: ...


class AsyncioScheduler:
    """Scheduler backed by ``loop.call_later`` on the running event loop."""

    def __init__(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        self._loop = loop

    def schedule_after(self, delay: float, callback: Callable[[], None]) -> asyncio.TimerHandle:
        loop = self._loop or asyncio.get_running_loop()
        return loop.call_later(max(0.0, delay), callback)


class PushState(Enum):
    """Availability of the push subscription."""

    NO_PUSH = "no_push"
    PUSH_PENDING = "push_pending"
    PUSH_CONFIRMED = "push_confirmed"


class PollArbiter:
    """Chooses the poll interval from the current push state.

    Polling runs at the short, user-configured interval unless push delivery
    is confirmed, in which case it relaxes to the long backup interval.
    """

    def __init__(self, poll_interval: float, backup_interval: float) -> None:
        self.poll_interval = poll_interval
        self.backup_interval = backup_interval
        self.state = PushState.NO_PUSH

    @property
    def interval(self) -> float:
        if self.state is PushState.PUSH_CONFIRMED:
            return self.backup_interval
        return self.poll_interval

    def _transition(self, new_state: PushState) -> bool:
        changed = new_state is not self.state
        if changed:
            logger.debug("Push state %s -> %s", self.state.value, new_state.value)
        self.state = new_state
        return changed

    def subscribe_requested(self) -> bool:
        return self._transition(PushState.PUSH_PENDING)

    def confirmed(self) -> bool:
        return self._transition(PushState.PUSH_CONFIRMED)

    def lost(self) -> bool:
        """Push errored or closed. Returns True if the interval must shrink."""
        was_confirmed = self.state is PushState.PUSH_CONFIRMED
        self._transition(PushState.NO_PUSH)
        return was_confirmed

    def reset(self) -> None:
        self.state = PushState.NO_PUSH
