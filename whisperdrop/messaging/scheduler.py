"""
Expiry Scheduler — per-message lifecycle timing.

Each ephemeral message gets its own asyncio timer task. A timer wakes at
least once per tick, reports the remaining lifetime to tick observers and,
once ``expires_at`` has passed, fires the expiry callbacks exactly once and
releases itself.
"""

import asyncio
import inspect
import logging
import math
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Iterable

from whisperdrop.config import (
    EXPIRY_CRITICAL_SECONDS,
    EXPIRY_HISTORY_LIMIT,
    EXPIRY_TICK_INTERVAL,
    EXPIRY_WARNING_SECONDS,
)
from whisperdrop.formatting import format_duration
from whisperdrop.messaging.models import ExpiryState, ExpiryTick, ExpiryTier, Message

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def expiry_tier(remaining_seconds: float) -> ExpiryTier:
    if remaining_seconds <= EXPIRY_CRITICAL_SECONDS:
        return ExpiryTier.CRITICAL
    if remaining_seconds <= EXPIRY_WARNING_SECONDS:
        return ExpiryTier.WARNING
    return ExpiryTier.NORMAL


def purge_expired(
    messages: Iterable[Message], now: datetime | None = None
) -> tuple[list[Message], list[Message]]:
    """Split messages into ``(kept, expired)`` as of ``now``."""
    now = now or utcnow()
    kept, expired = [], []
    for message in messages:
        if message.expires_at is not None and message.expires_at <= now:
            expired.append(message)
        else:
            kept.append(message)
    return kept, expired


@dataclass
class _Timer:
    message: Message
    task: asyncio.Task | None


class ExpiryScheduler:
    """Owns the countdown of every registered ephemeral message."""

    def __init__(
        self,
        tick_interval: float = EXPIRY_TICK_INTERVAL,
        clock: Callable[[], datetime] = utcnow,
        history_limit: int = EXPIRY_HISTORY_LIMIT,
    ) -> None:
        self._tick_interval = tick_interval
        self._clock = clock
        self._timers: dict[str, _Timer] = {}
        # Recently expired ids, oldest first, capped at history_limit
        self._expired: OrderedDict[str, None] = OrderedDict()
        self._history_limit = history_limit
        self._expire_callbacks: list = []  # fn(message_id), sync or async
        self._tick_callbacks: list = []  # fn(ExpiryTick), sync or async
        self._observer_tasks: set[asyncio.Task] = set()

    def on_expire(self, callback) -> None:
        """Register a callback invoked once with the id of each expired message."""
        self._expire_callbacks.append(callback)

    def on_tick(self, callback) -> None:
        """Register an observer of remaining lifetimes."""
        self._tick_callbacks.append(callback)

    @property
    def active_ids(self) -> list[str]:
        return list(self._timers)

    def get(self, message_id: str) -> Message | None:
        timer = self._timers.get(message_id)
        return timer.message if timer else None

    def register(self, message: Message) -> bool:
        """
        Start (or restart) timing a message.

        A message registered again under the same id replaces the previous
        one; its old timer is cancelled before the new one starts. Returns
        False for messages that never expire.
        """
        self.unregister(message.id)
        if not message.is_ephemeral:
            return False

        timer = _Timer(message=message, task=None)
        if message.expires_at is not None:
            timer.task = asyncio.create_task(
                self._run(timer), name=f"expiry-{message.id}"
            )
        self._timers[message.id] = timer
        logger.debug(f"Registered message {message.id} (expires_at={message.expires_at})")
        return True

    def unregister(self, message_id: str) -> None:
        """Stop timing a message. Safe to call any number of times."""
        timer = self._timers.pop(message_id, None)
        self._expired.pop(message_id, None)
        if timer and timer.task and not timer.task.done():
            timer.task.cancel()

    async def mark_read(self, message_id: str) -> bool:
        """Burn a burn-after-reading message now. Returns True if it expired."""
        timer = self._timers.get(message_id)
        if timer is None or not timer.message.burn_after_reading:
            return False
        return await self._expire(timer)

    def state(self, message_id: str) -> ExpiryState | None:
        if message_id in self._timers:
            return ExpiryState.ACTIVE
        if message_id in self._expired:
            return ExpiryState.EXPIRED
        return None

    def remaining(self, message_id: str) -> int | None:
        """Whole seconds left, or None for unknown or non-timed messages."""
        timer = self._timers.get(message_id)
        if timer is None or timer.message.expires_at is None:
            return None
        seconds = (timer.message.expires_at - self._clock()).total_seconds()
        return max(0, math.floor(seconds))

    def tick(self, message_id: str) -> ExpiryTick | None:
        remaining = self.remaining(message_id)
        if remaining is None:
            return None
        return _make_tick(message_id, remaining)

    async def stop(self) -> None:
        """Cancel every timer and any observer still running."""
        timers = list(self._timers.values())
        self._timers.clear()
        tasks = [t.task for t in timers if t.task and not t.task.done()]
        tasks.extend(self._observer_tasks)
        self._observer_tasks.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info(f"Expiry scheduler stopped ({len(timers)} timers cancelled)")

    async def _run(self, timer: _Timer) -> None:
        expires_at = timer.message.expires_at
        message_id = timer.message.id
        while True:
            remaining = (expires_at - self._clock()).total_seconds()
            if remaining <= 0:
                await self._expire(timer)
                return
            self._emit(self._tick_callbacks, _make_tick(message_id, math.floor(remaining)))
            await asyncio.sleep(min(self._tick_interval, remaining))

    async def _expire(self, timer: _Timer) -> bool:
        message_id = timer.message.id
        # Only the timer currently registered under this id may fire
        if self._timers.get(message_id) is not timer:
            return False
        del self._timers[message_id]
        self._remember_expired(message_id)

        current = asyncio.current_task()
        if timer.task and timer.task is not current and not timer.task.done():
            timer.task.cancel()

        logger.info(f"Message {message_id} expired")
        self._emit(self._expire_callbacks, message_id)
        return True

    def _remember_expired(self, message_id: str) -> None:
        self._expired[message_id] = None
        self._expired.move_to_end(message_id)
        while len(self._expired) > self._history_limit:
            self._expired.popitem(last=False)

    def _emit(self, callbacks: list, payload) -> None:
        """Run sync callbacks inline and async ones as separate tasks.

        Timers never wait on an async observer, so a slow consumer cannot
        delay an expiry.
        """
        for cb in list(callbacks):
            try:
                result = cb(payload)
            except Exception as e:
                logger.error(f"Expiry callback error: {e}")
                continue
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._observer_tasks.add(task)
                task.add_done_callback(self._observer_done)

    def _observer_done(self, task: asyncio.Task) -> None:
        self._observer_tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Expiry callback error: {task.exception()}")


def _make_tick(message_id: str, remaining: int) -> ExpiryTick:
    return ExpiryTick(
        message_id=message_id,
        remaining_seconds=remaining,
        tier=expiry_tier(remaining),
        display=format_duration(remaining),
    )
