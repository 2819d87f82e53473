# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Single-consumer, FIFO, time-respecting task scheduler.

A :class:`DelayQueue` runs a growing sequence of actions strictly one at a
time, in the order they were added.  Each action waits for its own delay,
measured from the moment the previous action signalled completion, before it
runs::

    queue = DelayQueue()

    async def write_one(advance):
        await call.write(response)
        advance()

    queue.add(write_one, delay_us=50_000)
    queue.add(lambda advance: (call.end(), advance()))

An action receives an ``advance`` callable and must call it exactly once;
the next action's timer starts only after ``advance()`` was called and the
action itself (if it returned an awaitable) finished.  Tasks may be added
while the queue is draining; they go to the tail.

FAILURE SEMANTICS
-----------------
An action that raises stalls the queue permanently: the error is logged,
:attr:`DelayQueue.stalled` becomes ``True`` and no further task runs.  An
action that returns without ever calling ``advance()`` stalls it the same
way, silently.  Callers are expected to guard their actions so that every
path reaches ``advance()``.

CANCELLATION
------------
:meth:`DelayQueue.clear` discards tasks that have not started yet (a task
whose timer is still pending counts as not started, and that timer is
abandoned at once); the in-flight action is never interrupted.
:meth:`DelayQueue.close` additionally cancels the drainer and rejects
further :meth:`DelayQueue.add` calls.
"""

from __future__ import annotations

import asyncio
import contextlib
import functools
import inspect
import logging
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Final, TypeAlias

__all__ = ["Action", "DelayQueue", "ScheduledTask"]

_logger = logging.getLogger("interop_rpc.queue")

_MICROS_PER_SECOND: Final = 1_000_000

Action: TypeAlias = Callable[[Callable[[], None]], Awaitable[None] | None]
"""A queued action: called with ``advance`` once its delay has elapsed."""


@dataclass(frozen=True, eq=False)
class ScheduledTask:
    """An action and the delay (in microseconds) to wait before running it."""

    action: Action
    delay_us: int = 0


class DelayQueue:
    """Run queued actions one at a time, each after its own delay.

    Must be used from within a running event loop: the first :meth:`add` on
    an idle queue starts a drainer task on that loop.
    """

    __slots__ = ("_closed", "_drainer", "_name", "_pending", "_settled", "_stalled", "_wake")

    def __init__(self, name: str = "") -> None:
        """Create an idle queue; *name* only appears in log records."""
        self._name = name
        self._pending: deque[ScheduledTask] = deque()
        self._drainer: asyncio.Task[None] | None = None
        self._settled = asyncio.Event()
        self._settled.set()
        self._wake = asyncio.Event()
        self._stalled = False
        self._closed = False

    def __len__(self) -> int:
        """Number of tasks that have not started yet."""
        return len(self._pending)

    def __repr__(self) -> str:
        """Return a summary of the queue state."""
        state = "stalled" if self._stalled else "closed" if self._closed else "idle" if self.idle else "draining"
        return f"DelayQueue({self._name!r}, {state}, pending={len(self._pending)})"

    @property
    def idle(self) -> bool:
        """Whether no task is pending, timed or running."""
        return self._drainer is None and not self._pending

    @property
    def stalled(self) -> bool:
        """Whether an action raised and the queue stopped for good."""
        return self._stalled

    @property
    def closed(self) -> bool:
        """Whether :meth:`close` was called."""
        return self._closed

    def add(self, action: Action, delay_us: int = 0) -> None:
        """Append *action* to run *delay_us* microseconds after the previous task completes.

        Starts draining when the queue is idle.

        Raises:
            ValueError: If *delay_us* is negative.
            RuntimeError: If the queue was closed.

        """
        if delay_us < 0:
            raise ValueError(f"delay_us must be non-negative, got {delay_us}")
        if self._closed:
            raise RuntimeError("DelayQueue is closed")
        self._pending.append(ScheduledTask(action, delay_us))
        if self._drainer is None and not self._stalled:
            self._settled.clear()
            self._drainer = asyncio.get_running_loop().create_task(self._drain(), name=f"delay-queue-{self._name}")

    def clear(self) -> int:
        """Discard every task that has not started; return how many were dropped.

        A timer already running for a discarded task is abandoned at once.
        """
        dropped = len(self._pending)
        self._pending.clear()
        if dropped:
            self._wake.set()
            _logger.debug("Discarded %d pending task(s) from queue %s", dropped, self._name)
        return dropped

    def close(self) -> None:
        """Discard pending tasks, cancel the drainer and refuse new tasks."""
        self._closed = True
        self.clear()
        if self._drainer is not None:
            self._drainer.cancel()

    async def join(self) -> None:
        """Wait until the queue is idle, stalled or closed."""
        await self._settled.wait()

    async def _drain(self) -> None:
        loop = asyncio.get_running_loop()
        try:
            while self._pending:
                task = self._pending[0]
                await self._wait_timer(task.delay_us)
                if not self._pending or self._pending[0] is not task:
                    # Discarded by clear() while its timer was pending.
                    continue
                self._pending.popleft()
                advanced: asyncio.Future[None] = loop.create_future()
                try:
                    result = task.action(functools.partial(self._advance, advanced))
                    if inspect.isawaitable(result):
                        await result
                except Exception:
                    self._stalled = True
                    _logger.error(
                        "Scheduled action failed; queue %s stalled with %d pending task(s)",
                        self._name,
                        len(self._pending),
                        exc_info=True,
                        extra={"queue": self._name, "pending": len(self._pending)},
                    )
                    return
                await advanced
        finally:
            self._drainer = None
            self._settled.set()

    async def _wait_timer(self, delay_us: int) -> None:
        """Sleep *delay_us* microseconds, returning early when clear() wakes the drainer."""
        self._wake.clear()
        with contextlib.suppress(TimeoutError):
            async with asyncio.timeout(delay_us / _MICROS_PER_SECOND):
                await self._wake.wait()

    @staticmethod
    def _advance(advanced: asyncio.Future[None]) -> None:
        if advanced.done():
            raise RuntimeError("advance() called more than once")
        advanced.set_result(None)
