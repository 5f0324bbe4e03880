"""
spikesync.services.dispatch_queue — Serialized, throttle-surviving task queue
==============================================================================

Spotify rate-limits per account, so uncoordinated concurrent calls only
thrash against the limit.  :class:`RateLimitedQueue` runs at most one
operation at a time, in enqueue order.  An operation that fails with
:class:`RateLimitError` goes back to the *head* of the queue and the drain
loop sleeps until the retry-after instant; any other failure is final for
that task and is delivered to whoever awaited it.

The drain loop starts lazily on enqueue and exits when the queue empties.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

QueueTask = Callable[[], Awaitable[T]]

__all__ = ["DispatchTimeoutError", "QueueTask", "RateLimitError", "RateLimitedQueue"]


class RateLimitError(Exception):
    """The downstream service asked us to back off for *retry_after_ms*."""

    def __init__(self, retry_after_ms: float) -> None:
        super().__init__(
            f"Spotify rate limit encountered. Retry after {retry_after_ms:.0f}ms."
        )
        self.retry_after_ms = retry_after_ms


class DispatchTimeoutError(TimeoutError):
    """A queued operation ran longer than the per-task timeout."""


@dataclass(slots=True)
class _Entry:
    operation: QueueTask[Any]
    future: asyncio.Future[Any]
    attempts: int = 0


class RateLimitedQueue:
    """Single-consumer FIFO queue in front of a rate-limited client.

    Parameters
    ----------
    task_timeout_ms:
        Per-operation timeout.  An operation that exceeds it fails with
        :class:`DispatchTimeoutError` and the queue moves on.  ``None``
        lets a hung operation stall the queue indefinitely.
    """

    def __init__(self, task_timeout_ms: float | None = None) -> None:
        self.task_timeout_ms = task_timeout_ms
        self._pending: deque[_Entry] = deque()
        self._running = False
        self._retry_at = 0.0  # loop.time() seconds
        self._drain_task: asyncio.Task | None = None
        self._current: _Entry | None = None

    @property
    def running(self) -> bool:
        return self._running

    @property
    def pending(self) -> int:
        return len(self._pending)

    @property
    def retry_at(self) -> float:
        """Event-loop time (seconds) before which no operation will start."""
        return self._retry_at

    def enqueue(self, operation: QueueTask[T]) -> asyncio.Future[T]:
        """Queue *operation* and return a future for its eventual result.

        Must be called from within the running event loop.
        """
        loop = asyncio.get_running_loop()
        future: asyncio.Future[T] = loop.create_future()
        self._pending.append(_Entry(operation=operation, future=future))

        if not self._running:
            self._running = True
            self._drain_task = loop.create_task(self._drain(), name="dispatch-drain")
        return future

    async def _drain(self) -> None:
        loop = asyncio.get_running_loop()
        try:
            while self._pending:
                delay = self._retry_at - loop.time()
                if delay > 0:
                    await asyncio.sleep(delay)

                entry = self._pending.popleft()
                if entry.future.done():
                    # The awaiting caller went away (cancelled)
                    continue

                entry.attempts += 1
                self._current = entry
                try:
                    result = await self._run(entry.operation)
                except RateLimitError as exc:
                    self._retry_at = loop.time() + exc.retry_after_ms / 1000
                    self._pending.appendleft(entry)
                    logger.warning(
                        "Rate limited (attempt %d); retrying in %.0fms with %d task(s) queued",
                        entry.attempts, exc.retry_after_ms, len(self._pending),
                    )
                except Exception as exc:
                    if not entry.future.done():
                        entry.future.set_exception(exc)
                else:
                    if not entry.future.done():
                        entry.future.set_result(result)
                finally:
                    self._current = None
        finally:
            self._running = False

    async def _run(self, operation: QueueTask[T]) -> T:
        if self.task_timeout_ms is None:
            return await operation()
        timeout = self.task_timeout_ms / 1000
        try:
            return await asyncio.wait_for(operation(), timeout)
        except TimeoutError as exc:
            raise DispatchTimeoutError(
                f"Dispatch operation exceeded {self.task_timeout_ms:.0f}ms"
            ) from exc

    async def aclose(self) -> None:
        """Stop draining and cancel every task that has not started yet."""
        task = self._drain_task
        current = self._current
        self._drain_task = None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        if current is not None:
            current.future.cancel()
        while self._pending:
            entry = self._pending.popleft()
            entry.future.cancel()
        self._running = False
