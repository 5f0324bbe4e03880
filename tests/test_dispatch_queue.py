"""
tests/test_dispatch_queue.py — Rate-Limited Dispatch Queue Tests
=================================================================
FIFO execution, head-of-queue retry after RateLimitError, terminal
failures delivered to the awaiting caller, per-task timeouts, and the
lazy drain loop.
"""

from __future__ import annotations

import asyncio

import pytest

from spikesync.services.dispatch_queue import (
    DispatchTimeoutError,
    RateLimitedQueue,
    RateLimitError,
)


def run_async(coro):
    """Run an async coroutine in a new event loop."""
    loop = asyncio.get_event_loop_policy().new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


def _recorder(log: list, name: str, result=None):
    async def _op():
        log.append(name)
        return result if result is not None else name
    return _op


class TestOrdering:
    def test_fifo(self):
        async def _inner():
            queue = RateLimitedQueue()
            log: list[str] = []
            futures = [queue.enqueue(_recorder(log, n)) for n in ("a", "b", "c")]
            results = await asyncio.gather(*futures)
            assert log == ["a", "b", "c"]
            assert results == ["a", "b", "c"]

        run_async(_inner())

    def test_one_at_a_time(self):
        async def _inner():
            queue = RateLimitedQueue()
            active = 0
            peak = 0

            async def _op():
                nonlocal active, peak
                active += 1
                peak = max(peak, active)
                await asyncio.sleep(0.005)
                active -= 1

            await asyncio.gather(*(queue.enqueue(_op) for _ in range(5)))
            assert peak == 1

        run_async(_inner())


class TestRateLimit:
    def test_requeued_at_head_and_retried(self):
        async def _inner():
            queue = RateLimitedQueue()
            log: list[str] = []
            attempts = 0

            async def _throttled():
                nonlocal attempts
                attempts += 1
                log.append(f"a{attempts}")
                if attempts == 1:
                    raise RateLimitError(20)
                return "done"

            loop = asyncio.get_running_loop()
            started = loop.time()
            first = queue.enqueue(_throttled)
            second = queue.enqueue(_recorder(log, "b"))

            assert await first == "done"
            await second
            assert log == ["a1", "a2", "b"]
            assert loop.time() - started >= 0.015

        run_async(_inner())

    def test_retry_at_is_set(self):
        async def _inner():
            queue = RateLimitedQueue()
            calls = 0

            async def _op():
                nonlocal calls
                calls += 1
                if calls == 1:
                    raise RateLimitError(10)

            loop = asyncio.get_running_loop()
            before = loop.time()
            await queue.enqueue(_op)
            assert queue.retry_at >= before + 0.01

        run_async(_inner())

    def test_message(self):
        assert "1500ms" in str(RateLimitError(1500))
        assert RateLimitError(1500).retry_after_ms == 1500


class TestFailures:
    def test_terminal_error_reaches_caller_and_queue_continues(self):
        async def _inner():
            queue = RateLimitedQueue()

            async def _boom():
                raise ValueError("bad request")

            failing = queue.enqueue(_boom)
            ok = queue.enqueue(_recorder([], "next"))
            with pytest.raises(ValueError, match="bad request"):
                await failing
            assert await ok == "next"

        run_async(_inner())

    def test_timeout(self):
        async def _inner():
            queue = RateLimitedQueue(task_timeout_ms=20)

            async def _hang():
                await asyncio.sleep(5)

            hung = queue.enqueue(_hang)
            ok = queue.enqueue(_recorder([], "after"))
            with pytest.raises(DispatchTimeoutError):
                await hung
            assert await ok == "after"

        run_async(_inner())

    def test_cancelled_caller_is_skipped(self):
        async def _inner():
            queue = RateLimitedQueue()
            log: list[str] = []
            first = queue.enqueue(_recorder(log, "a"))
            first.cancel()
            await queue.enqueue(_recorder(log, "b"))
            assert log == ["b"]

        run_async(_inner())


class TestLifecycle:
    def test_drain_stops_when_empty_and_restarts(self):
        async def _inner():
            queue = RateLimitedQueue()
            assert not queue.running
            await queue.enqueue(_recorder([], "one"))
            await asyncio.sleep(0)
            assert not queue.running
            assert queue.pending == 0

            assert await queue.enqueue(_recorder([], "two")) == "two"

        run_async(_inner())

    def test_aclose_cancels_pending(self):
        async def _inner():
            queue = RateLimitedQueue()

            async def _slow():
                await asyncio.sleep(5)

            running = queue.enqueue(_slow)
            waiting = queue.enqueue(_slow)
            await asyncio.sleep(0.01)
            await queue.aclose()
            assert running.cancelled()
            assert waiting.cancelled()
            assert not queue.running

        run_async(_inner())
