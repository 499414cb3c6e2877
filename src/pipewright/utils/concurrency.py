"""Async concurrency primitives used by the scheduler and deployment controller."""

from __future__ import annotations

import asyncio
import inspect
from contextlib import suppress
from typing import TYPE_CHECKING, TypeVar

if TYPE_CHECKING:
    from collections.abc import Awaitable, Iterator

T = TypeVar("T")


class CancellationToken:
    """Cooperative cancellation token backed by ``asyncio.Event``.

    ``cancel`` is idempotent; the first reason wins.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: str | None = None

    def cancel(self, reason: str = "cancelled") -> None:
        if self._reason is None:
            self._reason = reason
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise asyncio.CancelledError(self._reason or "operation cancelled")


async def run_with_timeout(
    coroutine: Awaitable[T],
    timeout_seconds: float | None,
    cancel_token: CancellationToken | None = None,
) -> T:
    """Await ``coroutine`` racing a timeout and a cancellation token.

    ``timeout_seconds=None`` waits indefinitely. Raises ``TimeoutError`` on timeout
    and ``asyncio.CancelledError`` when the token fires first.
    """
    if timeout_seconds is not None and timeout_seconds <= 0:
        _close_unscheduled(coroutine)
        raise ValueError("timeout_seconds must be > 0")

    token = cancel_token or CancellationToken()
    if token.is_cancelled:
        _close_unscheduled(coroutine)
        raise asyncio.CancelledError(token.reason or "operation cancelled")

    task: asyncio.Task[T] = asyncio.ensure_future(coroutine)
    cancel_wait = asyncio.create_task(token.wait())
    try:
        done, _ = await asyncio.wait(
            {task, cancel_wait},
            timeout=timeout_seconds,
            return_when=asyncio.FIRST_COMPLETED,
        )
        if task in done:
            return task.result()
        if cancel_wait in done:
            raise asyncio.CancelledError(token.reason or "operation cancelled")
        raise TimeoutError(f"operation timed out after {timeout_seconds} seconds")
    finally:
        # Also reached when the caller itself is cancelled; never leave the work running.
        if not task.done():
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task
        cancel_wait.cancel()
        with suppress(asyncio.CancelledError):
            await cancel_wait


async def sleep_or_cancel(delay_seconds: float, cancel_token: CancellationToken) -> None:
    """Sleep for ``delay_seconds`` unless the token fires first (then raise CancelledError)."""
    if delay_seconds <= 0:
        cancel_token.raise_if_cancelled()
        return
    with suppress(TimeoutError):
        await run_with_timeout(cancel_token.wait(), delay_seconds)
    cancel_token.raise_if_cancelled()


def backoff_delays(initial: float, maximum: float, factor: float = 2.0) -> Iterator[float]:
    """Infinite exponential backoff sequence capped at ``maximum``."""
    delay = initial
    while True:
        yield min(delay, maximum)
        delay *= factor


def _close_unscheduled(awaitable: Awaitable[object]) -> None:
    # Raw coroutine objects closed here would otherwise warn "never awaited" at GC.
    if inspect.iscoroutine(awaitable):
        awaitable.close()


__all__ = [
    "CancellationToken",
    "backoff_delays",
    "run_with_timeout",
    "sleep_or_cancel",
]
