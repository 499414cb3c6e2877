"""In-process event bus with bounded replay and isolated subscriber failures."""

from __future__ import annotations

import asyncio
import inspect
import threading
from collections import deque
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Final

from pipewright.domain.events import EventType, PipelineEvent

Subscriber = Callable[[PipelineEvent], object]

_DEFAULT_ERROR_BUFFER: Final[int] = 1024


@dataclass(frozen=True, slots=True)
class DispatchError:
    """Subscriber failure captured without interrupting the publisher."""

    event_id: str
    target: str
    error_type: str
    message: str


@dataclass(frozen=True, slots=True)
class _Subscription:
    token: int
    event_type: EventType | None
    callback: Subscriber


class EventBus:
    """Sync and async subscribers with deterministic replay.

    A subscriber that raises never affects the publisher or other subscribers;
    the failure is kept in :meth:`dispatch_errors`.
    """

    def __init__(self, *, buffer_size: int = 512) -> None:
        if isinstance(buffer_size, bool) or not isinstance(buffer_size, int) or buffer_size <= 0:
            raise ValueError("buffer_size must be a positive integer")
        self._buffer = deque[PipelineEvent](maxlen=buffer_size)
        self._subscriptions: dict[int, _Subscription] = {}
        self._pending: set[asyncio.Task[None]] = set()
        self._errors = deque[DispatchError](maxlen=_DEFAULT_ERROR_BUFFER)
        self._next_token = 1
        self._lock = threading.RLock()

    def subscribe(self, event_type: str | EventType | None, callback: Subscriber) -> int:
        """Subscribe to one event type, or to every event when ``event_type`` is ``None``."""
        if not callable(callback):
            raise ValueError("callback must be callable")
        normalized = EventType(event_type) if event_type is not None else None
        with self._lock:
            token = self._next_token
            self._next_token += 1
            self._subscriptions[token] = _Subscription(token, normalized, callback)
        return token

    def unsubscribe(self, token: int) -> bool:
        with self._lock:
            return self._subscriptions.pop(token, None) is not None

    def publish(self, event: PipelineEvent) -> tuple[DispatchError, ...]:
        """Publish from synchronous code; coroutine subscribers are scheduled on the running loop."""
        errors: list[DispatchError] = []
        for subscription in self._record(event):
            try:
                outcome = subscription.callback(event)
                if inspect.isawaitable(outcome):
                    self._schedule(outcome, event, subscription.callback)
            except Exception as exc:  # noqa: BLE001 - subscriber isolation
                errors.append(_dispatch_error(event, subscription.callback, exc))
        self._keep(errors)
        return tuple(errors)

    async def publish_async(self, event: PipelineEvent) -> tuple[DispatchError, ...]:
        """Publish from async code, awaiting coroutine subscribers in order."""
        errors: list[DispatchError] = []
        for subscription in self._record(event):
            try:
                outcome = subscription.callback(event)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception as exc:  # noqa: BLE001 - subscriber isolation
                errors.append(_dispatch_error(event, subscription.callback, exc))
        self._keep(errors)
        return tuple(errors)

    def emit(
        self,
        event_type: str | EventType,
        payload: Mapping[str, object],
        *,
        correlation_id: str | None = None,
    ) -> PipelineEvent:
        event = PipelineEvent(event_type=event_type, payload=dict(payload), correlation_id=correlation_id)
        self.publish(event)
        return event

    async def emit_async(
        self,
        event_type: str | EventType,
        payload: Mapping[str, object],
        *,
        correlation_id: str | None = None,
    ) -> PipelineEvent:
        event = PipelineEvent(event_type=event_type, payload=dict(payload), correlation_id=correlation_id)
        await self.publish_async(event)
        return event

    async def drain_async(self) -> None:
        """Await coroutine subscribers scheduled by :meth:`publish`."""
        with self._lock:
            pending = tuple(self._pending)
            self._pending.clear()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    def replay(
        self,
        *,
        event_type: str | EventType | None = None,
        correlation_id: str | None = None,
        limit: int | None = None,
    ) -> tuple[PipelineEvent, ...]:
        """Buffered events in publish order, optionally filtered."""
        wanted = EventType(event_type) if event_type is not None else None
        with self._lock:
            events = [
                event
                for event in self._buffer
                if (wanted is None or event.event_type == wanted)
                and (correlation_id is None or event.correlation_id == correlation_id)
            ]
        if limit is not None:
            events = events[-limit:] if limit > 0 else []
        return tuple(events)

    def dispatch_errors(self) -> tuple[DispatchError, ...]:
        with self._lock:
            return tuple(self._errors)

    def _record(self, event: PipelineEvent) -> tuple[_Subscription, ...]:
        if not isinstance(event, PipelineEvent):
            raise ValueError(f"event must be PipelineEvent, got {type(event).__name__}")
        with self._lock:
            self._buffer.append(event)
            return tuple(
                subscription
                for subscription in self._subscriptions.values()
                if subscription.event_type is None or subscription.event_type == event.event_type
            )

    def _keep(self, errors: list[DispatchError]) -> None:
        if errors:
            with self._lock:
                self._errors.extend(errors)

    def _schedule(self, awaitable: object, event: PipelineEvent, callback: Subscriber) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            asyncio.run(_await(awaitable))
            return
        task = loop.create_task(_await(awaitable))
        with self._lock:
            self._pending.add(task)

        def _done(done: asyncio.Task[None]) -> None:
            with self._lock:
                self._pending.discard(done)
            if done.cancelled():
                return
            exc = done.exception()
            if isinstance(exc, Exception):
                self._keep([_dispatch_error(event, callback, exc)])

        task.add_done_callback(_done)


async def _await(awaitable: object) -> None:
    await awaitable  # type: ignore[misc]


def _dispatch_error(event: PipelineEvent, callback: object, exc: Exception) -> DispatchError:
    name = getattr(callback, "__name__", None) or callback.__class__.__name__
    return DispatchError(
        event_id=event.event_id,
        target=str(name),
        error_type=exc.__class__.__name__,
        message=str(exc),
    )


__all__ = ["DispatchError", "EventBus", "Subscriber"]
