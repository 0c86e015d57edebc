"""Event emitter for publishing domain events.

The emitter provides:
- Handler registration with type filtering
- Category-based routing
- Error isolation (handler failures don't break other handlers)
- Event batching for transactions, dispatched in the background after commit
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Protocol, TypeVar, runtime_checkable

from cto_engine.events.types import DomainEvent, EventCategory

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=DomainEvent)


@runtime_checkable
class EventHandler(Protocol):
    """Protocol for synchronous event handlers."""

    def __call__(self, event: DomainEvent) -> None:
        """Handle a domain event."""
        ...


@runtime_checkable
class AsyncEventHandler(Protocol):
    """Protocol for asynchronous event handlers."""

    async def __call__(self, event: DomainEvent) -> None:
        """Handle a domain event asynchronously."""
        ...


@dataclass
class HandlerRegistration:
    """Registration of an event handler."""

    handler: EventHandler | AsyncEventHandler
    event_types: set[str] | None  # None = all events
    categories: set[EventCategory] | None  # None = all categories
    is_async: bool


class AsyncEventEmitter:
    """Asynchronous event emitter.

    Publishes events to registered handlers. Handlers are isolated -
    if one fails, others still receive the event, and the failure is
    logged and returned rather than raised.

    Usage:
        emitter = AsyncEventEmitter()

        async def notify_approver(event: ApplicationLevelAdvanced) -> None:
            await send_mail(event.next_approver)

        emitter.on(ApplicationLevelAdvanced, notify_approver)

        async with emitter.batch() as batch:
            async with session.begin():
                ...
                batch.add(event)
        # Events dispatched in the background once the transaction committed

        await emitter.aclose()  # on shutdown
    """

    def __init__(self) -> None:
        self._handlers: list[HandlerRegistration] = []
        self._background: set[asyncio.Task[None]] = set()

    def on(
        self,
        event_type: type[T] | list[type[T]],
        handler: AsyncEventHandler,
    ) -> None:
        """Register async handler for specific event type(s)."""
        self._register(handler, _type_names(event_type), None, is_async=True)

    def on_sync(
        self,
        event_type: type[T] | list[type[T]],
        handler: EventHandler,
    ) -> None:
        """Register sync handler for specific event type(s)."""
        self._register(handler, _type_names(event_type), None, is_async=False)

    def on_category(
        self,
        category: EventCategory | list[EventCategory],
        handler: AsyncEventHandler,
    ) -> None:
        """Register async handler for event category(ies)."""
        if isinstance(category, list):
            cats = set(category)
        else:
            cats = {category}
        self._register(handler, None, cats, is_async=True)

    def on_all(self, handler: AsyncEventHandler) -> None:
        """Register async handler for all events."""
        self._register(handler, None, None, is_async=True)

    def off(self, handler: AsyncEventHandler | EventHandler) -> None:
        """Unregister a handler."""
        self._handlers = [
            reg for reg in self._handlers if reg.handler is not handler
        ]

    def _register(
        self,
        handler: EventHandler | AsyncEventHandler,
        event_types: set[str] | None,
        categories: set[EventCategory] | None,
        is_async: bool,
    ) -> None:
        self._handlers.append(
            HandlerRegistration(
                handler=handler,
                event_types=event_types,
                categories=categories,
                is_async=is_async,
            )
        )

    async def emit(self, event: DomainEvent) -> list[Exception]:
        """Emit an event to all matching handlers.

        Returns list of any exceptions raised by handlers.
        """
        return await self._dispatch(event)

    async def _dispatch(self, event: DomainEvent) -> list[Exception]:
        """Dispatch event to matching handlers."""
        errors: list[Exception] = []
        event_type = event.event_type
        event_category = event.category

        tasks: list[asyncio.Task[None]] = []

        for reg in self._handlers:
            # Check type filter
            if reg.event_types and event_type not in reg.event_types:
                continue

            # Check category filter
            if reg.categories and event_category not in reg.categories:
                continue

            if reg.is_async:
                task = asyncio.create_task(
                    self._call_async_handler(reg.handler, event)  # type: ignore[arg-type]
                )
                tasks.append(task)
            else:
                try:
                    reg.handler(event)  # type: ignore[call-arg]
                except Exception as e:
                    logger.exception(
                        "Handler %s failed for event %s",
                        reg.handler,
                        event_type,
                    )
                    errors.append(e)

        if tasks:
            results = await asyncio.gather(*tasks, return_exceptions=True)
            for result in results:
                if isinstance(result, Exception):
                    errors.append(result)

        return errors

    async def _call_async_handler(
        self,
        handler: AsyncEventHandler,
        event: DomainEvent,
    ) -> None:
        """Call async handler with error logging."""
        try:
            await handler(event)
        except Exception:
            logger.exception(
                "Async handler %s failed for event %s",
                handler,
                event.event_type,
            )
            raise

    def publish(
        self,
        events: list[DomainEvent],
        errors: list[Exception] | None = None,
    ) -> asyncio.Task[None]:
        """Dispatch events in a background task and return it.

        The caller does not wait for handlers. The emitter keeps the task
        until it finishes; `drain()` waits for all of them.
        """
        task = asyncio.create_task(self._dispatch_all(events, errors))
        self._background.add(task)
        task.add_done_callback(self._published)
        return task

    async def _dispatch_all(
        self,
        events: list[DomainEvent],
        errors: list[Exception] | None,
    ) -> None:
        for event in events:
            failed = await self._dispatch(event)
            if errors is not None:
                errors.extend(failed)

    def _published(self, task: asyncio.Task[None]) -> None:
        self._background.discard(task)
        if task.cancelled():
            logger.warning("Event dispatch cancelled before completion")
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Event dispatch failed", exc_info=exc)

    @property
    def in_flight(self) -> int:
        """Number of background dispatches not yet finished."""
        return len(self._background)

    async def drain(self) -> None:
        """Wait until every published event has been handled."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def aclose(self) -> None:
        """Drain pending dispatches before shutdown."""
        await self.drain()

    def batch(self) -> AsyncEventBatch:
        """Create a batch context for collecting events.

        Each batch holds its own events, so concurrent operations sharing
        one emitter never see each other's pending events.
        """
        return AsyncEventBatch(self)


class AsyncEventBatch:
    """Async context manager for batching events.

    On a clean exit the collected events are published in the background;
    on an exception they are discarded.
    """

    def __init__(self, emitter: AsyncEventEmitter) -> None:
        self._emitter = emitter
        self._events: list[DomainEvent] = []
        self._errors: list[Exception] = []
        self._task: asyncio.Task[None] | None = None

    async def __aenter__(self) -> AsyncEventBatch:
        self._events = []
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        events, self._events = self._events, []
        if exc_type is not None:
            # Exception occurred - discard batch
            return
        if events:
            self._task = self._emitter.publish(events, self._errors)

    async def wait(self) -> list[Exception]:
        """Wait for this batch's handlers and return their errors."""
        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)
        return self._errors

    def add(self, event: DomainEvent) -> None:
        """Add event to batch."""
        self._events.append(event)

    @property
    def pending(self) -> list[DomainEvent]:
        """Events collected so far and not yet dispatched."""
        return list(self._events)

    @property
    def errors(self) -> list[Exception]:
        """Errors from handler execution (complete once `wait()` returns)."""
        return self._errors


def _type_names(event_type: type[DomainEvent] | list[type[DomainEvent]]) -> set[str]:
    if isinstance(event_type, list):
        return {t.__name__ for t in event_type}
    return {event_type.__name__}
