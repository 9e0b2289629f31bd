"""Async event bus bridging supervisor callbacks to host consumers.

Supervisor observers are synchronous, so publish() enqueues without
waiting; hosts drain the queue with consume().
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator

from metrowatch.adapters.events import (
    ProcessOutput,
    StatusChanged,
    SupervisorEvent,
)
from metrowatch.engine.models import LogMessage, StatusChange

logger = logging.getLogger(__name__)


class EventBus:
    """Async queue bridging supervisor events to host consumers."""

    def __init__(self, maxsize: int = 5000) -> None:
        self._queue: asyncio.Queue[SupervisorEvent] = asyncio.Queue(maxsize=maxsize)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def publish(self, event: SupervisorEvent) -> None:
        """Enqueue an event. Drops it (with a log line) when the queue is full."""
        if self._closed:
            return
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.error(
                "EventBus queue full, dropping: %s (queue size: %d)",
                event.event_type, self._queue.qsize(),
            )

    def on_status(self, change: StatusChange) -> None:
        """Status observer for SessionController.observe_status()."""
        self.publish(StatusChanged(
            project_root=change.project_root,
            previous=change.previous.value,
            current=change.current.value,
            timestamp=change.timestamp,
        ))

    def on_message(self, message: LogMessage) -> None:
        """Message observer for SessionController.observe_messages()."""
        self.publish(ProcessOutput(text=message.text, level=message.level))

    async def consume(self) -> AsyncIterator[SupervisorEvent]:
        """Yield events as they arrive. Stops on close()."""
        while not self._closed:
            try:
                event = await asyncio.wait_for(self._queue.get(), timeout=0.5)
                yield event
            except asyncio.TimeoutError:
                continue
            except asyncio.CancelledError:
                break

    def close(self) -> None:
        """Stop the consumer loop permanently."""
        self._closed = True

    def reset(self) -> None:
        """Drain leftover events and re-open the bus."""
        while not self._queue.empty():
            try:
                self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
        self._closed = False
