"""
voicepipe.core.event_bus — Async broadcast event bus used as the stream transport.

Every subscriber of a channel receives every event published on it. The bus
does no routing by request: consumers that share a channel must filter by
their own correlation id.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict, deque
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)

Handler = Callable[[Any], Awaitable[None]]


class AsyncEventBus:
    """Named-channel publish/subscribe with async handlers.

    emit() awaits every handler of one event before returning, so a
    producer that awaits each emit delivers its events in order. A failing
    handler is logged and never affects the other subscribers.
    """

    def __init__(self, history_size: int = 200):
        self._subscribers: dict[str, list[Handler]] = defaultdict(list)
        self._recent: deque[tuple[str, Any]] = deque(maxlen=history_size)
        self._closed = False
        self._emitted = 0
        self._handler_errors = 0

    # ── Subscriptions ─────────────────────────────────────────────────────

    def subscribe(self, channel: str, handler: Handler):
        self._subscribers[channel].append(handler)
        logger.debug("%s listening on '%s'", getattr(handler, "__qualname__", handler), channel)

    def unsubscribe(self, channel: str, handler: Handler):
        """Detach a handler. Unknown handlers are ignored."""
        handlers = self._subscribers.get(channel)
        if handlers and handler in handlers:
            handlers.remove(handler)

    def subscriber_count(self, channel: str) -> int:
        return len(self._subscribers.get(channel, ()))

    # ── Publishing ────────────────────────────────────────────────────────

    async def emit(self, channel: str, event: Any = None):
        """Deliver an event to everyone currently subscribed to `channel`."""
        if self._closed:
            logger.debug("Bus closed, dropping event on '%s'", channel)
            return
        self._emitted += 1
        self._recent.append((channel, event))

        # Copy: handlers may unsubscribe while the event is in flight
        handlers = list(self._subscribers.get(channel, ()))
        if not handlers:
            return

        outcomes = await asyncio.gather(
            *(handler(event) for handler in handlers), return_exceptions=True
        )
        for handler, outcome in zip(handlers, outcomes):
            if isinstance(outcome, Exception):
                self._handler_errors += 1
                logger.error(
                    "Handler %s failed on '%s': %s",
                    getattr(handler, "__qualname__", handler),
                    channel,
                    outcome,
                )

    def stop(self):
        """Stop dispatching; later emits are dropped."""
        self._closed = True
        logger.info("Event bus stopped")

    # ── Introspection ─────────────────────────────────────────────────────

    @property
    def channels(self) -> list[str]:
        return [name for name, handlers in self._subscribers.items() if handlers]

    @property
    def history(self) -> list[tuple[str, Any]]:
        return list(self._recent)

    @property
    def total_emitted(self) -> int:
        return self._emitted

    @property
    def total_errors(self) -> int:
        return self._handler_errors

    def stats(self) -> dict:
        return {
            "emitted": self._emitted,
            "handler_errors": self._handler_errors,
            "channels": len(self.channels),
            "stopped": self._closed,
        }
