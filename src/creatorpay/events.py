"""Message-ready events for the chat-platform wrapper.

The orchestrator never formats chat messages itself.  It publishes an
:class:`Event` for every buyer-visible outcome (purchase confirmed,
payment code ready, insufficient funds, expiry, ...) and the wrapper
subscribes and renders them.

Example::

    bus = EventBus()

    def on_code(event: Event) -> None:
        send_photo(event.data["buyer_id"], event.data["url"])

    bus.subscribe(EventType.CODE_READY, on_code)
"""

from __future__ import annotations

import enum
import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)


class EventType(enum.Enum):
    """All event types emitted by the payment core."""

    # Purchases
    PURCHASE_CONFIRMED = "purchase.confirmed"
    PURCHASE_REDELIVERED = "purchase.redelivered"
    INSUFFICIENT_FUNDS = "payment.insufficient_funds"

    # Gateway-backed payments
    CODE_READY = "payment.code_ready"
    PAYMENT_EXPIRED = "payment.expired"
    PAYMENT_CANCELLED = "payment.cancelled"
    PAYMENT_FAILED = "payment.failed"

    # Balance
    TOPUP_CONFIRMED = "topup.confirmed"
    PENDING_CONTINUATION = "pending.continuation"

    # Errors
    CONFIG_ERROR = "config.error"
    GATEWAY_ERROR = "gateway.error"
    DELIVERY_FAILED = "delivery.failed"


@dataclass
class Event:
    """A single event in the system."""

    type: EventType
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)
    source: str = ""  # "callback", "poll", "buyer", ...

    def to_dict(self) -> dict[str, Any]:
        """Return a JSON-serialisable dictionary."""
        return {
            "type": self.type.value,
            "data": self.data,
            "timestamp": self.timestamp,
            "source": self.source,
        }


EventHandler = Callable[[Event], None]
EventFilter = Callable[[Event], bool]


class EventBus:
    """Thread-safe publish/subscribe event bus.

    Handlers are called synchronously in the publishing thread.  If a
    handler raises, the exception is logged but does not prevent other
    handlers from running.
    """

    def __init__(self, max_history: int = 1000) -> None:
        self._handlers: dict[EventType, list[tuple[EventHandler, EventFilter | None]]] = {}
        self._wildcard_handlers: list[tuple[EventHandler, EventFilter | None]] = []
        self._lock = threading.Lock()
        self._history: list[Event] = []
        self._max_history = max_history

    def subscribe(
        self,
        event_type: EventType | None,
        handler: EventHandler,
        *,
        filter: EventFilter | None = None,
    ) -> None:
        """Register *handler* for *event_type*, or for every event when ``None``.

        Subscribing the same handler twice is a no-op.
        """
        with self._lock:
            if event_type is None:
                targets = self._wildcard_handlers
            else:
                targets = self._handlers.setdefault(event_type, [])
            if any(existing is handler for existing, _ in targets):
                logger.debug("Duplicate subscription for %s, skipping", event_type)
                return
            targets.append((handler, filter))

    def _dispatch_to_handlers(
        self,
        event: Event,
        handlers: list[tuple[EventHandler, EventFilter | None]],
    ) -> None:
        for handler, filt in handlers:
            try:
                if filt is not None and not filt(event):
                    continue
                handler(event)
            except Exception:
                logger.exception("Event handler %r failed for %s", handler, event.type.value)

    def publish(
        self,
        event_or_type: Event | EventType,
        data: dict[str, Any] | None = None,
        source: str = "",
    ) -> Event:
        """Record and dispatch an event.

        Accepts either a pre-built :class:`Event` or an :class:`EventType`
        plus its data.  Returns the published event.
        """
        if isinstance(event_or_type, EventType):
            event = Event(type=event_or_type, data=data or {}, source=source)
        else:
            event = event_or_type
        with self._lock:
            self._history.append(event)
            if len(self._history) > self._max_history:
                self._history = self._history[-self._max_history :]
            specific = list(self._handlers.get(event.type, []))
            wildcards = list(self._wildcard_handlers)

        # Call outside the lock to avoid deadlocks.
        self._dispatch_to_handlers(event, specific + wildcards)
        return event

    def recent_events(
        self,
        event_type: EventType | None = None,
        limit: int = 50,
    ) -> list[Event]:
        """Return recent events, newest first."""
        with self._lock:
            events = list(self._history)
        if event_type is not None:
            events = [e for e in events if e.type == event_type]
        events.reverse()
        return events[:limit]
