"""Category-keyed publish/subscribe dispatch.

DispatchBus decouples producers (the connection manager, host lifecycle
signals) from consumers. Consumers register callbacks per category:

    bus = DispatchBus()
    sub = bus.subscribe("inventory_changed", refresh_stock_row)
    ...
    sub.cancel()

Or with the decorator form:

    @bus.on("price_response")
    def show_price(payload):
        ...

Delivery is synchronous, in registration order, over a snapshot of the
subscriber list taken when ``publish`` starts. A callback that raises is
logged and skipped; the remaining callbacks still receive the payload.
"""

from __future__ import annotations

from typing import Any, Callable, Optional

import structlog

logger = structlog.get_logger()

Callback = Callable[[Any], None]

# Lifecycle categories published by the connection manager.
CONNECTED = "connected"
DISCONNECTED = "disconnected"
TERMINAL_ASSIGNED = "terminal_assigned"
ERROR = "error"
MAX_RECONNECT_ATTEMPTS_REACHED = "max_reconnect_attempts_reached"
RECONNECT_SCHEDULED = "reconnect_scheduled"
UNKNOWN_MESSAGE = "unknown_message"


class Subscription:
    """Handle returned by ``DispatchBus.subscribe``; ``cancel()`` deregisters."""

    __slots__ = ("_bus", "category", "callback")

    def __init__(self, bus: "DispatchBus", category: str, callback: Callback):
        self._bus = bus
        self.category = category
        self.callback = callback

    @property
    def active(self) -> bool:
        return self._bus.is_subscribed(self.category, self.callback)

    def cancel(self) -> None:
        self._bus.unsubscribe(self.category, self.callback)

    def __call__(self) -> None:
        self.cancel()

    def __repr__(self) -> str:
        return f"Subscription(category={self.category!r}, callback={self.callback!r})"


class DispatchBus:
    """Many-to-many registry of callbacks keyed by category."""

    def __init__(self, name: str = "terminal"):
        self.name = name
        self._subscribers: dict[str, list[Callback]] = {}

    def subscribe(self, category: str, callback: Callback) -> Subscription:
        """Register a callback for a category.

        Registering the same callback twice on one category is a no-op.
        """
        if not callable(callback):
            raise TypeError(f"subscriber for '{category}' must be callable")
        callbacks = self._subscribers.setdefault(category, [])
        if callback not in callbacks:
            callbacks.append(callback)
        return Subscription(self, category, callback)

    def unsubscribe(self, category: str, callback: Callback) -> None:
        """Remove a callback; unknown categories or callbacks are ignored."""
        callbacks = self._subscribers.get(category)
        if not callbacks:
            return
        try:
            callbacks.remove(callback)
        except ValueError:
            return
        if not callbacks:
            del self._subscribers[category]

    def on(self, category: str) -> Callable[[Callback], Callback]:
        """Decorator form of ``subscribe`` that returns the function unchanged."""

        def decorator(func: Callback) -> Callback:
            self.subscribe(category, func)
            return func

        return decorator

    def publish(self, category: str, payload: Any = None) -> int:
        """Deliver a payload to every subscriber of the category.

        Returns:
            The number of callbacks that completed without raising.
        """
        delivered = 0
        for callback in tuple(self._subscribers.get(category, ())):
            try:
                callback(payload)
            except Exception:
                logger.exception(
                    "subscriber_failed",
                    bus=self.name,
                    category=category,
                    callback=getattr(callback, "__qualname__", repr(callback)),
                )
                continue
            delivered += 1
        return delivered

    def is_subscribed(self, category: str, callback: Callback) -> bool:
        return callback in self._subscribers.get(category, ())

    def subscribers(self, category: str) -> tuple[Callback, ...]:
        """Return the current callbacks for a category, in delivery order."""
        return tuple(self._subscribers.get(category, ()))

    def categories(self) -> tuple[str, ...]:
        return tuple(self._subscribers)

    def clear(self, category: Optional[str] = None) -> None:
        """Drop every subscriber, or only those of one category."""
        if category is None:
            self._subscribers.clear()
        else:
            self._subscribers.pop(category, None)
