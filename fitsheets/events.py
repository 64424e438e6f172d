"""Session-scoped change notifications.

Writers publish an :class:`Event` after a successful change; observers
subscribe and re-query whatever they display.  Events carry no payload beyond
their name.  :meth:`EventBus.subscribe` returns a :class:`Subscription` handle
that the owner cancels on teardown.
"""
from __future__ import annotations

import logging
import threading
from enum import Enum
from typing import Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

Listener = Callable[["Event"], None]


class Event(Enum):
    PROFILE_UPDATED = "profileUpdated"
    WEIGHT_ADDED = "weightAdded"
    PERMISSIONS_UPDATED = "permissionsUpdated"
    SPREADSHEET_SWITCHED = "spreadsheetSwitched"
    DATABASE_INITIALIZED = "databaseInitialized"


class Subscription:
    """Handle returned by :meth:`EventBus.subscribe`."""

    def __init__(self, bus: "EventBus", event: Event, listener: Listener) -> None:
        self._bus: Optional[EventBus] = bus
        self.event = event
        self.listener = listener

    @property
    def active(self) -> bool:
        return self._bus is not None

    def cancel(self) -> None:
        bus, self._bus = self._bus, None
        if bus is not None:
            bus._remove(self)

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc_info) -> None:
        self.cancel()


class EventBus:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscriptions: Dict[Event, List[Subscription]] = {}

    def subscribe(self, event: Event, listener: Listener) -> Subscription:
        if not callable(listener):
            raise TypeError("listener must be callable")
        subscription = Subscription(self, event, listener)
        with self._lock:
            self._subscriptions.setdefault(event, []).append(subscription)
        return subscription

    def _remove(self, subscription: Subscription) -> None:
        with self._lock:
            listeners = self._subscriptions.get(subscription.event, [])
            if subscription in listeners:
                listeners.remove(subscription)

    def subscriber_count(self, event: Event) -> int:
        with self._lock:
            return len(self._subscriptions.get(event, []))

    def publish(self, event: Event) -> None:
        with self._lock:
            subscriptions = list(self._subscriptions.get(event, []))
        logger.debug("Publishing %s to %d subscriber(s)", event.value, len(subscriptions))
        for subscription in subscriptions:
            try:
                subscription.listener(event)
            except Exception:
                logger.exception("Listener for %s raised an exception", event.value)

    def clear(self) -> None:
        with self._lock:
            subscriptions = [sub for subs in self._subscriptions.values() for sub in subs]
            self._subscriptions.clear()
        for subscription in subscriptions:
            subscription._bus = None


__all__ = ["Event", "EventBus", "Listener", "Subscription"]
