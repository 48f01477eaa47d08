"""In-process live feed.

Every service write publishes the collection it touched. Views subscribe to
the collections they render, re-read on change, and cancel their
subscriptions when they are torn down.
"""

from __future__ import annotations

import itertools
import logging
import threading
from typing import Any, Callable, Dict, List

_logger = logging.getLogger(__name__)

Callback = Callable[[Dict[str, Any]], None]


class Subscription:
    def __init__(self, feed: "LiveFeed", collection: str, key: int) -> None:
        self.collection = collection
        self._feed = feed
        self._key = key
        self.active = True

    def cancel(self) -> None:
        if not self.active:
            return
        self.active = False
        self._feed._remove(self.collection, self._key)

    def __repr__(self) -> str:
        state = "active" if self.active else "cancelled"
        return f"<Subscription {self.collection} #{self._key} {state}>"


class LiveFeed:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counter = itertools.count(1)
        self._subscribers: Dict[str, Dict[int, Callback]] = {}

    def subscribe(self, collection: str, callback: Callback) -> Subscription:
        with self._lock:
            key = next(self._counter)
            self._subscribers.setdefault(collection, {})[key] = callback
        return Subscription(self, collection, key)

    def _remove(self, collection: str, key: int) -> None:
        with self._lock:
            callbacks = self._subscribers.get(collection)
            if callbacks is None:
                return
            callbacks.pop(key, None)
            if not callbacks:
                del self._subscribers[collection]

    def subscriber_count(self, collection: str | None = None) -> int:
        with self._lock:
            if collection is not None:
                return len(self._subscribers.get(collection, {}))
            return sum(len(callbacks) for callbacks in self._subscribers.values())

    def publish(self, collection: str, **details: Any) -> int:
        """Notify subscribers of ``collection``; returns how many were called."""
        with self._lock:
            callbacks = list(self._subscribers.get(collection, {}).values())
        change = {"collection": collection, **details}
        for callback in callbacks:
            try:
                callback(change)
            except Exception:
                _logger.exception("Live subscriber for %s failed", collection)
        return len(callbacks)


class SubscriptionGroup:
    """Subscriptions that end together (a view, a modal)."""

    def __init__(self, feed: LiveFeed) -> None:
        self.feed = feed
        self._subscriptions: List[Subscription] = []

    def subscribe(self, collection: str, callback: Callback) -> Subscription:
        subscription = self.feed.subscribe(collection, callback)
        self._subscriptions.append(subscription)
        return subscription

    def cancel(self) -> None:
        subscriptions, self._subscriptions = self._subscriptions, []
        for subscription in subscriptions:
            subscription.cancel()

    def __len__(self) -> int:
        return sum(1 for subscription in self._subscriptions if subscription.active)


feed = LiveFeed()
