"""
Live point-total subscriptions.

Publishing never blocks: totals are pushed onto each subscriber's own queue
and consumed whenever the subscriber iterates. Cancelling a subscription
detaches it from the hub immediately; nothing is delivered afterwards.
"""

import logging
import queue
import threading
from typing import Iterator, Optional

logger = logging.getLogger(__name__)

_CLOSED = object()


class PointsSubscription:
    def __init__(self, hub: "PointsWatchHub", user_id: str):
        self.user_id = user_id
        self._hub = hub
        self._queue: queue.SimpleQueue = queue.SimpleQueue()
        self._cancelled = threading.Event()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def _deliver(self, total: int) -> None:
        if not self._cancelled.is_set():
            self._queue.put_nowait(total)

    def get(self, timeout: Optional[float] = None) -> Optional[int]:
        """Next total, or None once cancelled or when ``timeout`` elapses."""
        if self._cancelled.is_set():
            return None
        try:
            item = self._queue.get(timeout=timeout)
        except queue.Empty:
            return None
        if item is _CLOSED or self._cancelled.is_set():
            return None
        return item

    def cancel(self) -> None:
        if self._cancelled.is_set():
            return
        self._cancelled.set()
        self._hub._detach(self)
        self._queue.put_nowait(_CLOSED)

    def __iter__(self) -> Iterator[int]:
        while True:
            total = self.get()
            if total is None:
                return
            yield total

    def __enter__(self) -> "PointsSubscription":
        return self

    def __exit__(self, *exc) -> None:
        self.cancel()


class PointsWatchHub:
    def __init__(self):
        self._subscribers: dict[str, list[PointsSubscription]] = {}
        self._lock = threading.Lock()

    def subscribe(self, user_id: str, initial: Optional[int] = None) -> PointsSubscription:
        subscription = PointsSubscription(self, user_id)
        with self._lock:
            self._subscribers.setdefault(user_id, []).append(subscription)
        if initial is not None:
            subscription._deliver(initial)
        return subscription

    def publish(self, user_id: str, total: int) -> None:
        with self._lock:
            subscribers = list(self._subscribers.get(user_id, ()))
        for subscription in subscribers:
            subscription._deliver(total)
        logger.debug("Published total %s for user %s to %d watcher(s)", total, user_id, len(subscribers))

    def subscriber_count(self, user_id: str) -> int:
        with self._lock:
            return len(self._subscribers.get(user_id, ()))

    def _detach(self, subscription: PointsSubscription) -> None:
        with self._lock:
            subscribers = self._subscribers.get(subscription.user_id, [])
            if subscription in subscribers:
                subscribers.remove(subscription)
            if not subscribers:
                self._subscribers.pop(subscription.user_id, None)
