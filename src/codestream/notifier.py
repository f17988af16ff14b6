"""Fan-out of session events to connected observers."""

from __future__ import annotations

import logging
import threading
from typing import AsyncIterator, Callable, Iterable, List, Optional, Set

from .events import BaseEvent
from .multiplexer import BoundedEventQueue


logger = logging.getLogger("codestream.notifier")


# Type alias for subscription filters
EventPredicate = Callable[[BaseEvent], bool]


def all_events(event: BaseEvent) -> bool:
    """Broadcast predicate: every event of every session."""
    return True


def for_session(session_id: str) -> EventPredicate:
    """Predicate matching the events of a single session."""

    def _matches(event: BaseEvent) -> bool:
        return event.session_id == session_id

    return _matches


def for_sessions(session_ids: Set[str]) -> EventPredicate:
    """Predicate matching any session in ``session_ids``.

    The set is read on every event, so callers can add sessions after
    subscribing.
    """

    def _matches(event: BaseEvent) -> bool:
        return event.session_id in session_ids

    return _matches


class Subscription:
    """An observer's view of the event stream.

    Events published before the subscription was created are not replayed.
    A slow observer loses its oldest output events (and receives an
    ``overflow`` event instead); it never slows down the publisher.
    """

    def __init__(self, notifier: "Notifier", predicate: EventPredicate, maxsize: int) -> None:
        self.predicate = predicate
        self.queue = BoundedEventQueue(maxsize)
        self._notifier = notifier

    @property
    def active(self) -> bool:
        return not self.queue.closed

    def matches(self, event: BaseEvent) -> bool:
        try:
            return bool(self.predicate(event))
        except Exception as e:
            logger.error(f"Error in subscription predicate: {e}")
            return False

    async def get(self) -> Optional[BaseEvent]:
        """Next event, or ``None`` after :meth:`unsubscribe`."""
        return await self.queue.get()

    def unsubscribe(self) -> None:
        self._notifier.unsubscribe(self)

    def __aiter__(self) -> AsyncIterator[BaseEvent]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[BaseEvent]:
        while True:
            event = await self.queue.get()
            if event is None:
                return
            yield event


class Notifier:
    """Predicate based pub/sub for session events."""

    def __init__(self, max_queue_size: int = 1024) -> None:
        """Initialize the notifier.

        Args:
            max_queue_size: Default per-subscription queue capacity.
        """
        self.max_queue_size = max_queue_size
        self._subscriptions: List[Subscription] = []
        self._lock = threading.Lock()

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscriptions)

    def subscribe(
        self,
        predicate: EventPredicate = all_events,
        maxsize: Optional[int] = None,
    ) -> Subscription:
        subscription = Subscription(self, predicate, maxsize or self.max_queue_size)
        with self._lock:
            self._subscriptions.append(subscription)
        logger.debug("Added subscription; %d active", len(self._subscriptions))
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        """Stop delivery to ``subscription``.  Safe to call repeatedly."""
        with self._lock:
            try:
                self._subscriptions.remove(subscription)
            except ValueError:
                pass
        subscription.queue.close()

    def publish(self, event: BaseEvent) -> int:
        """Deliver ``event`` to every matching subscription without blocking.

        Returns the number of subscriptions the event was queued for.
        """
        with self._lock:
            subscriptions = list(self._subscriptions)
        delivered = 0
        for subscription in subscriptions:
            if subscription.matches(event):
                subscription.queue.put_nowait(event)
                delivered += 1
        return delivered

    def close(self, subscriptions: Iterable[Subscription] | None = None) -> None:
        """Unsubscribe the given subscriptions, or all of them."""
        with self._lock:
            targets = list(self._subscriptions if subscriptions is None else subscriptions)
        for subscription in targets:
            self.unsubscribe(subscription)
