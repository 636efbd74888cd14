"""
In-process change feed keyed by definition id.

Internal consumers (count caches, background summarizers) subscribe to a
definition id, or to ``ALL`` for every definition, and are called
synchronously after a mutation commits. Nothing is persisted and nothing
is pushed over the network; clients still poll.

Usage:
    from app.services.change_feed import change_feed

    sub = change_feed.subscribe(definition_id, handler)
    change_feed.publish(ChangeEvent(definition_id, "comment.created", {...}))
    change_feed.unsubscribe(sub)
"""

from __future__ import annotations

import logging
import threading
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

ALL = "*"

EVENT_KINDS = {
    "comment.created",
    "comment.updated",
    "comment.deleted",
    "follow_up.created",
    "follow_up.updated",
    "follow_up.deleted",
}


@dataclass(frozen=True)
class ChangeEvent:
    definition_id: str
    kind: str
    payload: dict = field(default_factory=dict)


@dataclass(frozen=True)
class Subscription:
    id: str
    definition_id: str
    handler: Callable[[ChangeEvent], None]


class ChangeFeed:
    """Thread-safe publish/subscribe registry.

    Handlers run on the publishing thread, outside the lock. A failing
    handler is logged and does not stop delivery to the others.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscriptions: dict[str, dict[str, Subscription]] = {}

    def subscribe(self, definition_id: str, handler: Callable[[ChangeEvent], None]) -> Subscription:
        sub = Subscription(id=f"sub_{uuid.uuid4().hex[:12]}", definition_id=definition_id, handler=handler)
        with self._lock:
            self._subscriptions.setdefault(definition_id, {})[sub.id] = sub
        return sub

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            bucket = self._subscriptions.get(subscription.definition_id)
            if bucket is None:
                return
            bucket.pop(subscription.id, None)
            if not bucket:
                del self._subscriptions[subscription.definition_id]

    def publish(self, event: ChangeEvent) -> int:
        """Deliver to subscribers of the event's definition and of ALL.

        Returns the number of handlers that completed without error.
        """
        if event.kind not in EVENT_KINDS:
            raise ValueError(f"Unknown change event kind: {event.kind!r}")
        with self._lock:
            targets = list(self._subscriptions.get(event.definition_id, {}).values())
            if event.definition_id != ALL:
                targets += list(self._subscriptions.get(ALL, {}).values())

        delivered = 0
        for sub in targets:
            try:
                sub.handler(event)
                delivered += 1
            except Exception:
                logger.exception(
                    "Change feed handler failed: %s", event.kind,
                    extra={"definition_id": event.definition_id},
                )
        return delivered

    def subscription_count(self, definition_id: str | None = None) -> int:
        with self._lock:
            if definition_id is not None:
                return len(self._subscriptions.get(definition_id, {}))
            return sum(len(b) for b in self._subscriptions.values())

    def clear(self) -> None:
        with self._lock:
            self._subscriptions.clear()


change_feed = ChangeFeed()


def notify(definition_id, kind: str, **payload) -> int:
    """Publish on the module feed; events without a definition are dropped."""
    if not definition_id:
        return 0
    return change_feed.publish(ChangeEvent(definition_id, kind, payload))
