"""
In-process realtime change feed.

Delivers database change notifications ({event_type, table, row}) to
subscribers registered per table, the way a hosted database's realtime
channel does.
"""
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List

from fleet_alerts.utils.logging_config import get_logger

logger = get_logger(__name__)

INSERT = "INSERT"
UPDATE = "UPDATE"
DELETE = "DELETE"


@dataclass(frozen=True)
class ChangeEvent:
    event_type: str
    table: str
    row: Dict[str, Any] = field(default_factory=dict)


ChangeCallback = Callable[[ChangeEvent], None]


class Subscription:
    """Handle returned by ChangeFeed.subscribe()."""

    def __init__(self, feed: "ChangeFeed", table: str, callback: ChangeCallback):
        self.feed = feed
        self.table = table
        self.callback = callback
        self.active = True

    def unsubscribe(self) -> None:
        if self.active:
            self.feed._remove(self)
            self.active = False


class ChangeFeed:
    """Synchronous publish/subscribe of change events, in publish order."""

    def __init__(self):
        self._subscriptions: Dict[str, List[Subscription]] = {}
        self.stats = {"published": 0, "delivered": 0, "callback_errors": 0}

    def subscribe(self, table: str, callback: ChangeCallback) -> Subscription:
        subscription = Subscription(self, table, callback)
        self._subscriptions.setdefault(table, []).append(subscription)
        logger.debug(f"Subscribed to changes on {table}")
        return subscription

    def _remove(self, subscription: Subscription) -> None:
        subscribers = self._subscriptions.get(subscription.table, [])
        if subscription in subscribers:
            subscribers.remove(subscription)
        if not subscribers:
            self._subscriptions.pop(subscription.table, None)
        logger.debug(f"Unsubscribed from changes on {subscription.table}")

    def subscriber_count(self, table: str) -> int:
        return len(self._subscriptions.get(table, []))

    def publish(self, event: ChangeEvent) -> int:
        """
        Deliver an event to every subscriber of its table.

        Returns:
            Number of subscribers that received the event
        """
        self.stats["published"] += 1
        delivered = 0
        for subscription in list(self._subscriptions.get(event.table, [])):
            try:
                subscription.callback(event)
                delivered += 1
            except Exception as e:
                self.stats["callback_errors"] += 1
                logger.error(f"Change feed subscriber failed on {event.table} {event.event_type}: {e}")
        self.stats["delivered"] += delivered
        return delivered
