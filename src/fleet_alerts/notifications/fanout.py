"""
In-process notification fan-out for newly raised alerts.
"""
import inspect
from typing import Awaitable, Callable, List, Sequence, Union

from fleet_alerts.alerting.errors import NotificationError
from fleet_alerts.alerting.interfaces import Notifier
from fleet_alerts.models.telemetry import Alert, Severity
from fleet_alerts.utils.logging_config import get_logger

logger = get_logger(__name__)

AlertCallback = Callable[[Alert], Union[None, Awaitable[None]]]


class NotificationFanout:
    """
    Delivers each alert to every registered subscriber.

    Subscribers may be plain callables, coroutine functions or Notifier
    objects. One failing subscriber never stops delivery to the rest.
    """

    def __init__(self, subscribers: Sequence[Union[AlertCallback, Notifier]] = ()):
        self._subscribers: List[AlertCallback] = []
        for subscriber in subscribers:
            self.subscribe(subscriber)

    def subscribe(self, subscriber: Union[AlertCallback, Notifier]) -> Callable[[], None]:
        """Register a subscriber and return a function that removes it again."""
        callback = subscriber.notify if hasattr(subscriber, "notify") else subscriber
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def __len__(self) -> int:
        return len(self._subscribers)

    async def notify(self, alert: Alert) -> None:
        failures = 0
        for callback in list(self._subscribers):
            try:
                result = callback(alert)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                failures += 1
                logger.warning(f"Alert subscriber {getattr(callback, '__qualname__', callback)} failed: {e}")

        if failures:
            raise NotificationError(f"{failures} of {len(self._subscribers)} subscribers failed for alert {alert.id}")


class LoggingNotifier:
    """Logs each new alert the way the dashboard toasts it."""

    async def notify(self, alert: Alert) -> None:
        log = logger.error if alert.severity == Severity.CRITICAL else logger.warning
        log(f"New Alert: {alert.type.value} - {alert.description} (vehicle {alert.vehicle_id})")
