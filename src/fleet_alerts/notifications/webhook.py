"""
WebhookNotifier - delivers new alerts to an external HTTP endpoint.
"""
from datetime import datetime
from typing import Any, Dict, Optional

import httpx

from fleet_alerts.alerting.errors import NotificationError
from fleet_alerts.models.telemetry import Alert
from fleet_alerts.utils.logging_config import get_logger

logger = get_logger(__name__)


class WebhookNotifier:
    """
    Posts every accepted alert as JSON to a webhook URL.

    Delivery is attempted once; failures are counted and raised as
    NotificationError for the pipeline to log.
    """

    def __init__(
        self,
        url: str,
        timeout_seconds: float = 5.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        """
        Initialize the webhook notifier.

        Args:
            url: Endpoint receiving alert payloads
            timeout_seconds: HTTP request timeout in seconds
            client: Optional preconfigured client (tests use a mock transport)
        """
        self.url = url
        self.timeout_seconds = timeout_seconds
        self.client = client or httpx.AsyncClient(timeout=timeout_seconds)
        self._owns_client = client is None

        # Statistics tracking
        self.stats = {
            "sent": 0,
            "failed": 0,
            "start_time": datetime.now(),
        }

    @staticmethod
    def build_payload(alert: Alert) -> Dict[str, Any]:
        return {
            "event": "alert.created",
            "alert": alert.model_dump(mode="json"),
        }

    async def notify(self, alert: Alert) -> None:
        try:
            response = await self.client.post(
                self.url,
                json=self.build_payload(alert),
                headers={"Content-Type": "application/json"},
            )
            response.raise_for_status()

        except httpx.TimeoutException as e:
            self.stats["failed"] += 1
            raise NotificationError(f"Timeout while posting alert {alert.id} to {self.url}") from e

        except httpx.HTTPStatusError as e:
            self.stats["failed"] += 1
            raise NotificationError(
                f"Webhook returned HTTP {e.response.status_code} for alert {alert.id}"
            ) from e

        except httpx.HTTPError as e:
            self.stats["failed"] += 1
            raise NotificationError(f"Webhook delivery failed for alert {alert.id}: {e}") from e

        self.stats["sent"] += 1
        logger.debug(f"Alert {alert.id} delivered to {self.url}")

    def get_statistics(self) -> Dict[str, Any]:
        uptime = (datetime.now() - self.stats["start_time"]).total_seconds()
        attempts = self.stats["sent"] + self.stats["failed"]
        success_rate = (self.stats["sent"] / attempts) * 100 if attempts else 0.0
        return {
            "uptime_seconds": uptime,
            "sent": self.stats["sent"],
            "failed": self.stats["failed"],
            "success_rate_percent": round(success_rate, 2),
        }

    async def close(self) -> None:
        """Clean up HTTP client resources."""
        if self._owns_client:
            await self.client.aclose()
            logger.info("WebhookNotifier connection closed")

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
