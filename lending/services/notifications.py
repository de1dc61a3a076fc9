"""Notification sinks.

The ledger publishes events such as ``book_added`` or ``request_resolved``
after a transition has been committed. Sinks are fire-and-forget: they must
return quickly and the ledger ignores (but logs) anything they raise.
"""
import logging
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from lending.config import settings
from lending.services.http_client import OptimizedHTTPClient

logger = logging.getLogger(__name__)


class NotificationSink:
    def publish(self, event: str, payload: Dict[str, Any]) -> None:
        raise NotImplementedError

    def close(self) -> None:
        return None


class NullNotificationSink(NotificationSink):
    def publish(self, event: str, payload: Dict[str, Any]) -> None:
        return None


class LoggingNotificationSink(NotificationSink):
    """Writes every event to the application log."""

    def publish(self, event: str, payload: Dict[str, Any]) -> None:
        logger.info(f"Notification {event}: {payload}")


class WebhookNotificationSink(NotificationSink):
    """POSTs events as JSON to a webhook from a small background pool."""

    def __init__(self, url: str, client: Optional[OptimizedHTTPClient] = None,
                 max_workers: int = 2, retries: int = 2) -> None:
        self.url = url
        self.retries = retries
        self._client = client or OptimizedHTTPClient(timeout=settings.notification_timeout)
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="notify")

    def publish(self, event: str, payload: Dict[str, Any]) -> Future:
        message = {
            "event": event,
            "payload": payload,
            "sent_at": datetime.now(timezone.utc).isoformat(),
        }
        return self._executor.submit(self._deliver, message)

    def _deliver(self, message: Dict[str, Any]) -> bool:
        try:
            response = self._client.post_with_retry(self.url, retries=self.retries, json=message)
        except Exception as e:
            logger.warning(f"Webhook delivery of {message['event']} failed: {e}")
            return False
        if response is None:
            return False
        if response.status_code >= 400:
            logger.warning(f"Webhook rejected {message['event']}: {response.status_code}")
            return False
        logger.debug(f"Webhook delivered {message['event']}")
        return True

    def close(self) -> None:
        self._executor.shutdown(wait=True)
        self._client.close()


def build_notification_sink(webhook_url: Optional[str] = None) -> NotificationSink:
    """Webhook sink when a URL is configured, logging sink otherwise."""
    url = webhook_url if webhook_url is not None else settings.notification_webhook_url
    if url:
        return WebhookNotificationSink(url)
    return LoggingNotificationSink()
