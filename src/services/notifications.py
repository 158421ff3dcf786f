from __future__ import annotations

import logging
import threading
from typing import Callable, Protocol

import requests

from domain.custody import CustodyChangeEvent

logger = logging.getLogger(__name__)

ChangeCallback = Callable[[CustodyChangeEvent], None]


class NotificationDeliveryError(RuntimeError):
    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ChangeNotifier(Protocol):
    def publish(self, event: CustodyChangeEvent) -> None: ...


class LoggingChangeNotifier(ChangeNotifier):
    def publish(self, event: CustodyChangeEvent) -> None:
        logger.info("Custody change: asset=%s kind=%s at=%s", event.asset_id, event.kind, event.occurred_at.isoformat())


class InMemoryChangeBroker(ChangeNotifier):
    """Fans events out to in-process subscribers, in subscription order."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscribers: list[ChangeCallback] = []

    def subscribe(self, callback: ChangeCallback) -> Callable[[], None]:
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def publish(self, event: CustodyChangeEvent) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for callback in subscribers:
            callback(event)


class WebhookChangeNotifier(ChangeNotifier):
    """POSTs each change event as JSON to a fixed URL."""

    def __init__(
        self,
        *,
        url: str,
        timeout: float = 5.0,
        session: requests.Session | None = None,
    ) -> None:
        if not url:
            msg = "url must be provided"
            raise ValueError(msg)

        self.url = url
        self.timeout = timeout
        self._session = session or requests.Session()

    def publish(self, event: CustodyChangeEvent) -> None:
        try:
            response = self._session.request(
                "POST",
                self.url,
                json=event.model_dump(mode="json"),
                timeout=self.timeout,
            )
            response.raise_for_status()
        except requests.HTTPError as exc:
            status_code = getattr(exc.response, "status_code", None)
            raise NotificationDeliveryError(
                f"Webhook {self.url} rejected event with HTTP {status_code}", status_code=status_code
            ) from exc
        except requests.RequestException as exc:
            raise NotificationDeliveryError(f"Webhook request to {self.url} failed") from exc


def build_notifier(webhook_url: str | None, *, timeout: float = 5.0) -> ChangeNotifier:
    if webhook_url:
        return WebhookChangeNotifier(url=webhook_url, timeout=timeout)
    return LoggingChangeNotifier()


__all__ = [
    "ChangeNotifier",
    "InMemoryChangeBroker",
    "LoggingChangeNotifier",
    "NotificationDeliveryError",
    "WebhookChangeNotifier",
    "build_notifier",
]
