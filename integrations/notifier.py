"""
Warden Notification Sink

Best-effort delivery of security notices (warnings, suspensions, admin
alerts). Delivery goes through an HTTP webhook, typically a mail relay;
without one configured, notices are only logged.

send() never raises: a failed notice is logged and dropped, it must not
block the request that triggered the escalation.
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, asdict
from typing import Optional

import requests


logger = logging.getLogger(__name__)


class NotificationError(Exception):
    """Raised by a transport when a notice could not be delivered."""
    pass


@dataclass(frozen=True)
class Notification:
    to: str
    subject: str
    body: str


class Notifier(ABC):

    def send(self, notification: Notification) -> bool:
        """Deliver one notice. Returns False (after logging) on failure."""
        if not notification.to:
            logger.warning(f"Notification without recipient dropped: {notification.subject}")
            return False
        try:
            self._deliver(notification)
        except Exception as e:
            logger.error(f"Notification to {notification.to} failed: {e}")
            return False
        return True

    @abstractmethod
    def _deliver(self, notification: Notification) -> None:
        ...


class LogNotifier(Notifier):
    """Used when no webhook is configured."""

    def _deliver(self, notification: Notification) -> None:
        logger.info(f"[MOCK EMAIL] To: {notification.to} | Subject: {notification.subject}")


class WebhookNotifier(Notifier):
    """POSTs {to, subject, body} as JSON, retrying with exponential backoff."""

    def __init__(
        self,
        url: str,
        timeout: float = 5.0,
        retries: int = 2,
        backoff: float = 0.5,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.url = url
        self.timeout = timeout
        self.retries = retries
        self.backoff = backoff
        self.session = session or requests.Session()

    def _deliver(self, notification: Notification) -> None:
        last_error: Optional[Exception] = None
        for attempt in range(self.retries + 1):
            try:
                response = self.session.post(
                    self.url,
                    json=asdict(notification),
                    timeout=self.timeout,
                )
                if response.status_code < 500:
                    response.raise_for_status()
                    logger.info(f"[EMAIL SENT] Security notice to {notification.to}")
                    return
                last_error = NotificationError(f"webhook returned {response.status_code}")
            except requests.HTTPError as e:
                # 4xx: the relay rejected the notice, retrying will not help
                raise NotificationError(str(e)) from e
            except requests.RequestException as e:
                last_error = e
            if attempt < self.retries:
                time.sleep(self.backoff * (2 ** attempt))
        raise NotificationError(f"giving up after {self.retries + 1} attempts: {last_error}")
