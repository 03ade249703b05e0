"""
Warden Integrations

Outbound collaborators: notification delivery and signed content URLs.
"""

from .content import ContentSigner, SignedUrl
from .notifier import (
    LogNotifier,
    Notification,
    NotificationError,
    Notifier,
    WebhookNotifier,
)

__all__ = [
    "ContentSigner",
    "SignedUrl",
    "Notifier",
    "LogNotifier",
    "WebhookNotifier",
    "Notification",
    "NotificationError",
]
