"""
Warden Content Delivery

Mints time-limited signed URLs for stored document objects. The signature
covers the object id and the expiry, so a URL cannot be extended or
pointed at another object. Callers must pass the rate limiter first.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from urllib.parse import quote, urlencode


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SignedUrl:
    url: str
    generated_at: datetime
    expires_at: datetime


class ContentSigner:

    def __init__(self, base_url: str, secret: str, ttl_seconds: int = 300) -> None:
        if not secret:
            raise ValueError("content signing secret is required")
        self.base_url = base_url.rstrip("/")
        self._secret = secret.encode("utf-8")
        self.ttl_seconds = ttl_seconds

    def _signature(self, object_id: str, expires: int) -> str:
        message = f"{object_id}:{expires}".encode("utf-8")
        return hmac.new(self._secret, message, hashlib.sha256).hexdigest()

    def sign(self, object_id: str, now: float) -> SignedUrl:
        generated_at = datetime.fromtimestamp(now, tz=timezone.utc)
        expires_at = generated_at + timedelta(seconds=self.ttl_seconds)
        expires = int(expires_at.timestamp())
        query = urlencode({"expires": expires, "signature": self._signature(object_id, expires)})
        url = f"{self.base_url}/{quote(object_id, safe='/')}?{query}"
        logger.debug(f"Signed URL generated for {object_id}")
        return SignedUrl(url=url, generated_at=generated_at, expires_at=expires_at)

    def verify(self, object_id: str, expires: int, signature: str, now: float) -> bool:
        if now > expires:
            return False
        return hmac.compare_digest(self._signature(object_id, expires), signature)
