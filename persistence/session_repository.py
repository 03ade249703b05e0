"""
Warden Shared Session Repository

Redis-backed Session Registry and Rate Limiter for multi-instance
deployments. Same contracts as the in-memory versions; every
read-modify-write runs as an optimistic WATCH/MULTI/EXEC transaction and
key TTLs replace the background reaper.

Key Schemas:
    VIEW_SESSION:{user_id}   → SessionRecord JSON (TTL = reap threshold)
    MINT_RATE:{user_id}      → RateLimitCounter JSON (TTL = 2 × window)
"""

from __future__ import annotations

import json
import logging
import math
from dataclasses import asdict
from typing import List, Optional

import redis
from redis.exceptions import RedisError, WatchError

from core.config import ConflictPolicy
from core.rate_limiter import RateLimitCounter, RateLimiter
from core.session_registry import (
    HeartbeatOutcome,
    HeartbeatResult,
    SessionRecord,
    SessionRegistry,
    SessionStatus,
)


logger = logging.getLogger(__name__)


class SessionStoreUnavailable(Exception):
    """Raised when Redis cannot complete a session transaction."""
    pass


# =============================================================================
# Session Registry
# =============================================================================

class RedisSessionRegistry(SessionRegistry):
    """
    Session registry over Redis.

    Two instances heartbeating for the same user race on the WATCHed key;
    the loser retries against the winner's record, so the staleness rule,
    not arrival order, picks the surviving session.
    """

    MAX_RETRIES: int = 5

    def __init__(
        self,
        client: redis.Redis,
        stale_after: float = 120.0,
        reap_after: float = 300.0,
        conflict_policy: ConflictPolicy = ConflictPolicy.EXISTING_WINS,
    ) -> None:
        super().__init__(stale_after, reap_after, conflict_policy)
        self.client = client
        self.ttl = max(1, int(math.ceil(reap_after)))

    def _key(self, user_id: str) -> str:
        return f"VIEW_SESSION:{user_id}"

    @staticmethod
    def _decode(raw: Optional[str]) -> Optional[SessionRecord]:
        if raw is None:
            return None
        try:
            return SessionRecord(**json.loads(raw))
        except (TypeError, ValueError) as e:
            logger.error(f"Discarding corrupt session record: {e}")
            return None

    def heartbeat(
        self,
        user_id: str,
        session_id: str,
        document_id: Optional[str],
        client_agent: Optional[str],
        client_address: Optional[str],
        now: float,
    ) -> HeartbeatResult:
        key = self._key(user_id)

        for attempt in range(self.MAX_RETRIES):
            try:
                pipe = self.client.pipeline(True)
                pipe.watch(key)

                existing = self._decode(pipe.get(key))
                result = self.resolve_heartbeat(existing, session_id, now)

                if result.outcome == HeartbeatOutcome.CONFLICT:
                    pipe.reset()
                    logger.warning(f"User {user_id} has an active session on another device")
                    return result

                if result.outcome == HeartbeatOutcome.REFRESHED:
                    record = existing
                    record.last_heartbeat_at = now
                    record.document_id = document_id or record.document_id
                    record.client_agent = client_agent or record.client_agent
                    record.client_address = client_address or record.client_address
                else:
                    record = SessionRecord(
                        session_id=session_id,
                        document_id=document_id,
                        last_heartbeat_at=now,
                        client_agent=client_agent,
                        client_address=client_address,
                    )

                pipe.multi()
                pipe.setex(key, self.ttl, json.dumps(asdict(record)))
                pipe.execute()
                return result

            except WatchError:
                logger.debug(f"Watch conflict on heartbeat for {user_id}, attempt {attempt + 1}")
                continue
            except RedisError as e:
                logger.error(f"Redis error on heartbeat for {user_id}: {e}")
                raise SessionStoreUnavailable(str(e)) from e

        raise SessionStoreUnavailable(f"Max retries exceeded for heartbeat {user_id}")

    def check_session(self, user_id: str, session_id: str, now: float) -> SessionStatus:
        try:
            existing = self._decode(self.client.get(self._key(user_id)))
        except RedisError as e:
            raise SessionStoreUnavailable(str(e)) from e
        return self.resolve_check(existing, session_id, now)

    def end_session(self, user_id: str, session_id: str) -> bool:
        key = self._key(user_id)
        for attempt in range(self.MAX_RETRIES):
            try:
                pipe = self.client.pipeline(True)
                pipe.watch(key)
                existing = self._decode(pipe.get(key))
                if existing is None or existing.session_id != session_id:
                    pipe.reset()
                    return False
                pipe.multi()
                pipe.delete(key)
                pipe.execute()
                logger.info(f"Session ended for user {user_id}")
                return True
            except WatchError:
                continue
            except RedisError as e:
                raise SessionStoreUnavailable(str(e)) from e
        raise SessionStoreUnavailable(f"Max retries exceeded for end_session {user_id}")

    def terminate(self, user_id: str) -> bool:
        # A single DEL is atomic against any in-flight heartbeat transaction:
        # the heartbeat's EXEC fails on the WATCHed key and retries from ABSENT.
        try:
            removed = self.client.delete(self._key(user_id)) > 0
        except RedisError as e:
            raise SessionStoreUnavailable(str(e)) from e
        if removed:
            logger.info(f"Session terminated for user {user_id}")
        return removed

    def reap(self, now: float) -> List[str]:
        # Expiry is handled by key TTLs
        return []

    def get(self, user_id: str) -> Optional[SessionRecord]:
        try:
            return self._decode(self.client.get(self._key(user_id)))
        except RedisError as e:
            raise SessionStoreUnavailable(str(e)) from e


# =============================================================================
# Rate Limiter
# =============================================================================

class RedisRateLimiter(RateLimiter):
    """Fixed-window limiter shared across instances. Fails open on Redis errors."""

    MAX_RETRIES: int = 5

    def __init__(self, client: redis.Redis, window: float = 60.0, max_per_window: int = 30) -> None:
        super().__init__(window, max_per_window)
        self.client = client
        self.ttl = max(1, int(math.ceil(2 * window)))  # Auto-cleanup

    def _key(self, user_id: str) -> str:
        return f"MINT_RATE:{user_id}"

    def allow(self, user_id: str, now: float) -> bool:
        key = self._key(user_id)

        for attempt in range(self.MAX_RETRIES):
            try:
                pipe = self.client.pipeline(True)
                pipe.watch(key)

                raw = pipe.get(key)
                counter = RateLimitCounter(**json.loads(raw)) if raw else None

                if counter is None or now - counter.window_start >= self.window:
                    counter = RateLimitCounter(count=1, window_start=now)
                elif counter.count <= self.max_per_window:
                    counter.count += 1
                else:
                    pipe.reset()
                    return False

                pipe.multi()
                pipe.setex(key, self.ttl, json.dumps(asdict(counter)))
                pipe.execute()
                return counter.count <= self.max_per_window

            except WatchError:
                logger.debug(f"Watch conflict on rate limit for {user_id}, attempt {attempt + 1}")
                continue
            except (RedisError, TypeError, ValueError) as e:
                logger.warning(f"Rate limit check failed: {e}")
                return True  # Fail open

        logger.warning(f"Max retries exceeded for rate limit {user_id}")
        return True
