"""
Warden Session Registry

Thread-safe, in-memory "hot storage" enforcing a single active viewing
session per user. Every read-modify-write runs under one registry lock;
callers pass `now` so nothing inside the critical section reads a clock
or touches the network.

Usage:
    registry = InMemorySessionRegistry(stale_after=120, reap_after=300)
    result = registry.heartbeat("usr_1", "sess_a", "doc_9", "Mozilla/5.0", "10.0.0.1", now)
    if not result.valid:
        ...  # another fresh session owns this user
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from enum import Enum
from typing import Dict, List, Optional

from core.config import ConflictPolicy


logger = logging.getLogger(__name__)


# =============================================================================
# Data Models
# =============================================================================

@dataclass
class SessionRecord:
    """The single active viewing session of one user."""

    session_id: str
    """Opaque token minted client-side per viewing attempt."""

    document_id: Optional[str]
    """Document being viewed."""

    last_heartbeat_at: float
    """Unix timestamp (seconds) of the last accepted heartbeat."""

    client_agent: Optional[str] = None
    client_address: Optional[str] = None

    def age(self, now: float) -> float:
        return now - self.last_heartbeat_at


class HeartbeatOutcome(str, Enum):
    CREATED = "CREATED"
    REFRESHED = "REFRESHED"
    REPLACED = "REPLACED"        # previous session was stale
    TAKEN_OVER = "TAKEN_OVER"    # previous session was fresh, policy let the new one win
    CONFLICT = "CONFLICT"        # previous session was fresh and kept


@dataclass(frozen=True)
class HeartbeatResult:
    valid: bool
    outcome: HeartbeatOutcome
    existing_session_id: Optional[str] = None

    @property
    def conflicted(self) -> bool:
        """True when a fresh session of the same user was found."""
        return self.outcome in (HeartbeatOutcome.CONFLICT, HeartbeatOutcome.TAKEN_OVER)


class SessionStatus(str, Enum):
    CURRENT = "CURRENT"
    STALE = "STALE"
    ABSENT = "ABSENT"
    OTHER = "OTHER"

    @property
    def is_active(self) -> bool:
        return self is not SessionStatus.OTHER

    @property
    def message(self) -> str:
        return _STATUS_MESSAGES[self]


_STATUS_MESSAGES = {
    SessionStatus.CURRENT: "Current session",
    SessionStatus.STALE: "Session stale",
    SessionStatus.ABSENT: "No active session",
    SessionStatus.OTHER: "Different session active",
}


# =============================================================================
# Contract
# =============================================================================

class SessionRegistry(ABC):
    """At most one SessionRecord per user id at any instant."""

    def __init__(
        self,
        stale_after: float = 120.0,
        reap_after: float = 300.0,
        conflict_policy: ConflictPolicy = ConflictPolicy.EXISTING_WINS,
    ) -> None:
        self.stale_after = stale_after
        self.reap_after = reap_after
        self.conflict_policy = conflict_policy

    def is_stale(self, record: SessionRecord, now: float) -> bool:
        return record.age(now) > self.stale_after

    def resolve_heartbeat(
        self,
        existing: Optional[SessionRecord],
        session_id: str,
        now: float,
    ) -> HeartbeatResult:
        """
        Pure staleness rule shared by every backend.

        Decides the outcome of a heartbeat against the record currently
        stored for the user; the caller applies it while holding its lock.
        """
        if existing is None:
            return HeartbeatResult(valid=True, outcome=HeartbeatOutcome.CREATED)
        if existing.session_id == session_id:
            return HeartbeatResult(valid=True, outcome=HeartbeatOutcome.REFRESHED)
        if self.is_stale(existing, now):
            return HeartbeatResult(
                valid=True,
                outcome=HeartbeatOutcome.REPLACED,
                existing_session_id=existing.session_id,
            )
        if self.conflict_policy == ConflictPolicy.NEW_TAKES_OVER:
            return HeartbeatResult(
                valid=True,
                outcome=HeartbeatOutcome.TAKEN_OVER,
                existing_session_id=existing.session_id,
            )
        return HeartbeatResult(
            valid=False,
            outcome=HeartbeatOutcome.CONFLICT,
            existing_session_id=existing.session_id,
        )

    def resolve_check(
        self,
        existing: Optional[SessionRecord],
        session_id: str,
        now: float,
    ) -> SessionStatus:
        if existing is None:
            return SessionStatus.ABSENT
        if existing.session_id == session_id:
            return SessionStatus.CURRENT
        if self.is_stale(existing, now):
            return SessionStatus.STALE
        return SessionStatus.OTHER

    @abstractmethod
    def heartbeat(
        self,
        user_id: str,
        session_id: str,
        document_id: Optional[str],
        client_agent: Optional[str],
        client_address: Optional[str],
        now: float,
    ) -> HeartbeatResult:
        ...

    @abstractmethod
    def check_session(self, user_id: str, session_id: str, now: float) -> SessionStatus:
        ...

    @abstractmethod
    def end_session(self, user_id: str, session_id: str) -> bool:
        """Remove the record only if `session_id` is the stored one."""

    @abstractmethod
    def terminate(self, user_id: str) -> bool:
        """Force-remove the user's record regardless of session id."""

    @abstractmethod
    def reap(self, now: float) -> List[str]:
        """Remove records older than `reap_after`; returns the affected user ids."""

    @abstractmethod
    def get(self, user_id: str) -> Optional[SessionRecord]:
        ...


# =============================================================================
# In-Memory Backend
# =============================================================================

class InMemorySessionRegistry(SessionRegistry):
    """
    Single-process registry backed by a dict under one lock.

    terminate() takes the same lock as heartbeat(), so a suspended user's
    record cannot be resurrected by a heartbeat racing the suspension;
    a heartbeat arriving after terminate() simply starts from ABSENT and
    the disabled flag on the user record denies access elsewhere.
    """

    def __init__(
        self,
        stale_after: float = 120.0,
        reap_after: float = 300.0,
        conflict_policy: ConflictPolicy = ConflictPolicy.EXISTING_WINS,
    ) -> None:
        super().__init__(stale_after, reap_after, conflict_policy)
        self._store: Dict[str, SessionRecord] = {}
        self._store_lock: threading.Lock = threading.Lock()

    def heartbeat(
        self,
        user_id: str,
        session_id: str,
        document_id: Optional[str],
        client_agent: Optional[str],
        client_address: Optional[str],
        now: float,
    ) -> HeartbeatResult:
        with self._store_lock:
            existing = self._store.get(user_id)
            result = self.resolve_heartbeat(existing, session_id, now)

            if result.outcome == HeartbeatOutcome.REFRESHED:
                existing.last_heartbeat_at = now
                if document_id:
                    existing.document_id = document_id
                existing.client_agent = client_agent or existing.client_agent
                existing.client_address = client_address or existing.client_address
            elif result.valid:
                self._store[user_id] = SessionRecord(
                    session_id=session_id,
                    document_id=document_id,
                    last_heartbeat_at=now,
                    client_agent=client_agent,
                    client_address=client_address,
                )

        if result.outcome == HeartbeatOutcome.CREATED:
            logger.info(f"Session started for user {user_id}")
        elif result.outcome == HeartbeatOutcome.REPLACED:
            logger.info(f"Stale session replaced for user {user_id}")
        elif result.conflicted:
            logger.warning(
                f"User {user_id} has an active session on another device "
                f"({result.outcome.value})"
            )
        return result

    def check_session(self, user_id: str, session_id: str, now: float) -> SessionStatus:
        with self._store_lock:
            return self.resolve_check(self._store.get(user_id), session_id, now)

    def end_session(self, user_id: str, session_id: str) -> bool:
        with self._store_lock:
            existing = self._store.get(user_id)
            if existing is None or existing.session_id != session_id:
                return False
            del self._store[user_id]
        logger.info(f"Session ended for user {user_id}")
        return True

    def terminate(self, user_id: str) -> bool:
        with self._store_lock:
            removed = self._store.pop(user_id, None)
        if removed is not None:
            logger.info(f"Session terminated for user {user_id}")
        return removed is not None

    def reap(self, now: float) -> List[str]:
        with self._store_lock:
            expired = [
                user_id for user_id, record in self._store.items()
                if record.age(now) > self.reap_after
            ]
            for user_id in expired:
                del self._store[user_id]
        for user_id in expired:
            logger.info(f"Cleaning up stale session for user {user_id}")
        return expired

    def get(self, user_id: str) -> Optional[SessionRecord]:
        with self._store_lock:
            record = self._store.get(user_id)
            if record is None:
                return None
            # Copy so callers never mutate the stored record
            return replace(record)

    def __len__(self) -> int:
        with self._store_lock:
            return len(self._store)
