"""
Warden Event Store

Append-only persistence for SecurityEvent records and administrative
alerts. The Supabase tables are the source of truth for every anomaly
count, so escalation survives process restarts.

Schema:
    security_events (
        id               TEXT PRIMARY KEY,
        user_id          TEXT,
        user_email       TEXT,
        type             TEXT,
        session_id       TEXT,
        document_id      TEXT,
        group_id         TEXT,
        details          JSONB,
        client_agent     TEXT,
        client_address   TEXT,
        timestamp        TIMESTAMPTZ,
        server_timestamp TIMESTAMPTZ
    )
    security_alerts (
        id        TEXT PRIMARY KEY,
        user_id   TEXT,
        type      TEXT,
        count     INTEGER,
        timestamp TIMESTAMPTZ,
        reviewed  BOOLEAN DEFAULT false
    )
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from supabase import Client

from core.schemas.events import SecurityEvent, SecurityEventType


logger = logging.getLogger(__name__)


class EventStoreError(Exception):
    """Raised when the record store cannot be read or written."""
    pass


class EventStore(ABC):
    """Create-only event log plus filtered reads for aggregation."""

    @abstractmethod
    def append(self, event: SecurityEvent) -> None:
        ...

    @abstractmethod
    def count(
        self,
        user_id: str,
        event_type: SecurityEventType,
        since: Optional[datetime] = None,
    ) -> int:
        """Count events of one kind, optionally with server_timestamp > since."""

    @abstractmethod
    def list_events(
        self,
        user_id: str,
        event_types: Sequence[SecurityEventType],
        since: Optional[datetime] = None,
    ) -> List[SecurityEvent]:
        ...

    @abstractmethod
    def recent(self, user_id: str, limit: int = 50) -> List[SecurityEvent]:
        """Most recent events first, by server timestamp."""

    @abstractmethod
    def add_alert(self, alert: Dict[str, Any]) -> None:
        ...


# =============================================================================
# Supabase Backend
# =============================================================================

class SupabaseEventStore(EventStore):
    """Event store over the Supabase `security_events` / `security_alerts` tables."""

    EVENTS_TABLE = "security_events"
    ALERTS_TABLE = "security_alerts"

    def __init__(self, client: Client) -> None:
        self.client = client

    def append(self, event: SecurityEvent) -> None:
        try:
            self.client.table(self.EVENTS_TABLE).insert(event.to_record()).execute()
        except Exception as e:
            raise EventStoreError(f"insert of event {event.id} failed: {e}") from e

    def count(
        self,
        user_id: str,
        event_type: SecurityEventType,
        since: Optional[datetime] = None,
    ) -> int:
        try:
            query = self.client.table(self.EVENTS_TABLE).select(
                "id", count="exact"
            ).eq("user_id", user_id).eq("type", event_type.value)
            if since is not None:
                query = query.gt("server_timestamp", since.isoformat())
            response = query.execute()
        except Exception as e:
            raise EventStoreError(f"count of {event_type.value} for {user_id} failed: {e}") from e
        if response.count is not None:
            return response.count
        return len(response.data or [])

    def list_events(
        self,
        user_id: str,
        event_types: Sequence[SecurityEventType],
        since: Optional[datetime] = None,
    ) -> List[SecurityEvent]:
        try:
            query = self.client.table(self.EVENTS_TABLE).select("*").eq(
                "user_id", user_id
            ).in_("type", [t.value for t in event_types])
            if since is not None:
                query = query.gt("server_timestamp", since.isoformat())
            response = query.execute()
        except Exception as e:
            raise EventStoreError(f"listing events for {user_id} failed: {e}") from e
        return [SecurityEvent.from_record(row) for row in response.data or []]

    def recent(self, user_id: str, limit: int = 50) -> List[SecurityEvent]:
        try:
            response = self.client.table(self.EVENTS_TABLE).select("*").eq(
                "user_id", user_id
            ).order("server_timestamp", desc=True).limit(limit).execute()
        except Exception as e:
            raise EventStoreError(f"reading recent events for {user_id} failed: {e}") from e
        return [SecurityEvent.from_record(row) for row in response.data or []]

    def add_alert(self, alert: Dict[str, Any]) -> None:
        try:
            self.client.table(self.ALERTS_TABLE).insert(alert).execute()
        except Exception as e:
            raise EventStoreError(f"insert of alert {alert.get('id')} failed: {e}") from e


# =============================================================================
# In-Memory Backend
# =============================================================================

class InMemoryEventStore(EventStore):
    """
    Process-local event store.

    Stands in for Supabase in development and tests; same contract,
    nothing survives a restart.
    """

    def __init__(self) -> None:
        self._events: List[SecurityEvent] = []
        self._alerts: List[Dict[str, Any]] = []
        self._lock = threading.Lock()

    def append(self, event: SecurityEvent) -> None:
        with self._lock:
            if any(existing.id == event.id for existing in self._events):
                raise EventStoreError(f"duplicate event id {event.id}")
            self._events.append(event)

    def _matching(
        self,
        user_id: str,
        event_types: Sequence[SecurityEventType],
        since: Optional[datetime],
    ) -> List[SecurityEvent]:
        with self._lock:
            return [
                e for e in self._events
                if e.user_id == user_id
                and e.type in event_types
                and (since is None or e.server_timestamp > since)
            ]

    def count(
        self,
        user_id: str,
        event_type: SecurityEventType,
        since: Optional[datetime] = None,
    ) -> int:
        return len(self._matching(user_id, (event_type,), since))

    def list_events(
        self,
        user_id: str,
        event_types: Sequence[SecurityEventType],
        since: Optional[datetime] = None,
    ) -> List[SecurityEvent]:
        return self._matching(user_id, tuple(event_types), since)

    def recent(self, user_id: str, limit: int = 50) -> List[SecurityEvent]:
        with self._lock:
            mine = [e for e in self._events if e.user_id == user_id]
        mine.sort(key=lambda e: e.server_timestamp, reverse=True)
        return mine[:limit]

    def add_alert(self, alert: Dict[str, Any]) -> None:
        with self._lock:
            self._alerts.append(dict(alert))

    @property
    def alerts(self) -> List[Dict[str, Any]]:
        with self._lock:
            return list(self._alerts)

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)
