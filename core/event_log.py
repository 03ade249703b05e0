"""
Warden Security Event Log

Durable, append-only record of client-reported security events. Recording
always succeeds from the caller's point of view: persistence failures are
logged, never propagated, because telemetry must not degrade the viewing
experience. A persisted event is handed synchronously to the anomaly
detector and escalation enforcer, whose failures are isolated the same way.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from core.anomaly import AnomalyDetector
from core.enforcer import EscalationEnforcer
from core.schemas.events import SecurityEvent, SecurityEventType
from core.schemas.outputs import Decision
from persistence.event_store import EventStore


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RecordResult:
    logged: bool
    event_id: Optional[str] = None
    decision: Decision = Decision.NONE


class SecurityEventLog:

    def __init__(
        self,
        store: EventStore,
        detector: Optional[AnomalyDetector] = None,
        enforcer: Optional[EscalationEnforcer] = None,
    ) -> None:
        self.store = store
        self.detector = detector
        self.enforcer = enforcer

    @staticmethod
    def build_event(
        user_id: str,
        event_type: SecurityEventType,
        now: float,
        user_email: Optional[str] = None,
        session_id: Optional[str] = None,
        document_id: Optional[str] = None,
        group_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        client_agent: Optional[str] = None,
        client_address: Optional[str] = None,
        client_timestamp: Optional[datetime] = None,
        id_factory: Callable[[], str] = lambda: str(uuid.uuid4()),
    ) -> SecurityEvent:
        """Assign id and server timestamp. A missing client time defaults to the server's."""
        server_timestamp = datetime.fromtimestamp(now, tz=timezone.utc)
        return SecurityEvent(
            id=id_factory(),
            user_id=user_id,
            user_email=user_email,
            type=event_type,
            session_id=session_id,
            document_id=document_id,
            group_id=group_id,
            details=details or {},
            client_agent=client_agent,
            client_address=client_address,
            timestamp=client_timestamp or server_timestamp,
            server_timestamp=server_timestamp,
        )

    def record(self, event: SecurityEvent, now: float) -> RecordResult:
        """Persist, then evaluate. Never raises."""
        try:
            self.store.append(event)
        except Exception as e:
            logger.error(f"Log Event Error ({event.type.value}, user {event.user_id}): {e}")
            return RecordResult(logged=False)

        logger.debug(f"[Security Event] {event.type.value} user={event.user_id} id={event.id}")
        return RecordResult(logged=True, event_id=event.id, decision=self._escalate(event, now))

    def record_session_conflict(
        self,
        user_id: str,
        existing_session_id: str,
        new_session_id: str,
        now: float,
        document_id: Optional[str] = None,
        client_agent: Optional[str] = None,
        client_address: Optional[str] = None,
    ) -> RecordResult:
        """SESSION_CONFLICT raised by the session registry; ids are shortened to 8 chars."""
        event = self.build_event(
            user_id=user_id,
            event_type=SecurityEventType.SESSION_CONFLICT,
            now=now,
            session_id=new_session_id,
            document_id=document_id,
            details={
                "existingSession": existing_session_id[:8],
                "newSession": new_session_id[:8],
            },
            client_agent=client_agent,
            client_address=client_address,
        )
        return self.record(event, now)

    def _escalate(self, event: SecurityEvent, now: float) -> Decision:
        if self.detector is None:
            return Decision.NONE
        try:
            evaluation = self.detector.evaluate(event, now)
            if self.enforcer is None:
                return evaluation.decision
            return self.enforcer.enforce(event, evaluation, now)
        except Exception as e:
            logger.error(f"Anomaly check error for user {event.user_id}: {e}")
            return Decision.NONE
