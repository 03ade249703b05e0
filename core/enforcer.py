"""
Warden Escalation Enforcer

Applies the consequences of an Evaluation:

    alert    → persisted to security_alerts for administrative review
    WARN     → last_warn_count = n, one notice to the user
    SUSPEND  → disabled = true (+ reason, timestamp), session terminated,
               notices to the user and to the administrator

The decision is re-checked against a fresh read of the user record under a
per-user lock immediately before writing, which makes suspension and
warning idempotent under concurrent evaluations. Notices are dispatched
only after that lock is released, on the notify executor when one is
configured.
"""

from __future__ import annotations

import logging
import threading
import uuid
from collections import defaultdict
from concurrent.futures import Executor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional

from core.anomaly import AnomalyRules, Evaluation, screenshot_decision
from core.schemas.events import SecurityEvent
from core.schemas.outputs import Decision
from core.session_registry import SessionRegistry
from integrations.notifier import Notification, Notifier
from persistence.event_store import EventStore
from persistence.user_store import UserSecurityState, UserStore


logger = logging.getLogger(__name__)


SUSPENSION_REASON = "Excessive screenshot attempts detected (Auto-Ban)."


@dataclass
class Enforcement:
    decision: Decision = Decision.NONE
    notifications: List[Notification] = field(default_factory=list)


class EscalationEnforcer:

    def __init__(
        self,
        users: UserStore,
        events: EventStore,
        registry: SessionRegistry,
        notifier: Notifier,
        rules: Optional[AnomalyRules] = None,
        admin_email: str = "admin@example.com",
        notify_executor: Optional[Executor] = None,
    ) -> None:
        self.users = users
        self.events = events
        self.registry = registry
        self.notifier = notifier
        self.rules = rules or AnomalyRules()
        self.admin_email = admin_email
        self.notify_executor = notify_executor

        # Per-user locks serialising read-check-write of the user record
        self._user_locks: dict[str, threading.Lock] = defaultdict(threading.Lock)
        self._lock_guard = threading.Lock()  # Protects _user_locks dict itself

    def _lock_for(self, user_id: str) -> threading.Lock:
        with self._lock_guard:
            return self._user_locks[user_id]

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    def enforce(self, event: SecurityEvent, evaluation: Evaluation, now: float) -> Decision:
        """Apply an evaluation and deliver its notices. Never raises."""
        enforcement = self.apply(event, evaluation, now)
        self.dispatch(enforcement)
        return enforcement.decision

    def apply(self, event: SecurityEvent, evaluation: Evaluation, now: float) -> Enforcement:
        """Perform the writes for an evaluation; returns the notices still to send."""
        if evaluation.alert is not None:
            self._record_alert(event.user_id, evaluation, now)

        if evaluation.decision == Decision.NONE:
            return Enforcement()

        with self._lock_for(event.user_id):
            try:
                state = self.users.get_security_state(event.user_id)
            except Exception as e:
                logger.error(f"Enforcement deferred for user {event.user_id}: {e}")
                return Enforcement()

            # Another evaluation may have acted since this one was computed
            decision = screenshot_decision(evaluation.attempts, state, self.rules)
            if decision == Decision.SUSPEND:
                return self._suspend(event, state, evaluation.attempts, now)
            if decision == Decision.WARN:
                return self._warn(event, state, evaluation.attempts)

        logger.debug(f"{evaluation.decision.value} for user {event.user_id} already applied")
        return Enforcement()

    def dispatch(self, enforcement: Enforcement) -> None:
        """
        Hand the notices to the notifier. With an executor configured they
        are delivered on its worker threads, so a slow or failing relay
        never holds up the request that triggered the escalation.
        """
        if not enforcement.notifications:
            return
        if self.notify_executor is None:
            self._send_all(enforcement.notifications)
            return
        try:
            self.notify_executor.submit(self._send_all, list(enforcement.notifications))
        except RuntimeError as e:
            # Executor already shut down
            logger.error(f"Dropping {len(enforcement.notifications)} security notices: {e}")

    def _send_all(self, notifications: List[Notification]) -> None:
        for notification in notifications:
            self.notifier.send(notification)

    # -------------------------------------------------------------------------
    # Actions
    # -------------------------------------------------------------------------

    def _record_alert(self, user_id: str, evaluation: Evaluation, now: float) -> None:
        alert = {
            "id": str(uuid.uuid4()),
            "user_id": user_id,
            "type": evaluation.alert.type.value,
            "count": evaluation.alert.count,
            "timestamp": _iso(now),
            "reviewed": False,
        }
        try:
            self.events.add_alert(alert)
        except Exception as e:
            logger.error(f"Failed to store {alert['type']} alert for {user_id}: {e}")

    def _suspend(
        self,
        event: SecurityEvent,
        state: UserSecurityState,
        attempts: int,
        now: float,
    ) -> Enforcement:
        user_id = event.user_id
        try:
            self.users.merge(
                user_id,
                disabled=True,
                disabled_reason=SUSPENSION_REASON,
                disabled_at=_iso(now),
            )
        except Exception as e:
            # Not disabled yet: the next screenshot event retries the whole suspension
            logger.error(f"Suspension of user {user_id} failed: {e}")
            return Enforcement()

        logger.warning(f"[BAN] User {user_id} banned for {attempts} screenshot attempts.")

        try:
            self.registry.terminate(user_id)
        except Exception as e:
            logger.error(f"Session termination for suspended user {user_id} failed: {e}")

        email = state.email or event.user_email
        return Enforcement(
            decision=Decision.SUSPEND,
            notifications=[
                Notification(
                    to=email or "",
                    subject="Account Suspended - Security Violation",
                    body=(
                        f"Your account has been suspended due to {attempts} confirmed "
                        "screenshot attempts.\n"
                        "This violates our security policy. Your groups and documents "
                        "are no longer accessible.\n"
                        "Please contact the administrator to appeal."
                    ),
                ),
                Notification(
                    to=self.admin_email,
                    subject=f"[URGENT] User Banned: {email or user_id}",
                    body=(
                        f"User {email or 'unknown'} ({user_id}) was automatically banned.\n"
                        f"Reason: {attempts} screenshot/capture attempts.\n"
                        "Action Required: Review user activity."
                    ),
                ),
            ],
        )

    def _warn(self, event: SecurityEvent, state: UserSecurityState, attempts: int) -> Enforcement:
        user_id = event.user_id
        try:
            self.users.merge(user_id, last_warn_count=attempts)
        except Exception as e:
            logger.error(f"Recording warning for user {user_id} failed: {e}")
            return Enforcement()

        logger.warning(f"[WARN] User {user_id} warned for {attempts} screenshot attempts.")

        return Enforcement(
            decision=Decision.WARN,
            notifications=[
                Notification(
                    to=state.email or event.user_email or "",
                    subject="Security Warning - Prohibited Action Detected",
                    body=(
                        f"We have detected {attempts} attempts to capture content from "
                        "your account.\n"
                        "This is a violation of our terms of service.\n"
                        f"If this continues (Limit: {self.rules.ban_threshold}), your "
                        "account will be automatically suspended."
                    ),
                ),
            ],
        )


def _iso(now: float) -> str:
    return datetime.fromtimestamp(now, tz=timezone.utc).isoformat()
