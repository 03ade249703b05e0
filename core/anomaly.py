"""
Warden Anomaly Detector

Inspects a freshly logged SecurityEvent against the user's history in the
event store and returns an Evaluation: an escalation Decision
(NONE | WARN | SUSPEND) plus an optional administrative alert.

Rules:
    DEVTOOLS_DETECTED   count in the last hour >= 3          → REPEATED_DEVTOOLS alert
    VIEW_START          count in the last hour >= 10         → EXCESSIVE_VIEWS alert
    screenshot attempt  lifetime count n (PRINTSCREEN_BLOCKED +
                        KEYBOARD_BLOCKED with action=screenshot)
                        n >= ban  and not disabled           → SUSPEND
                        n >= warn and not disabled and
                        not yet warned                        → WARN

The decision functions are pure; evaluate() only reads. Every write lives
in the EscalationEnforcer.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from core.schemas.events import SCREENSHOT_EVENT_TYPES, SecurityEvent, SecurityEventType
from core.schemas.outputs import AlertType, Decision
from persistence.event_store import EventStore
from persistence.user_store import UserSecurityState, UserStore


logger = logging.getLogger(__name__)


# =============================================================================
# Rules
# =============================================================================

@dataclass(frozen=True)
class AnomalyRules:
    window_seconds: float = 3600.0
    devtools_alert_threshold: int = 3
    view_start_alert_threshold: int = 10
    warn_threshold: int = 10
    ban_threshold: int = 20
    warn_rearm: bool = False

    @classmethod
    def from_settings(cls, settings) -> AnomalyRules:
        return cls(
            window_seconds=settings.anomaly_window_seconds,
            devtools_alert_threshold=settings.devtools_alert_threshold,
            view_start_alert_threshold=settings.view_start_alert_threshold,
            warn_threshold=settings.screenshot_warn_threshold,
            ban_threshold=settings.screenshot_ban_threshold,
            warn_rearm=settings.warn_rearm,
        )


@dataclass(frozen=True)
class Alert:
    type: AlertType
    count: int


@dataclass(frozen=True)
class Evaluation:
    decision: Decision = Decision.NONE
    attempts: int = 0
    alert: Optional[Alert] = None
    user_state: Optional[UserSecurityState] = None
    deferred: bool = False

    @classmethod
    def none(cls) -> Evaluation:
        return cls()


NO_EVALUATION = Evaluation.none()


def screenshot_decision(attempts: int, state: UserSecurityState, rules: AnomalyRules) -> Decision:
    """
    Escalation for a lifetime screenshot-attempt count.

    A disabled user is never re-suspended or warned. With warn_rearm off a
    warning fires once ever (the stored count is compared against the fixed
    threshold); with it on, every count above the last warned one re-warns.
    """
    if state.disabled:
        return Decision.NONE
    if attempts >= rules.ban_threshold:
        return Decision.SUSPEND
    if attempts >= rules.warn_threshold:
        if rules.warn_rearm:
            already_warned = state.last_warn_count >= attempts
        else:
            already_warned = state.last_warn_count >= rules.warn_threshold
        if not already_warned:
            return Decision.WARN
    return Decision.NONE


def alert_for(event_type: SecurityEventType, recent_count: int, rules: AnomalyRules) -> Optional[Alert]:
    if event_type == SecurityEventType.DEVTOOLS_DETECTED and recent_count >= rules.devtools_alert_threshold:
        return Alert(AlertType.REPEATED_DEVTOOLS, recent_count)
    if event_type == SecurityEventType.VIEW_START and recent_count >= rules.view_start_alert_threshold:
        return Alert(AlertType.EXCESSIVE_VIEWS, recent_count)
    return None


# =============================================================================
# Detector
# =============================================================================

class AnomalyDetector:
    """Read-aggregation over the event store; no counters of its own."""

    WINDOWED_TYPES = (SecurityEventType.DEVTOOLS_DETECTED, SecurityEventType.VIEW_START)

    def __init__(
        self,
        events: EventStore,
        users: UserStore,
        rules: Optional[AnomalyRules] = None,
    ) -> None:
        self.events = events
        self.users = users
        self.rules = rules or AnomalyRules()

    @staticmethod
    def is_relevant(event: SecurityEvent) -> bool:
        return event.type in AnomalyDetector.WINDOWED_TYPES or event.is_screenshot_attempt

    def count_screenshot_attempts(self, user_id: str) -> int:
        history = self.events.list_events(user_id, SCREENSHOT_EVENT_TYPES)
        return sum(1 for e in history if e.is_screenshot_attempt)

    def evaluate(self, event: SecurityEvent, now: float) -> Evaluation:
        """
        Evaluate one event. Store failures are logged and yield a deferred
        NONE; the next qualifying event re-evaluates from the full history.
        """
        if not self.is_relevant(event):
            return NO_EVALUATION

        try:
            if event.type in self.WINDOWED_TYPES:
                since = datetime.fromtimestamp(now, tz=timezone.utc) - timedelta(
                    seconds=self.rules.window_seconds
                )
                recent = self.events.count(event.user_id, event.type, since=since)
                alert = alert_for(event.type, recent, self.rules)
                if alert is not None:
                    logger.warning(
                        f"[ALERT] User {event.user_id}: {alert.type.value} "
                        f"({alert.count} in the last {int(self.rules.window_seconds)}s)"
                    )
                return Evaluation(alert=alert)

            attempts = self.count_screenshot_attempts(event.user_id)
            state = self.users.get_security_state(event.user_id)
        except Exception as e:
            logger.error(f"Anomaly check error for user {event.user_id}: {e}")
            return Evaluation(deferred=True)

        logger.info(f"[SECURITY] User {event.user_id} Screenshot Attempts: {attempts}")
        decision = screenshot_decision(attempts, state, self.rules)
        return Evaluation(decision=decision, attempts=attempts, user_state=state)
