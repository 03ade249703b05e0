"""
Anomaly Detector Tests

Pure escalation rules (no I/O) and read-aggregation against the
in-memory event store.
"""

from unittest.mock import MagicMock

import pytest

from core.anomaly import (
    AnomalyDetector,
    AnomalyRules,
    alert_for,
    screenshot_decision,
)
from core.schemas.events import SecurityEventType
from core.schemas.outputs import AlertType, Decision
from persistence.event_store import EventStoreError
from persistence.user_store import UserSecurityState
from tests.conftest import T0, make_event


RULES = AnomalyRules()


def state(**kwargs) -> UserSecurityState:
    return UserSecurityState(user_id="u1", **kwargs)


# =============================================================================
# Pure Rules
# =============================================================================

class TestScreenshotDecision:

    @pytest.mark.parametrize("attempts", [0, 1, 9])
    def test_below_warn_threshold(self, attempts):
        assert screenshot_decision(attempts, state(), RULES) == Decision.NONE

    def test_warn_at_threshold(self):
        assert screenshot_decision(10, state(), RULES) == Decision.WARN

    @pytest.mark.parametrize("attempts", [11, 15, 19])
    def test_no_second_warning_below_ban(self, attempts):
        assert screenshot_decision(attempts, state(last_warn_count=10), RULES) == Decision.NONE

    def test_warn_retried_when_previous_write_was_lost(self):
        """last_warn_count never got written: the next attempt warns again."""
        assert screenshot_decision(13, state(last_warn_count=0), RULES) == Decision.WARN

    def test_suspend_at_ban_threshold(self):
        assert screenshot_decision(20, state(last_warn_count=10), RULES) == Decision.SUSPEND

    def test_disabled_user_is_never_escalated(self):
        assert screenshot_decision(25, state(disabled=True), RULES) == Decision.NONE
        assert screenshot_decision(10, state(disabled=True), RULES) == Decision.NONE

    def test_rearm_warns_on_each_new_count(self):
        rules = AnomalyRules(warn_rearm=True)
        assert screenshot_decision(11, state(last_warn_count=10), rules) == Decision.WARN
        assert screenshot_decision(11, state(last_warn_count=11), rules) == Decision.NONE

    def test_warn_precedes_ban_when_counting_up(self):
        """One attempt at a time: WARN is reached before SUSPEND."""
        decisions = []
        current = state()
        for n in range(1, 21):
            decision = screenshot_decision(n, current, RULES)
            decisions.append(decision)
            if decision == Decision.WARN:
                current = state(last_warn_count=n)
        assert decisions.index(Decision.WARN) == 9
        assert decisions.index(Decision.SUSPEND) == 19
        assert decisions.count(Decision.WARN) == 1


class TestAlertRules:

    def test_devtools_alert_at_three(self):
        assert alert_for(SecurityEventType.DEVTOOLS_DETECTED, 2, RULES) is None
        alert = alert_for(SecurityEventType.DEVTOOLS_DETECTED, 3, RULES)
        assert alert.type == AlertType.REPEATED_DEVTOOLS
        assert alert.count == 3

    def test_view_start_alert_at_ten(self):
        assert alert_for(SecurityEventType.VIEW_START, 9, RULES) is None
        assert alert_for(SecurityEventType.VIEW_START, 10, RULES).type == AlertType.EXCESSIVE_VIEWS

    def test_other_kinds_never_alert(self):
        assert alert_for(SecurityEventType.PAGE_TURN, 1000, RULES) is None


# =============================================================================
# Detector
# =============================================================================

@pytest.fixture
def detector(event_store, user_store):
    return AnomalyDetector(event_store, user_store, RULES)


def store_events(event_store, event_type, times, **kwargs):
    for t in times:
        event_store.append(make_event("u1", event_type, t, **kwargs))


class TestDetector:

    def test_irrelevant_event_short_circuits(self, detector, event_store):
        event = make_event("u1", SecurityEventType.PAGE_TURN, T0)
        event_store.append(event)
        evaluation = detector.evaluate(event, T0)
        assert evaluation.decision == Decision.NONE
        assert evaluation.alert is None

    def test_devtools_counted_within_last_hour_only(self, detector, event_store):
        store_events(event_store, SecurityEventType.DEVTOOLS_DETECTED, [T0 - 4000, T0 - 3000, T0])
        latest = make_event("u1", SecurityEventType.DEVTOOLS_DETECTED, T0)

        assert detector.evaluate(latest, T0).alert is None

        store_events(event_store, SecurityEventType.DEVTOOLS_DETECTED, [T0 + 1])
        evaluation = detector.evaluate(latest, T0 + 1)
        assert evaluation.alert.type == AlertType.REPEATED_DEVTOOLS
        assert evaluation.alert.count == 3
        assert evaluation.decision == Decision.NONE

    def test_view_start_alert(self, detector, event_store):
        store_events(event_store, SecurityEventType.VIEW_START, [T0 + i for i in range(10)])
        evaluation = detector.evaluate(make_event("u1", SecurityEventType.VIEW_START, T0 + 9), T0 + 9)
        assert evaluation.alert.type == AlertType.EXCESSIVE_VIEWS

    def test_screenshot_count_is_lifetime(self, detector, event_store):
        # Spread over days: the lookback window does not apply
        store_events(event_store, SecurityEventType.PRINTSCREEN_BLOCKED, [T0 - 86400 * d for d in range(6)])
        store_events(
            event_store, SecurityEventType.KEYBOARD_BLOCKED, [T0 + i for i in range(4)],
            details={"action": "screenshot"},
        )
        store_events(event_store, SecurityEventType.KEYBOARD_BLOCKED, [T0 + 5], details={"action": "copy"})

        event = make_event("u1", SecurityEventType.PRINTSCREEN_BLOCKED, T0 + 6)
        event_store.append(event)

        evaluation = detector.evaluate(event, T0 + 6)
        assert evaluation.attempts == 11
        assert evaluation.decision == Decision.WARN
        assert evaluation.user_state.last_warn_count == 0

    def test_other_users_do_not_count(self, detector, event_store):
        for i in range(15):
            event_store.append(make_event("u2", SecurityEventType.PRINTSCREEN_BLOCKED, T0 + i))
        event = make_event("u1", SecurityEventType.PRINTSCREEN_BLOCKED, T0 + 20)
        event_store.append(event)
        assert detector.evaluate(event, T0 + 20).attempts == 1

    def test_store_failure_is_deferred(self, user_store):
        events = MagicMock()
        events.list_events.side_effect = EventStoreError("timeout")
        detector = AnomalyDetector(events, user_store, RULES)

        evaluation = detector.evaluate(make_event("u1", SecurityEventType.PRINTSCREEN_BLOCKED, T0), T0)

        assert evaluation.deferred is True
        assert evaluation.decision == Decision.NONE

    def test_window_count_failure_is_deferred(self, user_store):
        events = MagicMock()
        events.count.side_effect = EventStoreError("timeout")
        detector = AnomalyDetector(events, user_store, RULES)

        evaluation = detector.evaluate(make_event("u1", SecurityEventType.DEVTOOLS_DETECTED, T0), T0)

        assert evaluation.deferred is True
        assert evaluation.alert is None
