"""
Escalation Enforcer Tests

Side effects of WARN / SUSPEND / alerts, idempotence under concurrent
evaluations, and isolation of write and notification failures.
"""

import threading
from concurrent.futures import ThreadPoolExecutor
from unittest.mock import MagicMock

import pytest

from core.anomaly import Alert, AnomalyRules, Evaluation
from core.enforcer import SUSPENSION_REASON, EscalationEnforcer
from core.schemas.events import SecurityEventType
from core.schemas.outputs import AlertType, Decision
from persistence.user_store import UserSecurityState, UserStoreError
from tests.conftest import T0, RecordingNotifier, make_event


@pytest.fixture
def enforcer(user_store, event_store, registry, notifier):
    return EscalationEnforcer(
        users=user_store,
        events=event_store,
        registry=registry,
        notifier=notifier,
        rules=AnomalyRules(),
        admin_email="admin@test",
    )


def screenshot_event(now=T0):
    return make_event("u1", SecurityEventType.PRINTSCREEN_BLOCKED, now)


def evaluation(decision, attempts):
    return Evaluation(decision=decision, attempts=attempts, user_state=UserSecurityState("u1"))


# =============================================================================
# Warn
# =============================================================================

class TestWarn:

    def test_warn_records_count_and_notifies_user(self, enforcer, user_store, notifier):
        user_store.seed("u1", email="stored@example.com")

        decision = enforcer.enforce(screenshot_event(), evaluation(Decision.WARN, 10), T0)

        assert decision == Decision.WARN
        assert user_store.get_security_state("u1").last_warn_count == 10
        assert len(notifier.sent) == 1
        assert notifier.sent[0].to == "stored@example.com"
        assert notifier.sent[0].subject == "Security Warning - Prohibited Action Detected"
        assert "Limit: 20" in notifier.sent[0].body

    def test_email_falls_back_to_event(self, enforcer, notifier):
        enforcer.enforce(screenshot_event(), evaluation(Decision.WARN, 10), T0)
        assert notifier.sent[0].to == "u1@example.com"

    def test_second_warning_is_noop(self, enforcer, notifier):
        enforcer.enforce(screenshot_event(), evaluation(Decision.WARN, 10), T0)
        decision = enforcer.enforce(screenshot_event(), evaluation(Decision.WARN, 10), T0)

        assert decision == Decision.NONE
        assert len(notifier.sent) == 1

    def test_failed_write_sends_nothing(self, event_store, registry, notifier):
        users = MagicMock()
        users.get_security_state.return_value = UserSecurityState("u1")
        users.merge.side_effect = UserStoreError("down")
        enforcer = EscalationEnforcer(users, event_store, registry, notifier)

        decision = enforcer.enforce(screenshot_event(), evaluation(Decision.WARN, 10), T0)

        assert decision == Decision.NONE
        assert notifier.sent == []


# =============================================================================
# Suspend
# =============================================================================

class TestSuspend:

    def test_suspend_disables_terminates_and_notifies(self, enforcer, user_store, registry, notifier):
        user_store.seed("u1", email="u1@example.com")
        registry.heartbeat("u1", "a1", "doc_1", None, None, T0)

        decision = enforcer.enforce(screenshot_event(), evaluation(Decision.SUSPEND, 20), T0)

        assert decision == Decision.SUSPEND
        state = user_store.get_security_state("u1")
        assert state.disabled is True
        assert state.disabled_reason == SUSPENSION_REASON
        assert state.disabled_at.startswith("2023-11-14")
        assert registry.get("u1") is None
        assert [n.to for n in notifier.sent] == ["u1@example.com", "admin@test"]
        assert notifier.sent[0].subject == "Account Suspended - Security Violation"
        assert notifier.sent[1].subject == "[URGENT] User Banned: u1@example.com"

    def test_suspension_keeps_unrelated_fields(self, enforcer, user_store):
        user_store.seed("u1", email="u1@example.com", last_screenshot_warn_count=10)
        enforcer.enforce(screenshot_event(), evaluation(Decision.SUSPEND, 20), T0)

        state = user_store.get_security_state("u1")
        assert state.email == "u1@example.com"
        assert state.last_warn_count == 10

    def test_already_disabled_is_noop(self, enforcer, user_store, registry, notifier):
        user_store.merge("u1", disabled=True)
        registry.heartbeat("u1", "a1", "doc_1", None, None, T0)

        decision = enforcer.enforce(screenshot_event(), evaluation(Decision.SUSPEND, 21), T0)

        assert decision == Decision.NONE
        assert registry.get("u1") is not None
        assert notifier.sent == []

    def test_failed_disable_write_skips_termination(self, event_store, registry, notifier):
        users = MagicMock()
        users.get_security_state.return_value = UserSecurityState("u1")
        users.merge.side_effect = UserStoreError("down")
        registry.heartbeat("u1", "a1", "doc_1", None, None, T0)
        enforcer = EscalationEnforcer(users, event_store, registry, notifier)

        decision = enforcer.enforce(screenshot_event(), evaluation(Decision.SUSPEND, 20), T0)

        assert decision == Decision.NONE
        assert registry.get("u1") is not None
        assert notifier.sent == []

    def test_state_read_failure_defers(self, event_store, registry, notifier):
        users = MagicMock()
        users.get_security_state.side_effect = UserStoreError("down")
        enforcer = EscalationEnforcer(users, event_store, registry, notifier)

        assert enforcer.enforce(screenshot_event(), evaluation(Decision.SUSPEND, 20), T0) == Decision.NONE
        users.merge.assert_not_called()

    def test_notification_failure_does_not_raise(self, user_store, event_store, registry):
        class Broken(RecordingNotifier):
            def _deliver(self, notification):
                raise ConnectionError("smtp down")

        enforcer = EscalationEnforcer(user_store, event_store, registry, Broken())
        decision = enforcer.enforce(screenshot_event(), evaluation(Decision.SUSPEND, 20), T0)

        assert decision == Decision.SUSPEND
        assert user_store.get_security_state("u1").disabled is True

    def test_concurrent_suspensions_apply_once(self, user_store, event_store, registry, notifier):
        """Two evaluations both at >= 20: one disable-write, one termination, one pair of notices."""
        users = MagicMock(wraps=user_store)
        reg = MagicMock(wraps=registry)
        enforcer = EscalationEnforcer(users, event_store, reg, notifier)
        barrier = threading.Barrier(2)
        decisions = []

        def run(attempts):
            barrier.wait()
            decisions.append(
                enforcer.enforce(screenshot_event(), evaluation(Decision.SUSPEND, attempts), T0)
            )

        threads = [threading.Thread(target=run, args=(n,)) for n in (20, 21)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sorted(d.value for d in decisions) == ["NONE", "SUSPEND"]
        assert users.merge.call_count == 1
        assert reg.terminate.call_count == 1
        assert len(notifier.sent) == 2


# =============================================================================
# Alerts
# =============================================================================

class TestAlerts:

    def test_alert_is_persisted(self, enforcer, event_store, notifier):
        ev = Evaluation(alert=Alert(AlertType.REPEATED_DEVTOOLS, 3))
        decision = enforcer.enforce(make_event("u1", SecurityEventType.DEVTOOLS_DETECTED, T0), ev, T0)

        assert decision == Decision.NONE
        [alert] = event_store.alerts
        assert alert["user_id"] == "u1"
        assert alert["type"] == "REPEATED_DEVTOOLS"
        assert alert["count"] == 3
        assert alert["reviewed"] is False
        assert notifier.sent == []

    def test_alert_store_failure_is_swallowed(self, user_store, registry, notifier):
        events = MagicMock()
        events.add_alert.side_effect = RuntimeError("insert failed")
        enforcer = EscalationEnforcer(user_store, events, registry, notifier)

        ev = Evaluation(alert=Alert(AlertType.EXCESSIVE_VIEWS, 10))
        assert enforcer.enforce(make_event("u1", SecurityEventType.VIEW_START, T0), ev, T0) == Decision.NONE


# =============================================================================
# Dispatch
# =============================================================================

class TestDispatch:

    def test_slow_notifier_runs_on_executor(self, user_store, event_store, registry):
        release = threading.Event()

        class Slow(RecordingNotifier):
            def _deliver(self, notification):
                release.wait(5.0)
                super()._deliver(notification)

        notifier = Slow()
        executor = ThreadPoolExecutor(max_workers=1)
        enforcer = EscalationEnforcer(user_store, event_store, registry, notifier, notify_executor=executor)

        decision = enforcer.enforce(screenshot_event(), evaluation(Decision.SUSPEND, 20), T0)

        assert decision == Decision.SUSPEND
        assert notifier.sent == []
        release.set()
        executor.shutdown(wait=True)
        assert len(notifier.sent) == 2

    def test_closed_executor_drops_notices(self, user_store, event_store, registry, notifier):
        executor = ThreadPoolExecutor(max_workers=1)
        executor.shutdown()
        enforcer = EscalationEnforcer(user_store, event_store, registry, notifier, notify_executor=executor)

        decision = enforcer.enforce(screenshot_event(), evaluation(Decision.WARN, 10), T0)

        assert decision == Decision.WARN
        assert user_store.get_security_state("u1").last_warn_count == 10
        assert notifier.sent == []
