"""
Warden Test Suite - Shared Pytest Fixtures

This conftest.py provides fixtures for all test categories including:
- A manual clock for driving staleness, windows and lookbacks
- In-memory registry, limiter and record stores
- A recording notifier
- A fully wired AccessOrchestrator

Usage:
    pytest tests/ -v
"""

from typing import List

import pytest

from core.anomaly import AnomalyRules
from core.clock import ManualClock
from core.orchestrator import AccessOrchestrator, Principal
from core.rate_limiter import InMemoryRateLimiter
from core.schemas.events import SecurityEventType
from core.session_registry import InMemorySessionRegistry
from core.event_log import SecurityEventLog
from integrations.content import ContentSigner
from integrations.notifier import Notification, Notifier
from persistence.event_store import InMemoryEventStore
from persistence.user_store import InMemoryUserStore


T0 = 1_700_000_000.0


# =============================================================================
# Helpers
# =============================================================================

class RecordingNotifier(Notifier):
    """Keeps every delivered notification for assertions."""

    def __init__(self) -> None:
        self.sent: List[Notification] = []

    def _deliver(self, notification: Notification) -> None:
        self.sent.append(notification)

    def subjects(self) -> List[str]:
        return [n.subject for n in self.sent]


def make_event(user_id: str, event_type: SecurityEventType, now: float, **kwargs):
    """Build a SecurityEvent with the log's own factory."""
    return SecurityEventLog.build_event(
        user_id=user_id,
        event_type=event_type,
        now=now,
        user_email=kwargs.pop("user_email", f"{user_id}@example.com"),
        **kwargs,
    )


# =============================================================================
# Component Fixtures
# =============================================================================

@pytest.fixture
def clock() -> ManualClock:
    return ManualClock(start=T0)


@pytest.fixture
def registry() -> InMemorySessionRegistry:
    return InMemorySessionRegistry(stale_after=120.0, reap_after=300.0)


@pytest.fixture
def limiter() -> InMemoryRateLimiter:
    return InMemoryRateLimiter(window=60.0, max_per_window=30)


@pytest.fixture
def event_store() -> InMemoryEventStore:
    return InMemoryEventStore()


@pytest.fixture
def user_store() -> InMemoryUserStore:
    return InMemoryUserStore()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def rules() -> AnomalyRules:
    return AnomalyRules()


@pytest.fixture
def signer() -> ContentSigner:
    return ContentSigner("https://cdn.test/raw", "test-secret", ttl_seconds=300)


@pytest.fixture
def principal() -> Principal:
    return Principal(user_id="usr_u", email="u@example.com")


# =============================================================================
# Orchestrator Fixture
# =============================================================================

@pytest.fixture
def orchestrator(registry, limiter, event_store, user_store, notifier, signer, rules, clock):
    """Engine wired entirely to in-memory collaborators and the manual clock."""
    return AccessOrchestrator(
        registry=registry,
        limiter=limiter,
        events=event_store,
        users=user_store,
        notifier=notifier,
        signer=signer,
        rules=rules,
        clock=clock,
        admin_email="admin@test",
    )
