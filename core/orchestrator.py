"""
Warden Access Orchestrator

Entry point of the Access Session & Abuse-Mitigation Engine. Wires the
session registry, rate limiter, security event log, anomaly detector and
escalation enforcer, and exposes the operations the HTTP layer maps onto
routes:

    heartbeat        → {valid, serverTime}
    check_session    → {isActive}
    end_session      → {ended}
    log_event        → {logged, eventId?}   (never fails)
    mint_signed_url  → signed URL, or RateLimitExceeded
    recent_events    → a user's latest events

No I/O happens while the registry or limiter lock is held: conflict
events are persisted after the registry call returns.
"""

from __future__ import annotations

import logging
from concurrent.futures import Executor, ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional

from core.anomaly import AnomalyDetector, AnomalyRules
from core.clock import Clock, SystemClock
from core.config import Settings, StateBackend, get_settings
from core.enforcer import EscalationEnforcer
from core.event_log import SecurityEventLog
from core.rate_limiter import InMemoryRateLimiter, RateLimiter
from core.schemas.events import SecurityEvent, SecurityEventType
from core.schemas.inputs import (
    CheckSessionPayload,
    EndSessionPayload,
    HeartbeatPayload,
    LogEventPayload,
    SignedUrlPayload,
)
from core.schemas.outputs import (
    CheckSessionResponse,
    EndSessionResponse,
    HeartbeatResponse,
    LogEventResponse,
    SignedUrlResponse,
)
from core.session_registry import InMemorySessionRegistry, SessionRegistry
from integrations.content import ContentSigner
from integrations.notifier import LogNotifier, Notifier, WebhookNotifier
from persistence.event_store import EventStore, InMemoryEventStore, SupabaseEventStore
from persistence.user_store import InMemoryUserStore, SupabaseUserStore, UserStore


logger = logging.getLogger(__name__)


# =============================================================================
# Exceptions
# =============================================================================

class SecurityEngineError(Exception):
    """Base class for outcomes the caller must handle explicitly."""
    pass


class RateLimitExceeded(SecurityEngineError):
    """Raised when a user mints content URLs faster than the window allows."""

    def __init__(self, user_id: str, limit: int, window: float) -> None:
        super().__init__(f"User {user_id} exceeded {limit} URL generations per {int(window)}s")
        self.user_id = user_id
        self.limit = limit
        self.window = window


# =============================================================================
# Principal
# =============================================================================

@dataclass(frozen=True)
class Principal:
    """Already-verified identity supplied by the identity gateway."""
    user_id: str
    email: Optional[str] = None


# =============================================================================
# Orchestrator
# =============================================================================

class AccessOrchestrator:

    def __init__(
        self,
        registry: Optional[SessionRegistry] = None,
        limiter: Optional[RateLimiter] = None,
        events: Optional[EventStore] = None,
        users: Optional[UserStore] = None,
        notifier: Optional[Notifier] = None,
        signer: Optional[ContentSigner] = None,
        rules: Optional[AnomalyRules] = None,
        clock: Optional[Clock] = None,
        admin_email: str = "admin@example.com",
        notify_executor: Optional[Executor] = None,
    ) -> None:
        self.registry = registry or InMemorySessionRegistry()
        self.limiter = limiter or InMemoryRateLimiter()
        self.events = events or InMemoryEventStore()
        self.users = users or InMemoryUserStore()
        self.notifier = notifier or LogNotifier()
        self.signer = signer
        self.rules = rules or AnomalyRules()
        self.clock = clock or SystemClock()
        self.notify_executor = notify_executor

        self.detector = AnomalyDetector(self.events, self.users, self.rules)
        self.enforcer = EscalationEnforcer(
            users=self.users,
            events=self.events,
            registry=self.registry,
            notifier=self.notifier,
            rules=self.rules,
            admin_email=admin_email,
            notify_executor=notify_executor,
        )
        self.event_log = SecurityEventLog(self.events, self.detector, self.enforcer)

        logger.info(
            f"AccessOrchestrator initialized "
            f"(registry={type(self.registry).__name__}, events={type(self.events).__name__})"
        )

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> AccessOrchestrator:
        """Build the engine with the backends selected by configuration."""
        from persistence.connection import get_redis_client, get_supabase_client

        settings = settings or get_settings()

        if settings.state_backend == StateBackend.REDIS:
            from persistence.session_repository import RedisRateLimiter, RedisSessionRegistry

            client = get_redis_client()
            registry: SessionRegistry = RedisSessionRegistry(
                client,
                stale_after=settings.session_stale_seconds,
                reap_after=settings.session_reap_seconds,
                conflict_policy=settings.session_conflict_policy,
            )
            limiter: RateLimiter = RedisRateLimiter(
                client,
                window=settings.rate_limit_window_seconds,
                max_per_window=settings.rate_limit_max,
            )
        else:
            registry = InMemorySessionRegistry(
                stale_after=settings.session_stale_seconds,
                reap_after=settings.session_reap_seconds,
                conflict_policy=settings.session_conflict_policy,
            )
            limiter = InMemoryRateLimiter(
                window=settings.rate_limit_window_seconds,
                max_per_window=settings.rate_limit_max,
            )

        supabase = get_supabase_client()
        if supabase is not None:
            events: EventStore = SupabaseEventStore(supabase)
            users: UserStore = SupabaseUserStore(supabase)
        else:
            events = InMemoryEventStore()
            users = InMemoryUserStore()

        if settings.notify_webhook_url:
            notifier: Notifier = WebhookNotifier(
                settings.notify_webhook_url,
                timeout=settings.notify_timeout_seconds,
                retries=settings.notify_retries,
            )
        else:
            logger.warning("NOTIFY_WEBHOOK_URL not set, security notices will only be logged")
            notifier = LogNotifier()

        return cls(
            registry=registry,
            limiter=limiter,
            events=events,
            users=users,
            notifier=notifier,
            signer=ContentSigner(
                settings.content_base_url,
                settings.content_signing_secret,
                ttl_seconds=settings.signed_url_ttl_seconds,
            ),
            rules=AnomalyRules.from_settings(settings),
            admin_email=settings.admin_email,
            notify_executor=ThreadPoolExecutor(
                max_workers=settings.notify_workers,
                thread_name_prefix="warden-notify",
            ),
        )

    # -------------------------------------------------------------------------
    # Sessions
    # -------------------------------------------------------------------------

    def heartbeat(
        self,
        principal: Principal,
        payload: HeartbeatPayload,
        client_agent: Optional[str] = None,
        client_address: Optional[str] = None,
    ) -> HeartbeatResponse:
        now = self.clock.now()
        result = self.registry.heartbeat(
            principal.user_id,
            payload.session_id,
            payload.document_id,
            client_agent,
            client_address,
            now,
        )

        if result.conflicted:
            self.event_log.record_session_conflict(
                principal.user_id,
                result.existing_session_id or "",
                payload.session_id,
                now,
                document_id=payload.document_id,
                client_agent=client_agent,
                client_address=client_address,
            )

        if result.valid:
            message = "Session active"
        else:
            message = "Another session is active"
        return HeartbeatResponse(
            valid=result.valid,
            message=message,
            server_time=datetime.fromtimestamp(now, tz=timezone.utc),
        )

    def check_session(self, principal: Principal, payload: CheckSessionPayload) -> CheckSessionResponse:
        status = self.registry.check_session(principal.user_id, payload.session_id, self.clock.now())
        return CheckSessionResponse(is_active=status.is_active, message=status.message)

    def end_session(self, principal: Principal, payload: EndSessionPayload) -> EndSessionResponse:
        if not self.registry.end_session(principal.user_id, payload.session_id):
            logger.debug(
                f"End-session for user {principal.user_id} ignored: "
                f"{payload.session_id[:8]} is not the active session"
            )
        return EndSessionResponse(ended=True)

    # -------------------------------------------------------------------------
    # Telemetry
    # -------------------------------------------------------------------------

    def log_event(
        self,
        principal: Principal,
        payload: LogEventPayload,
        client_agent: Optional[str] = None,
        client_address: Optional[str] = None,
    ) -> LogEventResponse:
        """Record a client-reported event. Failures surface only as logged=False."""
        now = self.clock.now()
        try:
            event = self.event_log.build_event(
                user_id=principal.user_id,
                event_type=payload.type,
                now=now,
                user_email=principal.email,
                session_id=payload.session_id,
                document_id=payload.document_id,
                group_id=payload.group_id,
                details=payload.details,
                client_agent=client_agent,
                client_address=client_address,
                client_timestamp=payload.timestamp,
            )
        except Exception as e:
            logger.error(f"Malformed security event from user {principal.user_id}: {e}")
            return LogEventResponse(logged=False)

        result = self.event_log.record(event, now)
        return LogEventResponse(logged=result.logged, event_id=result.event_id)

    def recent_events(self, user_id: str, limit: int = 50) -> List[SecurityEvent]:
        return self.events.recent(user_id, limit=limit)

    # -------------------------------------------------------------------------
    # Content URLs
    # -------------------------------------------------------------------------

    def allow_mint(self, user_id: str) -> bool:
        """RateLimitedMint: must precede every signed-URL mint."""
        return self.limiter.allow(user_id, self.clock.now())

    def mint_signed_url(self, principal: Principal, payload: SignedUrlPayload) -> SignedUrlResponse:
        if self.signer is None:
            raise SecurityEngineError("content signing is not configured")

        if not self.allow_mint(principal.user_id):
            # Rejections are not recorded as events; logging each one would amplify a flood
            raise RateLimitExceeded(principal.user_id, self.limiter.max_per_window, self.limiter.window)

        now = self.clock.now()
        signed = self.signer.sign(payload.object_id, now)

        event = self.event_log.build_event(
            user_id=principal.user_id,
            event_type=SecurityEventType.URL_GENERATED,
            now=now,
            user_email=principal.email,
            document_id=payload.document_id,
            details={"objectId": payload.object_id},
        )
        self.event_log.record(event, now)

        return SignedUrlResponse(
            url=signed.url,
            generated_at=signed.generated_at,
            expires_at=signed.expires_at,
        )

    # -------------------------------------------------------------------------
    # Housekeeping
    # -------------------------------------------------------------------------

    def reap_sessions(self) -> List[str]:
        return self.registry.reap(self.clock.now())

    def sweep_rate_limits(self) -> int:
        return self.limiter.sweep(self.clock.now())

    def shutdown(self) -> None:
        """Drain pending security notices."""
        if self.notify_executor is not None:
            self.notify_executor.shutdown(wait=True)
            logger.info("Notification workers stopped")
