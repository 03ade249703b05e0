"""
Warden Access API

FastAPI application exposing the access-session engine:
- POST /security/heartbeat       → {valid, message, serverTime}
- POST /security/check-session   → {valid, isActive, message}
- POST /security/end-session     → {ended}
- POST /security/log-event       → {logged, eventId?}  (never an error status)
- GET  /security/events/{userId} → the caller's latest security events
- POST /content/signed-url       → short-lived signed URL, 429 when rate limited

The identity gateway in front of this service verifies the user and
forwards the principal as X-User-Id / X-User-Email headers.
"""

from contextlib import asynccontextmanager
import logging
from typing import List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request, status
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from pydantic import ValidationError

from core.config import get_settings
from core.orchestrator import (
    AccessOrchestrator,
    Principal,
    RateLimitExceeded,
)
from core.schemas.events import SecurityEvent
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
from core.sweeper import Sweeper


VERSION = "1.0.0"

settings = get_settings()

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


# =============================================================================
# Application State
# =============================================================================

class AppState:
    """Application state container."""
    orchestrator: Optional[AccessOrchestrator] = None
    sweeper: Optional[Sweeper] = None


state = AppState()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    # Startup
    logger.info("Starting Warden Access API...")
    if state.orchestrator is None:
        state.orchestrator = AccessOrchestrator.from_settings(settings)

    state.sweeper = Sweeper()
    state.sweeper.add_job("session-reaper", settings.sweep_interval_seconds, state.orchestrator.reap_sessions)
    state.sweeper.add_job("rate-limit-gc", settings.rate_limit_sweep_seconds, state.orchestrator.sweep_rate_limits)
    state.sweeper.start()
    logger.info("Warden Access API ready")

    yield

    # Shutdown
    logger.info("Shutting down Warden Access API...")
    state.sweeper.stop()
    state.orchestrator.shutdown()


# =============================================================================
# FastAPI Application
# =============================================================================

app = FastAPI(
    title="Warden Access API",
    description="Single-session enforcement, content URL rate limiting and abuse escalation",
    version=VERSION,
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
)


# =============================================================================
# Dependencies
# =============================================================================

def get_principal(
    x_user_id: Optional[str] = Header(None),
    x_user_email: Optional[str] = Header(None),
) -> Principal:
    """Principal forwarded by the identity gateway; trusted as-is."""
    if not x_user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing authenticated principal"
        )
    return Principal(user_id=x_user_id, email=x_user_email)


def get_orchestrator() -> AccessOrchestrator:
    if state.orchestrator is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Engine not initialized"
        )
    return state.orchestrator


def _client(request: Request) -> tuple:
    agent = request.headers.get("user-agent")
    address = request.client.host if request.client else None
    return agent, address


# =============================================================================
# Health Check
# =============================================================================

@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "version": VERSION}


# =============================================================================
# Session Endpoints
# =============================================================================

@app.post("/security/heartbeat", response_model=HeartbeatResponse)
def heartbeat(
    payload: HeartbeatPayload,
    request: Request,
    principal: Principal = Depends(get_principal),
    engine: AccessOrchestrator = Depends(get_orchestrator),
):
    """
    Validate that a viewing session is still the user's active one.

    - Creates or refreshes the session
    - valid=false when another fresh session owns the user
    """
    agent, address = _client(request)
    try:
        return engine.heartbeat(principal, payload, agent, address)
    except Exception as e:
        logger.error(f"Heartbeat Error: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Internal Server Error"
        )


@app.post("/security/check-session", response_model=CheckSessionResponse)
def check_session(
    payload: CheckSessionPayload,
    principal: Principal = Depends(get_principal),
    engine: AccessOrchestrator = Depends(get_orchestrator),
):
    """Verify whether the caller's session may keep viewing."""
    try:
        return engine.check_session(principal, payload)
    except Exception as e:
        logger.error(f"Check Session Error: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Internal Server Error"
        )


@app.post("/security/end-session", response_model=EndSessionResponse)
def end_session(
    payload: EndSessionPayload,
    principal: Principal = Depends(get_principal),
    engine: AccessOrchestrator = Depends(get_orchestrator),
):
    """Explicitly end a viewing session."""
    try:
        return engine.end_session(principal, payload)
    except Exception as e:
        logger.error(f"End Session Error: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Internal Server Error"
        )


# =============================================================================
# Telemetry Endpoints
# =============================================================================

@app.post("/security/log-event", response_model=LogEventResponse, response_model_exclude_none=True)
async def log_event(
    request: Request,
    principal: Principal = Depends(get_principal),
    engine: AccessOrchestrator = Depends(get_orchestrator),
):
    """
    Record a client-reported security event.

    Never fails the request: logging must not disrupt the viewer. The body
    is parsed here rather than by FastAPI so that malformed telemetry is
    answered with logged=false instead of a 422.
    """
    agent, address = _client(request)
    try:
        body = await request.json()
        if not isinstance(body, dict):
            raise ValueError(f"expected a JSON object, got {type(body).__name__}")
        payload = LogEventPayload.model_validate(body)
    except (ValueError, ValidationError) as e:
        logger.warning(f"Malformed security event from user {principal.user_id}: {e}")
        return LogEventResponse(logged=False)

    try:
        return await run_in_threadpool(engine.log_event, principal, payload, agent, address)
    except Exception as e:
        logger.error(f"Log Event Error: {e}")
        return LogEventResponse(logged=False)


@app.get("/security/events/{user_id}", response_model=List[SecurityEvent])
def user_events(
    user_id: str,
    limit: int = Query(50, ge=1, le=500),
    principal: Principal = Depends(get_principal),
    engine: AccessOrchestrator = Depends(get_orchestrator),
):
    """A user's most recent security events. Users may only read their own."""
    if principal.user_id != user_id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Access denied")
    try:
        return engine.recent_events(user_id, limit=limit)
    except Exception as e:
        logger.error(f"Get Events Error: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Internal Server Error"
        )


# =============================================================================
# Content Endpoint
# =============================================================================

@app.post("/content/signed-url", response_model=SignedUrlResponse)
def signed_url(
    payload: SignedUrlPayload,
    principal: Principal = Depends(get_principal),
    engine: AccessOrchestrator = Depends(get_orchestrator),
):
    """
    Mint a short-lived signed URL for a stored document object.

    Rate limited per user before the signer is contacted.
    """
    try:
        return engine.mint_signed_url(principal, payload)
    except RateLimitExceeded as e:
        logger.warning(f"[RateLimit] {e}")
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Too many requests. Please wait before viewing more pages."
        )
    except Exception as e:
        logger.error(f"Sign URL Error: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Internal Server Error"
        )


# =============================================================================
# Entry Point
# =============================================================================

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=settings.port)
