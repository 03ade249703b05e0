"""
Warden Core

Central module exports for the access-session and abuse-mitigation engine.
"""

from core.orchestrator import (
    AccessOrchestrator,
    Principal,
    RateLimitExceeded,
    SecurityEngineError,
)

__all__ = [
    "AccessOrchestrator",
    "Principal",
    "RateLimitExceeded",
    "SecurityEngineError",
]
