"""
Warden Persistence Layer

Public exports for connections, record stores and shared-state backends.
"""

from .connection import get_redis_client, get_supabase_client
from .event_store import (
    EventStore,
    EventStoreError,
    InMemoryEventStore,
    SupabaseEventStore,
)
from .user_store import (
    InMemoryUserStore,
    SupabaseUserStore,
    UserSecurityState,
    UserStore,
    UserStoreError,
)
from .session_repository import (
    RedisRateLimiter,
    RedisSessionRegistry,
    SessionStoreUnavailable,
)

__all__ = [
    "get_redis_client",
    "get_supabase_client",
    "EventStore",
    "EventStoreError",
    "InMemoryEventStore",
    "SupabaseEventStore",
    "UserStore",
    "UserStoreError",
    "UserSecurityState",
    "InMemoryUserStore",
    "SupabaseUserStore",
    "RedisSessionRegistry",
    "RedisRateLimiter",
    "SessionStoreUnavailable",
]
