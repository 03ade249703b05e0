import logging
from functools import lru_cache
from typing import Optional

import redis
from redis.exceptions import RedisError, AuthenticationError
from supabase import create_client, Client

from core.config import get_settings

# Configure module-level logger
logger = logging.getLogger(__name__)


@lru_cache(maxsize=1)
def get_redis_client() -> redis.Redis:
    """
    Creates a singleton Redis client with a connection pool.

    Only used when STATE_BACKEND=redis. Reads configuration from settings:
    - REDIS_HOST: Hostname (default: localhost)
    - REDIS_PORT: Port (default: 6379)
    - REDIS_PASSWORD: Password (REQUIRED)
    """
    settings = get_settings()
    host = settings.redis_host
    port = settings.redis_port
    password = settings.redis_password

    if not password:
        logger.critical("REDIS_PASSWORD environment variable is not set.")
        raise ValueError("REDIS_PASSWORD is required for production security.")

    try:
        pool = redis.ConnectionPool(
            host=host,
            port=port,
            password=password,
            decode_responses=True,  # Returns str instead of bytes
            max_connections=50,     # Cap connections to prevent resource exhaustion
            socket_timeout=5.0      # Fail fast if container is down
        )

        client = redis.Redis(connection_pool=pool)

        # Health check: Ping immediately to verify connection
        client.ping()
        logger.info(f"Successfully connected to Redis at {host}:{port}")

        return client

    except AuthenticationError:
        logger.critical("Redis authentication failed. Check REDIS_PASSWORD.")
        raise
    except RedisError as e:
        logger.critical(f"Could not connect to Redis: {e}")
        raise


@lru_cache(maxsize=1)
def get_supabase_client() -> Optional[Client]:
    """
    Creates the singleton Supabase client for the record store.

    Returns None when SUPABASE_URL / SUPABASE_KEY are missing; callers then
    fall back to the in-memory stores.
    """
    settings = get_settings()
    if not settings.supabase_url or not settings.supabase_key:
        logger.warning("Supabase credentials missing, using in-memory record store")
        return None
    client = create_client(settings.supabase_url, settings.supabase_key)
    logger.info("Supabase record store initialized")
    return client
