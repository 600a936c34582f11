"""Redis client for payment notifications (pub/sub)"""
import asyncio
import logging

import redis.asyncio as aioredis

from paycore.core.config import settings

logger = logging.getLogger(__name__)

# Lazy initialization - no connection at import time
_async_client = None


def get_async_redis_client():
    """Get or create async Redis client (lazy initialization)

    Recreates the client when it is bound to a different event loop, which
    happens when background tasks and tests run on fresh loops.
    """
    global _async_client

    try:
        current_loop = asyncio.get_running_loop()
    except RuntimeError:
        # No loop is running, nothing could await the client
        return None

    if _async_client is not None:
        client_loop = getattr(_async_client.connection_pool, '_loop', None)
        if client_loop is not current_loop:
            _async_client = None

    if _async_client is None:
        _async_client = aioredis.from_url(
            settings.REDIS_URL,
            decode_responses=True,
            max_connections=20
        )
        _async_client.connection_pool._loop = current_loop

    return _async_client
