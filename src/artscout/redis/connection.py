"""Redis connection helpers shared by the queue store and execution store."""

from __future__ import annotations

from typing import Any

import redis.asyncio as aioredis
from redis.asyncio.retry import Retry
from redis.backoff import ConstantBackoff

from artscout.main.config import Settings, get_settings


def build_redis_pool_kwargs(
    settings: Settings | None = None,
    *,
    decode_responses: bool,
) -> dict[str, Any]:
    """Build keyword arguments for redis.asyncio connection pools."""
    resolved_settings = settings or get_settings()
    kwargs: dict[str, Any] = {
        "decode_responses": decode_responses,
        "socket_connect_timeout": resolved_settings.redis_conn_timeout,
        "retry_on_timeout": resolved_settings.redis_retry_on_timeout,
        "socket_keepalive": resolved_settings.redis_socket_keepalive,
        "health_check_interval": resolved_settings.redis_health_check_interval,
    }

    if resolved_settings.redis_conn_retries > 0:
        kwargs["retry"] = Retry(
            ConstantBackoff(resolved_settings.redis_conn_retry_delay),
            resolved_settings.redis_conn_retries,
        )

    if resolved_settings.redis_max_connections is not None:
        kwargs["max_connections"] = resolved_settings.redis_max_connections

    if resolved_settings.redis_db is not None:
        kwargs["db"] = resolved_settings.redis_db

    return kwargs


def create_redis_client(
    settings: Settings | None = None, *, decode_responses: bool = False
) -> aioredis.Redis:
    resolved_settings = settings or get_settings()
    redis_url = f"redis://{resolved_settings.redis_host}:{resolved_settings.redis_port}"
    pool = aioredis.ConnectionPool.from_url(
        redis_url,
        **build_redis_pool_kwargs(resolved_settings, decode_responses=decode_responses),
    )
    return aioredis.Redis(connection_pool=pool)


_redis_client: aioredis.Redis | None = None


def get_redis() -> aioredis.Redis:
    """Get the shared Redis client, creating it on first use."""
    global _redis_client
    if _redis_client is None:
        _redis_client = create_redis_client()
    return _redis_client


async def close_redis() -> None:
    global _redis_client
    if _redis_client is None:
        return
    client, _redis_client = _redis_client, None
    await client.aclose()
