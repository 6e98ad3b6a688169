"""Shared Redis connection utilities."""

from artscout.redis.connection import (
    build_redis_pool_kwargs,
    close_redis,
    create_redis_client,
    get_redis,
)

__all__ = ["build_redis_pool_kwargs", "close_redis", "create_redis_client", "get_redis"]
