"""Valkey (Redis-compatible) client factory."""

import redis.asyncio as redis


def create_valkey_client(url: str) -> redis.Redis:
    """Create a pooled Valkey client.

    Responses are decoded to ``str``; the delivery queue relies on it.
    """
    pool = redis.ConnectionPool.from_url(url, decode_responses=True)
    return redis.Redis(connection_pool=pool)


async def close_valkey_client(client: redis.Redis) -> None:
    """Close a client created by ``create_valkey_client`` and its pool."""
    await client.aclose()
    await client.connection_pool.disconnect()
