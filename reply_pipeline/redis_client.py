"""
Central place to construct the Redis client.

Locks, activity counters, breaker state and the session backlog all live in
the same Redis; components receive the client explicitly so tests can pass an
in-memory double.
"""

from __future__ import annotations

import asyncio
from weakref import WeakKeyDictionary

from redis.asyncio import Redis

from .settings import settings

_redis_clients_by_loop: WeakKeyDictionary[asyncio.AbstractEventLoop, Redis] = (
    WeakKeyDictionary()
)


def _ensure_event_loop() -> asyncio.AbstractEventLoop:
    try:
        return asyncio.get_running_loop()
    except RuntimeError as exc:  # pragma: no cover - easier debugging for sync misuse
        raise RuntimeError(
            "get_redis_client() must be called inside a running event loop, "
            "e.g. from a coroutine started with asyncio.run(...)"
        ) from exc


def _create_client() -> Redis:
    return Redis.from_url(settings.redis_url, decode_responses=True)


def get_redis_client() -> Redis:
    """
    Return a Redis client bound to the current event loop.

    Celery tasks run each job under its own asyncio.run(), so clients are
    cached per loop rather than globally.
    """

    loop = _ensure_event_loop()
    client = _redis_clients_by_loop.get(loop)
    if client is None:
        client = _create_client()
        _redis_clients_by_loop[loop] = client
    return client


async def close_redis_client() -> None:
    """Close and forget the client bound to the current loop, if any."""

    loop = _ensure_event_loop()
    client = _redis_clients_by_loop.pop(loop, None)
    if client is not None:
        await client.aclose()


__all__ = ["close_redis_client", "get_redis_client"]
