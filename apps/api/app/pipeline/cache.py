from __future__ import annotations

import json
import logging
import threading
import time
from collections.abc import Callable
from functools import lru_cache
from typing import Any, Protocol

import redis
from redis.exceptions import RedisError

from app.core.config import Settings, get_settings
from app.metrics import observe_cache_lookup

logger = logging.getLogger("app.cache")


class CacheBackendError(Exception):
    """Raised by in-process backends to signal an unusable cache."""


class CacheBackend(Protocol):
    def get(self, key: str) -> str | None: ...

    def set(self, key: str, value: str, ttl_seconds: int) -> None: ...

    def delete(self, *keys: str) -> None: ...


class RedisCacheBackend:
    def __init__(self, client: redis.Redis) -> None:
        self.client = client

    @classmethod
    def from_url(cls, url: str) -> RedisCacheBackend:
        return cls(redis.Redis.from_url(url, decode_responses=True, socket_timeout=2, socket_connect_timeout=2))

    def get(self, key: str) -> str | None:
        return self.client.get(key)

    def set(self, key: str, value: str, ttl_seconds: int) -> None:
        self.client.set(key, value, ex=ttl_seconds)

    def delete(self, *keys: str) -> None:
        if keys:
            self.client.delete(*keys)


class InMemoryCacheBackend:
    """Process-local cache with per-key expiry, for single-node deployments and tests."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._entries: dict[str, tuple[str, float]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> str | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if self._clock() >= expires_at:
                del self._entries[key]
                return None
            return value

    def set(self, key: str, value: str, ttl_seconds: int) -> None:
        with self._lock:
            self._entries[key] = (value, self._clock() + ttl_seconds)

    def delete(self, *keys: str) -> None:
        with self._lock:
            for key in keys:
                self._entries.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()


class NullCacheBackend:
    def get(self, key: str) -> str | None:
        return None

    def set(self, key: str, value: str, ttl_seconds: int) -> None:
        return None

    def delete(self, *keys: str) -> None:
        return None


_BACKEND_ERRORS = (RedisError, CacheBackendError, OSError)


def _create_backend(choice: str, redis_url: str) -> CacheBackend:
    if choice == "redis":
        return RedisCacheBackend.from_url(redis_url)
    if choice == "memory":
        return InMemoryCacheBackend()
    if choice == "none":
        return NullCacheBackend()
    raise ValueError(f"unsupported cache backend: {choice}")


def build_cache_backend(settings: Settings) -> CacheBackend:
    return _create_backend(settings.cache_backend.lower(), settings.redis_url)


@lru_cache
def _shared_backend(choice: str, redis_url: str) -> CacheBackend:
    return _create_backend(choice, redis_url)


def get_cache_backend() -> CacheBackend:
    settings = get_settings()
    return _shared_backend(settings.cache_backend.lower(), settings.redis_url)


def get_or_set_cache(
    backend: CacheBackend,
    key: str,
    compute: Callable[[], Any],
    ttl_seconds: int,
) -> Any:
    """Cache-aside read of a JSON-serialisable value.

    The returned value is always the decoded JSON payload, on hits and misses
    alike, so callers see identical data whether or not the cache answered.
    Backend failures degrade to a direct ``compute()``; they are never raised.
    """
    try:
        cached = backend.get(key)
    except _BACKEND_ERRORS as exc:
        cached = None
        observe_cache_lookup("error")
        logger.warning("cache_backend_unavailable", extra={"cache_key": key, "error": str(exc)})
    else:
        if cached is not None:
            try:
                value = json.loads(cached)
            except (TypeError, ValueError):
                logger.warning("cache_payload_corrupt", extra={"cache_key": key})
            else:
                observe_cache_lookup("hit")
                return value
        observe_cache_lookup("miss")

    serialized = json.dumps(compute(), default=str, separators=(",", ":"))
    try:
        backend.set(key, serialized, ttl_seconds)
    except _BACKEND_ERRORS as exc:
        observe_cache_lookup("error")
        logger.warning("cache_backend_unavailable", extra={"cache_key": key, "error": str(exc)})
    return json.loads(serialized)


def invalidate(backend: CacheBackend, *keys: str) -> None:
    try:
        backend.delete(*keys)
    except _BACKEND_ERRORS as exc:
        logger.warning("cache_backend_unavailable", extra={"cache_key": ",".join(keys), "error": str(exc)})
