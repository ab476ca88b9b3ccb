"""Cache-aside layer for product details backed by a key-value store."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import StrEnum
from typing import Protocol

from pydantic import ValidationError
from redis import ConnectionPool, Redis, RedisError

from catalog_fetch.schema import ProductDetails

logger = logging.getLogger(__name__)

DEFAULT_REDIS_URL = "redis://localhost:6379/0"
DEFAULT_CACHE_TTL_SECONDS = 60 * 60 * 24
DEFAULT_KEY_PREFIX = "keepa:product:"


class CacheBackendError(RuntimeError):
    """Raised by a key-value store when the backend cannot be reached."""


class CacheWriteError(RuntimeError):
    """Raised when a write-through to the cache fails."""

    def __init__(self, message: str, *, key: str) -> None:
        super().__init__(message)
        self.key = key


class KeyValueStore(Protocol):
    def get(self, key: str) -> bytes | None: ...

    def set(self, key: str, value: bytes, ttl_seconds: int) -> None: ...


class RedisKeyValueStore:
    """Redis-backed key-value store using a pooled redis-py client."""

    def __init__(
        self,
        redis_url: str = DEFAULT_REDIS_URL,
        *,
        max_connections: int = 20,
        socket_timeout: float = 5.0,
        socket_connect_timeout: float = 5.0,
        client: Redis | None = None,
    ) -> None:
        if client is None:
            pool = ConnectionPool.from_url(
                redis_url,
                max_connections=max_connections,
                socket_timeout=socket_timeout,
                socket_connect_timeout=socket_connect_timeout,
                decode_responses=False,
            )
            client = Redis(connection_pool=pool)
        self._client = client

    def get(self, key: str) -> bytes | None:
        try:
            value = self._client.get(key)
        except RedisError as error:
            raise CacheBackendError(f"Redis get failed for key '{key}': {error}") from error
        if value is None:
            return None
        return bytes(value)

    def set(self, key: str, value: bytes, ttl_seconds: int) -> None:
        try:
            self._client.setex(key, ttl_seconds, value)
        except RedisError as error:
            raise CacheBackendError(f"Redis set failed for key '{key}': {error}") from error

    def ping(self) -> bool:
        """Return True when the Redis server answers."""
        try:
            return bool(self._client.ping())
        except RedisError as error:
            logger.warning("Redis ping failed: %s", error)
            return False

    def close(self) -> None:
        self._client.close()


class CacheStatus(StrEnum):
    HIT = "hit"
    MISS = "miss"
    ERROR = "error"


@dataclass(frozen=True, slots=True)
class CacheLookup:
    """Result of one cache lookup; ``error`` is handled like a miss."""

    status: CacheStatus
    payload: ProductDetails | None = None
    detail: str | None = None

    @property
    def is_hit(self) -> bool:
        return self.status is CacheStatus.HIT


class CacheAside:
    """Looks up product details before the upstream call and writes them through after."""

    def __init__(
        self,
        store: KeyValueStore,
        *,
        ttl_seconds: int = DEFAULT_CACHE_TTL_SECONDS,
        key_prefix: str = DEFAULT_KEY_PREFIX,
    ) -> None:
        if ttl_seconds <= 0:
            raise ValueError(f"ttl_seconds must be positive, got {ttl_seconds}.")
        self._store = store
        self.ttl_seconds = ttl_seconds
        self.key_prefix = key_prefix

    def cache_key(self, item_key: str) -> str:
        return f"{self.key_prefix}{item_key}"

    def lookup(self, item_key: str) -> CacheLookup:
        """Return the cached payload, a miss, or an error status. Never raises."""
        key = self.cache_key(item_key)
        try:
            raw = self._store.get(key)
        except CacheBackendError as error:
            logger.warning("Cache lookup failed for %s, treating as miss: %s", item_key, error)
            return CacheLookup(CacheStatus.ERROR, detail=str(error))
        except Exception as error:
            logger.exception("Unexpected cache store error during lookup for %s", item_key)
            return CacheLookup(CacheStatus.ERROR, detail=f"{type(error).__name__}: {error}")

        if raw is None:
            logger.debug("Cache miss for %s", item_key)
            return CacheLookup(CacheStatus.MISS)

        try:
            payload = ProductDetails.model_validate_json(raw)
        except ValidationError as error:
            logger.warning("Discarding unreadable cache entry for %s: %s", item_key, error)
            return CacheLookup(CacheStatus.ERROR, detail=f"unreadable cache entry: {error}")

        logger.debug("Cache hit for %s", item_key)
        return CacheLookup(CacheStatus.HIT, payload=payload)

    def store(self, item_key: str, payload: ProductDetails) -> None:
        """Write the payload through with the configured TTL."""
        key = self.cache_key(item_key)
        try:
            self._store.set(key, payload.to_json_bytes(), self.ttl_seconds)
        except Exception as error:
            raise CacheWriteError(
                f"Failed to cache details for '{item_key}': {error}", key=key
            ) from error
        logger.debug("Cached details for %s (ttl %d seconds)", item_key, self.ttl_seconds)
