from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable
from typing import Any, Protocol, TypeVar

from app.config import cache_configured, settings
from app.integrations.errors import CacheStoreError
from app.integrations.redis_client import RedisClient
from app.observability import log_event, metrics_store

T = TypeVar("T")

ADMIN_METRICS_KEY = "admin:metrics"
ANALYTICS_KEY_PATTERN = "analytics:*"

# Failures a cache store may raise; none of them reach callers.
_STORE_ERRORS = (CacheStoreError, OSError)


class CacheStore(Protocol):
    def get(self, key: str) -> str | None: ...

    def set(self, key: str, value: str, ttl_s: int) -> None: ...

    def scan(self, cursor: str, pattern: str, count: int) -> tuple[str, list[str]]: ...

    def delete(self, *keys: str) -> int: ...

    def ping(self) -> bool: ...

    def flush(self) -> None: ...


class RedisCacheStore:
    def __init__(self, client: RedisClient) -> None:
        self._client = client

    def get(self, key: str) -> str | None:
        value = self._client.execute("GET", key)
        return None if value is None else str(value)

    def set(self, key: str, value: str, ttl_s: int) -> None:
        self._client.execute("SET", key, value, "EX", str(max(int(ttl_s), 1)))

    def scan(self, cursor: str, pattern: str, count: int) -> tuple[str, list[str]]:
        result = self._client.execute("SCAN", cursor, "MATCH", pattern, "COUNT", str(count))
        if not isinstance(result, list) or len(result) != 2 or not isinstance(result[1], list):
            raise CacheStoreError("Unexpected SCAN response")
        return str(result[0]), [str(key) for key in result[1]]

    def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return int(self._client.execute("DEL", *keys))

    def ping(self) -> bool:
        return self._client.ping()

    def flush(self) -> None:
        self._client.execute("FLUSHDB")


class AnalyticsCache:
    """Cache-aside wrapper around expensive aggregate queries.

    The store is optional and non-authoritative. When it is missing or failing,
    every read computes directly through the fetcher.
    """

    def __init__(
        self,
        store: CacheStore | None,
        *,
        scan_count: int = 100,
        delete_batch_size: int = 100,
    ) -> None:
        self._store = store
        self.scan_count = scan_count
        self.delete_batch_size = delete_batch_size

    @property
    def enabled(self) -> bool:
        return self._store is not None

    def get_or_compute(self, key: str, fetcher: Callable[[], T], ttl_s: int) -> T:
        if self._store is None:
            return fetcher()

        try:
            cached = self._store.get(key)
        except _STORE_ERRORS as err:
            metrics_store.increment("cache_errors_total")
            log_event(
                "cache_read_failed",
                level=logging.WARNING,
                detail={"key": key, "error": str(err)},
            )
            cached = None

        if cached is not None:
            try:
                value = json.loads(cached)
            except ValueError:
                log_event("cache_value_corrupt", level=logging.WARNING, detail={"key": key})
            else:
                metrics_store.increment("cache_hits_total")
                return value

        metrics_store.increment("cache_misses_total")
        value = fetcher()
        self._write(key, value, ttl_s)
        return value

    def _write(self, key: str, value: Any, ttl_s: int) -> None:
        try:
            self._store.set(key, json.dumps(value), ttl_s)
        except (TypeError, ValueError, *_STORE_ERRORS) as err:
            metrics_store.increment("cache_errors_total")
            log_event(
                "cache_write_failed",
                level=logging.WARNING,
                detail={"key": key, "error": str(err)},
            )

    def invalidate_key(self, key: str) -> bool:
        if self._store is None:
            return False
        try:
            return self._store.delete(key) > 0
        except _STORE_ERRORS as err:
            log_event(
                "cache_invalidation_failed",
                level=logging.WARNING,
                detail={"key": key, "error": str(err)},
            )
            return False

    def invalidate_pattern(self, pattern: str) -> int:
        """Scan the keyspace for ``pattern`` and delete matches in batches.

        Best-effort: a failed scan page stops the scan, a failed delete batch is
        skipped, and the number of keys actually deleted is returned.
        """
        if self._store is None:
            return 0

        matched: list[str] = []
        cursor = "0"
        while True:
            try:
                cursor, keys = self._store.scan(cursor, pattern, self.scan_count)
            except _STORE_ERRORS as err:
                log_event(
                    "cache_scan_failed",
                    level=logging.WARNING,
                    detail={"pattern": pattern, "error": str(err)},
                )
                break
            matched.extend(keys)
            if cursor == "0":
                break

        deleted = 0
        for start in range(0, len(matched), self.delete_batch_size):
            batch = matched[start : start + self.delete_batch_size]
            try:
                deleted += self._store.delete(*batch)
            except _STORE_ERRORS as err:
                log_event(
                    "cache_delete_batch_failed",
                    level=logging.WARNING,
                    detail={"pattern": pattern, "batch_size": len(batch), "error": str(err)},
                )

        metrics_store.increment("cache_invalidated_keys_total", deleted)
        log_event("cache_invalidated", detail={"pattern": pattern, "deleted": deleted})
        return deleted

    def clear_all(self) -> bool:
        if self._store is None:
            return False
        try:
            self._store.flush()
        except _STORE_ERRORS as err:
            log_event("cache_clear_failed", level=logging.WARNING, detail={"error": str(err)})
            return False
        return True

    def stats(self) -> dict[str, Any]:
        if self._store is None:
            return {"enabled": False, "connected": False, "message": "Cache not configured"}

        start = time.perf_counter()
        try:
            connected = self._store.ping()
            self._store.set("__health_check__", json.dumps("ok"), 5)
            working = self._store.get("__health_check__") == json.dumps("ok")
        except _STORE_ERRORS as err:
            return {"enabled": True, "connected": False, "message": str(err)}
        latency_ms = round((time.perf_counter() - start) * 1000)
        return {
            "enabled": True,
            "connected": connected,
            "cache_working": working,
            "latency_ms": latency_ms,
            "message": "Cache store healthy" if connected and working else "Cache store degraded",
        }


def build_cache_store() -> CacheStore | None:
    if not cache_configured():
        return None
    try:
        return RedisCacheStore(RedisClient(settings.redis_url))
    except ValueError as err:
        log_event("cache_store_misconfigured", level=logging.WARNING, detail={"error": str(err)})
        return None


def get_analytics_cache() -> AnalyticsCache:
    return AnalyticsCache(
        build_cache_store(),
        scan_count=settings.cache_scan_count,
        delete_batch_size=settings.cache_delete_batch_size,
    )


def invalidate_order_caches(cache: AnalyticsCache) -> None:
    cache.invalidate_key(ADMIN_METRICS_KEY)
    cache.invalidate_pattern(ANALYTICS_KEY_PATTERN)
