"""Two-tier content-hash cache.

The memory tier is an in-process expiring map with a fixed capacity. The
durable tier (Redis or the ``cache_entries`` table) keeps entries longer and
is consulted on a memory miss. Durable writes are fire-and-forget on a small
worker pool; a failing durable tier only costs latency.
"""

import hashlib
import json
import re
import threading
import time
from abc import ABC, abstractmethod
from concurrent.futures import Future, ThreadPoolExecutor, wait
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

import redis
from sqlalchemy.dialects.postgresql import insert

from wabot.logging_config import get_logger
from wabot.models import CacheEntry

logger = get_logger("cache")

REDIS_KEY_PREFIX = "wabot"


def normalize_text(text: str) -> str:
    """Lowercase, trim and collapse whitespace."""
    if not text:
        return ""
    return re.sub(r"\s+", " ", text.strip().lower())


def content_hash(text: str) -> str:
    return hashlib.sha256(normalize_text(text).encode("utf-8")).hexdigest()


class MemoryTier:
    """Expiring map with oldest-inserted eviction at capacity."""

    def __init__(
        self,
        ttl_seconds: float = 3600,
        max_entries: int = 1000,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_entries <= 0:
            raise ValueError("max_entries must be positive")
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._entries: dict[str, tuple[Any, float]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Any | None:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            payload, expires_at = entry
            if expires_at <= now:
                del self._entries[key]
                return None
            return payload

    def put(self, key: str, payload: Any) -> None:
        expires_at = self._clock() + self.ttl_seconds
        with self._lock:
            # Re-inserting moves the key to the newest position.
            self._entries.pop(key, None)
            while len(self._entries) >= self.max_entries:
                oldest = next(iter(self._entries))
                del self._entries[oldest]
            self._entries[key] = (payload, expires_at)

    def invalidate(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def sweep(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [key for key, (_, expires_at) in self._entries.items() if expires_at <= now]
        removed = 0
        for key in expired:
            with self._lock:
                entry = self._entries.get(key)
                if entry is not None and entry[1] <= now:
                    del self._entries[key]
                    removed += 1
        return removed

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class DurableStore(ABC):
    """Longer-lived cache tier shared across processes."""

    @abstractmethod
    def get(self, namespace: str, key: str) -> Any | None:
        pass

    @abstractmethod
    def put(self, namespace: str, key: str, payload: Any, ttl_seconds: int) -> None:
        pass

    @abstractmethod
    def delete(self, namespace: str, key: str) -> None:
        pass

    @abstractmethod
    def purge_expired(self) -> int:
        pass

    @abstractmethod
    def clear(self, namespace: str) -> None:
        pass


class RedisCacheStore(DurableStore):
    """Redis rendition; expiry is native so purge is a no-op."""

    def __init__(self, client):
        self.client = client

    @classmethod
    def from_url(cls, url: str, socket_timeout: float = 0.3) -> "RedisCacheStore":
        client = redis.Redis.from_url(
            url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        return cls(client)

    @staticmethod
    def _key(namespace: str, key: str) -> str:
        return f"{REDIS_KEY_PREFIX}:{namespace}:{key}"

    def get(self, namespace: str, key: str) -> Any | None:
        raw = self.client.get(self._key(namespace, key))
        if not raw:
            return None
        return json.loads(raw)

    def put(self, namespace: str, key: str, payload: Any, ttl_seconds: int) -> None:
        self.client.setex(self._key(namespace, key), ttl_seconds, json.dumps(payload, ensure_ascii=False))

    def delete(self, namespace: str, key: str) -> None:
        self.client.delete(self._key(namespace, key))

    def purge_expired(self) -> int:
        return 0

    def clear(self, namespace: str) -> None:
        keys = list(self.client.scan_iter(match=f"{REDIS_KEY_PREFIX}:{namespace}:*"))
        if keys:
            self.client.delete(*keys)


class SqlCacheStore(DurableStore):
    """``cache_entries`` table rendition. Each call uses its own session."""

    def __init__(self, session_factory: Callable):
        self.session_factory = session_factory

    def get(self, namespace: str, key: str) -> Any | None:
        db = self.session_factory()
        try:
            entry = (
                db.query(CacheEntry)
                .filter(
                    CacheEntry.namespace == namespace,
                    CacheEntry.content_hash == key,
                    CacheEntry.expires_at > datetime.now(timezone.utc),
                )
                .first()
            )
            return entry.payload if entry else None
        finally:
            db.close()

    def put(self, namespace: str, key: str, payload: Any, ttl_seconds: int) -> None:
        expires_at = datetime.now(timezone.utc) + timedelta(seconds=ttl_seconds)
        stmt = insert(CacheEntry.__table__).values(
            namespace=namespace,
            content_hash=key,
            payload=payload,
            expires_at=expires_at,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["namespace", "content_hash"],
            set_={"payload": stmt.excluded.payload, "expires_at": stmt.excluded.expires_at},
        )
        db = self.session_factory()
        try:
            db.execute(stmt)
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def delete(self, namespace: str, key: str) -> None:
        db = self.session_factory()
        try:
            db.query(CacheEntry).filter(
                CacheEntry.namespace == namespace,
                CacheEntry.content_hash == key,
            ).delete(synchronize_session=False)
            db.commit()
        finally:
            db.close()

    def purge_expired(self) -> int:
        db = self.session_factory()
        try:
            removed = (
                db.query(CacheEntry)
                .filter(CacheEntry.expires_at <= datetime.now(timezone.utc))
                .delete(synchronize_session=False)
            )
            db.commit()
            return removed or 0
        finally:
            db.close()

    def clear(self, namespace: str) -> None:
        db = self.session_factory()
        try:
            db.query(CacheEntry).filter(CacheEntry.namespace == namespace).delete(synchronize_session=False)
            db.commit()
        finally:
            db.close()


class TwoTierCache:
    def __init__(
        self,
        namespace: str,
        memory: MemoryTier,
        durable: Optional[DurableStore] = None,
        durable_ttl_seconds: int = 86400,
        executor: Optional[ThreadPoolExecutor] = None,
    ):
        self.namespace = namespace
        self.memory = memory
        self.durable = durable
        self.durable_ttl_seconds = durable_ttl_seconds
        self._executor = executor
        self._pending: set[Future] = set()
        self._pending_lock = threading.Lock()
        self._stats = {"memory_hits": 0, "durable_hits": 0, "misses": 0, "durable_errors": 0}
        self._stats_lock = threading.Lock()

    def _count(self, name: str) -> None:
        with self._stats_lock:
            self._stats[name] += 1

    def _get_executor(self) -> ThreadPoolExecutor:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix=f"cache-{self.namespace}")
        return self._executor

    def get(self, key: str) -> Any | None:
        payload = self.memory.get(key)
        if payload is not None:
            self._count("memory_hits")
            return payload

        if self.durable is not None:
            try:
                payload = self.durable.get(self.namespace, key)
            except Exception as exc:
                self._count("durable_errors")
                logger.warning(
                    f"Durable cache read failed: {exc}",
                    extra={"context": {"namespace": self.namespace, "content_hash": key}},
                )
                payload = None
            if payload is not None:
                self._count("durable_hits")
                self.memory.put(key, payload)
                return payload

        self._count("misses")
        return None

    def put(self, key: str, payload: Any) -> None:
        self.memory.put(key, payload)
        if self.durable is None:
            return
        future = self._get_executor().submit(self._write_durable, key, payload)
        with self._pending_lock:
            self._pending.add(future)
        future.add_done_callback(self._discard_pending)

    def _discard_pending(self, future: Future) -> None:
        with self._pending_lock:
            self._pending.discard(future)

    def _write_durable(self, key: str, payload: Any) -> None:
        try:
            self.durable.put(self.namespace, key, payload, self.durable_ttl_seconds)
        except Exception as exc:
            self._count("durable_errors")
            logger.warning(
                f"Durable cache write failed: {exc}",
                extra={"context": {"namespace": self.namespace, "content_hash": key}},
            )

    def flush(self, timeout: float | None = None) -> None:
        """Block until pending durable writes finish."""
        with self._pending_lock:
            pending = list(self._pending)
        if pending:
            wait(pending, timeout=timeout)

    def invalidate(self, key: str) -> None:
        self.memory.invalidate(key)
        if self.durable is None:
            return
        try:
            self.durable.delete(self.namespace, key)
        except Exception as exc:
            logger.warning(
                f"Durable cache delete failed: {exc}",
                extra={"context": {"namespace": self.namespace, "content_hash": key}},
            )

    def clear(self) -> None:
        self.memory.clear()
        if self.durable is None:
            return
        try:
            self.durable.clear(self.namespace)
        except Exception as exc:
            logger.warning(f"Durable cache clear failed: {exc}", extra={"context": {"namespace": self.namespace}})

    def sweep(self) -> dict:
        removed_memory = self.memory.sweep()
        removed_durable = 0
        if self.durable is not None:
            try:
                removed_durable = self.durable.purge_expired()
            except Exception as exc:
                logger.warning(
                    f"Durable cache purge failed: {exc}", extra={"context": {"namespace": self.namespace}}
                )
        result = {"namespace": self.namespace, "memory_removed": removed_memory, "durable_removed": removed_durable}
        if removed_memory or removed_durable:
            logger.info("Cache sweep", extra={"context": result})
        return result

    def stats(self) -> dict:
        with self._stats_lock:
            counters = dict(self._stats)
        return {
            "namespace": self.namespace,
            "memory_entries": len(self.memory),
            "max_entries": self.memory.max_entries,
            "durable": type(self.durable).__name__ if self.durable is not None else None,
            **counters,
        }

    def shutdown(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None
