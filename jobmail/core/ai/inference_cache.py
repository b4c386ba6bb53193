"""
Inference result cache.

Keyed by a normalized hash of the stage inputs. Entries expire after a fixed
TTL; expired entries are deleted when read and by cleanup_expired(). The cache
is an injected service with a pluggable backend (in-memory here, SQL-backed in
jobmail.core.database.repository).
"""
import hashlib
import re
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Optional, Tuple
import logging

from .config_constants import CACHE_TTL_DAYS

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CacheBackend(ABC):
    """Storage for cache entries: key -> (stage, value, expires_at)"""

    @abstractmethod
    def get(self, key: str) -> Optional[Tuple[str, dict, datetime]]:
        ...

    @abstractmethod
    def put(self, key: str, stage: str, value: dict, expires_at: datetime) -> None:
        ...

    @abstractmethod
    def delete(self, key: str) -> None:
        ...

    @abstractmethod
    def delete_expired(self, now: datetime) -> int:
        ...

    @abstractmethod
    def clear(self, stage: Optional[str] = None) -> int:
        ...


class InMemoryCacheBackend(CacheBackend):
    """Process-local backend. Thread-safe."""

    def __init__(self):
        self._entries: Dict[str, Tuple[str, dict, datetime]] = {}
        self._lock = threading.Lock()

    def get(self, key):
        with self._lock:
            return self._entries.get(key)

    def put(self, key, stage, value, expires_at):
        with self._lock:
            self._entries[key] = (stage, dict(value), expires_at)

    def delete(self, key):
        with self._lock:
            self._entries.pop(key, None)

    def delete_expired(self, now):
        with self._lock:
            expired = [k for k, (_, _, exp) in self._entries.items() if exp <= now]
            for key in expired:
                del self._entries[key]
            return len(expired)

    def clear(self, stage=None):
        with self._lock:
            keys = [k for k, (s, _, _) in self._entries.items() if stage is None or s == stage]
            for key in keys:
                del self._entries[key]
            return len(keys)

    def __len__(self):
        return len(self._entries)


def normalize_for_key(text: Optional[str]) -> str:
    return re.sub(r"\s+", " ", (text or "")).strip().lower()


class InferenceCache:
    """TTL cache for stage results."""

    def __init__(
        self,
        backend: Optional[CacheBackend] = None,
        ttl_days: float = CACHE_TTL_DAYS,
        clock: Callable[[], datetime] = _utcnow,
    ):
        """
        Args:
            backend: Entry storage (in-memory by default)
            ttl_days: Retention window for entries
            clock: Time source (injectable for tests)
        """
        self.backend = backend or InMemoryCacheBackend()
        self.ttl = timedelta(days=ttl_days)
        self.clock = clock
        self.hits = 0
        self.misses = 0

    @staticmethod
    def make_key(stage: str, *parts: Optional[str]) -> str:
        """sha256 over the stage name and normalized inputs."""
        material = "\n".join([stage] + [normalize_for_key(p) for p in parts])
        return hashlib.sha256(material.encode("utf-8")).hexdigest()

    def get(self, stage: str, *parts: Optional[str]) -> Optional[dict]:
        key = self.make_key(stage, *parts)
        entry = self.backend.get(key)
        if entry is None:
            self.misses += 1
            return None

        _, value, expires_at = entry
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        if expires_at <= self.clock():
            logger.debug(f"Cache entry {key[:12]} for {stage} expired, deleting")
            self.backend.delete(key)
            self.misses += 1
            return None

        self.hits += 1
        return dict(value)

    def set(self, stage: str, value: dict, *parts: Optional[str]) -> None:
        key = self.make_key(stage, *parts)
        self.backend.put(key, stage, value, self.clock() + self.ttl)

    def invalidate(self, stage: Optional[str] = None) -> int:
        """Drop all entries, or only those of one stage."""
        removed = self.backend.clear(stage)
        logger.info(f"Invalidated {removed} cache entries" + (f" for {stage}" if stage else ""))
        return removed

    def cleanup_expired(self) -> int:
        removed = self.backend.delete_expired(self.clock())
        if removed:
            logger.info(f"Removed {removed} expired cache entries")
        return removed

    @property
    def stats(self) -> Dict[str, int]:
        return {"hits": self.hits, "misses": self.misses}
