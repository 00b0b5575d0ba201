"""Bounded in-memory byte cache for served media artifacts.

Entries are keyed by absolute artifact path (or ``s3://`` key) and evicted in
least-recently-accessed order once the configured total size would be
exceeded. Eviction only drops the in-memory copy, never the artifact itself.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Optional

from pydantic import BaseModel

MB = 1024 * 1024


@dataclass
class CacheEntry:
    key: str
    data: bytes
    size_bytes: int
    stored_at: float
    last_access: float


class CacheStats(BaseModel):
    name: str
    entries: int
    size_bytes: int
    max_size_bytes: int
    max_entry_bytes: int
    hits: int
    misses: int

    @property
    def size_mb(self) -> float:
        return round(self.size_bytes / MB, 2)


class ContentCache:
    def __init__(
        self,
        max_total_bytes: int,
        max_entry_bytes: int,
        ttl_seconds: float | None = None,
        name: str = "media",
        clock: Callable[[], float] = time.monotonic,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        if max_total_bytes <= 0:
            raise ValueError("max_total_bytes must be positive")
        if max_entry_bytes <= 0:
            raise ValueError("max_entry_bytes must be positive")
        self.name = name
        self.max_total_bytes = max_total_bytes
        self.max_entry_bytes = min(max_entry_bytes, max_total_bytes)
        self.ttl_seconds = ttl_seconds if ttl_seconds and ttl_seconds > 0 else None
        self._clock = clock
        self.log = logger or logging.getLogger(__name__)
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._size = 0
        self._hits = 0
        self._misses = 0
        self._lock = threading.Lock()
        self._closed = False

    def get(self, key: str) -> bytes | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                return None
            now = self._clock()
            if self.ttl_seconds is not None and now - entry.stored_at > self.ttl_seconds:
                self._remove_locked(key)
                self._misses += 1
                return None
            entry.last_access = now
            self._entries.move_to_end(key)
            self._hits += 1
            return entry.data

    def set(self, key: str, data: bytes) -> bool:
        size = len(data)
        if size > self.max_entry_bytes:
            self.log.info(
                "cache skip: entry too large",
                extra={"cache": self.name, "key": key, "size_bytes": size, "max_entry_bytes": self.max_entry_bytes},
            )
            return False
        with self._lock:
            if self._closed:
                return False
            self._remove_locked(key)
            while self._entries and self._size + size > self.max_total_bytes:
                oldest_key, oldest = next(iter(self._entries.items()))
                self.log.debug(
                    "cache evict",
                    extra={"cache": self.name, "key": oldest_key, "size_bytes": oldest.size_bytes},
                )
                self._remove_locked(oldest_key)
            now = self._clock()
            self._entries[key] = CacheEntry(key=key, data=data, size_bytes=size, stored_at=now, last_access=now)
            self._size += size
        self.log.debug("cache store", extra={"cache": self.name, "key": key, "size_bytes": size})
        return True

    def delete(self, key: str) -> None:
        with self._lock:
            self._remove_locked(key)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._size = 0

    def close(self) -> None:
        with self._lock:
            self._entries.clear()
            self._size = 0
            self._closed = True

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return key in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    @property
    def size_bytes(self) -> int:
        with self._lock:
            return self._size

    def get_stats(self) -> CacheStats:
        with self._lock:
            return CacheStats(
                name=self.name,
                entries=len(self._entries),
                size_bytes=self._size,
                max_size_bytes=self.max_total_bytes,
                max_entry_bytes=self.max_entry_bytes,
                hits=self._hits,
                misses=self._misses,
            )

    def _remove_locked(self, key: str) -> None:
        entry = self._entries.pop(key, None)
        if entry is not None:
            self._size -= entry.size_bytes
