from __future__ import annotations

import hashlib
import threading
import time
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass

from .models import Suggestion

DEFAULT_MAX_ENTRIES = 200
DEFAULT_TTL_S = 120.0


def sha256_hex(text: str) -> str:
    h = hashlib.sha256()
    h.update(text.encode("utf-8"))
    return h.hexdigest()


def cache_key(
    text_slice: str,
    scope_start: int,
    scope_end: int,
    *,
    prompt_version: str,
    model: str,
    singleshot_max: int,
) -> str:
    # The slice is hashed verbatim: cached ranges are offsets into it, so any
    # normalization that moves characters would make a hit return wrong positions.
    return sha256_hex(f"{text_slice}|{scope_start}-{scope_end}|{prompt_version}|{model}|{singleshot_max}")


@dataclass
class CacheEntry:
    key: str
    timestamp: float
    value: list[Suggestion]


class ResponseCache:
    """In-memory TTL cache with a size cap and approximate LRU eviction.

    Entries live in insertion order; a read hit moves the entry to the most-recent position
    and refreshes its timestamp.  When full, the oldest entry is evicted before inserting.
    All access goes through one lock so concurrent requests never interleave on an entry.
    """

    def __init__(
        self,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        ttl_s: float = DEFAULT_TTL_S,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_entries = max(1, int(max_entries))
        self.ttl_s = float(ttl_s)
        self._clock = clock
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0
        self.evictions = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._entries

    def _expired(self, entry: CacheEntry, now: float) -> bool:
        return now - entry.timestamp > self.ttl_s

    def get(self, key: str) -> list[Suggestion] | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self.misses += 1
                return None
            now = self._clock()
            if self._expired(entry, now):
                del self._entries[key]
                self.misses += 1
                return None
            entry.timestamp = now
            self._entries.move_to_end(key)
            self.hits += 1
            return entry.value

    def set(self, key: str, value: list[Suggestion]) -> None:
        with self._lock:
            now = self._clock()
            if key in self._entries:
                del self._entries[key]
            while len(self._entries) >= self.max_entries:
                self._entries.popitem(last=False)
                self.evictions += 1
            self._entries[key] = CacheEntry(key=key, timestamp=now, value=value)

    def purge_expired(self) -> int:
        with self._lock:
            now = self._clock()
            stale = [k for k, entry in self._entries.items() if self._expired(entry, now)]
            for k in stale:
                del self._entries[k]
            return len(stale)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
