from __future__ import annotations
from typing import Any, Callable, Dict, Hashable, Mapping, Optional, Tuple
import threading
import time

from . import logger as log
from .models import CacheEntry, Identity

MISSING = object()


class MetadataCache:
    """Memoizes expensive per-process lookups.

    Identity entries are keyed by ``(pid, start_time, kind)``. The cache keeps the
    last start time it saw for every pid; observing a different start time for the
    same pid drops every entry of the old incarnation at once. TTL expiry is only
    checked lazily on access. Attribute entries (keyed by a resolved value such as a
    directory or a binary path) expire on TTL only.

    All access goes through one lock: one writer per key, last write wins.
    """

    def __init__(self, ttl: float = 300.0, clock: Callable[[], float] = time.time):
        self.ttl = ttl
        self.clock = clock
        self._lock = threading.RLock()
        self._entries: Dict[Tuple[int, float, str], CacheEntry] = {}
        self._attrs: Dict[Tuple[str, Hashable], CacheEntry] = {}
        self._incarnations: Dict[int, float] = {}
        self.hits = 0
        self.misses = 0
        self.invalidations = 0

    def _purge_pid(self, pid: int) -> int:
        stale = [k for k in self._entries if k[0] == pid]
        for k in stale:
            del self._entries[k]
        self._incarnations.pop(pid, None)
        self.invalidations += len(stale)
        return len(stale)

    def observe(self, identity: Identity) -> bool:
        """Record the live incarnation of a pid. Returns True if an older one was purged."""
        pid, start_time = identity
        with self._lock:
            known = self._incarnations.get(pid)
            if known is not None and known != start_time:
                dropped = self._purge_pid(pid)
                log.debug(f"pid {pid} restarted ({known} -> {start_time}); dropped {dropped} cache entries")
                self._incarnations[pid] = start_time
                return True
            self._incarnations[pid] = start_time
            return False

    def reconcile(self, live: Mapping[int, float]) -> int:
        """Drop entries for pids that are gone or whose start time changed."""
        dropped = 0
        with self._lock:
            for pid, known in list(self._incarnations.items()):
                current = live.get(pid)
                if current is None or current != known:
                    dropped += self._purge_pid(pid)
        return dropped

    def get(self, identity: Identity, kind: str) -> Any:
        self.observe(identity)
        key = (identity[0], identity[1], kind)
        with self._lock:
            entry = self._entries.get(key)
            now = self.clock()
            if entry is None:
                self.misses += 1
                return MISSING
            if entry.expired(now):
                del self._entries[key]
                self.misses += 1
                return MISSING
            entry.last_access = now
            self.hits += 1
            return entry.value

    def put(self, identity: Identity, kind: str, value: Any, ttl: Optional[float] = None) -> None:
        self.observe(identity)
        now = self.clock()
        with self._lock:
            self._entries[(identity[0], identity[1], kind)] = CacheEntry(
                value, self.ttl if ttl is None else ttl, now, now, identity[1])

    def get_or_compute(self, identity: Identity, kind: str, compute: Callable[[], Any],
                       ttl: Optional[float] = None) -> Any:
        """Return the cached value or compute it; ``None`` results are not cached."""
        value = self.get(identity, kind)
        if value is not MISSING:
            return value
        value = compute()
        if value is not None:
            self.put(identity, kind, value, ttl)
        return value

    def get_attr(self, namespace: str, key: Hashable) -> Any:
        with self._lock:
            entry = self._attrs.get((namespace, key))
            now = self.clock()
            if entry is None or entry.expired(now):
                self._attrs.pop((namespace, key), None)
                self.misses += 1
                return MISSING
            entry.last_access = now
            self.hits += 1
            return entry.value

    def put_attr(self, namespace: str, key: Hashable, value: Any, ttl: Optional[float] = None) -> None:
        now = self.clock()
        with self._lock:
            self._attrs[(namespace, key)] = CacheEntry(value, self.ttl if ttl is None else ttl, now, now)

    def drop_attr(self, namespace: str, key: Hashable) -> None:
        with self._lock:
            self._attrs.pop((namespace, key), None)

    def stats(self) -> Dict[str, int]:
        with self._lock:
            return {
                "entries": len(self._entries),
                "attributes": len(self._attrs),
                "hits": self.hits,
                "misses": self.misses,
                "invalidations": self.invalidations,
            }
