"""
Short-lived manifest cache keyed by request path.

Entries are overwritten on every successful fetch and never evicted: only the
handful of manifest paths a channel exposes ever land here.
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CachedManifest:
    path: str
    content: str
    fetched_at: float

    def age(self, now: float) -> float:
        return now - self.fetched_at

    def is_fresh(self, now: float, ttl: float) -> bool:
        return self.age(now) < ttl


class ManifestCache:
    def __init__(self, ttl: float, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self._clock = clock
        self._entries: Dict[str, CachedManifest] = {}
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def get(self, path: str) -> Optional[str]:
        """Return cached content for path, or None if absent or expired"""
        with self._lock:
            entry = self._entries.get(path)
            now = self._clock()
            if entry is None or not entry.is_fresh(now, self.ttl):
                self.misses += 1
                return None
            self.hits += 1
        logger.debug(
            f"Manifest cache hit for {path} (age {entry.age(now):.2f}s)")
        return entry.content

    def put(self, path: str, content: str) -> None:
        # Last write wins when concurrent misses race on the same path
        with self._lock:
            self._entries[path] = CachedManifest(
                path=path, content=content, fetched_at=self._clock())

    def __contains__(self, path: str) -> bool:
        with self._lock:
            return path in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def get_stats(self) -> Dict:
        with self._lock:
            return {
                "entries": len(self._entries),
                "hits": self.hits,
                "misses": self.misses,
                "ttl_seconds": self.ttl,
            }
