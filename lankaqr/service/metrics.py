from __future__ import annotations

import threading
from dataclasses import dataclass, field


@dataclass
class Metrics:
    """Process-lifetime diagnostic counters.

    One instance is created with the runtime and handed to the components
    that count things. Values reset on restart and are not persisted.
    """

    revoked_count: int = 0
    cache_hits: int = 0
    cache_misses: int = 0
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def increment_revocation(self) -> None:
        with self._lock:
            self.revoked_count += 1

    def increment_cache_hit(self) -> None:
        with self._lock:
            self.cache_hits += 1

    def increment_cache_miss(self) -> None:
        with self._lock:
            self.cache_misses += 1

    def snapshot(self) -> dict[str, int]:
        with self._lock:
            return {
                "revokedCount": self.revoked_count,
                "cacheHits": self.cache_hits,
                "cacheMisses": self.cache_misses,
            }
