"""In-memory TTL cache for profiler probes.

Entries are few and keyed by probe name. Dependency edges live on the
dependent entry, so invalidation finds dependents by scanning every entry.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, FrozenSet, Iterable, Optional, Set

# TTLs by probe class, in seconds
TTL_SYSTEM = 300
TTL_RUNTIME = 60
TTL_MEMORY = 30
TTL_CLUSTER = 120
TTL_NETWORK = 90

MAX_INVALIDATION_DEPTH = 8


class _Miss:
    def __repr__(self) -> str:
        return "MISS"

    def __bool__(self) -> bool:
        return False


MISS: Any = _Miss()


@dataclass
class CacheEntry:
    key: str
    value: Any
    captured_at: float
    ttl_seconds: float
    dependencies: FrozenSet[str] = field(default_factory=frozenset)
    valid: bool = True

    def is_fresh(self, now: float) -> bool:
        return self.valid and (now - self.captured_at) <= self.ttl_seconds


class ProbeCache:
    """TTL cache with explicit dependency links.

    Args:
        clock: Monotonic time source, injectable for tests.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}

    def set(self, key: str, value: Any, ttl: float, dependencies: Iterable[str] = ()) -> None:
        self._entries[key] = CacheEntry(
            key=key,
            value=value,
            captured_at=self._clock(),
            ttl_seconds=ttl,
            dependencies=frozenset(dependencies),
        )

    def get(self, key: str) -> Any:
        """Return the cached value, or ``MISS`` if absent, invalid or expired."""
        entry = self._entries.get(key)
        if entry is None or not entry.is_fresh(self._clock()):
            return MISS
        return entry.value

    def get_or_compute(
        self,
        key: str,
        compute: Callable[[], Any],
        ttl: float,
        dependencies: Iterable[str] = (),
    ) -> Any:
        value = self.get(key)
        if value is MISS:
            value = compute()
            self.set(key, value, ttl, dependencies)
        return value

    def invalidate(self, key: str) -> Set[str]:
        """Invalidate ``key`` and every entry that depends on it, transitively.

        Returns:
            The set of keys that were marked invalid.
        """
        invalidated: Set[str] = set()
        self._invalidate(key, 0, invalidated)
        return invalidated

    def _invalidate(self, key: str, depth: int, seen: Set[str]) -> None:
        if depth > MAX_INVALIDATION_DEPTH or key in seen:
            return
        seen.add(key)
        entry = self._entries.get(key)
        if entry is not None:
            entry.valid = False
        for other in list(self._entries.values()):
            if key in other.dependencies:
                self._invalidate(other.key, depth + 1, seen)

    def clear(self) -> None:
        self._entries.clear()

    def entry(self, key: str) -> Optional[CacheEntry]:
        return self._entries.get(key)

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not MISS

    def __len__(self) -> int:
        return len(self._entries)
