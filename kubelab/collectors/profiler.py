"""Cached profiler facade.

Wraps the raw probes in the probe cache and turns ``ProbeUnavailable`` into
documented fallback values so system detection never aborts the tool.
"""

from __future__ import annotations

from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

from ..data.cache import (
    MISS,
    TTL_CLUSTER,
    TTL_MEMORY,
    TTL_NETWORK,
    TTL_RUNTIME,
    TTL_SYSTEM,
    ProbeCache,
)
from ..data.models import CPUArch, MemoryReading, OSFamily, RuntimeFlavor, SystemFacts
from ..errors import ErrorStack, ProbeUnavailable
from .runtime import RuntimeProbe
from .system import SystemProbe

FALLBACK_RAM_MB = 8192
FALLBACK_CPU_CORES = 2

KEY_OS = "os"
KEY_ARCH = "arch"
KEY_RAM = "total-ram"
KEY_CORES = "cpu-cores"
KEY_RUNTIME = "runtime-flavor"
KEY_RUNTIME_RUNNING = "runtime-running"
KEY_COMPETING = "competing-clusters"
KEY_MEMORY = "memory-usage"


def _log(msg: str) -> None:
    print(msg, flush=True)


class CachedProfiler:
    """Profiler probes behind the TTL cache."""

    def __init__(
        self,
        cache: ProbeCache,
        system: Optional[SystemProbe] = None,
        runtime: Optional[RuntimeProbe] = None,
        errors: Optional[ErrorStack] = None,
        ttls: Optional[Mapping[str, float]] = None,
    ):
        self.cache = cache
        self.system = system or SystemProbe()
        self.runtime = runtime or RuntimeProbe()
        self.errors = errors or ErrorStack()
        self.ttls: Dict[str, float] = {
            "system": TTL_SYSTEM,
            "runtime": TTL_RUNTIME,
            "memory": TTL_MEMORY,
            "cluster": TTL_CLUSTER,
            "network": TTL_NETWORK,
        }
        self.ttls.update(ttls or {})

    def _cached(
        self,
        key: str,
        probe: Callable[[], Any],
        ttl: float,
        fallback: Any,
        dependencies: Iterable[str] = (),
    ) -> Any:
        value = self.cache.get(key)
        if value is not MISS:
            return value
        try:
            value = probe()
        except ProbeUnavailable as exc:
            _log(f"[profiler] {key} unavailable ({exc.message}); assuming {fallback!r}")
            self.errors.push(exc.message, exc.kind, function_site=key)
            value = fallback
        self.cache.set(key, value, ttl, dependencies)
        return value

    def os_family(self) -> OSFamily:
        return self._cached(KEY_OS, self.system.detect_os, self.ttls["system"], OSFamily.UNKNOWN)

    def arch(self) -> CPUArch:
        return self._cached(KEY_ARCH, self.system.detect_arch, self.ttls["system"], CPUArch.UNKNOWN)

    def total_ram_mb(self) -> int:
        return self._cached(
            KEY_RAM,
            lambda: self.system.detect_total_ram_mb(self.os_family()),
            self.ttls["system"],
            FALLBACK_RAM_MB,
        )

    def cpu_cores(self) -> int:
        return self._cached(KEY_CORES, self.system.detect_cpu_cores, self.ttls["system"], FALLBACK_CPU_CORES)

    def runtime_flavor(self) -> RuntimeFlavor:
        return self._cached(KEY_RUNTIME, self.runtime.detect_runtime_flavor, self.ttls["runtime"], RuntimeFlavor.UNKNOWN)

    def runtime_running(self) -> bool:
        return self._cached(
            KEY_RUNTIME_RUNNING,
            self.runtime.runtime_running,
            self.ttls["runtime"],
            False,
            dependencies=[KEY_RUNTIME],
        )

    def competing_clusters(self) -> List[str]:
        return self._cached(
            KEY_COMPETING,
            lambda: self.runtime.detect_competing_clusters(self.runtime_flavor()),
            self.ttls["cluster"],
            [],
            dependencies=[KEY_RUNTIME],
        )

    def memory_usage(self) -> MemoryReading:
        return self._cached(
            KEY_MEMORY,
            lambda: self.system.memory_usage(self.os_family()),
            self.ttls["memory"],
            MemoryReading(used_mb=0, total_mb=self.total_ram_mb()),
        )

    def available_port(self, start: int) -> int:
        return self.cache.get_or_compute(
            f"available-port:{start}",
            lambda: self.runtime.find_available_port(start),
            self.ttls["network"],
        )

    def facts(self) -> SystemFacts:
        return SystemFacts(
            os_family=self.os_family(),
            arch=self.arch(),
            total_ram_mb=self.total_ram_mb(),
            cpu_cores=self.cpu_cores(),
            runtime=self.runtime_flavor(),
        )

    # --- Invalidation hooks for mutating operations ---

    def invalidate_runtime(self) -> None:
        """The runtime was started or stopped; everything derived from it is stale."""
        self.cache.invalidate(KEY_RUNTIME)

    def after_mutation(self) -> None:
        """A component was installed or removed."""
        self.cache.invalidate(KEY_MEMORY)
        self.cache.invalidate(KEY_COMPETING)
