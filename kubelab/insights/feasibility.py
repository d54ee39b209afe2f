"""Feasibility prediction and resource sizing.

Answers three questions before anything is installed:
- Does a requested component set fit in host memory with headroom?
- What is the largest set, by priority, that does fit?
- How should the cluster be sized for this host's resource tier?
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence

from ..data.models import (
    CPUArch,
    ComponentProfile,
    Insight,
    MemoryReading,
    OSFamily,
    ResourceTier,
    SystemFacts,
)
from ..errors import ConfigInvalid

BASE_CLUSTER_OVERHEAD_MB = 512
SAFETY_FACTOR = 0.8

COMPONENT_CATALOG: Dict[str, ComponentProfile] = {
    p.name: p
    for p in (
        ComponentProfile("registry", 150, "Local container registry"),
        ComponentProfile("metrics-server", 100, "Resource metrics for kubectl top and autoscaling"),
        ComponentProfile("traefik", 150, "Ingress controller"),
        ComponentProfile("argocd", 350, "GitOps continuous delivery"),
        ComponentProfile("monitoring", 600, "Prometheus and Grafana stack"),
    )
}

# Which components matter most when memory is scarce
PRIORITY_ORDER = ("registry", "metrics-server", "traefik", "monitoring", "argocd")

# Host OS reservation in MB; virtualized runtimes cost more than native
OS_OVERHEAD_MB = {
    OSFamily.WINDOWS: 2048,
    OSFamily.WSL2: 2048,
    OSFamily.LINUX: 1229,
}
MACOS_OVERHEAD_MB = {CPUArch.ARM64: 1536, CPUArch.AMD64: 1843}
DEFAULT_OS_OVERHEAD_MB = 1536

MIN_CLUSTER_MEMORY_MB = 512


def os_overhead_mb(os_family: OSFamily, arch: CPUArch) -> int:
    if os_family == OSFamily.MACOS:
        return MACOS_OVERHEAD_MB.get(arch, DEFAULT_OS_OVERHEAD_MB)
    return OS_OVERHEAD_MB.get(os_family, DEFAULT_OS_OVERHEAD_MB)


def usable_ram_mb(facts: SystemFacts) -> int:
    """RAM left for the lab after the host OS reservation, never negative."""
    return max(0, facts.total_ram_mb - os_overhead_mb(facts.os_family, facts.arch))


# =============================================================================
# Tier sizing
# =============================================================================


@dataclass(frozen=True)
class TierSizing:
    """Default sizing decisions derived from the resource tier."""

    tier: ResourceTier
    cluster_allocation_factor: float
    eviction_hard: str
    eviction_soft: str
    namespace_quota: str
    k8s_overhead_mb: int
    agents: int


_TIER_DEFAULTS = {
    ResourceTier.LOW: (0.70, "200Mi", "300Mi", "512Mi", 400),
    ResourceTier.MEDIUM: (0.75, "300Mi", "500Mi", "1Gi", 600),
    ResourceTier.HIGH: (0.80, "500Mi", "1Gi", "2Gi", 800),
}


def sizing_for(tier: ResourceTier, total_ram_mb: int, low_memory: bool = False) -> TierSizing:
    factor, hard, soft, quota, k8s_overhead = _TIER_DEFAULTS[tier]
    if low_memory:
        agents = 0
    elif total_ram_mb >= 16 * 1024:
        agents = 2
    else:
        agents = 1
    return TierSizing(
        tier=tier,
        cluster_allocation_factor=factor,
        eviction_hard=hard,
        eviction_soft=soft,
        namespace_quota=quota,
        k8s_overhead_mb=k8s_overhead,
        agents=agents,
    )


def parse_memory_spec(spec: str) -> Optional[int]:
    """Parse a memory spec into MB.

    Accepts ``auto`` (returns None), ``2048``, ``2048MB``/``2048M``, ``4GB``/``4G``
    and ``1.5GB``.

    Raises:
        ConfigInvalid: For anything else, or less than 512 MB.
    """
    text = (spec or "").strip().lower()
    if text == "auto":
        return None
    match = re.fullmatch(r"(\d+(?:\.\d+)?)\s*(gb|g|mb|m)?", text)
    if not match:
        raise ConfigInvalid(f"invalid memory spec '{spec}' (use auto, 2048MB or 4GB)", step="memory-spec")
    value = float(match.group(1))
    unit = match.group(2) or "mb"
    mb = int(value * 1024) if unit.startswith("g") else int(value)
    if mb < MIN_CLUSTER_MEMORY_MB:
        raise ConfigInvalid(
            f"memory spec '{spec}' is below the {MIN_CLUSTER_MEMORY_MB}MB minimum", step="memory-spec"
        )
    return mb


def cluster_memory_limit_mb(facts: SystemFacts, sizing: TierSizing, memory_limit: str = "auto") -> int:
    """Memory granted to the cluster, capped at the safe fraction of total RAM."""
    max_safe = int(facts.total_ram_mb * SAFETY_FACTOR)
    explicit = parse_memory_spec(memory_limit)
    if explicit is not None:
        return min(explicit, max_safe)

    available = facts.total_ram_mb - os_overhead_mb(facts.os_family, facts.arch)
    if available < 2048:
        limit = 1024
    else:
        limit = int(available * sizing.cluster_allocation_factor)
    return min(limit, max_safe)


# =============================================================================
# Workload capacity
# =============================================================================


@dataclass(frozen=True)
class WorkloadProfile:
    name: str
    nodes: int
    namespace_quota_mb: int


WORKLOAD_PROFILES = {
    "minimal": WorkloadProfile("minimal", nodes=1, namespace_quota_mb=512),
    "lab": WorkloadProfile("lab", nodes=2, namespace_quota_mb=800),
    "full": WorkloadProfile("full", nodes=3, namespace_quota_mb=2048),
}

# Steady-state footprint inside the cluster, larger than the install minimums
WORKLOAD_COMPONENT_OVERHEAD_MB = {
    "registry": 100,
    "traefik": 150,
    "external-secrets": 250,
    "argocd": 500,
    "metrics-server": 100,
    "monitoring": 800,
    "ingress-nginx": 300,
    "vault": 150,
    "vault-ha": 450,
    "cert-manager": 100,
}

LAB_NAMESPACE_COUNT = 3


@dataclass
class CapacityReport:
    profile: str
    nodes: int
    cluster_memory_mb: int
    required_mb: int
    utilization_percent: float
    level: str  # 'ok', 'warning', 'risk'

    @property
    def fits(self) -> bool:
        return self.level != "risk"


# =============================================================================
# Predictor
# =============================================================================


class FeasibilityPredictor:
    """Memory feasibility over the component catalog.

    Args:
        catalog: Component profiles by name
        priority: Component names, most important first
        base_overhead_mb: Memory the bare cluster needs before any add-on
        safety_factor: Fraction of available RAM the lab may use
        low_memory: Force the reduced footprint everywhere
    """

    def __init__(
        self,
        catalog: Optional[Dict[str, ComponentProfile]] = None,
        priority: Sequence[str] = PRIORITY_ORDER,
        base_overhead_mb: int = BASE_CLUSTER_OVERHEAD_MB,
        safety_factor: float = SAFETY_FACTOR,
        low_memory: bool = False,
    ):
        self.catalog = dict(catalog or COMPONENT_CATALOG)
        self.priority = [name for name in priority if name in self.catalog]
        self.base_overhead_mb = base_overhead_mb
        self.safety_factor = safety_factor
        self.low_memory = low_memory

    def profiles(self, names: Iterable[str]) -> List[ComponentProfile]:
        """Look up catalog entries by name.

        Raises:
            ConfigInvalid: For a name not in the catalog.
        """
        result = []
        for name in names:
            if name not in self.catalog:
                known = ", ".join(sorted(self.catalog))
                raise ConfigInvalid(f"unknown component '{name}' (known: {known})", step="feasibility")
            result.append(self.catalog[name])
        return result

    def predict_memory(self, components: Iterable[ComponentProfile]) -> int:
        """Base cluster overhead plus every requested component, in MB."""
        return self.base_overhead_mb + sum(c.min_memory_mb for c in components)

    def threshold_mb(self, available_ram_mb: int) -> int:
        return int(max(0, available_ram_mb) * self.safety_factor)

    def is_feasible(self, components: Sequence[ComponentProfile], available_ram_mb: int) -> bool:
        # Nothing requested is always satisfiable; the base cluster is gated by feasible_subset
        if not components:
            return True
        return self.predict_memory(components) <= self.threshold_mb(available_ram_mb)

    def feasible_subset(self, available_ram_mb: int) -> List[ComponentProfile]:
        """Greedy prefix of the priority order that fits under the threshold.

        Stops at the first component that would not fit; lower-priority
        components never jump ahead of a higher-priority one.
        """
        if available_ram_mb <= 0:
            return []
        threshold = self.threshold_mb(available_ram_mb)
        total = self.base_overhead_mb
        subset: List[ComponentProfile] = []
        for name in self.priority:
            profile = self.catalog[name]
            if total + profile.min_memory_mb > threshold:
                break
            total += profile.min_memory_mb
            subset.append(profile)
        return subset

    def check_workload_capacity(
        self,
        profile_name: str,
        cluster_memory_mb: int,
        sizing: TierSizing,
        components: Iterable[str] = ("registry",),
    ) -> CapacityReport:
        """Estimate how much of the cluster allocation a workload profile uses.

        Above 90% utilization is a risk, above 80% a warning.
        """
        if profile_name not in WORKLOAD_PROFILES:
            known = ", ".join(WORKLOAD_PROFILES)
            raise ConfigInvalid(f"unknown workload profile '{profile_name}' (known: {known})", step="capacity")
        profile = WORKLOAD_PROFILES[profile_name]

        component_mb = 0
        for name in components:
            cost = WORKLOAD_COMPONENT_OVERHEAD_MB.get(name, 0)
            if name == "registry" and self.low_memory:
                cost = 50
            component_mb += cost

        required = sizing.k8s_overhead_mb + component_mb + LAB_NAMESPACE_COUNT * profile.namespace_quota_mb
        utilization = round(required * 100 / cluster_memory_mb, 1) if cluster_memory_mb > 0 else 100.0
        if utilization > 90:
            level = "risk"
        elif utilization > 80:
            level = "warning"
        else:
            level = "ok"
        return CapacityReport(
            profile=profile.name,
            nodes=profile.nodes,
            cluster_memory_mb=cluster_memory_mb,
            required_mb=required,
            utilization_percent=utilization,
            level=level,
        )

    def bottlenecks(
        self,
        reading: MemoryReading,
        facts: SystemFacts,
        disk_free_gb: Optional[float] = None,
        requested: Sequence[ComponentProfile] = (),
    ) -> List[Insight]:
        """Findings for ``health``, most severe first."""
        insights: List[Insight] = []

        percent = reading.percent_used
        if percent > 80:
            insights.append(Insight(
                "CRITICAL",
                f"Memory usage at {percent:.0f}%",
                "Stop unused clusters or run 'kubelab stop' before installing more components",
            ))
        elif percent > 60:
            insights.append(Insight("WARNING", f"Memory usage at {percent:.0f}%"))

        if reading.swap_used_mb > 500:
            insights.append(Insight(
                "WARNING",
                f"Swap in use: {reading.swap_used_mb}MB",
                "Heavy swapping slows pods; consider --low-memory",
            ))

        if disk_free_gb is not None and disk_free_gb < 5:
            insights.append(Insight(
                "CRITICAL",
                f"Only {disk_free_gb:.1f}GB free disk",
                "Free disk space or move STORAGE_PATH to a larger volume",
            ))

        usable = usable_ram_mb(facts)
        if requested and not self.is_feasible(requested, usable):
            names = ", ".join(c.name for c in requested)
            insights.append(Insight(
                "WARNING",
                f"Requested components ({names}) need {self.predict_memory(requested)}MB, "
                f"more than {self.threshold_mb(usable)}MB available",
                "Run 'kubelab check-feasibility' for the largest set that fits",
            ))

        order = {"CRITICAL": 0, "WARNING": 1, "INFO": 2}
        insights.sort(key=lambda i: order.get(i.severity, 3))
        return insights
