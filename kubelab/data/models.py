"""Data models for the local lab orchestrator.

Conventions:

1. EXPLICIT UNITS
   - Memory: megabytes (integers) unless the field name says otherwise
   - Time: unix seconds (integers) for persisted records

2. NORMALIZED ENUM VALUES
   - OS family: macos, linux, wsl2, windows, unknown
   - Architecture: amd64, arm64, unknown
   - Phases: Started, Completed, Failed
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional


# =============================================================================
# Host enumerations
# =============================================================================


class OSFamily(str, Enum):
    MACOS = "macos"
    LINUX = "linux"
    WSL2 = "wsl2"  # Linux kernel under the Windows hypervisor
    WINDOWS = "windows"
    UNKNOWN = "unknown"


class CPUArch(str, Enum):
    AMD64 = "amd64"
    ARM64 = "arm64"
    UNKNOWN = "unknown"


class RuntimeFlavor(str, Enum):
    """Which container runtime distribution backs the docker CLI."""

    ORBSTACK = "orbstack"
    COLIMA = "colima"
    RANCHER = "rancher"
    DOCKER_DESKTOP = "docker-desktop"
    DOCKER = "docker"  # Plain engine (Linux) or unrecognized distribution
    NONE = "none"  # No docker binary at all
    UNKNOWN = "unknown"  # Probe failed


class ResourceTier(str, Enum):
    """Coarse RAM bucket driving default sizing."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @classmethod
    def from_total_ram_mb(cls, total_ram_mb: int, low_memory: bool = False) -> "ResourceTier":
        if low_memory or total_ram_mb < 8 * 1024:
            return cls.LOW
        if total_ram_mb < 16 * 1024:
            return cls.MEDIUM
        return cls.HIGH


# =============================================================================
# Installation enumerations
# =============================================================================


class ComponentKind(str, Enum):
    """Installable units, both required steps and optional add-ons."""

    CLUSTER = "cluster"
    REGISTRY = "registry"
    NAMESPACES = "namespaces"
    STORAGE = "storage"
    METRICS_SERVER = "metrics-server"
    TRAEFIK = "traefik"
    ARGOCD = "argocd"
    MONITORING = "monitoring"


OPTIONAL_COMPONENTS = (
    ComponentKind.METRICS_SERVER,
    ComponentKind.TRAEFIK,
    ComponentKind.ARGOCD,
    ComponentKind.MONITORING,
)


class Phase(str, Enum):
    STARTED = "Started"
    COMPLETED = "Completed"
    FAILED = "Failed"


class ClusterStatus(str, Enum):
    RUNNING = "Running"
    STOPPED = "Stopped"


# =============================================================================
# Records
# =============================================================================


@dataclass(frozen=True)
class ComponentProfile:
    """Static catalog entry for an installable add-on."""

    name: str
    min_memory_mb: int
    description: str = ""


@dataclass(frozen=True)
class InstallationEvent:
    """One state transition of an installable unit.

    Serialized as ``component:phase:unix_ts``.
    """

    component: str
    phase: Phase
    timestamp: int = field(default_factory=lambda: int(time.time()))

    def to_line(self) -> str:
        return f"{self.component}:{self.phase.value}:{self.timestamp}"

    @classmethod
    def from_line(cls, line: str) -> Optional["InstallationEvent"]:
        """Parse one state-file line; returns None for blanks, comments and junk."""
        line = line.strip()
        if not line or line.startswith("#"):
            return None
        parts = line.rsplit(":", 2)
        if len(parts) != 3:
            return None
        component, phase, ts = parts
        try:
            return cls(component=component, phase=Phase(phase), timestamp=int(ts))
        except ValueError:
            return None


@dataclass
class SystemFacts:
    """Snapshot of what the profiler learned about the host."""

    os_family: OSFamily
    arch: CPUArch
    total_ram_mb: int
    cpu_cores: int
    runtime: RuntimeFlavor

    @property
    def total_ram_gb(self) -> float:
        return round(self.total_ram_mb / 1024, 1)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "os_family": self.os_family.value,
            "arch": self.arch.value,
            "total_ram_mb": self.total_ram_mb,
            "total_ram_gb": self.total_ram_gb,
            "cpu_cores": self.cpu_cores,
            "runtime": self.runtime.value,
        }


@dataclass
class MemoryReading:
    """Point-in-time host memory usage."""

    used_mb: int
    total_mb: int
    swap_used_mb: int = 0
    timestamp: float = field(default_factory=time.time)

    @property
    def percent_used(self) -> float:
        if self.total_mb <= 0:
            return 0.0
        return round(self.used_mb / self.total_mb * 100, 1)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "used_mb": self.used_mb,
            "total_mb": self.total_mb,
            "swap_used_mb": self.swap_used_mb,
            "percent_used": self.percent_used,
            "timestamp": self.timestamp,
        }


@dataclass
class ClusterRecord:
    """One named cluster profile in the registry."""

    alias: str
    name: str
    storage_path: Path
    status: ClusterStatus = ClusterStatus.STOPPED
    memory_profile: str = "auto"
    runtime: str = RuntimeFlavor.UNKNOWN.value
    created_at: int = field(default_factory=lambda: int(time.time()))

    @property
    def kubeconfig_path(self) -> Path:
        return self.storage_path / "kubeconfig.yaml"

    @property
    def kube_context(self) -> str:
        return f"k3d-{self.name}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "alias": self.alias,
            "name": self.name,
            "storage_path": str(self.storage_path),
            "status": self.status.value,
            "memory_profile": self.memory_profile,
            "runtime": self.runtime,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ClusterRecord":
        return cls(
            alias=data["alias"],
            name=data.get("name", data["alias"]),
            storage_path=Path(data["storage_path"]),
            status=ClusterStatus(data.get("status", ClusterStatus.STOPPED.value)),
            memory_profile=data.get("memory_profile", "auto"),
            runtime=data.get("runtime", RuntimeFlavor.UNKNOWN.value),
            created_at=int(data.get("created_at", 0)),
        )


@dataclass
class Insight:
    """A health finding shown by ``health`` and ``sysinfo``."""

    severity: str  # 'CRITICAL', 'WARNING', 'INFO'
    message: str
    suggestion: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"severity": self.severity, "message": self.message, "suggestion": self.suggestion}


@dataclass
class MonitorAlert:
    """Threshold crossing reported by the background monitor."""

    kind: str  # 'memory' or 'swap'
    message: str
    reading: MemoryReading

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "message": self.message, "reading": self.reading.to_dict()}


@dataclass
class RollbackReport:
    """Outcome of one rollback pass."""

    rolled_back: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)

    @property
    def clean(self) -> bool:
        return not self.failed
