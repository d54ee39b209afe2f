"""Data layer - models, probe cache, installation state, and persistence."""

from .cache import MISS, ProbeCache, CacheEntry
from .persistence import DataStore, get_data_dir
from .state import InstallationLog
from .models import (
    OSFamily,
    CPUArch,
    RuntimeFlavor,
    ResourceTier,
    ComponentKind,
    Phase,
    ClusterStatus,
    ComponentProfile,
    InstallationEvent,
    SystemFacts,
    MemoryReading,
    ClusterRecord,
    Insight,
    MonitorAlert,
    RollbackReport,
)

__all__ = [
    "MISS",
    "ProbeCache",
    "CacheEntry",
    "DataStore",
    "get_data_dir",
    "InstallationLog",
    "OSFamily",
    "CPUArch",
    "RuntimeFlavor",
    "ResourceTier",
    "ComponentKind",
    "Phase",
    "ClusterStatus",
    "ComponentProfile",
    "InstallationEvent",
    "SystemFacts",
    "MemoryReading",
    "ClusterRecord",
    "Insight",
    "MonitorAlert",
    "RollbackReport",
]
