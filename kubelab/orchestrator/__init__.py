"""Lab orchestration - config, backends, recovery-aware execution, cluster registry."""

from .config import LabConfig, RunFlags, Settings
from .context import OrchestratorContext
from .executor import RecoveryExecutor
from .lifecycle import LabLifecycle
from .registry import ClusterRegistry, KubeContext

__all__ = [
    "LabConfig",
    "RunFlags",
    "Settings",
    "OrchestratorContext",
    "RecoveryExecutor",
    "LabLifecycle",
    "ClusterRegistry",
    "KubeContext",
]
