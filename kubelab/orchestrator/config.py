"""Configuration management for the lab orchestrator.

Two layers:
- Tool settings: YAML (TTLs, retry policy, polling bounds, thresholds)
- Lab config: the ``KEY="value"`` file recording where and how the lab lives
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from ..data.models import SystemFacts
from ..errors import ConfigInvalid


@dataclass
class CacheSettings:
    """Probe cache TTLs in seconds."""

    system: int = 300
    runtime: int = 60
    memory: int = 30
    cluster: int = 120
    network: int = 90


@dataclass
class ExecutorSettings:
    max_attempts: int = 3
    backoff_base: float = 2.0


@dataclass
class PollingSettings:
    """Bounded waits: (timeout, interval) pairs in seconds."""

    cluster_ready_timeout: int = 120
    cluster_ready_interval: int = 5
    system_pods_timeout: int = 180
    runtime_start_timeout: int = 30
    runtime_start_interval: int = 3
    registry_ready_timeout: int = 30
    registry_ready_interval: int = 2


@dataclass
class FeasibilitySettings:
    safety_factor: float = 0.8
    base_overhead_mb: int = 512


@dataclass
class MonitorSettings:
    interval: int = 30
    memory_alert_ratio: float = 0.85
    swap_alert_ratio: float = 0.90
    swap_cleanup_mb: int = 3072
    history_days: int = 30


def _section(cls, data: Optional[Dict[str, Any]]):
    """Build a settings dataclass from a dict, ignoring unknown keys."""
    data = data or {}
    known = {f.name for f in fields(cls)}
    return cls(**{k: v for k, v in data.items() if k in known})


@dataclass
class Settings:
    """Tool settings container."""

    cache: CacheSettings = field(default_factory=CacheSettings)
    executor: ExecutorSettings = field(default_factory=ExecutorSettings)
    polling: PollingSettings = field(default_factory=PollingSettings)
    feasibility: FeasibilitySettings = field(default_factory=FeasibilitySettings)
    monitor: MonitorSettings = field(default_factory=MonitorSettings)

    # Data directory override
    data_dir: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Settings":
        return cls(
            cache=_section(CacheSettings, data.get("cache")),
            executor=_section(ExecutorSettings, data.get("executor")),
            polling=_section(PollingSettings, data.get("polling")),
            feasibility=_section(FeasibilitySettings, data.get("feasibility")),
            monitor=_section(MonitorSettings, data.get("monitor")),
            data_dir=data.get("data_dir"),
        )

    @classmethod
    def from_yaml(cls, path: Path) -> "Settings":
        if not path.exists():
            return cls()
        with open(path, "r", encoding="utf-8") as f:
            try:
                data = yaml.safe_load(f) or {}
            except yaml.YAMLError as exc:
                raise ConfigInvalid(f"cannot parse {path}: {exc}", step="settings", cause=exc)
        if not isinstance(data, dict):
            raise ConfigInvalid(f"{path} must contain a mapping", step="settings")
        return cls.from_dict(data)

    @classmethod
    def load(cls, settings_path: Optional[str] = None) -> "Settings":
        """Load settings from path or defaults.

        Checks in order:
        1. Provided path
        2. KUBELAB_SETTINGS env var
        3. ./configs/kubelab.yaml
        4. ./kubelab.yaml
        5. ~/.kube-lab/settings.yaml
        6. Default settings
        """
        paths_to_try = []

        if settings_path:
            paths_to_try.append(Path(settings_path))

        if env_path := os.environ.get("KUBELAB_SETTINGS"):
            paths_to_try.append(Path(env_path))

        paths_to_try.extend([
            Path("./configs/kubelab.yaml"),
            Path("./kubelab.yaml"),
            Path.home() / ".kube-lab" / "settings.yaml",
        ])

        for path in paths_to_try:
            if path.exists():
                return cls.from_yaml(path)

        return cls()


# =============================================================================
# Lab config file (KEY="value" lines)
# =============================================================================

_LINE_RE = re.compile(r'^([A-Z][A-Z0-9_]*)=(?:"([^"]*)"|(\S*))\s*$')

_KEYS = {
    "STORAGE_PATH": "storage_path",
    "CLUSTER_NAME": "cluster_name",
    "REGISTRY_PORT": "registry_port",
    "REGISTRY_NAME": "registry_name",
    "MEMORY_LIMIT": "memory_limit",
    "OS_TYPE": "os_type",
    "CPU_ARCH": "cpu_arch",
    "TOTAL_RAM_GB": "total_ram_gb",
    "DOCKER_RUNTIME": "runtime",
}


def parse_key_values(text: str, source: str = "config") -> Dict[str, str]:
    """Parse ``KEY="value"`` lines; blank lines and ``#`` comments are skipped.

    Raises:
        ConfigInvalid: On any other malformed line.
    """
    values = {}
    for lineno, line in enumerate(text.splitlines(), start=1):
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue
        match = _LINE_RE.match(stripped)
        if not match:
            raise ConfigInvalid(f"{source}:{lineno}: expected KEY=\"value\", got '{stripped}'", step="config")
        key, quoted, bare = match.groups()
        values[key] = quoted if quoted is not None else bare
    return values


def render_key_values(values: Dict[str, Any], header: str = "") -> str:
    lines = [f"# {header}"] if header else []
    lines.extend(f'{key}="{value}"' for key, value in values.items())
    return "\n".join(lines) + "\n"


def default_config_path() -> Path:
    return Path(os.environ.get("KUBELAB_CONFIG", Path.home() / ".kube-lab-config"))


@dataclass
class LabConfig:
    """Where the lab lives and what the host looked like when it was set up."""

    storage_path: Path = field(default_factory=lambda: Path.home() / ".kube-lab")
    cluster_name: str = "local-k8s"
    registry_port: int = 5000
    registry_name: str = "local-registry"
    memory_limit: str = "auto"
    os_type: str = ""
    cpu_arch: str = ""
    total_ram_gb: str = ""
    runtime: str = ""

    @property
    def kube_root(self) -> Path:
        return self.storage_path / "kube-stack"

    @classmethod
    def from_mapping(cls, values: Dict[str, str]) -> "LabConfig":
        kwargs: Dict[str, Any] = {}
        for key, attr in _KEYS.items():
            if key in values:
                kwargs[attr] = values[key]
        if "storage_path" in kwargs:
            kwargs["storage_path"] = Path(kwargs["storage_path"]).expanduser()
        if "registry_port" in kwargs:
            port = kwargs["registry_port"]
            if not str(port).isdigit() or not 0 < int(port) < 65536:
                raise ConfigInvalid(f"REGISTRY_PORT must be a port number, got '{port}'", step="config")
            kwargs["registry_port"] = int(port)
        return cls(**kwargs)

    def to_mapping(self) -> Dict[str, str]:
        return {key: str(getattr(self, attr)) for key, attr in _KEYS.items()}

    @classmethod
    def load(cls, path: Optional[Path] = None) -> Optional["LabConfig"]:
        """Load the lab config; None means this is the first run."""
        path = path or default_config_path()
        if not path.exists():
            return None
        return cls.from_mapping(parse_key_values(path.read_text(encoding="utf-8"), source=str(path)))

    def save(self, path: Optional[Path] = None) -> Path:
        path = path or default_config_path()
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(render_key_values(self.to_mapping(), header="kubelab configuration"), encoding="utf-8")
        os.chmod(path, 0o600)
        return path

    def record_facts(self, facts: SystemFacts) -> None:
        self.os_type = facts.os_family.value
        self.cpu_arch = facts.arch.value
        self.total_ram_gb = str(facts.total_ram_gb)
        self.runtime = facts.runtime.value


def _env_flag(name: str) -> bool:
    return os.environ.get(name, "").strip().lower() in ("1", "true", "yes")


@dataclass
class RunFlags:
    """Per-invocation behavior switches."""

    low_memory: bool = False
    non_interactive: bool = False
    dry_run: bool = False

    @classmethod
    def from_env(
        cls,
        low_memory: bool = False,
        non_interactive: bool = False,
        dry_run: bool = False,
    ) -> "RunFlags":
        """CLI switches OR'ed with KUBELAB_LOW_MEMORY, KUBELAB_NON_INTERACTIVE and CI."""
        return cls(
            low_memory=low_memory or _env_flag("KUBELAB_LOW_MEMORY"),
            non_interactive=non_interactive or _env_flag("KUBELAB_NON_INTERACTIVE") or _env_flag("CI"),
            dry_run=dry_run,
        )
