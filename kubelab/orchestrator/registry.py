"""Multi-cluster registry.

Maps a cluster alias to its storage path, memory profile and running status.
Exactly one alias is active. The registry document lives in the data store;
each cluster also keeps a small ``.config`` file in its own directory.
"""

from __future__ import annotations

import os
import re
import subprocess
import tarfile
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from ..data.models import ClusterRecord, ClusterStatus
from ..errors import AlreadyExists, ConfigInvalid, ErrorKind, NotFound
from ..insights.feasibility import parse_memory_spec
from .backends import ClusterBackend
from .config import render_key_values
from .context import OrchestratorContext
from .executor import RecoveryExecutor

ALIAS_RE = re.compile(r"^[a-z0-9][a-z0-9-]{0,31}$")
# Directory names under STORAGE_PATH that belong to the lab itself
RESERVED_ALIASES = frozenset({"kube-stack"})
REGISTRY_DOC = "clusters"
BACKUP_SUFFIX = ".tar.gz"


def _log(msg: str) -> None:
    print(msg, flush=True)


class KubeContext:
    """Saves and restores the user's kubectl context around lab operations."""

    def __init__(self, context_file: Optional[Path] = None):
        self.context_file = context_file or Path(
            os.environ.get("KUBELAB_CONTEXT_FILE", Path.home() / ".kube-lab-context")
        )

    def _kubectl(self, *args: str) -> Optional[str]:
        try:
            result = subprocess.run(["kubectl", *args], capture_output=True, text=True, timeout=15)
        except (FileNotFoundError, subprocess.TimeoutExpired):
            return None
        return result.stdout.strip() if result.returncode == 0 else None

    def current(self) -> Optional[str]:
        return self._kubectl("config", "current-context") or None

    def use(self, context_name: str) -> bool:
        return self._kubectl("config", "use-context", context_name) is not None

    def merge(self, cluster_name: str) -> bool:
        """Merge a k3d cluster's kubeconfig into the default one and switch to it."""
        try:
            result = subprocess.run(
                ["k3d", "kubeconfig", "merge", cluster_name,
                 "--kubeconfig-merge-default", "--kubeconfig-switch-context"],
                capture_output=True,
                text=True,
                timeout=30,
            )
        except (FileNotFoundError, subprocess.TimeoutExpired):
            return False
        return result.returncode == 0

    def save(self) -> Optional[str]:
        current = self.current()
        if current:
            self.context_file.write_text(current + "\n", encoding="utf-8")
        return current

    def restore(self) -> bool:
        if not self.context_file.exists():
            return False
        saved = self.context_file.read_text(encoding="utf-8").strip()
        if not saved:
            return False
        return self.use(saved)


@dataclass
class SwitchResult:
    record: ClusterRecord
    previous_alias: Optional[str]
    context_restored: bool

    @property
    def degraded(self) -> bool:
        """Registry pointer moved but the connection context did not."""
        return not self.context_restored


class ClusterRegistry:
    """Named cluster bookkeeping backed by the data store."""

    def __init__(self, context: OrchestratorContext, kube: Optional[KubeContext] = None):
        self.context = context
        self.store = context.store
        self.kube = kube or KubeContext()

    # --- Persistence ---

    def _load(self) -> Tuple[Optional[str], Dict[str, ClusterRecord]]:
        doc = self.store.load_document(REGISTRY_DOC) or {}
        records = {
            alias: ClusterRecord.from_dict(data)
            for alias, data in (doc.get("clusters") or {}).items()
        }
        active = doc.get("active")
        if active not in records:
            active = None
        return active, records

    def _save(self, active: Optional[str], records: Dict[str, ClusterRecord]) -> None:
        self.store.save_document(REGISTRY_DOC, {
            "active": active,
            "clusters": {alias: record.to_dict() for alias, record in records.items()},
        })

    # --- Queries ---

    @property
    def active_alias(self) -> Optional[str]:
        return self._load()[0]

    def active(self) -> Optional[ClusterRecord]:
        active, records = self._load()
        return records.get(active) if active else None

    def get(self, alias: str) -> ClusterRecord:
        records = self._load()[1]
        if alias not in records:
            raise NotFound(f"no cluster named '{alias}'", step="cluster-registry")
        return records[alias]

    def list_clusters(self) -> List[ClusterRecord]:
        """All records sorted by alias."""
        return sorted(self._load()[1].values(), key=lambda r: r.alias)

    # --- Mutations ---

    def ensure_default(self) -> ClusterRecord:
        """Register the lab's own cluster and make it active if nothing is."""
        lab = self.context.lab_config
        active, records = self._load()
        alias = lab.cluster_name
        if alias not in records:
            records[alias] = ClusterRecord(
                alias=alias,
                name=lab.cluster_name,
                storage_path=self.store.data_dir,
                memory_profile=lab.memory_limit,
                runtime=lab.runtime or self.context.profiler.runtime_flavor().value,
            )
        if active is None:
            active = alias
        self._save(active, records)
        return records[alias]

    def create_named_cluster(self, alias: str, memory_spec: str = "auto") -> ClusterRecord:
        """Allocate storage and persist a stopped record.

        Raises:
            ConfigInvalid: Bad alias or memory spec.
            AlreadyExists: The alias is taken.
        """
        if not ALIAS_RE.match(alias or ""):
            raise ConfigInvalid(
                f"invalid alias '{alias}' (lowercase letters, digits and dashes, max 32)",
                step="cluster-create",
            )
        storage_path = self.context.lab_config.storage_path / alias
        if alias in RESERVED_ALIASES or storage_path.resolve() == self.store.data_dir.resolve():
            raise ConfigInvalid(f"alias '{alias}' is reserved for the lab data directory", step="cluster-create")
        parse_memory_spec(memory_spec)

        active, records = self._load()
        if alias in records:
            raise AlreadyExists(f"cluster '{alias}' already exists", step="cluster-create")

        storage_path.mkdir(parents=True, exist_ok=True)
        runtime = self.context.profiler.runtime_flavor().value
        record = ClusterRecord(
            alias=alias,
            name=alias,
            storage_path=storage_path,
            memory_profile=memory_spec,
            runtime=runtime,
        )
        (storage_path / ".config").write_text(
            render_key_values(
                {"CLUSTER_NAME": alias, "MEMORY_LIMIT": memory_spec, "DOCKER_RUNTIME": runtime},
                header=f"cluster {alias}",
            ),
            encoding="utf-8",
        )

        records[alias] = record
        self._save(active or alias, records)
        _log(f"[registry] Created cluster '{alias}' at {storage_path}")
        return record

    def switch_cluster(self, alias: str) -> SwitchResult:
        """Make ``alias`` active and try to restore its connection context.

        Raises:
            NotFound: Unknown alias; the active alias is unchanged.
        """
        previous, records = self._load()
        if alias not in records:
            raise NotFound(f"no cluster named '{alias}'", step="cluster-switch")
        record = records[alias]
        self._save(alias, records)

        restored = False
        if record.status == ClusterStatus.RUNNING:
            restored = self.kube.merge(record.name) or self.kube.use(record.kube_context)
        if not restored:
            _log(f"[registry] Switched to '{alias}' (registry only; kubectl context unchanged)")
        else:
            _log(f"[registry] Switched to '{alias}' (context {record.kube_context})")
        return SwitchResult(record=record, previous_alias=previous, context_restored=restored)

    def set_status(self, alias: str, status: ClusterStatus) -> ClusterRecord:
        active, records = self._load()
        if alias not in records:
            raise NotFound(f"no cluster named '{alias}'", step="cluster-registry")
        records[alias].status = status
        self._save(active, records)
        return records[alias]

    def start_cluster(self, alias: str, executor: RecoveryExecutor, backend: ClusterBackend) -> ClusterRecord:
        record = self.get(alias)
        executor.smart_retry(
            lambda: backend.start(record.name),
            ErrorKind.CLUSTER_START_FAILED,
            context=f"cluster {alias}",
        )
        return self.set_status(alias, ClusterStatus.RUNNING)

    def stop_cluster(self, alias: str, executor: RecoveryExecutor, backend: ClusterBackend) -> ClusterRecord:
        record = self.get(alias)
        executor.smart_retry(lambda: backend.stop(record.name), ErrorKind.GENERIC, context=f"cluster {alias}")
        return self.set_status(alias, ClusterStatus.STOPPED)

    # --- Backups ---

    def backup_cluster(self, alias: Optional[str] = None) -> Path:
        """Archive the cluster's data directory as ``<alias>_backup_<ts>.tar.gz``.

        Raises:
            NotFound: Unknown alias, or its storage path is gone.
        """
        if alias is None:
            alias = self.active_alias
            if alias is None:
                raise NotFound("no active cluster to back up", step="cluster-backup")
        record = self.get(alias)
        source = record.storage_path
        if not source.is_dir():
            raise NotFound(f"storage path {source} for '{alias}' does not exist", step="cluster-backup")

        backup_dir = self.store.backup_dir
        backup_dir.mkdir(parents=True, exist_ok=True)
        stamp = time.strftime("%Y%m%d_%H%M%S")
        target = backup_dir / f"{alias}_backup_{stamp}{BACKUP_SUFFIX}"
        counter = 1
        while target.exists():
            target = backup_dir / f"{alias}_backup_{stamp}_{counter}{BACKUP_SUFFIX}"
            counter += 1

        excluded = backup_dir.resolve()
        source_root = source.resolve()

        def _skip_backups(info: tarfile.TarInfo) -> Optional[tarfile.TarInfo]:
            member = source_root / Path(info.name).relative_to(alias)
            if member == excluded or excluded in member.parents:
                return None
            return info

        with tarfile.open(target, "w:gz") as tar:
            tar.add(str(source), arcname=alias, filter=_skip_backups)
        _log(f"[registry] Backed up '{alias}' to {target}")
        return target

    def list_backups(self, alias: Optional[str] = None) -> List[Path]:
        """Backup archives, newest first."""
        pattern = f"{alias}_backup_*{BACKUP_SUFFIX}" if alias else f"*_backup_*{BACKUP_SUFFIX}"
        backups = list(self.store.backup_dir.glob(pattern))
        return sorted(backups, key=lambda p: p.stat().st_mtime, reverse=True)
