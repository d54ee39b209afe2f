"""External process wrappers: k3d cluster, registry container, and add-ons.

Every call goes through ``CommandRunner`` so failures surface as typed
``OrchestratorError`` kinds and dry runs print instead of executing.
Teardowns are idempotent: removing something already gone succeeds.
"""

from __future__ import annotations

import json
import shutil
import subprocess
import time
from pathlib import Path
from typing import Callable, Dict, List, Optional

import requests
import yaml

from ..errors import ErrorKind, OperationTimeout, OrchestratorError
from .config import PollingSettings

LAB_NAMESPACES = ("dev", "staging", "testing")

HELM_REPOS = {
    "metrics-server": "https://kubernetes-sigs.github.io/metrics-server/",
    "traefik": "https://traefik.github.io/charts",
    "argo": "https://argoproj.github.io/argo-helm",
    "prometheus-community": "https://prometheus-community.github.io/helm-charts",
}


def _log(msg: str) -> None:
    print(msg, flush=True)


def wait_until(
    predicate: Callable[[], bool],
    timeout: float,
    interval: float,
    what: str,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> None:
    """Poll ``predicate`` every ``interval`` seconds for at most ``timeout``.

    Raises:
        OperationTimeout: If the predicate never held.
    """
    deadline = clock() + timeout
    while True:
        if predicate():
            return
        if clock() >= deadline:
            raise OperationTimeout(f"not ready after {timeout:g}s", step=what)
        sleep(interval)


class CommandRunner:
    """Runs mutating external commands with typed failures."""

    def __init__(self, dry_run: bool = False, timeout: int = 300):
        self.dry_run = dry_run
        self.timeout = timeout

    def require(self, binary: str) -> None:
        if shutil.which(binary) is None:
            raise OrchestratorError(
                f"'{binary}' is not installed or not on PATH",
                kind=ErrorKind.DEPENDENCY_MISSING,
                step=f"require-{binary}",
            )

    def run(
        self,
        cmd: List[str],
        *,
        kind: ErrorKind = ErrorKind.GENERIC,
        step: Optional[str] = None,
        timeout: Optional[int] = None,
        input: Optional[str] = None,
        check: bool = True,
    ) -> subprocess.CompletedProcess:
        step = step or cmd[0]
        if self.dry_run:
            _log(f"[dry-run] {' '.join(cmd)}")
            return subprocess.CompletedProcess(cmd, 0, stdout="", stderr="")
        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=timeout or self.timeout,
                input=input,
            )
        except FileNotFoundError as exc:
            raise OrchestratorError(
                f"'{cmd[0]}' is not installed or not on PATH",
                kind=ErrorKind.DEPENDENCY_MISSING,
                step=step,
                cause=exc,
            )
        except subprocess.TimeoutExpired as exc:
            raise OperationTimeout(f"'{' '.join(cmd[:3])}' exceeded {exc.timeout}s", step=step, cause=exc)

        if check and result.returncode != 0:
            raise OrchestratorError(
                self._summarize(result),
                kind=self._classify(result.stderr or "", kind),
                step=step,
            )
        return result

    def succeeds(self, cmd: List[str], timeout: int = 30) -> bool:
        """Run a query command; any failure is just False."""
        if self.dry_run:
            return True
        try:
            return subprocess.run(cmd, capture_output=True, text=True, timeout=timeout).returncode == 0
        except (FileNotFoundError, subprocess.TimeoutExpired, OSError):
            return False

    def _classify(self, stderr: str, default: ErrorKind) -> ErrorKind:
        text = stderr.lower()
        if "permission denied" in text:
            return ErrorKind.PERMISSION_DENIED
        if "address already in use" in text or "port is already allocated" in text:
            return ErrorKind.PORT_IN_USE
        if "cannot connect to the docker daemon" in text or "is the docker daemon running" in text:
            return ErrorKind.RUNTIME_NOT_RUNNING
        return default

    def _summarize(self, result: subprocess.CompletedProcess) -> str:
        detail = (result.stderr or result.stdout or "").strip().splitlines()
        last = detail[-1] if detail else "no output"
        return f"exit {result.returncode}: {last}"


class ClusterBackend:
    """k3d-backed cluster lifecycle."""

    def __init__(
        self,
        runner: CommandRunner,
        polling: Optional[PollingSettings] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.runner = runner
        self.polling = polling or PollingSettings()
        self.sleep = sleep

    def exists(self, name: str) -> bool:
        return self.runner.succeeds(["k3d", "cluster", "get", name])

    def create(
        self,
        name: str,
        *,
        memory_mb: int,
        agents: int,
        eviction_hard: str,
        eviction_soft: str,
        registry_dir: Path,
        pv_dir: Path,
    ) -> None:
        if self.exists(name) and not self.runner.dry_run:
            _log(f"[cluster] {name} already exists; starting it")
            self.start(name)
            return
        self.runner.run(
            [
                "k3d", "cluster", "create", name,
                "--servers", "1",
                "--agents", str(agents),
                "--servers-memory", f"{memory_mb}m",
                "--agents-memory", f"{memory_mb}m",
                "--port", "80:80@loadbalancer",
                "--port", "443:443@loadbalancer",
                "--volume", f"{registry_dir}:/var/lib/registry@all",
                "--volume", f"{pv_dir}:/var/lib/rancher/k3s/storage@all",
                "--k3s-arg", "--disable=traefik@server:0",
                "--k3s-arg", "--disable=servicelb@server:0",
                "--k3s-arg", f"--kubelet-arg=eviction-hard=memory.available<{eviction_hard}@server:*",
                "--k3s-arg", f"--kubelet-arg=eviction-soft=memory.available<{eviction_soft}@server:*",
                "--k3s-arg", "--kubelet-arg=eviction-soft-grace-period=memory.available=1m30s@server:*",
                "--wait",
            ],
            kind=ErrorKind.CLUSTER_START_FAILED,
            step="cluster",
            timeout=600,
        )

    def start(self, name: str) -> None:
        self.runner.run(["k3d", "cluster", "start", name], kind=ErrorKind.CLUSTER_START_FAILED, step="cluster")

    def stop(self, name: str) -> None:
        if not self.exists(name):
            return
        self.runner.run(["k3d", "cluster", "stop", name], step="cluster-stop")

    def delete(self, name: str) -> None:
        if not self.exists(name):
            return
        self.runner.run(["k3d", "cluster", "delete", name], step="cluster-delete")

    def nodes_ready(self) -> bool:
        if self.runner.dry_run:
            return True
        try:
            result = subprocess.run(
                ["kubectl", "get", "nodes", "--no-headers"],
                capture_output=True,
                text=True,
                timeout=15,
            )
        except (FileNotFoundError, subprocess.TimeoutExpired):
            return False
        return result.returncode == 0 and self._all_nodes_ready(result.stdout)

    def _all_nodes_ready(self, output: str) -> bool:
        rows = [line.split() for line in output.splitlines() if line.strip()]
        return bool(rows) and all(len(row) > 1 and row[1] == "Ready" for row in rows)

    def wait_ready(self) -> None:
        wait_until(
            self.nodes_ready,
            self.polling.cluster_ready_timeout,
            self.polling.cluster_ready_interval,
            "cluster-ready",
            sleep=self.sleep,
        )

    def export_kubeconfig(self, name: str, path: Path) -> None:
        result = self.runner.run(["k3d", "kubeconfig", "get", name], step="kubeconfig")
        if self.runner.dry_run:
            return
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(result.stdout, encoding="utf-8")
        path.chmod(0o600)


class RegistryService:
    """Local image registry container."""

    image = "registry:2"

    def __init__(
        self,
        runner: CommandRunner,
        polling: Optional[PollingSettings] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.runner = runner
        self.polling = polling or PollingSettings()
        self.sleep = sleep

    def is_running(self, name: str) -> bool:
        if self.runner.dry_run:
            return False
        try:
            result = subprocess.run(
                ["docker", "inspect", "-f", "{{.State.Running}}", name],
                capture_output=True,
                text=True,
                timeout=10,
            )
        except (FileNotFoundError, subprocess.TimeoutExpired):
            return False
        return result.returncode == 0 and result.stdout.strip() == "true"

    def published_port(self, name: str) -> Optional[int]:
        """Host port bound to the container's 5000/tcp, running or not."""
        if self.runner.dry_run:
            return None
        try:
            result = subprocess.run(
                ["docker", "inspect", "-f", "{{json .HostConfig.PortBindings}}", name],
                capture_output=True,
                text=True,
                timeout=10,
            )
        except (FileNotFoundError, subprocess.TimeoutExpired):
            return None
        if result.returncode != 0:
            return None
        try:
            bindings = json.loads(result.stdout or "null") or {}
        except ValueError:
            return None
        for binding in bindings.get("5000/tcp") or []:
            host_port = str(binding.get("HostPort") or "")
            if host_port.isdigit():
                return int(host_port)
        return None

    def start(self, name: str, port: int, data_dir: Path, memory: str = "256m") -> None:
        """Start the registry on ``port``.

        A running container is left alone; callers read its real port with
        ``published_port``. A stopped container bound to another port is
        replaced.
        """
        if self.is_running(name):
            _log(f"[registry] {name} already running")
            return
        if self.runner.succeeds(["docker", "inspect", name]) and not self.runner.dry_run:
            bound = self.published_port(name)
            if bound in (None, port):
                self.runner.run(["docker", "start", name], kind=ErrorKind.REGISTRY_START_FAILED, step="registry")
                return
            _log(f"[registry] {name} is bound to :{bound}; recreating on :{port}")
            self.remove(name)
        self.runner.run(
            [
                "docker", "run", "-d",
                "--name", name,
                "--restart=always",
                "-p", f"{port}:5000",
                "-v", f"{data_dir}:/var/lib/registry",
                f"--memory={memory}",
                "--cpus=0.5",
                self.image,
            ],
            kind=ErrorKind.REGISTRY_START_FAILED,
            step="registry",
        )

    def stop(self, name: str) -> None:
        if self.is_running(name):
            self.runner.run(["docker", "stop", name], step="registry-stop")

    def remove(self, name: str) -> None:
        self.runner.run(["docker", "rm", "-f", name], step="registry-remove", check=False)

    def healthy(self, port: int) -> bool:
        if self.runner.dry_run:
            return True
        try:
            return requests.get(f"http://localhost:{port}/v2/", timeout=2).status_code == 200
        except requests.RequestException:
            return False

    def wait_ready(self, port: int) -> None:
        wait_until(
            lambda: self.healthy(port),
            self.polling.registry_ready_timeout,
            self.polling.registry_ready_interval,
            "registry-ready",
            sleep=self.sleep,
        )

    def connect(self, name: str, cluster_name: str) -> None:
        """Attach the registry to the cluster network; already attached is fine."""
        self.runner.run(
            ["docker", "network", "connect", f"k3d-{cluster_name}", name],
            step="registry-network",
            check=False,
        )


class AddonInstaller:
    """Namespaces, storage, and helm-managed add-ons inside the cluster."""

    def __init__(self, runner: CommandRunner):
        self.runner = runner

    # --- Namespaces and storage ---

    def namespace_manifests(self, quota_mb: int, cpu_cores: int) -> str:
        """ResourceQuota and LimitRange documents for every lab namespace."""
        cpu = max(1, round(cpu_cores * 0.3))
        default_mem = max(64, quota_mb // 4)
        docs: List[Dict] = []
        for ns in LAB_NAMESPACES:
            docs.append({"apiVersion": "v1", "kind": "Namespace", "metadata": {"name": ns}})
            docs.append({
                "apiVersion": "v1",
                "kind": "ResourceQuota",
                "metadata": {"name": "compute-quota", "namespace": ns},
                "spec": {"hard": {
                    "requests.cpu": str(cpu),
                    "requests.memory": f"{quota_mb}Mi",
                    "limits.cpu": str(cpu * 2),
                    "limits.memory": f"{quota_mb * 2}Mi",
                    "persistentvolumeclaims": "5",
                    "pods": "10",
                }},
            })
            docs.append({
                "apiVersion": "v1",
                "kind": "LimitRange",
                "metadata": {"name": "default-limits", "namespace": ns},
                "spec": {"limits": [{
                    "type": "Container",
                    "default": {"cpu": f"{cpu * 200}m", "memory": f"{default_mem}Mi"},
                    "defaultRequest": {"cpu": f"{cpu * 100}m", "memory": f"{default_mem // 2}Mi"},
                }]},
            })
        return yaml.safe_dump_all(docs, sort_keys=False)

    def apply_namespaces(self, quota_mb: int, cpu_cores: int) -> None:
        self.runner.run(
            ["kubectl", "apply", "-f", "-"],
            input=self.namespace_manifests(quota_mb, cpu_cores),
            step="namespaces",
        )

    def delete_namespaces(self) -> None:
        for ns in LAB_NAMESPACES:
            self.runner.run(
                ["kubectl", "delete", "namespace", ns, "--ignore-not-found=true"],
                step="namespaces-delete",
            )

    def configure_storage(self) -> None:
        self.runner.run(
            [
                "kubectl", "patch", "storageclass", "local-path", "-p",
                '{"metadata":{"annotations":{"storageclass.kubernetes.io/is-default-class":"true"}}}',
            ],
            step="storage",
        )

    def reset_storage(self) -> None:
        self.runner.run(
            [
                "kubectl", "patch", "storageclass", "local-path", "-p",
                '{"metadata":{"annotations":{"storageclass.kubernetes.io/is-default-class":"false"}}}',
            ],
            step="storage-reset",
            check=False,
        )

    # --- Helm add-ons ---

    def add_repo(self, name: str) -> None:
        self.runner.run(
            ["helm", "repo", "add", name, HELM_REPOS[name], "--force-update"],
            kind=ErrorKind.DEPENDENCY_REPO_FAILED,
            step=f"helm-repo-{name}",
        )

    def refresh_repos(self) -> None:
        self.runner.run(["helm", "repo", "update"], kind=ErrorKind.DEPENDENCY_REPO_FAILED, step="helm-repo-update")

    def _helm_install(self, release: str, chart: str, namespace: str, extra: Optional[List[str]] = None) -> None:
        self.runner.run(
            [
                "helm", "upgrade", "--install", release, chart,
                "--namespace", namespace, "--create-namespace",
                "--wait", "--timeout", "5m",
            ] + (extra or []),
            step=release,
            timeout=420,
        )

    def _helm_uninstall(self, release: str, namespace: str) -> None:
        self.runner.run(
            ["helm", "uninstall", release, "--namespace", namespace, "--ignore-not-found"],
            step=f"{release}-uninstall",
        )

    def install_metrics_server(self) -> None:
        self.add_repo("metrics-server")
        self._helm_install(
            "metrics-server", "metrics-server/metrics-server", "kube-system",
            ["--set", "args={--kubelet-insecure-tls}"],
        )

    def remove_metrics_server(self) -> None:
        self._helm_uninstall("metrics-server", "kube-system")
        self.runner.run(
            ["kubectl", "delete", "deployment", "metrics-server", "-n", "kube-system", "--ignore-not-found=true"],
            step="metrics-server-delete",
        )

    def install_traefik(self) -> None:
        self.add_repo("traefik")
        self._helm_install("traefik", "traefik/traefik", "kube-system")

    def remove_traefik(self) -> None:
        self._helm_uninstall("traefik", "kube-system")

    def install_argocd(self) -> None:
        self.add_repo("argo")
        self._helm_install("argocd", "argo/argo-cd", "argocd")

    def remove_argocd(self) -> None:
        self._helm_uninstall("argocd", "argocd")
        self.runner.run(["kubectl", "delete", "namespace", "argocd", "--ignore-not-found=true"], step="argocd-ns")

    def install_monitoring(self) -> None:
        self.add_repo("prometheus-community")
        self._helm_install(
            "monitoring", "prometheus-community/kube-prometheus-stack", "monitoring",
            ["--set", "alertmanager.enabled=false"],
        )

    def remove_monitoring(self) -> None:
        self._helm_uninstall("monitoring", "monitoring")
        self.runner.run(["kubectl", "delete", "namespace", "monitoring", "--ignore-not-found=true"], step="monitoring-ns")
