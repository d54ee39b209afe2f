"""Container runtime and competing-cluster probe.

Identifies which runtime distribution backs the docker CLI and which other
local Kubernetes backends currently have a live cluster. Two local clusters
fight over the same ports and node resources, so every backend is checked
for a reachable cluster rather than for an installed binary.
"""

from __future__ import annotations

import shutil
import socket
from typing import Callable, Dict, List, Optional, Set

from ..data.models import RuntimeFlavor
from ..errors import ErrorKind, OrchestratorError
from .base import BaseProbe

# Backends that register a kubectl context with a fixed name
CONTEXT_BACKENDS = ("docker-desktop", "rancher-desktop", "colima")


class RuntimeProbe(BaseProbe):
    """Probe for the container runtime, local clusters and host ports."""

    def __init__(self, command_timeout: int = 10):
        self.command_timeout = command_timeout

    def is_available(self) -> bool:
        return shutil.which("docker") is not None

    # --- Runtime ---

    def detect_runtime_flavor(self) -> RuntimeFlavor:
        if not self.is_available():
            return RuntimeFlavor.NONE
        context = self._output(["docker", "context", "show"]) or ""
        info = self._output(["docker", "info"]) or ""
        return self._parse_runtime_flavor(context, info)

    def runtime_running(self) -> bool:
        result = self._run(["docker", "info"])
        return result is not None and result.returncode == 0

    def _parse_runtime_flavor(self, context: str, info: str) -> RuntimeFlavor:
        context = context.strip().lower()
        info = info.lower()
        if "orbstack" in context or "orbstack" in info:
            return RuntimeFlavor.ORBSTACK
        if "colima" in context or "colima" in info:
            return RuntimeFlavor.COLIMA
        if "rancher" in context or "rancher" in info:
            return RuntimeFlavor.RANCHER
        if context == "desktop-linux" or "docker desktop" in info:
            return RuntimeFlavor.DOCKER_DESKTOP
        return RuntimeFlavor.DOCKER

    # --- Competing clusters ---

    def detect_competing_clusters(self, own_runtime: Optional[RuntimeFlavor] = None) -> List[str]:
        """Names of every backend with a live, reachable cluster, sorted."""
        checks: Dict[str, Callable[[], bool]] = {
            "minikube": self._minikube_running,
            "kind": self._kind_running,
        }
        contexts = self._parse_contexts(self._output(["kubectl", "config", "get-contexts", "-o", "name"]) or "")
        for backend in CONTEXT_BACKENDS:
            if backend in contexts:
                checks[backend] = lambda ctx=backend: self._context_reachable(ctx)
        if own_runtime != RuntimeFlavor.ORBSTACK:
            checks["orbstack"] = self._orbstack_running

        active: Set[str] = set()
        for backend, check in checks.items():
            if check():
                active.add(backend)
        return sorted(active)

    def _context_reachable(self, context: str) -> bool:
        result = self._run(["kubectl", "--context", context, "cluster-info"], timeout=5)
        return result is not None and result.returncode == 0

    def _minikube_running(self) -> bool:
        out = self._output(["minikube", "status"])
        return bool(out) and "Running" in out

    def _kind_running(self) -> bool:
        out = self._output(["kind", "get", "clusters"]) or ""
        for cluster in out.split():
            if self._context_reachable(f"kind-{cluster}"):
                return True
        return False

    def _orbstack_running(self) -> bool:
        out = self._output(["orb", "status"])
        return bool(out) and "Running" in out

    def _parse_contexts(self, output: str) -> Set[str]:
        return {line.strip().lstrip("*").strip() for line in output.splitlines() if line.strip()}

    # --- Ports ---

    def port_in_use(self, port: int) -> bool:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.settimeout(0.5)
            return sock.connect_ex(("127.0.0.1", port)) == 0

    def find_available_port(self, start: int, attempts: int = 50) -> int:
        for port in range(start, start + attempts):
            if not self.port_in_use(port):
                return port
        raise OrchestratorError(
            f"no free port in {start}-{start + attempts - 1}",
            kind=ErrorKind.PORT_IN_USE,
            step="find-available-port",
        )

    def pids_on_port(self, port: int) -> List[int]:
        out = self._output(["lsof", "-ti", f":{port}"]) or ""
        return [int(pid) for pid in out.split() if pid.isdigit()]
