"""Automatic corrective actions, keyed by error kind.

A remediation takes the failing call's context string and returns True when
it believes a retry can now succeed. New failure modes are handled by adding
an entry to ``recovery_table``, not by special-casing call sites.
"""

from __future__ import annotations

import os
import re
import signal
import time
from typing import Callable, Dict, List, Optional

from ..data.models import OSFamily, RuntimeFlavor
from ..errors import ErrorKind, OperationTimeout, OrchestratorError
from .backends import AddonInstaller, CommandRunner, wait_until
from .context import OrchestratorContext

Remediation = Callable[[str], bool]


def _log(msg: str) -> None:
    print(msg, flush=True)


def runtime_start_command(os_family: OSFamily, flavor: RuntimeFlavor) -> Optional[List[str]]:
    """Command that launches the container runtime on this host, if any."""
    if os_family == OSFamily.MACOS:
        if flavor == RuntimeFlavor.ORBSTACK:
            return ["orb", "start"]
        if flavor == RuntimeFlavor.COLIMA:
            return ["colima", "start"]
        if flavor == RuntimeFlavor.RANCHER:
            return ["open", "-a", "Rancher Desktop"]
        return ["open", "-a", "Docker"]
    if os_family in (OSFamily.LINUX, OSFamily.WSL2):
        return ["sudo", "-n", "systemctl", "start", "docker"]
    return None


class Remediator:
    """Remediation actions bound to an orchestrator context."""

    def __init__(
        self,
        context: OrchestratorContext,
        runner: Optional[CommandRunner] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.context = context
        self.runner = runner or CommandRunner(dry_run=context.flags.dry_run)
        self.addons = AddonInstaller(self.runner)
        self.sleep = sleep

    def start_runtime(self, detail: str) -> bool:
        profiler = self.context.profiler
        cmd = runtime_start_command(profiler.os_family(), profiler.runtime_flavor())
        if cmd is None:
            _log("[remediation] Don't know how to start the container runtime on this host")
            return False
        _log(f"[remediation] Starting container runtime: {' '.join(cmd)}")
        try:
            self.runner.run(cmd, kind=ErrorKind.RUNTIME_NOT_RUNNING, step="start-runtime")
        except OrchestratorError as exc:
            _log(f"[remediation] {exc}")
            return False
        finally:
            profiler.invalidate_runtime()

        polling = self.context.settings.polling
        try:
            wait_until(
                lambda: self.runner.dry_run or profiler.runtime.runtime_running(),
                polling.runtime_start_timeout,
                polling.runtime_start_interval,
                "start-runtime",
                sleep=self.sleep,
            )
        except OperationTimeout:
            _log("[remediation] Container runtime did not come up in time")
            return False
        profiler.invalidate_runtime()
        return True

    def free_port(self, detail: str) -> bool:
        match = re.search(r":(\d+)", detail or "")
        if not match:
            _log(f"[remediation] No port found in '{detail}'")
            return False
        port = int(match.group(1))
        runtime = self.context.profiler.runtime
        pids = runtime.pids_on_port(port)
        if not pids:
            return not runtime.port_in_use(port)

        _log(f"[remediation] Terminating processes on port {port}: {pids}")
        if self.runner.dry_run:
            return True
        for pid in pids:
            try:
                os.kill(pid, signal.SIGTERM)
            except ProcessLookupError:
                continue
            except PermissionError:
                _log(f"[remediation] Not allowed to stop pid {pid}")
                return False
        try:
            wait_until(lambda: not runtime.port_in_use(port), 5, 1, "free-port", sleep=self.sleep)
        except OperationTimeout:
            return False
        self.context.cache.invalidate(f"available-port:{port}")
        return True

    def cleanup(self, detail: str) -> bool:
        _log("[remediation] Pruning stopped containers and dangling images")
        ok = True
        for cmd in (["docker", "container", "prune", "-f"], ["docker", "image", "prune", "-f"]):
            try:
                self.runner.run(cmd, step="cleanup")
            except OrchestratorError as exc:
                _log(f"[remediation] {exc}")
                ok = False
        self.context.profiler.after_mutation()
        return ok

    def refresh_chart_repos(self, detail: str) -> bool:
        try:
            self.addons.refresh_repos()
        except OrchestratorError as exc:
            _log(f"[remediation] {exc}")
            return False
        return True

    def report_cluster_failure(self, detail: str) -> bool:
        _log(f"[remediation] Cluster start failed ({detail}); see 'k3d cluster list' and docker logs")
        self.context.store.append_log("install", f"cluster start failed: {detail}")
        return True

    def allow_retry(self, detail: str) -> bool:
        _log(f"[remediation] Timed out ({detail}); retrying")
        return True


def recovery_table(remediator: Remediator) -> Dict[ErrorKind, Remediation]:
    return {
        ErrorKind.RUNTIME_NOT_RUNNING: remediator.start_runtime,
        ErrorKind.PORT_IN_USE: remediator.free_port,
        ErrorKind.INSUFFICIENT_MEMORY: remediator.cleanup,
        ErrorKind.DEPENDENCY_REPO_FAILED: remediator.refresh_chart_repos,
        ErrorKind.CLUSTER_START_FAILED: remediator.report_cluster_failure,
        ErrorKind.TIMEOUT: remediator.allow_retry,
    }
