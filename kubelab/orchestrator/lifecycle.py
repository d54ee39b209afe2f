"""Lab lifecycle: install, start, stop, status, health, rollback.

The installer wraps the whole step sequence in a failure handler that rolls
back everything started but not completed, then re-raises.
"""

from __future__ import annotations

import queue
import signal
import sys
import threading
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence

from ..data.models import (
    ClusterStatus,
    ComponentKind,
    ComponentProfile,
    MonitorAlert,
    RollbackReport,
    RuntimeFlavor,
)
from ..data.state import InstallationLog
from ..errors import ErrorKind, OrchestratorError, ProbeUnavailable
from ..insights.feasibility import cluster_memory_limit_mb, parse_memory_spec, usable_ram_mb
from .backends import AddonInstaller, ClusterBackend, CommandRunner, RegistryService
from .context import OrchestratorContext
from .executor import RecoveryExecutor, Teardown
from .registry import ClusterRegistry, KubeContext
from .remediation import Remediator, recovery_table
from .workers import MonitorHandle, ResourceMonitor, drain_alerts

# Add-ons installed by default when they fit; the rest are opt-in
DEFAULT_ADDONS = ("metrics-server", "traefik")
HELM_ADDONS = ("metrics-server", "traefik", "argocd", "monitoring")
MIN_FREE_DISK_GB = 2.0


def _log(msg: str) -> None:
    print(msg, flush=True)


class LabLifecycle:
    """Wires backends, executor and registry around one context."""

    def __init__(
        self,
        context: OrchestratorContext,
        runner: Optional[CommandRunner] = None,
        kube: Optional[KubeContext] = None,
        sleep: Callable[[float], None] = time.sleep,
        prompt: Callable[[str], str] = input,
    ):
        self.context = context
        self.runner = runner or CommandRunner(dry_run=context.flags.dry_run)
        polling = context.settings.polling
        self.cluster = ClusterBackend(self.runner, polling, sleep)
        self.registry_service = RegistryService(self.runner, polling, sleep)
        self.addons = AddonInstaller(self.runner)
        self.remediator = Remediator(context, self.runner, sleep)
        self.executor = RecoveryExecutor(
            context,
            teardowns=self.teardowns(),
            recovery=recovery_table(self.remediator),
            sleep=sleep,
        )
        self.registry = ClusterRegistry(context, kube)
        self.monitor_handle = MonitorHandle(context.store.monitor_pid_file)
        self.prompt = prompt

    # --- Tables ---

    def teardowns(self) -> Dict[str, Teardown]:
        lab = self.context.lab_config
        return {
            ComponentKind.CLUSTER.value: lambda: self.cluster.delete(lab.cluster_name),
            ComponentKind.REGISTRY.value: lambda: self.registry_service.remove(lab.registry_name),
            ComponentKind.NAMESPACES.value: self.addons.delete_namespaces,
            ComponentKind.STORAGE.value: self.addons.reset_storage,
            ComponentKind.METRICS_SERVER.value: self.addons.remove_metrics_server,
            ComponentKind.TRAEFIK.value: self.addons.remove_traefik,
            ComponentKind.ARGOCD.value: self.addons.remove_argocd,
            ComponentKind.MONITORING.value: self.addons.remove_monitoring,
        }

    def installers(self) -> Dict[str, Callable[[], None]]:
        return {
            ComponentKind.METRICS_SERVER.value: self.addons.install_metrics_server,
            ComponentKind.TRAEFIK.value: self.addons.install_traefik,
            ComponentKind.ARGOCD.value: self.addons.install_argocd,
            ComponentKind.MONITORING.value: self.addons.install_monitoring,
        }

    # --- Configuration ---

    def _ask(self, question: str, default: str) -> str:
        if self.context.flags.non_interactive:
            return default
        answer = self.prompt(f"{question} [{default}]: ").strip()
        return answer or default

    def ensure_config(self) -> None:
        """Write the lab config on first run, prompting unless non-interactive."""
        ctx = self.context
        lab = ctx.lab_config
        if ctx.first_run:
            _log("[lifecycle] First run: creating lab configuration")
            lab.storage_path = Path(self._ask("Storage path", str(lab.storage_path))).expanduser()
            lab.cluster_name = self._ask("Cluster name", lab.cluster_name)
            lab.memory_limit = self._ask("Cluster memory (auto, 2048MB, 4GB)", lab.memory_limit)
            parse_memory_spec(lab.memory_limit)
        lab.record_facts(ctx.facts)
        if not ctx.flags.dry_run:
            lab.save(ctx.config_path)
            ctx.first_run = False

    def require_config(self) -> None:
        if self.context.first_run:
            raise OrchestratorError(
                "no lab configured; run 'kubelab install' first",
                kind=ErrorKind.CONFIG_MISSING,
                step="config",
            )

    # --- Planning ---

    def plan(self, requested: Optional[Sequence[str]] = None) -> List[ComponentProfile]:
        """Components to install, registry first.

        Raises:
            OrchestratorError: InsufficientMemory when nothing (or not the
                requested set) fits.
        """
        ctx = self.context
        predictor = ctx.predictor()
        usable = usable_ram_mb(ctx.facts)
        subset = predictor.feasible_subset(usable)

        if requested:
            profiles = predictor.profiles(["registry"] + [r for r in requested if r != "registry"])
            if not predictor.is_feasible(profiles, usable):
                fits = ", ".join(p.name for p in subset) or "nothing"
                raise OrchestratorError(
                    f"requested components need {predictor.predict_memory(profiles)}MB but only "
                    f"{predictor.threshold_mb(usable)}MB is safely available (fits: {fits})",
                    kind=ErrorKind.INSUFFICIENT_MEMORY,
                    step="feasibility",
                )
            return profiles

        if not subset:
            raise OrchestratorError(
                f"{usable}MB usable RAM cannot hold the base cluster and registry",
                kind=ErrorKind.INSUFFICIENT_MEMORY,
                step="feasibility",
            )
        allowed = ("registry",) if ctx.flags.low_memory else ("registry",) + DEFAULT_ADDONS
        return [p for p in subset if p.name in allowed]

    # --- Preflight ---

    def _runtime_running(self) -> bool:
        if self.context.flags.dry_run or self.context.profiler.runtime_running():
            return True
        raise OrchestratorError(
            "container runtime is installed but not responding",
            kind=ErrorKind.RUNTIME_NOT_RUNNING,
            step="runtime",
        )

    def preflight(self, plan: Sequence[ComponentProfile]) -> None:
        ctx = self.context
        profiler = ctx.profiler
        lab = ctx.lab_config

        competing = profiler.competing_clusters()
        if competing:
            names = ", ".join(competing)
            proceed = False
            if not ctx.flags.non_interactive:
                proceed = self._ask(f"Other local clusters are running ({names}). Continue anyway? (y/N)", "n").lower() == "y"
            if not proceed:
                raise OrchestratorError(
                    f"competing local clusters are running: {names}; stop them first",
                    kind=ErrorKind.NETWORK_CONFLICT,
                    step="preflight",
                )

        if profiler.runtime_flavor() == RuntimeFlavor.NONE:
            raise OrchestratorError(
                "no container runtime found; install Docker, OrbStack or Colima",
                kind=ErrorKind.RUNTIME_UNAVAILABLE,
                step="preflight",
            )
        self.executor.smart_retry(self._runtime_running, ErrorKind.RUNTIME_NOT_RUNNING, context="runtime")

        if not ctx.flags.dry_run:
            self.runner.require("kubectl")
            self.runner.require("k3d")
            if any(p.name in HELM_ADDONS for p in plan):
                self.runner.require("helm")

        try:
            free_gb = profiler.system.disk_free_gb(lab.storage_path)
        except ProbeUnavailable:
            free_gb = None
        if free_gb is not None and free_gb < MIN_FREE_DISK_GB:
            raise OrchestratorError(
                f"only {free_gb:.1f}GB free under {lab.storage_path}",
                kind=ErrorKind.INSUFFICIENT_DISK,
                step="preflight",
            )

        if self.registry_service.is_running(lab.registry_name):
            # Our own registry holds the port; keep whatever it is published on
            port = self.registry_service.published_port(lab.registry_name) or lab.registry_port
            if port != lab.registry_port:
                _log(f"[lifecycle] {lab.registry_name} is already serving on :{port}")
            lab.registry_port = port
            return
        port = profiler.available_port(lab.registry_port)
        if port != lab.registry_port:
            _log(f"[lifecycle] Port {lab.registry_port} busy; registry will use {port}")
            lab.registry_port = port

    # --- Install ---

    def _recover_previous_run(self) -> None:
        """Tear down what an interrupted run left behind before starting over."""
        leftover = self.executor.state.unresolved()
        if not leftover:
            return
        if self.context.flags.dry_run:
            _log(f"[lifecycle] Previous run left {', '.join(leftover)} unfinished; would roll back first")
            return
        _log(f"[lifecycle] Previous run left {', '.join(leftover)} unfinished; rolling back first")
        report = self.executor.rollback()
        if report.failed:
            raise OrchestratorError(
                f"could not tear down {', '.join(report.failed)} left by a previous run; "
                "fix the cause and run 'kubelab rollback'",
                kind=ErrorKind.INSTALLATION_FAILED,
                step="recover",
            )

    def _teardown_optional(self, name: str) -> None:
        teardown = self.executor.teardowns.get(name)
        if teardown is None:
            return
        try:
            teardown()
        except OrchestratorError as exc:
            _log(f"[lifecycle] Cleanup of {name} failed: {exc}")

    def _start_registry(self) -> None:
        lab = self.context.lab_config
        self.registry_service.start(lab.registry_name, lab.registry_port, self.context.store.registry_dir)
        self.registry_service.wait_ready(lab.registry_port)

    def _create_cluster(self) -> None:
        ctx = self.context
        lab = ctx.lab_config
        sizing = ctx.sizing
        memory_mb = cluster_memory_limit_mb(ctx.facts, sizing, lab.memory_limit)
        _log(f"[lifecycle] Creating cluster '{lab.cluster_name}' ({memory_mb}MB, "
             f"{sizing.agents} agents, tier {ctx.tier.value})")
        self.executor.smart_retry(
            lambda: self.cluster.create(
                lab.cluster_name,
                memory_mb=memory_mb,
                agents=sizing.agents,
                eviction_hard=sizing.eviction_hard,
                eviction_soft=sizing.eviction_soft,
                registry_dir=ctx.store.registry_dir,
                pv_dir=ctx.store.pv_dir,
            ),
            ErrorKind.CLUSTER_START_FAILED,
            context="cluster",
        )
        self.executor.smart_retry(self.cluster.wait_ready, ErrorKind.TIMEOUT, context="cluster-ready")
        self.registry_service.connect(lab.registry_name, lab.cluster_name)
        if ctx.flags.dry_run:
            return
        record = self.registry.ensure_default()
        self.cluster.export_kubeconfig(lab.cluster_name, record.kubeconfig_path)

    def _namespace_quota_mb(self) -> int:
        quota = self.context.sizing.namespace_quota
        return int(quota[:-2]) * 1024 if quota.endswith("Gi") else int(quota[:-2])

    def install(self, requested: Optional[Sequence[str]] = None) -> Dict[str, Any]:
        """Provision the lab; on a required-step failure roll back and re-raise."""
        ctx = self.context
        lab = ctx.lab_config
        self.ensure_config()
        plan = self.plan(requested)
        _log(f"[lifecycle] Plan ({ctx.tier.value} tier): {', '.join(p.name for p in plan)}")
        self._recover_previous_run()
        self.preflight(plan)

        if ctx.flags.dry_run:
            self.executor.state = InstallationLog(ctx.store.tmp_dir / "install-state.dry-run.txt")
        self.executor.state.init()
        if not ctx.flags.dry_run:
            self.registry.kube.save()

        alerts: "queue.Queue[MonitorAlert]" = queue.Queue()
        os_family = ctx.profiler.os_family()
        monitor = ResourceMonitor(
            probe=lambda: ctx.profiler.system.memory_usage(os_family),
            alerts=alerts,
            interval_seconds=ctx.settings.monitor.interval,
            memory_alert_ratio=ctx.settings.monitor.memory_alert_ratio,
            swap_alert_ratio=ctx.settings.monitor.swap_alert_ratio,
            store=ctx.store,
        )
        if not ctx.flags.dry_run:
            monitor.start()

        installers = self.installers()
        skipped: List[str] = []
        try:
            self.executor.run_step(
                ComponentKind.REGISTRY,
                lambda: self.executor.smart_retry(
                    self._start_registry,
                    ErrorKind.PORT_IN_USE,
                    context=f"registry :{lab.registry_port}",
                ),
            )
            self.executor.run_step(ComponentKind.CLUSTER, self._create_cluster)
            self.executor.run_step(
                ComponentKind.NAMESPACES,
                lambda: self.addons.apply_namespaces(self._namespace_quota_mb(), ctx.profiler.cpu_cores()),
            )
            self.executor.run_step(ComponentKind.STORAGE, self.addons.configure_storage)

            for profile in plan:
                if profile.name not in installers:
                    continue
                for alert in drain_alerts(alerts):
                    _log(f"[lifecycle] WARNING: {alert.message}")
                try:
                    self.executor.run_step(
                        profile.name,
                        lambda name=profile.name: self.executor.smart_retry(
                            installers[name],
                            ErrorKind.DEPENDENCY_REPO_FAILED,
                            context=name,
                        ),
                    )
                except OrchestratorError as exc:
                    _log(f"[lifecycle] Optional component {profile.name} failed, continuing: {exc}")
                    self._teardown_optional(profile.name)
                    skipped.append(profile.name)
        except OrchestratorError:
            _log("[lifecycle] Installation failed; rolling back")
            report = self.executor.rollback()
            _log(f"[lifecycle] Rolled back: {', '.join(report.rolled_back) or 'nothing'}"
                 + (f"; teardown failed: {', '.join(report.failed)}" if report.failed else ""))
            raise
        finally:
            monitor.stop()
            if monitor.is_alive():
                monitor.join(timeout=5)

        for alert in drain_alerts(alerts):
            _log(f"[lifecycle] WARNING: {alert.message}")

        self.executor.state.clear()
        if not ctx.flags.dry_run:
            record = self.registry.ensure_default()
            self.registry.set_status(record.alias, ClusterStatus.RUNNING)
            lab.save(ctx.config_path)
        installed = [p.name for p in plan if p.name not in skipped]
        _log(f"[lifecycle] Lab ready: {', '.join(installed)}")
        return {
            "cluster": lab.cluster_name,
            "tier": ctx.tier.value,
            "installed": installed,
            "skipped": skipped,
            "registry": f"localhost:{lab.registry_port}",
            "dry_run": ctx.flags.dry_run,
        }

    # --- Start / stop ---

    def _active_record(self):
        record = self.registry.active()
        return record or self.registry.ensure_default()

    def start(self):
        self.require_config()
        lab = self.context.lab_config
        self.executor.smart_retry(self._runtime_running, ErrorKind.RUNTIME_NOT_RUNNING, context="runtime")
        record = self._active_record()
        self.registry.kube.save()
        self.executor.smart_retry(
            lambda: self.registry_service.start(lab.registry_name, lab.registry_port, self.context.store.registry_dir),
            ErrorKind.PORT_IN_USE,
            context=f"registry :{lab.registry_port}",
        )
        record = self.registry.start_cluster(record.alias, self.executor, self.cluster)
        if not self.registry.kube.merge(record.name):
            _log(f"[lifecycle] Could not switch kubectl to {record.kube_context}")
        self.context.profiler.after_mutation()
        return record

    def stop(self):
        self.require_config()
        lab = self.context.lab_config
        record = self._active_record()
        record = self.registry.stop_cluster(record.alias, self.executor, self.cluster)
        self.registry_service.stop(lab.registry_name)
        if self.registry.kube.restore():
            _log("[lifecycle] Restored previous kubectl context")
        self.context.profiler.after_mutation()
        return record

    # --- Reporting ---

    def status(self) -> Dict[str, Any]:
        ctx = self.context
        lab = ctx.lab_config
        active = self.registry.active()
        return {
            "configured": not ctx.first_run,
            "active_cluster": active.to_dict() if active else None,
            "clusters": [r.to_dict() for r in self.registry.list_clusters()],
            "registry": {
                "name": lab.registry_name,
                "port": lab.registry_port,
                "running": self.registry_service.is_running(lab.registry_name),
            },
            "system": ctx.facts.to_dict(),
            "tier": ctx.tier.value,
            "incomplete_steps": self.executor.state.incomplete(),
            "monitor_running": self.monitor_handle.is_running(),
        }

    def health(self) -> Dict[str, Any]:
        ctx = self.context
        reading = ctx.profiler.memory_usage()
        try:
            free_gb = ctx.profiler.system.disk_free_gb(ctx.lab_config.storage_path)
        except ProbeUnavailable:
            free_gb = None
        insights = ctx.predictor().bottlenecks(reading, ctx.facts, disk_free_gb=free_gb)
        return {
            "memory": reading.to_dict(),
            "disk_free_gb": free_gb,
            "insights": [i.to_dict() for i in insights],
            "competing_clusters": ctx.profiler.competing_clusters(),
            "recent_errors": ctx.store.get_errors(limit=10),
            "recent_alerts": ctx.store.get_alerts(limit=10),
            "last_monitor_sample": ctx.store.get_latest_snapshot("memory"),
            "install_log": ctx.store.tail_log("install", lines=20),
        }

    def rollback(self) -> RollbackReport:
        return self.executor.rollback()

    # --- Detached monitor ---

    def start_monitor(self, interval: Optional[int] = None) -> int:
        ctx = self.context
        interval = interval or ctx.settings.monitor.interval
        argv = [sys.executable, "-m", "kubelab.orchestrator.main", "monitor-run", "--interval", str(interval)]
        if ctx.config_path is not None:
            argv += ["--config", str(ctx.config_path)]
        if ctx.settings_path is not None:
            argv += ["--settings", str(ctx.settings_path)]
        return self.monitor_handle.start(argv, ctx.store.log_dir / "monitor.log")

    def stop_monitor(self) -> bool:
        return self.monitor_handle.stop()

    def run_monitor(self, interval: Optional[int] = None, stop_event: Optional[threading.Event] = None) -> None:
        """Foreground loop behind ``start-monitor``: sample, alert, auto-clean."""
        ctx = self.context
        settings = ctx.settings.monitor
        stop_event = stop_event or threading.Event()
        alerts: "queue.Queue[MonitorAlert]" = queue.Queue()
        os_family = ctx.profiler.os_family()
        monitor = ResourceMonitor(
            probe=lambda: ctx.profiler.system.memory_usage(os_family),
            alerts=alerts,
            interval_seconds=interval or settings.interval,
            memory_alert_ratio=settings.memory_alert_ratio,
            swap_alert_ratio=settings.swap_alert_ratio,
            store=ctx.store,
        )
        pruned = ctx.store.cleanup_old_data(days=settings.history_days)
        if pruned:
            _log(f"[monitor] Pruned {pruned} history rows older than {settings.history_days} days")

        if threading.current_thread() is threading.main_thread():
            signal.signal(signal.SIGTERM, lambda signum, frame: stop_event.set())

        monitor.start()
        try:
            while not stop_event.is_set():
                try:
                    alert = alerts.get(timeout=1)
                except queue.Empty:
                    continue
                _log(f"[monitor] ALERT {alert.message}")
                ctx.store.append_log("memory-alerts", alert.message)
                ctx.store.save_alert(alert.kind, alert.message, alert.reading.to_dict())
                if alert.kind == "swap" and alert.reading.swap_used_mb > settings.swap_cleanup_mb:
                    self.remediator.cleanup("swap pressure")
        except KeyboardInterrupt:
            pass
        finally:
            monitor.stop()
            monitor.join(timeout=5)
