#!/usr/bin/env python3
"""
kubelab - Main entry point.

Resource-aware local Kubernetes lab: install, start/stop, health checks and
named cluster profiles. Exit status is 0 on success, otherwise the numeric
class of the failing error kind.
"""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from ..errors import ErrorKind, OrchestratorError
from ..insights.feasibility import (
    COMPONENT_CATALOG,
    PRIORITY_ORDER,
    WORKLOAD_PROFILES,
    cluster_memory_limit_mb,
    os_overhead_mb,
    usable_ram_mb,
)
from .config import RunFlags, Settings
from .context import OrchestratorContext
from .lifecycle import LabLifecycle


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str))


def _print_mapping(data: Dict[str, Any], indent: int = 0) -> None:
    pad = "  " * indent
    for key, value in data.items():
        if isinstance(value, dict):
            print(f"{pad}{key}:")
            _print_mapping(value, indent + 1)
        elif isinstance(value, list):
            print(f"{pad}{key}:")
            for item in value or ["(none)"]:
                if isinstance(item, dict):
                    print(f"{pad}  - " + ", ".join(f"{k}={v}" for k, v in item.items()))
                else:
                    print(f"{pad}  - {item}")
        else:
            print(f"{pad}{key}: {value}")


def _emit(args: argparse.Namespace, data: Dict[str, Any]) -> None:
    if getattr(args, "json", False):
        _print_json(data)
    else:
        _print_mapping(data)


# --- Command handlers ---


def cmd_install(lab: LabLifecycle, args: argparse.Namespace) -> int:
    _emit(args, lab.install(args.components or None))
    return 0


def cmd_start(lab: LabLifecycle, args: argparse.Namespace) -> int:
    record = lab.start()
    print(f"[kubelab] Cluster '{record.alias}' is running")
    return 0


def cmd_stop(lab: LabLifecycle, args: argparse.Namespace) -> int:
    record = lab.stop()
    print(f"[kubelab] Cluster '{record.alias}' stopped")
    return 0


def cmd_status(lab: LabLifecycle, args: argparse.Namespace) -> int:
    _emit(args, lab.status())
    return 0


def cmd_health(lab: LabLifecycle, args: argparse.Namespace) -> int:
    _emit(args, lab.health())
    return 0


def cmd_rollback(lab: LabLifecycle, args: argparse.Namespace) -> int:
    report = lab.rollback()
    _emit(args, {
        "rolled_back": report.rolled_back,
        "failed": report.failed,
        "skipped": report.skipped,
    })
    return 0 if report.clean else 1


def cmd_cluster_create(lab: LabLifecycle, args: argparse.Namespace) -> int:
    record = lab.registry.create_named_cluster(args.alias, args.memory)
    print(f"[kubelab] Created '{record.alias}' at {record.storage_path} (memory {record.memory_profile})")
    print(f"[kubelab] Switch to it with: kubelab cluster-switch {record.alias}")
    return 0


def cmd_cluster_switch(lab: LabLifecycle, args: argparse.Namespace) -> int:
    result = lab.registry.switch_cluster(args.alias)
    if result.degraded:
        print(f"[kubelab] Active cluster is now '{args.alias}' (kubectl context not restored; "
              f"start it with 'kubelab start')")
    else:
        print(f"[kubelab] Active cluster is now '{args.alias}' ({result.record.kube_context})")
    return 0


def cmd_cluster_backup(lab: LabLifecycle, args: argparse.Namespace) -> int:
    path = lab.registry.backup_cluster(args.alias)
    print(f"[kubelab] Backup written to {path}")
    return 0


def cmd_cluster_list(lab: LabLifecycle, args: argparse.Namespace) -> int:
    active = lab.registry.active_alias
    records = lab.registry.list_clusters()
    if args.json:
        _print_json({"active": active, "clusters": [r.to_dict() for r in records]})
        return 0
    if not records:
        print("No clusters registered. Create one with: kubelab cluster-create <alias> <memory>")
        return 0
    print(f"{'':2}{'ALIAS':<20}{'STATUS':<10}{'MEMORY':<10}PATH")
    for record in records:
        marker = "* " if record.alias == active else "  "
        print(f"{marker}{record.alias:<20}{record.status.value:<10}{record.memory_profile:<10}{record.storage_path}")
    return 0


def cmd_cluster_backups(lab: LabLifecycle, args: argparse.Namespace) -> int:
    backups = lab.registry.list_backups(args.alias)
    if not backups:
        print("No backups found")
    for path in backups:
        print(f"{path.name}  {path.stat().st_size // 1024}KB")
    return 0


def cmd_cluster_info(lab: LabLifecycle, args: argparse.Namespace) -> int:
    record = lab.registry.get(args.alias)
    data = record.to_dict()
    data["active"] = record.alias == lab.registry.active_alias
    data["backups"] = [p.name for p in lab.registry.list_backups(record.alias)]
    _emit(args, data)
    return 0


def cmd_sysinfo(lab: LabLifecycle, args: argparse.Namespace) -> int:
    ctx = lab.context
    if args.refresh:
        ctx.reconfigure()
    facts = ctx.facts
    sizing = ctx.sizing
    _emit(args, {
        "system": facts.to_dict(),
        "tier": ctx.tier.value,
        "os_overhead_mb": os_overhead_mb(facts.os_family, facts.arch),
        "usable_ram_mb": usable_ram_mb(facts),
        "cluster_memory_mb": cluster_memory_limit_mb(facts, sizing, ctx.lab_config.memory_limit),
        "agents": sizing.agents,
        "eviction": {"hard": sizing.eviction_hard, "soft": sizing.eviction_soft},
        "namespace_quota": sizing.namespace_quota,
        "runtime_running": ctx.profiler.runtime_running(),
        "memory": ctx.profiler.memory_usage().to_dict(),
    })
    return 0


def cmd_check_feasibility(lab: LabLifecycle, args: argparse.Namespace) -> int:
    ctx = lab.context
    predictor = ctx.predictor()
    available = args.ram if args.ram is not None else usable_ram_mb(ctx.facts)
    requested = predictor.profiles(args.components) if args.components else []
    subset = predictor.feasible_subset(available)
    feasible = predictor.is_feasible(requested, available)
    _emit(args, {
        "available_mb": available,
        "threshold_mb": predictor.threshold_mb(available),
        "requested": [p.name for p in requested],
        "requested_total_mb": predictor.predict_memory(requested),
        "feasible": feasible,
        "feasible_subset": [p.name for p in subset],
        "catalog": [
            f"{name} ({COMPONENT_CATALOG[name].min_memory_mb}MB): {COMPONENT_CATALOG[name].description}"
            for name in PRIORITY_ORDER
        ],
    })
    return 0 if feasible else ErrorKind.INSUFFICIENT_MEMORY.exit_code


def cmd_check_capacity(lab: LabLifecycle, args: argparse.Namespace) -> int:
    ctx = lab.context
    sizing = ctx.sizing
    cluster_mb = cluster_memory_limit_mb(ctx.facts, sizing, ctx.lab_config.memory_limit)
    report = ctx.predictor().check_workload_capacity(args.profile, cluster_mb, sizing, args.components)
    _emit(args, {
        "profile": report.profile,
        "nodes": report.nodes,
        "cluster_memory_mb": report.cluster_memory_mb,
        "required_mb": report.required_mb,
        "utilization_percent": report.utilization_percent,
        "level": report.level,
    })
    return 0 if report.fits else ErrorKind.INSUFFICIENT_MEMORY.exit_code


def cmd_check_competing(lab: LabLifecycle, args: argparse.Namespace) -> int:
    competing = lab.context.profiler.competing_clusters()
    if competing:
        print(f"[kubelab] Competing clusters running: {', '.join(competing)}")
        return ErrorKind.NETWORK_CONFLICT.exit_code
    print("[kubelab] No competing local clusters")
    return 0


def cmd_start_monitor(lab: LabLifecycle, args: argparse.Namespace) -> int:
    pid = lab.start_monitor(args.interval)
    print(f"[kubelab] Monitor running (pid {pid}); alerts go to {lab.context.store.log_dir / 'memory-alerts.log'}")
    return 0


def cmd_stop_monitor(lab: LabLifecycle, args: argparse.Namespace) -> int:
    if lab.stop_monitor():
        print("[kubelab] Monitor stopped")
    else:
        print("[kubelab] Monitor was not running")
    return 0


def cmd_monitor_run(lab: LabLifecycle, args: argparse.Namespace) -> int:
    lab.run_monitor(args.interval)
    return 0


COMMANDS: Dict[str, Callable[[LabLifecycle, argparse.Namespace], int]] = {
    "install": cmd_install,
    "start": cmd_start,
    "stop": cmd_stop,
    "status": cmd_status,
    "health": cmd_health,
    "rollback": cmd_rollback,
    "cluster-create": cmd_cluster_create,
    "cluster-switch": cmd_cluster_switch,
    "cluster-backup": cmd_cluster_backup,
    "cluster-list": cmd_cluster_list,
    "cluster-backups": cmd_cluster_backups,
    "cluster-info": cmd_cluster_info,
    "sysinfo": cmd_sysinfo,
    "check-feasibility": cmd_check_feasibility,
    "check-capacity": cmd_check_capacity,
    "check-competing": cmd_check_competing,
    "start-monitor": cmd_start_monitor,
    "stop-monitor": cmd_stop_monitor,
    "monitor-run": cmd_monitor_run,
}


def build_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--non-interactive", "--ci", dest="non_interactive", action="store_true",
                        help="Never prompt; use defaults (also KUBELAB_NON_INTERACTIVE=1 or CI=true)")
    common.add_argument("--dry-run", action="store_true", help="Print mutating commands instead of running them")
    common.add_argument("--low-memory", action="store_true",
                        help="Force the minimal footprint (also KUBELAB_LOW_MEMORY=1)")
    common.add_argument("--settings", type=str, help="Path to settings YAML file")
    common.add_argument("--config", type=str, help="Path to the lab config file")
    common.add_argument("--json", action="store_true", help="Machine-readable output")

    parser = argparse.ArgumentParser(
        prog="kubelab",
        description="Resource-aware local Kubernetes lab orchestrator",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")
    sub.required = True

    p = sub.add_parser("install", parents=[common], help="Provision the lab")
    p.add_argument("components", nargs="*", help="Optional components (default: what fits)")
    sub.add_parser("start", parents=[common], help="Start the active cluster")
    sub.add_parser("stop", parents=[common], help="Stop the active cluster")
    sub.add_parser("status", parents=[common], help="Show lab status")
    sub.add_parser("health", parents=[common], help="Resource health report")
    sub.add_parser("rollback", parents=[common], help="Tear down incomplete installation steps")

    p = sub.add_parser("cluster-create", parents=[common], help="Register a named cluster")
    p.add_argument("alias")
    p.add_argument("memory", nargs="?", default="auto", help="auto, 2048MB or 4GB")
    p = sub.add_parser("cluster-switch", parents=[common], help="Make a named cluster active")
    p.add_argument("alias")
    p = sub.add_parser("cluster-backup", parents=[common], help="Archive a cluster's data")
    p.add_argument("alias", nargs="?", default=None)
    sub.add_parser("cluster-list", parents=[common], help="List named clusters")
    p = sub.add_parser("cluster-backups", parents=[common], help="List backup archives")
    p.add_argument("alias", nargs="?", default=None)
    p = sub.add_parser("cluster-info", parents=[common], help="Show one cluster")
    p.add_argument("alias")

    p = sub.add_parser("sysinfo", parents=[common], help="Detected system facts and sizing")
    p.add_argument("--refresh", action="store_true", help="Re-probe the host and re-derive the resource tier")
    p = sub.add_parser("check-feasibility", parents=[common], help="Will these components fit?")
    p.add_argument("components", nargs="*")
    p.add_argument("--ram", type=int, default=None, help="Available RAM in MB (default: detected)")
    p = sub.add_parser("check-capacity", parents=[common], help="Workload profile utilization")
    p.add_argument("profile", nargs="?", default="lab", choices=sorted(WORKLOAD_PROFILES))
    p.add_argument("--components", nargs="*", default=["registry"])
    sub.add_parser("check-competing", parents=[common], help="Detect other running local clusters")

    p = sub.add_parser("start-monitor", parents=[common], help="Start the background resource monitor")
    p.add_argument("--interval", type=int, default=None, help="Seconds between samples")
    sub.add_parser("stop-monitor", parents=[common], help="Stop the background resource monitor")
    p = sub.add_parser("monitor-run", parents=[common], help=argparse.SUPPRESS)
    p.add_argument("--interval", type=int, default=None)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Entry point for the kubelab command."""
    args = build_parser().parse_args(argv)
    try:
        settings = Settings.load(args.settings)
        flags = RunFlags.from_env(
            low_memory=args.low_memory,
            non_interactive=args.non_interactive,
            dry_run=args.dry_run,
        )
        context = OrchestratorContext.build(
            settings=settings,
            flags=flags,
            config_path=Path(args.config).expanduser() if args.config else None,
            settings_path=Path(args.settings).expanduser() if args.settings else None,
        )
        lab = LabLifecycle(context)
        return COMMANDS[args.command](lab, args)
    except OrchestratorError as exc:
        print(f"[kubelab] ERROR {exc}", file=sys.stderr)
        return exc.exit_code
    except KeyboardInterrupt:
        print("\n[kubelab] Interrupted", file=sys.stderr)
        return 130


if __name__ == "__main__":
    sys.exit(main())
