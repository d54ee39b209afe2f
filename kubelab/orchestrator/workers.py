"""Background resource monitoring.

``ResourceMonitor`` samples host memory on an interval and sends threshold
alerts over a queue; the main loop drains it without ever blocking.
``MonitorHandle`` runs the same loop as a detached process identified by a
pid file, for ``start-monitor`` / ``stop-monitor``.
"""

from __future__ import annotations

import os
import queue
import signal
import subprocess
import threading
from pathlib import Path
from typing import Callable, List, Optional

from ..data.models import MemoryReading, MonitorAlert
from ..data.persistence import DataStore
from ..errors import ProbeUnavailable


def _log(msg: str) -> None:
    """Print with flush for reliable output in daemon threads."""
    print(msg, flush=True)


class ResourceMonitor(threading.Thread):
    """Background worker that watches memory and swap pressure."""

    daemon = True

    def __init__(
        self,
        *,
        probe: Callable[[], MemoryReading],
        alerts: "queue.Queue[MonitorAlert]",
        interval_seconds: int,
        memory_alert_ratio: float = 0.85,
        swap_alert_ratio: float = 0.90,
        store: Optional[DataStore] = None,
        run_immediately: bool = True,
        failure_threshold: int = 3,
        pause_duration: int = 300,
    ):
        super().__init__(name="resource-monitor")
        self.probe = probe
        self.alerts = alerts
        self.interval = max(1, interval_seconds)
        self.memory_alert_ratio = memory_alert_ratio
        self.swap_alert_ratio = swap_alert_ratio
        self.store = store
        self._stop_event = threading.Event()
        self._run_immediately = run_immediately
        # Circuit breaker state
        self._consecutive_failures = 0
        self._failure_threshold = failure_threshold
        self._pause_duration = pause_duration
        self.samples = 0

    def run(self) -> None:
        _log(f"[monitor] Starting (interval={self.interval}s, "
             f"memory>{self.memory_alert_ratio:.0%}, swap>{self.swap_alert_ratio:.0%})")

        if not self._run_immediately:
            if self._stop_event.wait(self.interval):
                return

        while not self._stop_event.is_set():
            self._sample()
            if self._stop_event.wait(self.interval):
                break

        _log("[monitor] Stopped")

    def stop(self) -> None:
        self._stop_event.set()

    def check(self, reading: MemoryReading) -> List[MonitorAlert]:
        """Alerts for one reading; no side effects."""
        alerts = []
        if reading.total_mb <= 0:
            return alerts
        if reading.used_mb > reading.total_mb * self.memory_alert_ratio:
            alerts.append(MonitorAlert(
                kind="memory",
                message=f"Memory usage {reading.percent_used:.0f}% of {reading.total_mb}MB",
                reading=reading,
            ))
        if reading.swap_used_mb > reading.total_mb * self.swap_alert_ratio:
            alerts.append(MonitorAlert(
                kind="swap",
                message=f"Swap usage {reading.swap_used_mb}MB",
                reading=reading,
            ))
        return alerts

    def _sample(self) -> None:
        # Circuit breaker: pause longer after repeated probe failures
        if self._consecutive_failures >= self._failure_threshold:
            _log(f"[monitor] {self._consecutive_failures} consecutive probe failures, "
                 f"pausing {self._pause_duration}s")
            if self._stop_event.wait(self._pause_duration):
                return
            self._consecutive_failures = 0

        try:
            reading = self.probe()
        except ProbeUnavailable as exc:
            self._consecutive_failures += 1
            _log(f"[monitor] Sample failed ({self._consecutive_failures}/{self._failure_threshold}): {exc}")
            return

        self._consecutive_failures = 0
        self.samples += 1
        if self.store is not None:
            self.store.save_snapshot("memory", reading.to_dict())
        for alert in self.check(reading):
            self.alerts.put_nowait(alert)


def drain_alerts(alerts: "queue.Queue[MonitorAlert]") -> List[MonitorAlert]:
    """Everything currently queued, without waiting."""
    drained = []
    while True:
        try:
            drained.append(alerts.get_nowait())
        except queue.Empty:
            return drained


class MonitorHandle:
    """Pid-file handle for the detached monitor process."""

    def __init__(self, pid_file: Path):
        self.pid_file = Path(pid_file)

    def read_pid(self) -> Optional[int]:
        if not self.pid_file.exists():
            return None
        text = self.pid_file.read_text(encoding="utf-8").strip()
        return int(text) if text.isdigit() else None

    def is_running(self) -> bool:
        pid = self.read_pid()
        if pid is None:
            return False
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            return True
        return True

    def start(self, argv: List[str], log_file: Path) -> int:
        """Spawn the monitor detached from this session; reuse a live one."""
        if self.is_running():
            pid = self.read_pid()
            _log(f"[monitor] Already running (pid {pid})")
            return pid
        log_file.parent.mkdir(parents=True, exist_ok=True)
        with open(log_file, "a", encoding="utf-8") as log:
            proc = subprocess.Popen(
                argv,
                stdout=log,
                stderr=subprocess.STDOUT,
                stdin=subprocess.DEVNULL,
                start_new_session=True,
            )
        self.pid_file.parent.mkdir(parents=True, exist_ok=True)
        self.pid_file.write_text(str(proc.pid), encoding="utf-8")
        _log(f"[monitor] Started (pid {proc.pid})")
        return proc.pid

    def stop(self) -> bool:
        """Signal the monitor and remove the handle.

        Returns False when there was nothing to stop; a stale handle is
        cleaned up without error.
        """
        pid = self.read_pid()
        if pid is None:
            return False
        if not self.is_running():
            _log(f"[monitor] Stale handle (pid {pid} is gone); removing")
            self.pid_file.unlink(missing_ok=True)
            return False
        try:
            os.kill(pid, signal.SIGTERM)
        except ProcessLookupError:
            pass
        self.pid_file.unlink(missing_ok=True)
        _log(f"[monitor] Stopped (pid {pid})")
        return True
