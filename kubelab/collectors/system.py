"""Host system probe.

Detects OS family, CPU architecture, RAM, cores and live memory usage from
/proc on Linux and from sysctl/vm_stat on macOS.
"""

from __future__ import annotations

import os
import platform
import re
import shutil
from pathlib import Path
from typing import Dict, Optional

from ..data.models import CPUArch, MemoryReading, OSFamily
from ..errors import ProbeUnavailable
from .base import BaseProbe


class SystemProbe(BaseProbe):
    """Probe for static and live host facts."""

    def __init__(self, proc_root: Path = Path("/proc"), command_timeout: int = 5):
        self.proc_root = Path(proc_root)
        self.command_timeout = command_timeout

    def is_available(self) -> bool:
        return True

    # --- Static facts ---

    def detect_os(self) -> OSFamily:
        system = platform.system()
        if system == "Darwin":
            return OSFamily.MACOS
        if system == "Linux":
            version_file = self.proc_root / "version"
            try:
                if "microsoft" in version_file.read_text(encoding="utf-8").lower():
                    return OSFamily.WSL2
            except OSError:
                pass
            return OSFamily.LINUX
        if system == "Windows" or system.upper().startswith(("CYGWIN", "MINGW", "MSYS")):
            return OSFamily.WINDOWS
        return OSFamily.UNKNOWN

    def detect_arch(self) -> CPUArch:
        return self._normalize_arch(platform.machine())

    def detect_total_ram_mb(self, os_family: Optional[OSFamily] = None) -> int:
        """Total physical memory in MB.

        Raises:
            ProbeUnavailable: If neither /proc/meminfo nor sysctl can answer.
        """
        os_family = os_family or self.detect_os()
        if os_family in (OSFamily.LINUX, OSFamily.WSL2):
            meminfo = self._read_meminfo()
            if "MemTotal" in meminfo:
                return meminfo["MemTotal"] // 1024
            raise ProbeUnavailable("total-ram", "MemTotal missing from /proc/meminfo")
        if os_family == OSFamily.MACOS:
            out = self._output(["sysctl", "-n", "hw.memsize"])
            if out and out.strip().isdigit():
                return int(out.strip()) // (1024 * 1024)
            raise ProbeUnavailable("total-ram", "sysctl hw.memsize did not answer")
        raise ProbeUnavailable("total-ram", f"no memory source for OS '{os_family.value}'")

    def detect_cpu_cores(self) -> int:
        cores = os.cpu_count()
        if not cores:
            raise ProbeUnavailable("cpu-cores", "CPU count not reported by the OS")
        return cores

    # --- Live readings ---

    def memory_usage(self, os_family: Optional[OSFamily] = None) -> MemoryReading:
        """Current RAM and swap usage.

        Raises:
            ProbeUnavailable: On hosts without /proc or vm_stat.
        """
        os_family = os_family or self.detect_os()
        if os_family in (OSFamily.LINUX, OSFamily.WSL2):
            meminfo = self._read_meminfo()
            if "MemTotal" not in meminfo:
                raise ProbeUnavailable("memory-usage", "/proc/meminfo unreadable")
            total_kb = meminfo["MemTotal"]
            available_kb = meminfo.get("MemAvailable", meminfo.get("MemFree", 0))
            swap_used_kb = meminfo.get("SwapTotal", 0) - meminfo.get("SwapFree", 0)
            return MemoryReading(
                used_mb=(total_kb - available_kb) // 1024,
                total_mb=total_kb // 1024,
                swap_used_mb=max(0, swap_used_kb) // 1024,
            )
        if os_family == OSFamily.MACOS:
            vm_stat = self._output(["vm_stat"])
            if vm_stat is None:
                raise ProbeUnavailable("memory-usage", "vm_stat did not answer")
            total_mb = self.detect_total_ram_mb(os_family)
            swap = self._output(["sysctl", "-n", "vm.swapusage"]) or ""
            return MemoryReading(
                used_mb=self._parse_vm_stat_used_mb(vm_stat),
                total_mb=total_mb,
                swap_used_mb=self._parse_swapusage_used_mb(swap),
            )
        raise ProbeUnavailable("memory-usage", f"no memory source for OS '{os_family.value}'")

    def disk_free_gb(self, path: Path) -> float:
        """Free space on the filesystem holding ``path`` (or its nearest parent)."""
        probe_path = Path(path)
        while not probe_path.exists() and probe_path != probe_path.parent:
            probe_path = probe_path.parent
        try:
            usage = shutil.disk_usage(probe_path)
        except OSError as exc:
            raise ProbeUnavailable("disk-free", f"cannot stat {probe_path}", exc)
        return round(usage.free / (1024 ** 3), 1)

    # --- Parsing helpers ---

    def _read_meminfo(self) -> Dict[str, int]:
        try:
            text = (self.proc_root / "meminfo").read_text(encoding="utf-8")
        except OSError:
            return {}
        return self._parse_meminfo(text)

    def _parse_meminfo(self, text: str) -> Dict[str, int]:
        """Parse /proc/meminfo into {field: kB}."""
        values = {}
        for line in text.splitlines():
            match = re.match(r"^(\w+):\s+(\d+)", line)
            if match:
                values[match.group(1)] = int(match.group(2))
        return values

    def _parse_vm_stat_used_mb(self, text: str) -> int:
        """Active + wired + compressed pages from macOS vm_stat output."""
        page_size = 4096
        size_match = re.search(r"page size of (\d+) bytes", text)
        if size_match:
            page_size = int(size_match.group(1))

        pages = {}
        for line in text.splitlines():
            match = re.match(r'^"?([^:"]+)"?:\s+(\d+)\.?', line.strip())
            if match:
                pages[match.group(1).strip()] = int(match.group(2))

        used_pages = (
            pages.get("Pages active", 0)
            + pages.get("Pages wired down", 0)
            + pages.get("Pages occupied by compressor", 0)
        )
        return used_pages * page_size // (1024 * 1024)

    def _parse_swapusage_used_mb(self, text: str) -> int:
        """Parse ``used = 1024.50M`` from ``sysctl vm.swapusage``."""
        match = re.search(r"used\s*=\s*([\d.]+)([MG])", text)
        if not match:
            return 0
        value = float(match.group(1))
        if match.group(2) == "G":
            value *= 1024
        return int(value)

    def _normalize_arch(self, machine: str) -> CPUArch:
        machine = (machine or "").lower()
        if machine in ("x86_64", "amd64"):
            return CPUArch.AMD64
        if machine in ("arm64", "aarch64"):
            return CPUArch.ARM64
        return CPUArch.UNKNOWN
