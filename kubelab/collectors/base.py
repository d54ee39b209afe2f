"""Base probe interface for host facts."""

from __future__ import annotations

import subprocess
from abc import ABC, abstractmethod
from typing import List, Optional


class BaseProbe(ABC):
    """Abstract base class for system probes.

    Probes are pure and idempotent: they read host state and never change
    it. Expensive calls are expected to be wrapped in the probe cache by the
    caller.
    """

    command_timeout: int = 10

    @abstractmethod
    def is_available(self) -> bool:
        """Check if the probe's facilities exist on this host."""
        pass

    def _run(self, cmd: List[str], timeout: Optional[int] = None) -> Optional[subprocess.CompletedProcess]:
        """Run a read-only command; None when the binary is missing or hangs."""
        try:
            return subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=timeout or self.command_timeout,
            )
        except (FileNotFoundError, subprocess.TimeoutExpired, OSError):
            return None

    def _output(self, cmd: List[str], timeout: Optional[int] = None) -> Optional[str]:
        """stdout of a successful command, else None."""
        result = self._run(cmd, timeout)
        if result is None or result.returncode != 0:
            return None
        return result.stdout
