"""Error taxonomy for the orchestrator.

Every failure the tool can surface is an ``OrchestratorError`` tagged with an
``ErrorKind``. The kind decides the process exit code and which remediation
(if any) the executor may try before giving up.
"""

from __future__ import annotations

import sys
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Deque, Iterable, List, Optional


class ErrorKind(str, Enum):
    """Closed set of failure kinds."""

    GENERIC = "Generic"
    RUNTIME_UNAVAILABLE = "RuntimeUnavailable"
    RUNTIME_NOT_RUNNING = "RuntimeNotRunning"
    DEPENDENCY_MISSING = "DependencyMissing"
    PROBE_UNAVAILABLE = "ProbeUnavailable"
    CLUSTER_START_FAILED = "ClusterStartFailed"
    REGISTRY_START_FAILED = "RegistryStartFailed"
    PORT_IN_USE = "PortInUse"
    INSUFFICIENT_DISK = "InsufficientDisk"
    INSUFFICIENT_MEMORY = "InsufficientMemory"
    NETWORK_CONFLICT = "NetworkConflict"
    CONFIG_MISSING = "ConfigMissing"
    CONFIG_INVALID = "ConfigInvalid"
    NOT_FOUND = "NotFound"
    ALREADY_EXISTS = "AlreadyExists"
    INSTALLATION_FAILED = "InstallationFailed"
    TIMEOUT = "Timeout"
    PERMISSION_DENIED = "PermissionDenied"
    DEPENDENCY_REPO_FAILED = "DependencyRepoFailed"

    @property
    def exit_code(self) -> int:
        return EXIT_CODES[self]


# Grouped by class: 1x runtime/dependencies, 2x cluster, 3x resources,
# 4x network, 5x config, 6x install, 8x timing/permissions, 9x repos.
EXIT_CODES = {
    ErrorKind.GENERIC: 1,
    ErrorKind.RUNTIME_UNAVAILABLE: 10,
    ErrorKind.RUNTIME_NOT_RUNNING: 11,
    ErrorKind.DEPENDENCY_MISSING: 12,
    ErrorKind.PROBE_UNAVAILABLE: 13,
    ErrorKind.CLUSTER_START_FAILED: 20,
    ErrorKind.REGISTRY_START_FAILED: 21,
    ErrorKind.PORT_IN_USE: 30,
    ErrorKind.INSUFFICIENT_DISK: 31,
    ErrorKind.INSUFFICIENT_MEMORY: 32,
    ErrorKind.NETWORK_CONFLICT: 40,
    ErrorKind.CONFIG_MISSING: 50,
    ErrorKind.CONFIG_INVALID: 51,
    ErrorKind.NOT_FOUND: 52,
    ErrorKind.ALREADY_EXISTS: 53,
    ErrorKind.INSTALLATION_FAILED: 60,
    ErrorKind.TIMEOUT: 80,
    ErrorKind.PERMISSION_DENIED: 81,
    ErrorKind.DEPENDENCY_REPO_FAILED: 90,
}


class OrchestratorError(Exception):
    """Base exception for every surfaced failure.

    Carries the kind, the step that produced it and, when automatic recovery
    was tried, the remediations that were already attempted.
    """

    kind = ErrorKind.GENERIC

    def __init__(
        self,
        message: str,
        *,
        kind: Optional[ErrorKind] = None,
        step: Optional[str] = None,
        attempted: Optional[Iterable[str]] = None,
        cause: Optional[BaseException] = None,
    ):
        if kind is not None:
            self.kind = kind
        self.message = message
        self.step = step
        self.attempted: List[str] = list(attempted or [])
        self.cause = cause
        super().__init__(self._render())

    def _render(self) -> str:
        text = f"[{self.kind.value}]"
        if self.step:
            text += f" {self.step}:"
        text += f" {self.message}"
        if self.attempted:
            text += f" (already attempted: {', '.join(self.attempted)})"
        return text

    def __str__(self) -> str:
        return self._render()

    @property
    def exit_code(self) -> int:
        return self.kind.exit_code


class ProbeUnavailable(OrchestratorError):
    """The host lacks the facility to answer a probe."""

    kind = ErrorKind.PROBE_UNAVAILABLE

    def __init__(self, probe: str, message: str, cause: Optional[BaseException] = None):
        self.probe = probe
        super().__init__(message, step=probe, cause=cause)


class NotFound(OrchestratorError):
    kind = ErrorKind.NOT_FOUND


class AlreadyExists(OrchestratorError):
    kind = ErrorKind.ALREADY_EXISTS


class ConfigInvalid(OrchestratorError):
    kind = ErrorKind.CONFIG_INVALID


class OperationTimeout(OrchestratorError):
    kind = ErrorKind.TIMEOUT


@dataclass
class ErrorContext:
    """One diagnostic entry on the error stack."""

    message: str
    kind: ErrorKind
    function_site: str
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return {
            "message": self.message,
            "kind": self.kind.value,
            "function_site": self.function_site,
            "timestamp": self.timestamp,
        }


class ErrorStack:
    """Bounded stack of recent errors; oldest entries fall off past capacity."""

    def __init__(self, capacity: int = 50):
        self.capacity = capacity
        self._entries: Deque[ErrorContext] = deque(maxlen=capacity)

    def push(self, message: str, kind: ErrorKind, function_site: Optional[str] = None) -> ErrorContext:
        if function_site is None:
            caller = sys._getframe(1)
            function_site = f"{caller.f_code.co_name}:{caller.f_lineno}"
        entry = ErrorContext(message=message, kind=kind, function_site=function_site)
        self._entries.append(entry)
        return entry

    def push_error(self, error: OrchestratorError) -> ErrorContext:
        caller = sys._getframe(1)
        site = error.step or f"{caller.f_code.co_name}:{caller.f_lineno}"
        return self.push(error.message, error.kind, function_site=site)

    @property
    def last_error(self) -> Optional[ErrorKind]:
        return self._entries[-1].kind if self._entries else None

    def entries(self) -> List[ErrorContext]:
        """Entries oldest first."""
        return list(self._entries)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)
