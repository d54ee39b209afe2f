"""Recovery-aware step executor.

Each installable unit moves NotStarted -> Started -> Completed | Failed. The
transition is written to the installation log before the step's side effects
run, so a crash mid-step leaves a trailing ``Started`` that rollback finds on
the next invocation.
"""

from __future__ import annotations

import subprocess
import time
from typing import Any, Callable, Dict, Mapping, Optional, Union

from ..data.models import ComponentKind, Phase, RollbackReport
from ..data.state import InstallationLog
from ..errors import ErrorKind, OrchestratorError
from .context import OrchestratorContext
from .remediation import Remediation

Teardown = Callable[[], None]


def _log(msg: str) -> None:
    print(msg, flush=True)


def _failed(result: Any) -> bool:
    """False and non-zero process results count as failure."""
    if result is False:
        return True
    if isinstance(result, subprocess.CompletedProcess):
        return result.returncode != 0
    return False


def _remediation_name(remediation: Remediation) -> str:
    return getattr(remediation, "__name__", repr(remediation)).replace("_", " ")


class RecoveryExecutor:
    """Runs steps with durable state, targeted retries and best-effort rollback.

    Args:
        context: Orchestrator context (settings, errors, persistence)
        teardowns: Component name to idempotent teardown
        recovery: Error kind to remediation
        state: Installation log; defaults to the context's state file
        sleep: Backoff sleep, injectable for tests
    """

    def __init__(
        self,
        context: OrchestratorContext,
        teardowns: Optional[Mapping[str, Teardown]] = None,
        recovery: Optional[Mapping[ErrorKind, Remediation]] = None,
        state: Optional[InstallationLog] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.context = context
        self.teardowns: Dict[str, Teardown] = dict(teardowns or {})
        self.recovery: Dict[ErrorKind, Remediation] = dict(recovery or {})
        self.state = state or context.state_log()
        self.sleep = sleep
        self.max_attempts = context.settings.executor.max_attempts
        self.backoff_base = context.settings.executor.backoff_base

    def _note(self, line: str) -> None:
        _log(f"[executor] {line}")
        self.context.store.append_log("install", line)

    # --- Steps ---

    def run_step(self, name: Union[str, ComponentKind], action: Callable[[], Any]) -> Any:
        """Run one installable unit, logging its transitions.

        Raises:
            OrchestratorError: The step failed; its ``Failed`` record is already written.
        """
        name = getattr(name, "value", name)
        self.state.record(name, Phase.STARTED)
        self._note(f"{name}: started")
        try:
            result = action()
            if _failed(result):
                raise OrchestratorError(
                    f"step reported failure ({result!r})",
                    kind=ErrorKind.INSTALLATION_FAILED,
                    step=name,
                )
        except OrchestratorError as exc:
            self.state.record(name, Phase.FAILED)
            if exc.step is None:
                exc.step = name
            self.context.record_error(exc)
            self.context.profiler.after_mutation()
            self._note(f"{name}: failed")
            raise
        except Exception as exc:
            self.state.record(name, Phase.FAILED)
            error = OrchestratorError(str(exc), kind=ErrorKind.INSTALLATION_FAILED, step=name, cause=exc)
            self.context.record_error(error)
            self.context.profiler.after_mutation()
            self._note(f"{name}: failed")
            raise error from exc

        self.state.record(name, Phase.COMPLETED)
        self.context.profiler.after_mutation()
        self._note(f"{name}: completed")
        return result

    # --- Rollback ---

    def rollback(self) -> RollbackReport:
        """Tear down every component that was started but never completed.

        Best effort: a failing teardown is logged and the remaining components
        are still attempted. Teardowns are not retried.
        """
        report = RollbackReport()
        latest = self.state.latest_phases()
        for component, phase in latest.items():
            if phase == Phase.COMPLETED:
                continue
            teardown = self.teardowns.get(component)
            if teardown is None:
                self._note(f"{component}: no teardown registered, skipping")
                report.skipped.append(component)
                continue

            self._note(f"{component}: rolling back")
            try:
                teardown()
            except Exception as exc:
                self._note(f"{component}: teardown failed: {exc}")
                report.failed.append(component)
            else:
                report.rolled_back.append(component)

            if phase == Phase.STARTED:
                self.state.record(component, Phase.FAILED)

        if report.rolled_back or report.failed:
            self.context.profiler.after_mutation()
        return report

    # --- Retry ---

    def smart_retry(
        self,
        action: Callable[[], Any],
        kind: ErrorKind,
        context: str = "",
        max_attempts: Optional[int] = None,
    ) -> Any:
        """Run ``action``, remediating and backing off between failed attempts.

        The remediation for ``kind`` runs after each failed attempt except the
        last; the retry waits ``backoff_base ** (attempt - 1)`` seconds.

        Raises:
            The last error unchanged when no remediation exists for ``kind``;
            otherwise an ``OrchestratorError`` naming what was attempted.
        """
        attempts = max_attempts or self.max_attempts
        attempted = []
        last_error: Optional[BaseException] = None

        for attempt in range(1, attempts + 1):
            try:
                result = action()
                if not _failed(result):
                    return result
                last_error = OrchestratorError(
                    f"returned {result!r}", kind=kind, step=context or kind.value
                )
            except Exception as exc:
                last_error = exc

            if attempt == attempts:
                break

            remediation = self.recovery.get(kind)
            if remediation is None:
                self._note(f"{kind.value}: attempt {attempt}/{attempts} failed, no remediation")
            else:
                label = _remediation_name(remediation)
                if label not in attempted:
                    attempted.append(label)
                self._note(f"{kind.value}: attempt {attempt}/{attempts} failed, trying '{label}'")
                try:
                    remedied = remediation(context)
                except Exception as exc:
                    self._note(f"{kind.value}: remediation '{label}' raised: {exc}")
                    remedied = False
                if not remedied:
                    self._note(f"{kind.value}: remediation '{label}' did not succeed")

            delay = self.backoff_base ** (attempt - 1)
            self._note(f"{kind.value}: retrying in {delay:g}s")
            self.sleep(delay)

        if not attempted:
            raise last_error

        if isinstance(last_error, OrchestratorError):
            raise OrchestratorError(
                last_error.message,
                kind=last_error.kind,
                step=last_error.step or context or kind.value,
                attempted=attempted,
                cause=last_error,
            ) from last_error
        raise OrchestratorError(
            str(last_error),
            kind=kind,
            step=context or kind.value,
            attempted=attempted,
            cause=last_error,
        ) from last_error
