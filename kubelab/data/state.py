"""Append-only installation state log.

One ``component:phase:unix_ts`` line per transition. For any component the
latest line wins; replaying the file after a crash tells rollback what was
left half-built.
"""

from __future__ import annotations

import os
import time
from pathlib import Path
from typing import Dict, List, Optional

from .models import InstallationEvent, Phase

HEADER = "# Installation state - component:phase:timestamp\n"


class InstallationLog:
    """Typed accessors over the persisted state file."""

    def __init__(self, path: Path):
        self.path = Path(path)

    def exists(self) -> bool:
        return self.path.exists()

    def init(self) -> None:
        """Start a fresh log for a new install run."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        started = time.strftime("%Y-%m-%d %H:%M:%S")
        self.path.write_text(f"{HEADER}# Started: {started}\n", encoding="utf-8")

    def record(self, component: str, phase: Phase, timestamp: Optional[int] = None) -> InstallationEvent:
        """Durably append one transition before the caller acts on it."""
        event = InstallationEvent(
            component=component,
            phase=phase,
            timestamp=int(time.time()) if timestamp is None else timestamp,
        )
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "a", encoding="utf-8") as f:
            f.write(event.to_line() + "\n")
            f.flush()
            os.fsync(f.fileno())
        return event

    def events(self) -> List[InstallationEvent]:
        if not self.path.exists():
            return []
        events = []
        for line in self.path.read_text(encoding="utf-8").splitlines():
            event = InstallationEvent.from_line(line)
            if event is not None:
                events.append(event)
        return events

    def latest_phases(self) -> Dict[str, Phase]:
        """Latest phase per component, in order of first appearance."""
        latest: Dict[str, Phase] = {}
        for event in self.events():
            latest[event.component] = event.phase
        return latest

    def phase_of(self, component: str) -> Optional[Phase]:
        return self.latest_phases().get(component)

    def incomplete(self) -> List[str]:
        """Components with a trailing Started and nothing after it."""
        return [c for c, phase in self.latest_phases().items() if phase == Phase.STARTED]

    def unresolved(self) -> List[str]:
        """Components whose latest phase is anything but Completed."""
        return [c for c, phase in self.latest_phases().items() if phase != Phase.COMPLETED]

    def clear(self) -> None:
        if self.path.exists():
            self.path.unlink()
