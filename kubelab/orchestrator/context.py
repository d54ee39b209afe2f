"""Explicit orchestrator context.

One object carries everything that would otherwise be ambient global state:
settings, the lab config, run flags, the probe cache and profiler, the error
stack, and persistence. Every component takes it as an argument, so tests can
fabricate one around a temporary directory.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from ..collectors.profiler import CachedProfiler
from ..data.cache import ProbeCache
from ..data.models import ResourceTier, SystemFacts
from ..data.persistence import DataStore, get_data_dir
from ..data.state import InstallationLog
from ..errors import ErrorStack, OrchestratorError
from ..insights.feasibility import FeasibilityPredictor, TierSizing, sizing_for
from .config import LabConfig, RunFlags, Settings


@dataclass
class OrchestratorContext:
    settings: Settings
    lab_config: LabConfig
    flags: RunFlags
    store: DataStore
    cache: ProbeCache
    profiler: CachedProfiler
    errors: ErrorStack
    first_run: bool = False
    config_path: Optional[Path] = None
    settings_path: Optional[Path] = None
    _tier: Optional[ResourceTier] = field(default=None, repr=False)

    @classmethod
    def build(
        cls,
        settings: Optional[Settings] = None,
        lab_config: Optional[LabConfig] = None,
        flags: Optional[RunFlags] = None,
        config_path: Optional[Path] = None,
        profiler: Optional[CachedProfiler] = None,
        settings_path: Optional[Path] = None,
    ) -> "OrchestratorContext":
        settings = settings or Settings()
        first_run = False
        if lab_config is None:
            lab_config = LabConfig.load(config_path)
            if lab_config is None:
                first_run = True
                lab_config = LabConfig()

        if settings.data_dir:
            store = DataStore(Path(settings.data_dir).expanduser())
        else:
            store = DataStore(get_data_dir(lab_config.storage_path))

        errors = ErrorStack()
        if profiler is None:
            profiler = CachedProfiler(ProbeCache(), errors=errors, ttls=vars(settings.cache))
        else:
            profiler.errors = errors
        return cls(
            settings=settings,
            lab_config=lab_config,
            flags=flags or RunFlags(),
            store=store,
            cache=profiler.cache,
            profiler=profiler,
            errors=errors,
            first_run=first_run,
            config_path=config_path,
            settings_path=settings_path,
        )

    @property
    def facts(self) -> SystemFacts:
        return self.profiler.facts()

    @property
    def tier(self) -> ResourceTier:
        """Derived once per run; see ``reconfigure``."""
        if self._tier is None:
            self._tier = ResourceTier.from_total_ram_mb(self.profiler.total_ram_mb(), self.flags.low_memory)
        return self._tier

    def reconfigure(self) -> ResourceTier:
        """Forget every probe result and derive the tier again."""
        self.cache.clear()
        self._tier = None
        return self.tier

    @property
    def sizing(self) -> TierSizing:
        return sizing_for(self.tier, self.profiler.total_ram_mb(), self.flags.low_memory)

    def predictor(self) -> FeasibilityPredictor:
        return FeasibilityPredictor(
            base_overhead_mb=self.settings.feasibility.base_overhead_mb,
            safety_factor=self.settings.feasibility.safety_factor,
            low_memory=self.flags.low_memory,
        )

    def state_log(self) -> InstallationLog:
        return InstallationLog(self.store.state_file)

    def record_error(self, error: OrchestratorError) -> None:
        """Push onto the diagnostic stack and persist for ``health``."""
        entry = self.errors.push_error(error)
        self.store.save_error(error.kind.value, entry.function_site, error.message)
        self.store.append_log("install", f"ERROR {error}")
