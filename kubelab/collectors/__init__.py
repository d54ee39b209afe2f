"""System profiler - host facts, container runtime, and competing clusters."""

from .base import BaseProbe
from .system import SystemProbe
from .runtime import RuntimeProbe
from .profiler import CachedProfiler

__all__ = [
    "BaseProbe",
    "SystemProbe",
    "RuntimeProbe",
    "CachedProfiler",
]
