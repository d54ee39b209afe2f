"""Insights module - feasibility prediction, tier sizing, and capacity checks."""

from .feasibility import (
    COMPONENT_CATALOG,
    PRIORITY_ORDER,
    FeasibilityPredictor,
    TierSizing,
    CapacityReport,
    sizing_for,
    os_overhead_mb,
    usable_ram_mb,
    parse_memory_spec,
    cluster_memory_limit_mb,
)

__all__ = [
    "COMPONENT_CATALOG",
    "PRIORITY_ORDER",
    "FeasibilityPredictor",
    "TierSizing",
    "CapacityReport",
    "sizing_for",
    "os_overhead_mb",
    "usable_ram_mb",
    "parse_memory_spec",
    "cluster_memory_limit_mb",
]
