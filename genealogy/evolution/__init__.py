from __future__ import annotations

from genealogy.evolution.config import EvolutionConfig
from genealogy.evolution.engine import EvolutionEngine, EvolutionFailure, EvolutionResult
from genealogy.evolution.metrics import EngineMetrics
from genealogy.evolution.stats import RuleStats, aggregate_stats, collect_stats

__all__ = [
    "EngineMetrics",
    "EvolutionConfig",
    "EvolutionEngine",
    "EvolutionFailure",
    "EvolutionResult",
    "RuleStats",
    "aggregate_stats",
    "collect_stats",
]
