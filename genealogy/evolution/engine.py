from __future__ import annotations

import asyncio
import contextlib
import copy
from datetime import datetime, timezone

from loguru import logger
from pydantic import BaseModel, Field

from genealogy.database.rule_storage import RuleStorage
from genealogy.evolution.config import EvolutionConfig
from genealogy.evolution.metrics import EngineMetrics
from genealogy.evolution.stats import RuleStats, collect_stats
from genealogy.exceptions import EvolutionError, GenealogyError
from genealogy.rules.models import Rule, RuleOrigin

__all__ = ["EvolutionEngine", "EvolutionFailure", "EvolutionResult"]


class EvolutionFailure(BaseModel):
    rule_id: int
    stage: str
    error: str


class EvolutionResult(BaseModel):
    """Audit record of one evolution run."""

    deactivated: list[int] = Field(default_factory=list)
    created: list[Rule] = Field(default_factory=list)
    skipped: list[int] = Field(
        default_factory=list,
        description="Promotion candidates already cloned at their current statistics",
    )
    errors: list[EvolutionFailure] = Field(default_factory=list)
    active_rules_before: int = 0
    stats: list[RuleStats] = Field(default_factory=list)

    def to_dict(self) -> dict:
        out = self.model_dump(mode="json", exclude={"stats"})
        out["stats"] = [s.to_dict() for s in self.stats]
        return out


class EvolutionEngine:
    """
    Batch selection over the rule registry:
    - rules with fewer than ``min_samples`` feedback items are left alone;
    - judged rules below ``fail_threshold`` are deactivated;
    - the best ``promote_top_n`` of the remaining judged rules are cloned
      with ``weight + mutation_delta`` (capped), keeping pattern and lineage.
    Deactivation wins over promotion. Runs are serialized through the storage
    evolution lock.
    """

    def __init__(self, storage: RuleStorage, config: EvolutionConfig | None = None):
        self.storage = storage
        self.config = config or EvolutionConfig()
        self.metrics = EngineMetrics()

        self._running = False
        self._consecutive_errors = 0
        self.task: asyncio.Task | None = None

        logger.info(
            "[EvolutionEngine] Init | min_samples={}, fail_threshold={}, top_n={}, delta={}, cap={}",
            self.config.min_samples,
            self.config.fail_threshold,
            self.config.promote_top_n,
            self.config.mutation_delta,
            self.config.weight_cap,
        )

    # ------------------------------------------------------------------
    # Single run
    # ------------------------------------------------------------------

    async def evolve(self) -> EvolutionResult:
        async with self.storage.evolution_lock(self.config.lock_timeout):
            result = await self._evolve_locked()
        self.metrics.record_run(
            deactivated=len(result.deactivated),
            created=len(result.created),
            skipped=len(result.skipped),
            rule_errors=len(result.errors),
            at=datetime.now(timezone.utc),
        )
        logger.info(
            "[EvolutionEngine] Run done | active_before={}, deactivated={}, created={}, skipped={}, errors={}",
            result.active_rules_before,
            result.deactivated,
            [r.id for r in result.created],
            result.skipped,
            len(result.errors),
        )
        return result

    def is_judged(self, stats: RuleStats) -> bool:
        return stats.samples >= self.config.min_samples

    def is_failing(self, stats: RuleStats) -> bool:
        rate = stats.success_rate
        return self.is_judged(stats) and rate is not None and rate < self.config.fail_threshold

    def rank(self, rules: list[Rule], stats: dict[int, RuleStats]) -> list[Rule]:
        """Best first: success rate, then sample count, then age."""
        return sorted(
            rules,
            key=lambda r: (-(stats[r.id].success_rate or 0.0), -stats[r.id].samples, r.id),
        )

    def mutate(self, parent: Rule, stats: RuleStats) -> Rule:
        """Weight-only clone of *parent*; matching semantics are unchanged."""
        return Rule(
            lineage_id=parent.lineage_id,
            parent_id=parent.id,
            rule_type=parent.rule_type,
            origin=RuleOrigin.EVOLUTION,
            pattern=copy.deepcopy(parent.pattern),
            response=copy.deepcopy(parent.response),
            weight=min(self.config.weight_cap, parent.weight + self.config.mutation_delta),
            active=True,
            provenance={
                "evolved_from": parent.id,
                "at": datetime.now(timezone.utc).isoformat(),
                "parent_samples": stats.samples,
                "parent_success": stats.success,
                "parent_success_rate": stats.success_rate,
                "note": "clone+weight",
            },
        )

    async def _already_promoted(self, parent: Rule, stats: RuleStats) -> bool:
        for relative in await self.storage.get_lineage(parent.lineage_id):
            if (
                relative.parent_id == parent.id
                and relative.provenance.get("parent_samples") == stats.samples
                and relative.provenance.get("parent_success") == stats.success
            ):
                return True
        return False

    async def _evolve_locked(self) -> EvolutionResult:
        rules = await self.storage.get_active_rules()
        result = EvolutionResult(active_rules_before=len(rules))
        if not rules:
            logger.info("[EvolutionEngine] No active rules to evolve")
            return result

        stats = await collect_stats(self.storage, rules)
        result.stats = [stats[r.id] for r in rules]

        judged = [r for r in rules if self.is_judged(stats[r.id])]
        failing = [r for r in judged if self.is_failing(stats[r.id])]
        failing_ids = {r.id for r in failing}

        for rule in failing:
            try:
                if await self.storage.deactivate_rules([rule.id]):
                    result.deactivated.append(rule.id)
                    logger.info(
                        "[EvolutionEngine] Deactivated rule={} success_rate={:.3f} samples={}",
                        rule.id,
                        stats[rule.id].success_rate,
                        stats[rule.id].samples,
                    )
            except GenealogyError as exc:
                logger.error("[EvolutionEngine] Deactivate rule={} failed: {}", rule.id, exc)
                result.errors.append(
                    EvolutionFailure(rule_id=rule.id, stage="deactivate", error=str(exc))
                )

        pool = [r for r in judged if r.id not in failing_ids]
        for parent in self.rank(pool, stats)[: self.config.promote_top_n]:
            try:
                if await self._already_promoted(parent, stats[parent.id]):
                    logger.debug(
                        "[EvolutionEngine] Skip rule={}: already cloned at these statistics",
                        parent.id,
                    )
                    result.skipped.append(parent.id)
                    continue
                child = await self.storage.insert_rule(self.mutate(parent, stats[parent.id]))
                result.created.append(child)
                logger.info(
                    "[EvolutionEngine] Promoted rule={} -> child={} weight={:.3f}",
                    parent.id,
                    child.id,
                    child.weight,
                )
            except GenealogyError as exc:
                logger.error("[EvolutionEngine] Promote rule={} failed: {}", parent.id, exc)
                result.errors.append(
                    EvolutionFailure(rule_id=parent.id, stage="promote", error=str(exc))
                )

        return result

    # ------------------------------------------------------------------
    # Scheduled runs
    # ------------------------------------------------------------------

    async def run(self) -> None:
        interval = self.config.interval
        if interval is None:
            raise EvolutionError("EvolutionConfig.interval is required for scheduled runs")

        logger.info("[EvolutionEngine] Start | interval={}s", interval)
        self._running, self._consecutive_errors = True, 0
        try:
            while self._running:
                await asyncio.sleep(interval)
                if not self._running:
                    break
                try:
                    await self.evolve()
                    self._consecutive_errors = 0
                except Exception as exc:  # pylint: disable=broad-except
                    self._on_error(str(exc))
                    if self._consecutive_errors >= self.config.max_consecutive_errors:
                        logger.critical(
                            "[EvolutionEngine] Stop: {} consecutive errors",
                            self._consecutive_errors,
                        )
                        break
        finally:
            self._running = False
            logger.info("[EvolutionEngine] Stopped")

    def start(self) -> None:
        if self.task is not None and not self.task.done():
            logger.warning("[EvolutionEngine] already running")
            return
        self.task = asyncio.create_task(self.run(), name="evolution-engine")

    async def stop(self) -> None:
        """Request the loop to exit and wait for it."""
        self._running = False
        if self.task is not None and not self.task.done():
            self.task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self.task
        self.task = None

    def is_running(self) -> bool:
        return self._running

    def _on_error(self, msg: str) -> None:
        self._consecutive_errors += 1
        self.metrics.errors_encountered += 1
        logger.error("[EvolutionEngine] Error #{}: {}", self._consecutive_errors, msg)

    async def get_status(self) -> dict[str, object]:
        """Light, non-blocking status for UIs/health checks."""
        return {
            "running": self._running,
            "consecutive_errors": self._consecutive_errors,
            **self.metrics.to_dict(),
        }
