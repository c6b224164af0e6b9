"""Tests for aggregated statistics and the evolution engine."""

from __future__ import annotations

import asyncio

import pytest
from pydantic import ValidationError as PydanticValidationError

from genealogy.database.memory_rule_storage import MemoryRuleStorage
from genealogy.evolution.config import EvolutionConfig
from genealogy.evolution.engine import EvolutionEngine
from genealogy.evolution.stats import RuleStats, aggregate_stats, collect_stats
from genealogy.exceptions import EvolutionError, EvolutionInProgressError, StorageError
from genealogy.rules.models import Decision, Feedback, Outcome, Rule, RuleOrigin
from tests.helpers import add_feedback, make_rule


def engine_for(store, **overrides) -> EvolutionEngine:
    params = {"min_samples": 5, "lock_timeout": 1.0, **overrides}
    return EvolutionEngine(store, EvolutionConfig(**params))


class TestStats:
    def test_success_rate_undefined_without_samples(self):
        assert RuleStats(rule_id=1).success_rate is None

    def test_aggregate_joins_feedback_through_decisions(self):
        decisions = [
            Decision(id=10, rule_id=1),
            Decision(id=11, rule_id=2),
            Decision(id=12, rule_id=None),
        ]
        feedback = [
            Feedback(decision_id=10, outcome=Outcome.SUCCESS),
            Feedback(decision_id=10, outcome=Outcome.UNKNOWN),
            Feedback(decision_id=11, outcome=Outcome.FAIL),
            Feedback(decision_id=12, outcome=Outcome.SUCCESS),
        ]
        stats = aggregate_stats([1, 2, 3], decisions, feedback)
        assert (stats[1].samples, stats[1].success, stats[1].fail) == (2, 1, 0)
        assert stats[1].success_rate == 0.5
        assert (stats[2].samples, stats[2].fail) == (1, 1)
        assert stats[3].samples == 0

    async def test_collect_stats_from_storage(self, storage):
        rule = await storage.insert_rule(make_rule())
        await add_feedback(storage, rule.id, successes=3, failures=1)
        stats = await collect_stats(storage, [rule])
        assert stats[rule.id].samples == 4
        assert stats[rule.id].success_rate == 0.75


class TestEvolutionPolicy:
    async def test_gate_deactivate_and_promote(self, storage):
        young = await storage.insert_rule(make_rule(weight=1.0))
        bad = await storage.insert_rule(make_rule(weight=1.0))
        good = await storage.insert_rule(
            make_rule(weight=2.0, pattern={"risk_level": {"gte": 8}}, response={"mode": "block"})
        )
        await add_feedback(storage, young.id, successes=0, failures=4)
        await add_feedback(storage, bad.id, successes=1, failures=9)
        await add_feedback(storage, good.id, successes=9, failures=1)

        result = await engine_for(storage).evolve()

        assert result.deactivated == [bad.id]
        assert len(result.created) == 1
        child = result.created[0]
        assert child.parent_id == good.id
        assert child.lineage_id == good.lineage_id
        assert child.weight == pytest.approx(2.15)
        assert child.pattern == good.pattern
        assert child.response == good.response
        assert child.active is True
        assert child.origin == RuleOrigin.EVOLUTION
        assert child.provenance["evolved_from"] == good.id

        active = {r.id for r in await storage.get_active_rules()}
        assert active == {young.id, good.id, child.id}

    async def test_child_weight_is_capped(self, storage):
        parent = await storage.insert_rule(make_rule(weight=49.9))
        await add_feedback(storage, parent.id, successes=5, failures=0)
        result = await engine_for(storage).evolve()
        assert result.created[0].weight == 50.0

    def test_negative_mutation_delta_rejected(self):
        with pytest.raises(PydanticValidationError):
            EvolutionConfig(mutation_delta=-0.15)

    async def test_zero_weight_parent_with_failing_sibling(self, storage):
        parent = await storage.insert_rule(make_rule(weight=0.0))
        sibling = await storage.insert_rule(make_rule(weight=2.0))
        await add_feedback(storage, parent.id, successes=5, failures=0)
        await add_feedback(storage, sibling.id, successes=0, failures=5)
        result = await engine_for(storage, mutation_delta=0.0).evolve()
        assert result.deactivated == [sibling.id]
        assert [c.weight for c in result.created] == [0.0]
        assert result.errors == []

    async def test_top_n_by_success_rate(self, storage):
        rules = [await storage.insert_rule(make_rule()) for _ in range(3)]
        for r, wins in zip(rules, (3, 5, 4)):
            await add_feedback(storage, r.id, successes=wins, failures=5 - wins)
        result = await engine_for(storage, promote_top_n=2).evolve()
        assert [c.parent_id for c in result.created] == [rules[1].id, rules[2].id]

    async def test_nothing_below_min_samples(self, storage):
        rule = await storage.insert_rule(make_rule())
        await add_feedback(storage, rule.id, successes=0, failures=4)
        result = await engine_for(storage).evolve()
        assert result.deactivated == [] and result.created == []

    async def test_no_active_rules(self, storage):
        result = await engine_for(storage).evolve()
        assert result.active_rules_before == 0
        assert result.deactivated == [] and result.created == []


class TestPrecedence:
    async def test_failing_rule_is_deactivated_not_promoted(self, storage):
        only = await storage.insert_rule(make_rule())
        await add_feedback(storage, only.id, successes=4, failures=1)

        result = await engine_for(storage, fail_threshold=0.9).evolve()

        assert result.deactivated == [only.id]
        assert result.created == []
        assert await storage.get_active_rules() == []

    async def test_next_best_non_failing_rule_is_promoted(self, storage):
        failing = await storage.insert_rule(make_rule())
        passing = await storage.insert_rule(make_rule())
        await add_feedback(storage, failing.id, successes=2, failures=3)
        await add_feedback(storage, passing.id, successes=3, failures=2)

        result = await engine_for(storage, fail_threshold=0.5).evolve()

        assert result.deactivated == [failing.id]
        assert [c.parent_id for c in result.created] == [passing.id]


class TestIdempotence:
    async def test_second_run_without_new_feedback_is_noop(self, storage):
        bad = await storage.insert_rule(make_rule())
        good = await storage.insert_rule(make_rule())
        await add_feedback(storage, bad.id, successes=0, failures=5)
        await add_feedback(storage, good.id, successes=5, failures=0)
        engine = engine_for(storage)

        first = await engine.evolve()
        second = await engine.evolve()

        assert first.deactivated == [bad.id] and len(first.created) == 1
        assert second.deactivated == []
        assert second.created == []
        assert second.skipped == [good.id]
        assert len(await storage.get_rules()) == 3

    async def test_new_feedback_allows_another_clone(self, storage):
        good = await storage.insert_rule(make_rule())
        await add_feedback(storage, good.id, successes=5, failures=0)
        engine = engine_for(storage)
        await engine.evolve()
        await add_feedback(storage, good.id, successes=1, failures=0)

        result = await engine.evolve()

        assert [c.parent_id for c in result.created] == [good.id]
        assert result.created[0].provenance["parent_samples"] == 6

    async def test_concurrent_runs_are_serialized(self, memory_storage):
        good = await memory_storage.insert_rule(make_rule())
        await add_feedback(memory_storage, good.id, successes=5, failures=0)
        engine = engine_for(memory_storage)

        results = await asyncio.gather(engine.evolve(), engine.evolve())

        assert sum(len(r.created) for r in results) == 1
        assert engine.metrics.total_runs == 2

    async def test_lock_timeout(self, memory_storage):
        engine = engine_for(memory_storage, lock_timeout=0.05)
        async with memory_storage.evolution_lock(timeout=1.0):
            with pytest.raises(EvolutionInProgressError):
                await engine.evolve()


class FlakyStorage(MemoryRuleStorage):
    def __init__(self, broken_ids: set[int]):
        super().__init__()
        self.broken_ids = broken_ids

    async def insert_rule(self, rule: Rule) -> Rule:
        if rule.parent_id in self.broken_ids:
            raise StorageError("insert failed")
        return await super().insert_rule(rule)

    async def deactivate_rules(self, rule_ids) -> int:
        ids = list(rule_ids)
        if self.broken_ids.intersection(ids):
            raise StorageError("update failed")
        return await super().deactivate_rules(ids)


class TestPartialFailure:
    async def test_one_rule_failing_does_not_abort_the_batch(self):
        store = FlakyStorage(broken_ids=set())
        bad_a = await store.insert_rule(make_rule())
        bad_b = await store.insert_rule(make_rule())
        good_a = await store.insert_rule(make_rule())
        good_b = await store.insert_rule(make_rule())
        for r in (bad_a, bad_b):
            await add_feedback(store, r.id, successes=0, failures=5)
        await add_feedback(store, good_a.id, successes=5, failures=0)
        await add_feedback(store, good_b.id, successes=4, failures=1)
        store.broken_ids = {bad_a.id, good_a.id}

        engine = engine_for(store, promote_top_n=2)
        result = await engine.evolve()

        assert result.deactivated == [bad_b.id]
        assert [c.parent_id for c in result.created] == [good_b.id]
        assert {(e.rule_id, e.stage) for e in result.errors} == {
            (bad_a.id, "deactivate"),
            (good_a.id, "promote"),
        }
        assert engine.metrics.rule_errors == 2


class TestScheduling:
    async def test_scheduled_runs(self, memory_storage):
        engine = engine_for(memory_storage, interval=0.01)
        engine.start()
        await asyncio.sleep(0.1)
        await engine.stop()
        assert engine.metrics.total_runs >= 1
        assert engine.task is None
        status = await engine.get_status()
        assert status["total_runs"] == engine.metrics.total_runs

    async def test_run_requires_interval(self, memory_storage):
        with pytest.raises(EvolutionError):
            await engine_for(memory_storage).run()
