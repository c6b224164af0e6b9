"""End-to-end tests of the decide -> feedback -> evolve loop."""

from __future__ import annotations

import pytest

from genealogy.database.memory_rule_storage import MemoryRuleStorage
from genealogy.exceptions import StorageError, ValidationError
from genealogy.rules.models import Event
from genealogy.service import GenealogyService
from tests.helpers import make_rule


class TestDecide:
    async def test_best_rule_wins_and_is_recorded(self, service, memory_storage):
        await memory_storage.insert_rule(
            make_rule(weight=3.0, pattern={"risk_level": {"gte": 8}}, response={"decision": "contain"})
        )
        await memory_storage.insert_rule(make_rule(weight=1.0, pattern={}, response={"decision": "pass"}))

        result = await service.decide("message", {"risk_level": 9}, {"user_id": "abc"})

        assert result.response == {"decision": "contain"}
        assert result.confidence == 3.0
        assert result.recorded is True
        assert result.explanation[0]["passed"] is True
        event = await memory_storage.get_event(result.event_id)
        assert event.event_type == "message" and event.context == {"user_id": "abc"}
        decision = await memory_storage.get_decision(result.decision_id)
        assert decision.rule_id == result.rule.id
        assert decision.event_id == result.event_id

    async def test_no_match_uses_default_response(self, service, memory_storage):
        await memory_storage.insert_rule(make_rule(pattern={"risk_level": {"gte": 8}}))
        result = await service.decide(None, {"risk_level": 1})
        assert result.rule is None
        assert result.response == {"mode": "observe", "decision": "log"}
        assert result.confidence == 1.0
        decision = await memory_storage.get_decision(result.decision_id)
        assert decision.rule_id is None

    async def test_rejects_non_mapping_metadata(self, service):
        with pytest.raises(ValidationError):
            await service.decide("message", ["not", "a", "mapping"])

    async def test_event_log_failure_surfaces(self):
        class NoEvents(MemoryRuleStorage):
            async def insert_event(self, event: Event) -> int:
                raise StorageError("event log down")

        with pytest.raises(StorageError):
            await GenealogyService(NoEvents()).decide("message", {})


class TestFeedbackInput:
    @pytest.mark.parametrize(
        "decision_id", [None, "abc", 0, -1, 1.5, True, float("inf"), float("nan")]
    )
    async def test_invalid_decision_id(self, service, decision_id):
        with pytest.raises(ValidationError):
            await service.apply_feedback(decision_id, "success")

    async def test_invalid_score(self, service):
        with pytest.raises(ValidationError):
            await service.apply_feedback(1, None, "lots")


class TestLoop:
    async def test_feedback_then_evolution_promotes_winner(self, service, memory_storage):
        seed = await memory_storage.insert_rule(
            make_rule(weight=1.0, pattern={"risk_level": {"gte": 8}}, response={"decision": "contain"})
        )
        for _ in range(5):
            decided = await service.decide("message", {"risk_level": 9})
            await service.apply_feedback(str(decided.decision_id), "correct", 1)

        assert (await memory_storage.get_rule(seed.id)).weight == pytest.approx(3.5)

        result = await service.evolve()
        child = result.created[0]
        assert child.parent_id == seed.id
        assert child.weight == pytest.approx(3.65)

        decided = await service.decide("message", {"risk_level": 9})
        assert decided.rule.id == child.id
