from __future__ import annotations

from collections.abc import Iterable

from pydantic import BaseModel, Field

from genealogy.database.rule_storage import RuleStorage
from genealogy.rules.models import Decision, Feedback, Outcome, Rule


class RuleStats(BaseModel):
    """Feedback aggregated over every decision a rule won."""

    rule_id: int
    samples: int = Field(default=0, ge=0)
    success: int = Field(default=0, ge=0)
    fail: int = Field(default=0, ge=0)

    @property
    def success_rate(self) -> float | None:
        return self.success / self.samples if self.samples else None

    def to_dict(self) -> dict:
        return {**self.model_dump(), "success_rate": self.success_rate}


def aggregate_stats(
    rule_ids: Iterable[int],
    decisions: Iterable[Decision],
    feedback: Iterable[Feedback],
) -> dict[int, RuleStats]:
    stats = {rid: RuleStats(rule_id=rid) for rid in rule_ids}
    decision_to_rule = {d.id: d.rule_id for d in decisions if d.rule_id is not None}
    for fb in feedback:
        s = stats.get(decision_to_rule.get(fb.decision_id))
        if s is None:
            continue
        s.samples += 1
        if fb.outcome == Outcome.SUCCESS:
            s.success += 1
        elif fb.outcome == Outcome.FAIL:
            s.fail += 1
    return stats


async def collect_stats(storage: RuleStorage, rules: list[Rule]) -> dict[int, RuleStats]:
    """Join feedback through decisions for *rules*."""
    rule_ids = [r.id for r in rules]
    decisions = await storage.get_decisions_by_rule_ids(rule_ids)
    feedback = (
        await storage.get_feedback_by_decision_ids([d.id for d in decisions])
        if decisions
        else []
    )
    return aggregate_stats(rule_ids, decisions, feedback)
