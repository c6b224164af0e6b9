from __future__ import annotations

from genealogy.rules.models import Decision, Feedback, Outcome, Rule


def make_rule(id=None, weight=1.0, pattern=None, response=None, **kwargs) -> Rule:
    return Rule(
        id=id,
        weight=weight,
        pattern=pattern if pattern is not None else {},
        response=response if response is not None else {"decision": f"r{id}"},
        **kwargs,
    )


async def add_feedback(store, rule_id: int, successes: int, failures: int) -> None:
    """Record one decision per feedback item for *rule_id*."""
    outcomes = [Outcome.SUCCESS] * successes + [Outcome.FAIL] * failures
    for outcome in outcomes:
        decision_id = await store.insert_decision(Decision(rule_id=rule_id, response={}))
        await store.insert_feedback(Feedback(decision_id=decision_id, outcome=outcome))
