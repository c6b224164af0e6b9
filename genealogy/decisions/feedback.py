from __future__ import annotations

import math
from typing import Any

from loguru import logger
from pydantic import BaseModel, Field

from genealogy.database.rule_storage import RuleStorage
from genealogy.exceptions import DecisionNotFoundError, ValidationError
from genealogy.rules.models import Feedback, Outcome

_OUTCOME_ALIASES: dict[str, Outcome] = {
    "success": Outcome.SUCCESS,
    "correct": Outcome.SUCCESS,
    "positive": Outcome.SUCCESS,
    "ok": Outcome.SUCCESS,
    "true": Outcome.SUCCESS,
    "fail": Outcome.FAIL,
    "failure": Outcome.FAIL,
    "wrong": Outcome.FAIL,
    "incorrect": Outcome.FAIL,
    "negative": Outcome.FAIL,
    "false": Outcome.FAIL,
    "unknown": Outcome.UNKNOWN,
}


class FeedbackConfig(BaseModel):
    weight_step: float = Field(default=0.5, gt=0.0)


class FeedbackResult(BaseModel):
    feedback_id: int
    decision_id: int
    rule_id: int | None
    outcome: Outcome
    updated: bool
    new_weight: float | None = None


def resolve_outcome(outcome: Any, score: float | None) -> Outcome:
    """Normalise an outcome label; fall back to the sign of *score*."""
    if score is not None and not math.isfinite(score):
        raise ValidationError(f"score must be a finite number, got {score!r}")
    if outcome is None or (isinstance(outcome, str) and not outcome.strip()):
        if score is None:
            raise ValidationError("Either outcome or score is required")
        if score > 0:
            return Outcome.SUCCESS
        if score < 0:
            return Outcome.FAIL
        return Outcome.UNKNOWN
    if isinstance(outcome, Outcome):
        return outcome
    label = str(outcome).strip().lower()
    if label not in _OUTCOME_ALIASES:
        raise ValidationError(f"Unsupported outcome: {outcome!r}")
    return _OUTCOME_ALIASES[label]


class FeedbackProcessor:
    """Records feedback and moves the bound rule's weight by a fixed step."""

    _DELTA_SIGN = {Outcome.SUCCESS: 1.0, Outcome.FAIL: -1.0, Outcome.UNKNOWN: 0.0}

    def __init__(self, storage: RuleStorage, config: FeedbackConfig | None = None):
        self.storage = storage
        self.config = config or FeedbackConfig()

    def delta_for(self, outcome: Outcome) -> float:
        return self._DELTA_SIGN[outcome] * self.config.weight_step

    async def apply_feedback(
        self,
        decision_id: int,
        outcome: Any = None,
        score: float | None = None,
    ) -> FeedbackResult:
        resolved = resolve_outcome(outcome, score)

        decision = await self.storage.get_decision(decision_id)
        if decision is None:
            raise DecisionNotFoundError(f"Decision {decision_id} not found")

        feedback_id = await self.storage.insert_feedback(
            Feedback(decision_id=decision_id, outcome=resolved, score=score)
        )

        delta = self.delta_for(resolved)
        if decision.rule_id is None or delta == 0.0:
            logger.debug(
                "[FeedbackProcessor] feedback={} decision={} outcome={} (no weight change)",
                feedback_id,
                decision_id,
                resolved.value,
            )
            return FeedbackResult(
                feedback_id=feedback_id,
                decision_id=decision_id,
                rule_id=decision.rule_id,
                outcome=resolved,
                updated=False,
            )

        rule = await self.storage.adjust_rule_weight(decision.rule_id, delta, floor=0.0)
        logger.info(
            "[FeedbackProcessor] rule={} {} -> weight={:.3f}",
            rule.id,
            resolved.value,
            rule.weight,
        )
        return FeedbackResult(
            feedback_id=feedback_id,
            decision_id=decision_id,
            rule_id=rule.id,
            outcome=resolved,
            updated=True,
            new_weight=rule.weight,
        )
