from __future__ import annotations

from typing import Any

from loguru import logger
from pydantic import BaseModel, Field

from genealogy.database.rule_storage import RuleStorage
from genealogy.rules.models import Decision, Rule


class DecisionConfig(BaseModel):
    """Fallback used when no rule matches."""

    default_response: Any = Field(
        default_factory=lambda: {"mode": "observe", "decision": "log"}
    )
    default_confidence: float = Field(default=1.0, ge=0.0)


class DecisionRecorder:
    """Appends one decision per event to the decision log.

    Storage failures propagate as :class:`StorageError`: a decision is never
    reported without its log entry.
    """

    def __init__(self, storage: RuleStorage, config: DecisionConfig | None = None):
        self.storage = storage
        self.config = config or DecisionConfig()

    def build(
        self,
        event_id: int | None,
        rule: Rule | None,
        metadata: dict[str, Any] | None = None,
    ) -> Decision:
        if rule is None:
            return Decision(
                event_id=event_id,
                rule_id=None,
                response=self.config.default_response,
                confidence=self.config.default_confidence,
                metadata=dict(metadata or {}),
            )
        return Decision(
            event_id=event_id,
            rule_id=rule.id,
            response=rule.response,
            confidence=rule.weight,
            metadata=dict(metadata or {}),
        )

    async def record(
        self,
        event_id: int | None,
        rule: Rule | None,
        metadata: dict[str, Any] | None = None,
    ) -> Decision:
        decision = self.build(event_id, rule, metadata)
        decision_id = await self.storage.insert_decision(decision)
        logger.debug(
            "[DecisionRecorder] decision={} event={} rule={} confidence={:.3f}",
            decision_id,
            event_id,
            decision.rule_id,
            decision.confidence,
        )
        return decision.model_copy(update={"id": decision_id})
