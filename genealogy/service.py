from __future__ import annotations

from typing import Any

from loguru import logger
from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from genealogy.database.rule_storage import RuleStorage
from genealogy.decisions.feedback import FeedbackConfig, FeedbackProcessor, FeedbackResult
from genealogy.decisions.recorder import DecisionConfig, DecisionRecorder
from genealogy.evolution.config import EvolutionConfig
from genealogy.evolution.engine import EvolutionEngine, EvolutionResult
from genealogy.exceptions import NoMatchError, ValidationError
from genealogy.rules.models import Event, Rule
from genealogy.rules.predicates import explain
from genealogy.rules.selector import RuleSelector, SelectorConfig


class DecideResult(BaseModel):
    event_id: int | None
    decision_id: int | None
    rule: Rule | None
    response: Any
    confidence: float
    explanation: list[dict[str, Any]] = Field(default_factory=list)
    recorded: bool = True
    note: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=False)


class GenealogyService:
    """Event -> decision -> feedback -> evolution, over one storage backend."""

    def __init__(
        self,
        storage: RuleStorage,
        selector: RuleSelector | None = None,
        recorder: DecisionRecorder | None = None,
        feedback: FeedbackProcessor | None = None,
        engine: EvolutionEngine | None = None,
    ):
        self.storage = storage
        self.selector = selector or RuleSelector()
        self.recorder = recorder or DecisionRecorder(storage)
        self.feedback = feedback or FeedbackProcessor(storage)
        self.engine = engine or EvolutionEngine(storage)

    @classmethod
    def from_configs(
        cls,
        storage: RuleStorage,
        selector: SelectorConfig | None = None,
        decision: DecisionConfig | None = None,
        feedback: FeedbackConfig | None = None,
        evolution: EvolutionConfig | None = None,
    ) -> "GenealogyService":
        return cls(
            storage=storage,
            selector=RuleSelector(selector),
            recorder=DecisionRecorder(storage, decision),
            feedback=FeedbackProcessor(storage, feedback),
            engine=EvolutionEngine(storage, evolution),
        )

    async def decide(
        self,
        event_type: str | None = None,
        metadata: dict[str, Any] | None = None,
        context: dict[str, Any] | None = None,
    ) -> DecideResult:
        metadata = _mapping("metadata", metadata)
        context = _mapping("context", context)
        try:
            event = Event(event_type=event_type or "event", metadata=metadata, context=context)
        except PydanticValidationError as e:
            raise ValidationError(f"Invalid event: {e}") from e

        rules = await self.storage.get_active_rules()
        try:
            winner = self.selector.select_or_raise(rules, metadata)
        except NoMatchError:
            logger.debug("[GenealogyService] no rule matched; using default response")
            winner = None

        event_id = await self.storage.insert_event(event)
        decision = await self.recorder.record(event_id, winner, metadata)
        logger.info(
            "[GenealogyService] event={} type={} -> decision={} rule={}",
            event_id,
            event.event_type,
            decision.id,
            decision.rule_id,
        )
        return DecideResult(
            event_id=event_id,
            decision_id=decision.id,
            rule=winner,
            response=decision.response,
            confidence=decision.confidence,
            explanation=[c.to_dict() for c in explain(winner.pattern, metadata)]
            if winner
            else [],
        )

    async def apply_feedback(
        self,
        decision_id: Any,
        outcome: Any = None,
        score: Any = None,
    ) -> FeedbackResult:
        return await self.feedback.apply_feedback(
            _positive_int("decision_id", decision_id), outcome, _optional_float("score", score)
        )

    async def evolve(self) -> EvolutionResult:
        return await self.engine.evolve()


def _mapping(name: str, value: Any) -> dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValidationError(f"{name} must be an object")
    return value


def _positive_int(name: str, value: Any) -> int:
    if value is None or isinstance(value, bool):
        raise ValidationError(f"{name} is required")
    try:
        number = int(value)
    except (TypeError, ValueError, OverflowError) as e:
        raise ValidationError(f"{name} must be an integer") from e
    if number <= 0 or (isinstance(value, float) and not value.is_integer()):
        raise ValidationError(f"{name} must be a positive integer")
    return number


def _optional_float(name: str, value: Any) -> float | None:
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValidationError(f"{name} must be a number")
    try:
        return float(value)
    except (TypeError, ValueError) as e:
        raise ValidationError(f"{name} must be a number") from e
