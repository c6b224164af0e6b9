from __future__ import annotations

from typing import Any, Iterable

from loguru import logger
from pydantic import BaseModel, Field

from genealogy.database.rule_storage import RuleStorage
from genealogy.rules.models import Rule, RuleOrigin


class SeedRule(BaseModel):
    pattern: dict[str, Any] = Field(default_factory=dict)
    response: Any = Field(default_factory=dict)
    weight: float = Field(default=1.0, ge=0.0)
    rule_type: str = "pattern"

    model_config = {"extra": "forbid"}

    def to_rule(self) -> Rule:
        return Rule(
            pattern=self.pattern,
            response=self.response,
            weight=self.weight,
            rule_type=self.rule_type,
            origin=RuleOrigin.SEED,
        )


DEFAULT_SEED_RULES: list[SeedRule] = [
    SeedRule(
        pattern={"risk_level": {"gte": 8}},
        response={"mode": "block", "decision": "contain"},
        weight=3.0,
    ),
    SeedRule(
        pattern={"risk_level": {"lt": 8}},
        response={"mode": "allow", "decision": "pass"},
        weight=1.0,
    ),
]


class SeedRuleLoader:
    """Populates an empty registry with the configured seed rules."""

    def __init__(self, rules: Iterable[SeedRule | dict[str, Any]] | None = None):
        if rules is None:
            self.rules = list(DEFAULT_SEED_RULES)
        else:
            self.rules = [r if isinstance(r, SeedRule) else SeedRule(**r) for r in rules]

    async def load(self, storage: RuleStorage) -> list[Rule]:
        existing = await storage.get_rules()
        if existing:
            logger.info(
                "[SeedRuleLoader] registry holds {} rule(s); skipping seed", len(existing)
            )
            return []
        inserted = [await storage.insert_rule(seed.to_rule()) for seed in self.rules]
        logger.info("[SeedRuleLoader] seeded {} rule(s)", len(inserted))
        return inserted
