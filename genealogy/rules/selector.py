from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import Any

from loguru import logger
from pydantic import BaseModel, Field

from genealogy.exceptions import NoMatchError
from genealogy.rules.models import Rule
from genealogy.rules.predicates import matches, pattern_complexity


class SelectorConfig(BaseModel):
    """How matching rules are ranked."""

    prefer_specific: bool = Field(
        default=True,
        description="Break exact weight ties in favour of patterns with more clauses",
    )
    specificity_cap: int = Field(default=10, ge=0)


class RuleSelector:
    """Picks the single best active rule for a metadata mapping.

    Ranking key, compared lexicographically:
      1. weight (higher wins)
      2. specificity, if enabled (more clauses wins, capped); only consulted
         when weights are exactly equal, so it can never override weight
      3. id (lower wins)
    """

    def __init__(self, config: SelectorConfig | None = None):
        self.config = config or SelectorConfig()

    def specificity(self, rule: Rule) -> int:
        if not self.config.prefer_specific:
            return 0
        return min(pattern_complexity(rule.pattern), self.config.specificity_cap)

    def _key(self, rule: Rule) -> tuple[float, int, float]:
        rid = rule.id if rule.id is not None else float("inf")
        return (rule.weight, self.specificity(rule), -rid)

    def candidates(self, rules: Iterable[Rule], metadata: Mapping[str, Any]) -> list[Rule]:
        return [r for r in rules if r.active and matches(r.pattern, metadata)]

    def select(self, rules: Iterable[Rule], metadata: Mapping[str, Any]) -> Rule | None:
        best: Rule | None = None
        best_key: tuple[float, int, float] | None = None
        for rule in self.candidates(rules, metadata):
            key = self._key(rule)
            if best_key is None or key > best_key:
                best, best_key = rule, key
        if best is not None:
            logger.debug(
                "[RuleSelector] winner id={} weight={:.3f}", best.id, best.weight
            )
        return best

    def select_or_raise(self, rules: Iterable[Rule], metadata: Mapping[str, Any]) -> Rule:
        best = self.select(rules, metadata)
        if best is None:
            raise NoMatchError("No active rule matched the event metadata")
        return best
