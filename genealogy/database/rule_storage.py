from __future__ import annotations

from abc import ABC, abstractmethod
from contextlib import AbstractAsyncContextManager
from typing import Iterable

from genealogy.rules.models import Decision, Event, Feedback, Rule


class RuleStorage(ABC):
    """Abstract interface for the rule registry and the decision log.

    Every operation either completes or raises :class:`StorageError`
    (or a :class:`ValidationError` subtype for unknown ids). Rules are the only
    mutable records; events, decisions and feedback are append-only.
    """

    # --- rules ---------------------------------------------------------

    @abstractmethod
    async def get_active_rules(self) -> list[Rule]: ...

    @abstractmethod
    async def get_rules(self) -> list[Rule]: ...

    @abstractmethod
    async def get_rule(self, rule_id: int) -> Rule | None: ...

    @abstractmethod
    async def insert_rule(self, rule: Rule) -> Rule:
        """Persist *rule* under a fresh id and return the stored copy."""

    @abstractmethod
    async def update_rule_weight(self, rule_id: int, new_weight: float) -> Rule:
        """Overwrite the weight (clamped at 0)."""

    @abstractmethod
    async def adjust_rule_weight(
        self, rule_id: int, delta: float, floor: float = 0.0
    ) -> Rule:
        """Atomically apply ``max(floor, weight + delta)`` and return the rule."""

    @abstractmethod
    async def deactivate_rules(self, rule_ids: Iterable[int]) -> int:
        """Mark rules inactive; returns how many were active before."""

    @abstractmethod
    async def reactivate_rules(self, rule_ids: Iterable[int]) -> int:
        """Operator action; returns how many were inactive before."""

    @abstractmethod
    async def get_lineage(self, lineage_id: str) -> list[Rule]:
        """All rules sharing *lineage_id*, oldest first."""

    # --- append-only log -------------------------------------------------

    @abstractmethod
    async def insert_event(self, event: Event) -> int: ...

    @abstractmethod
    async def get_event(self, event_id: int) -> Event | None: ...

    @abstractmethod
    async def insert_decision(self, decision: Decision) -> int: ...

    @abstractmethod
    async def get_decision(self, decision_id: int) -> Decision | None: ...

    @abstractmethod
    async def insert_feedback(self, feedback: Feedback) -> int: ...

    @abstractmethod
    async def get_decisions_by_rule_ids(self, rule_ids: Iterable[int]) -> list[Decision]: ...

    @abstractmethod
    async def get_feedback_by_decision_ids(
        self, decision_ids: Iterable[int]
    ) -> list[Feedback]: ...

    # --- coordination / housekeeping ------------------------------------

    @abstractmethod
    def evolution_lock(self, timeout: float) -> AbstractAsyncContextManager[None]:
        """Serialize evolution runs. Raises EvolutionInProgressError on timeout."""

    @abstractmethod
    async def flushdb(self) -> None: ...

    async def close(self) -> None:  # noqa: B027
        pass
