"""In-memory RuleStorage used for tests and single-process runs without Redis.
The public interface mirrors :class:`genealogy.database.rule_storage.RuleStorage`.

Safe across coroutines of one event loop; not shared across processes.
"""
from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from itertools import count
from typing import AsyncIterator, Dict, Iterable, List, Optional

from loguru import logger

from genealogy.database.rule_storage import RuleStorage
from genealogy.exceptions import EvolutionInProgressError, RuleNotFoundError
from genealogy.rules.models import Decision, Event, Feedback, Rule


class MemoryRuleStorage(RuleStorage):
    """Simple dict-backed storage."""

    def __init__(self) -> None:
        self._rules: Dict[int, Rule] = {}
        self._events: Dict[int, Event] = {}
        self._decisions: Dict[int, Decision] = {}
        self._feedback: Dict[int, Feedback] = {}
        self._seq = {k: count(1) for k in ("rule", "event", "decision", "feedback")}
        self._lock = asyncio.Lock()
        self._evolution_lock = asyncio.Lock()

    @staticmethod
    def _copy(rule: Rule) -> Rule:
        return rule.model_copy(deep=True)

    # ------------------------------------------------------------------
    async def get_active_rules(self) -> List[Rule]:
        async with self._lock:
            return [self._copy(r) for r in self._rules.values() if r.active]

    async def get_rules(self) -> List[Rule]:
        async with self._lock:
            return [self._copy(r) for r in self._rules.values()]

    async def get_rule(self, rule_id: int) -> Optional[Rule]:
        async with self._lock:
            r = self._rules.get(rule_id)
            return self._copy(r) if r else None

    async def insert_rule(self, rule: Rule) -> Rule:
        async with self._lock:
            stored = rule.model_copy(update={"id": next(self._seq["rule"])}, deep=True)
            self._rules[stored.id] = stored
            return self._copy(stored)

    def _require(self, rule_id: int) -> Rule:
        rule = self._rules.get(rule_id)
        if rule is None:
            raise RuleNotFoundError(f"Rule {rule_id} not found")
        return rule

    async def update_rule_weight(self, rule_id: int, new_weight: float) -> Rule:
        async with self._lock:
            rule = self._require(rule_id)
            rule.weight = max(0.0, float(new_weight))
            return self._copy(rule)

    async def adjust_rule_weight(self, rule_id: int, delta: float, floor: float = 0.0) -> Rule:
        async with self._lock:
            rule = self._require(rule_id)
            rule.weight = max(floor, rule.weight + delta)
            return self._copy(rule)

    async def _set_active(self, rule_ids: Iterable[int], active: bool) -> int:
        async with self._lock:
            changed = 0
            for rid in set(rule_ids):
                rule = self._rules.get(rid)
                if rule is not None and rule.active != active:
                    rule.active = active
                    changed += 1
            return changed

    async def deactivate_rules(self, rule_ids: Iterable[int]) -> int:
        return await self._set_active(rule_ids, False)

    async def reactivate_rules(self, rule_ids: Iterable[int]) -> int:
        return await self._set_active(rule_ids, True)

    async def get_lineage(self, lineage_id: str) -> List[Rule]:
        async with self._lock:
            return sorted(
                (self._copy(r) for r in self._rules.values() if r.lineage_id == lineage_id),
                key=lambda r: r.id,
            )

    # --- append-only log -------------------------------------------------

    async def insert_event(self, event: Event) -> int:
        async with self._lock:
            eid = next(self._seq["event"])
            self._events[eid] = event.model_copy(update={"id": eid})
            return eid

    async def get_event(self, event_id: int) -> Optional[Event]:
        async with self._lock:
            return self._events.get(event_id)

    async def insert_decision(self, decision: Decision) -> int:
        async with self._lock:
            did = next(self._seq["decision"])
            self._decisions[did] = decision.model_copy(update={"id": did})
            return did

    async def get_decision(self, decision_id: int) -> Optional[Decision]:
        async with self._lock:
            return self._decisions.get(decision_id)

    async def insert_feedback(self, feedback: Feedback) -> int:
        async with self._lock:
            fid = next(self._seq["feedback"])
            self._feedback[fid] = feedback.model_copy(update={"id": fid})
            return fid

    async def get_decisions_by_rule_ids(self, rule_ids: Iterable[int]) -> List[Decision]:
        wanted = set(rule_ids)
        async with self._lock:
            return [d for d in self._decisions.values() if d.rule_id in wanted]

    async def get_feedback_by_decision_ids(self, decision_ids: Iterable[int]) -> List[Feedback]:
        wanted = set(decision_ids)
        async with self._lock:
            return [f for f in self._feedback.values() if f.decision_id in wanted]

    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def evolution_lock(self, timeout: float) -> AsyncIterator[None]:
        try:
            await asyncio.wait_for(self._evolution_lock.acquire(), timeout=timeout)
        except asyncio.TimeoutError as e:
            raise EvolutionInProgressError(
                f"Evolution lock not acquired within {timeout}s"
            ) from e
        try:
            yield
        finally:
            self._evolution_lock.release()

    async def flushdb(self) -> None:
        async with self._lock:
            self._rules.clear()
            self._events.clear()
            self._decisions.clear()
            self._feedback.clear()
        logger.debug("[MemoryRuleStorage] flushed")
