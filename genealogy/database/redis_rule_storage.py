"""Redis-backed :class:`RuleStorage` implementation.

Key schema (``{p}`` is the configured prefix)::

    {p}:rule:{id}               JSON rule
    {p}:rules                   set of all rule ids
    {p}:rules:active            set of active rule ids
    {p}:lineage:{lineage_id}    set of rule ids in a lineage
    {p}:event:{id}              JSON event
    {p}:decision:{id}           JSON decision
    {p}:rule:{id}:decisions     set of decision ids won by a rule
    {p}:feedback:{id}           JSON feedback
    {p}:decision:{id}:feedback  set of feedback ids for a decision
    {p}:seq:{kind}              id sequences
    {p}:lock:evolution          evolution run lock
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from itertools import islice
from typing import Any, AsyncIterator, Awaitable, Callable, Iterable, TypeVar
import uuid

from loguru import logger
from pydantic import AnyUrl, BaseModel, Field
from redis import asyncio as aioredis
from redis.exceptions import WatchError

from genealogy.database.rule_storage import RuleStorage
from genealogy.exceptions import (
    EvolutionInProgressError,
    GenealogyError,
    RuleNotFoundError,
    StorageError,
)
from genealogy.rules.models import Decision, Event, Feedback, Rule
from genealogy.utils.json import dumps as _dumps
from genealogy.utils.json import loads as _loads

__all__ = [
    "RedisRuleStorageConfig",
    "RedisRuleStorage",
]

T = TypeVar("T")
M = TypeVar("M", bound=BaseModel)


class RedisRuleStorageConfig(BaseModel):
    """Redis connection settings and key schema."""

    redis_url: AnyUrl = Field(default="redis://localhost:6379/0")
    key_prefix: str = Field(default="genealogy")

    # Behavior
    max_retries: int = Field(default=3, ge=1)
    retry_delay: float = Field(default=0.2, ge=0.0)
    max_watch_retries: int = Field(default=50, ge=1)
    max_connections: int = Field(default=100, ge=10)
    socket_timeout: float = Field(default=10.0, ge=0.1)
    health_check_interval: int = Field(default=180, ge=1)
    evolution_lock_ttl: float = Field(
        default=300.0, gt=0, description="Seconds before a crashed run's lock expires"
    )

    model_config = {"extra": "forbid"}


class RedisRuleStorage(RuleStorage):

    _MGET_CHUNK: int = 1024
    _LOCK_POLL: float = 0.05

    def __init__(
        self,
        config: RedisRuleStorageConfig,
        client: aioredis.Redis | None = None,
    ):
        self.config = config
        self._redis: aioredis.Redis | None = client
        self._lock = asyncio.Lock()

    # --- keys --------------------------------------------------------------

    def _k(self, *parts: Any) -> str:
        return ":".join([self.config.key_prefix, *map(str, parts)])

    def _k_rule(self, rid: int | str) -> str:
        return self._k("rule", rid)

    def _k_event(self, eid: int | str) -> str:
        return self._k("event", eid)

    def _k_decision(self, did: int | str) -> str:
        return self._k("decision", did)

    def _k_feedback(self, fid: int | str) -> str:
        return self._k("feedback", fid)

    # --- connection ----------------------------------------------------------

    async def _conn(self) -> aioredis.Redis:
        if self._redis is not None:
            return self._redis
        async with self._lock:
            if self._redis is None:
                r = aioredis.from_url(
                    str(self.config.redis_url),
                    decode_responses=True,
                    max_connections=self.config.max_connections,
                    health_check_interval=self.config.health_check_interval,
                    socket_connect_timeout=self.config.socket_timeout,
                    socket_timeout=self.config.socket_timeout,
                )
                await r.ping()
                logger.debug("[RedisRuleStorage] connected {}", self.config.redis_url)
                self._redis = r
        return self._redis

    async def _with_redis(
        self,
        name: str,
        fn: Callable[[aioredis.Redis], Awaitable[T]],
        *,
        idempotent: bool = True,
    ) -> T:
        """Run *fn* with bounded retry.

        Non-idempotent writes (INCR ids, relative weight deltas) run once: a
        failure after EXEC may already have committed, so it surfaces as
        StorageError instead of being applied a second time.
        """
        attempts = self.config.max_retries if idempotent else 1
        delay = self.config.retry_delay
        for attempt in range(1, attempts + 1):
            try:
                return await fn(await self._conn())
            except GenealogyError:
                raise
            except Exception as e:
                if attempt == attempts:
                    logger.debug("[RedisRuleStorage] {} failed: {}", name, e)
                    raise StorageError(f"Redis op {name} failed: {e}") from e
                await asyncio.sleep(min(delay, 1.0))
                delay *= 2
        raise StorageError(f"Redis op {name} failed")  # pragma: no cover

    # --- (de)serialization ---------------------------------------------------

    @staticmethod
    def _chunks(items: Iterable[str], n: int) -> Iterable[list[str]]:
        it = iter(items)
        while (batch := list(islice(it, n))):
            yield batch

    @staticmethod
    def _safe_deserialize(model: type[M], raw: str, ctx: str) -> M | None:
        try:
            return model.model_validate(_loads(raw))
        except Exception as e:
            logger.warning("[RedisRuleStorage] bad JSON in {}: {}", ctx, e)
            return None

    async def _mget_models(
        self, r: aioredis.Redis, model: type[M], keys: list[str], ctx: str
    ) -> list[M]:
        out: list[M] = []
        for batch in self._chunks(keys, self._MGET_CHUNK):
            for raw in await r.mget(*batch):
                if raw:
                    item = self._safe_deserialize(model, raw, ctx)
                    if item is not None:
                        out.append(item)
        return out

    async def _rules_from_set(self, set_key: str, ctx: str) -> list[Rule]:
        async def _op(r: aioredis.Redis):
            ids = sorted(int(i) for i in await r.smembers(set_key))
            if not ids:
                return []
            return await self._mget_models(r, Rule, [self._k_rule(i) for i in ids], ctx)

        return await self._with_redis(ctx, _op)

    # --- rules ---------------------------------------------------------------

    async def get_active_rules(self) -> list[Rule]:
        rules = await self._rules_from_set(self._k("rules", "active"), "get_active_rules")
        # If the index drifted, trust the record.
        return [r for r in rules if r.active]

    async def get_rules(self) -> list[Rule]:
        return await self._rules_from_set(self._k("rules"), "get_rules")

    async def get_rule(self, rule_id: int) -> Rule | None:
        async def _get(r: aioredis.Redis):
            raw = await r.get(self._k_rule(rule_id))
            return self._safe_deserialize(Rule, raw, f"get_rule:{rule_id}") if raw else None

        return await self._with_redis("get_rule", _get)

    async def insert_rule(self, rule: Rule) -> Rule:
        async def _insert(r: aioredis.Redis):
            rid = int(await r.incr(self._k("seq", "rule")))
            stored = rule.model_copy(update={"id": rid}, deep=True)
            pipe = r.pipeline(transaction=True)
            pipe.set(self._k_rule(rid), _dumps(stored.to_dict()))
            pipe.sadd(self._k("rules"), rid)
            if stored.active:
                pipe.sadd(self._k("rules", "active"), rid)
            pipe.sadd(self._k("lineage", stored.lineage_id), rid)
            await pipe.execute()
            return stored

        return await self._with_redis("insert_rule", _insert, idempotent=False)

    async def _modify_rule(
        self, r: aioredis.Redis, rule_id: int, change: Callable[[Rule], Rule | None]
    ) -> tuple[Rule, bool]:
        """Optimistic read-modify-write of one rule record.

        *change* returns the new rule, or None to leave the record untouched.
        Returns the resulting rule and whether it was written.
        """
        key = self._k_rule(rule_id)
        for _ in range(self.config.max_watch_retries):
            try:
                async with r.pipeline(transaction=True) as pipe:
                    await pipe.watch(key)
                    raw = await pipe.get(key)
                    if raw is None:
                        raise RuleNotFoundError(f"Rule {rule_id} not found")
                    current = Rule.model_validate(_loads(raw))
                    updated = change(current)
                    if updated is None:
                        await pipe.unwatch()
                        return current, False
                    pipe.multi()
                    pipe.set(key, _dumps(updated.to_dict()))
                    if updated.active != current.active:
                        active_key = self._k("rules", "active")
                        if updated.active:
                            pipe.sadd(active_key, rule_id)
                        else:
                            pipe.srem(active_key, rule_id)
                    await pipe.execute()
                    return updated, True
            except WatchError:
                continue
        raise StorageError(f"Rule {rule_id} update lost {self.config.max_watch_retries} races")

    async def update_rule_weight(self, rule_id: int, new_weight: float) -> Rule:
        weight = max(0.0, float(new_weight))

        async def _update(r: aioredis.Redis):
            rule, _ = await self._modify_rule(
                r, rule_id, lambda cur: cur.model_copy(update={"weight": weight})
            )
            return rule

        return await self._with_redis("update_rule_weight", _update)

    async def adjust_rule_weight(self, rule_id: int, delta: float, floor: float = 0.0) -> Rule:
        async def _adjust(r: aioredis.Redis):
            rule, _ = await self._modify_rule(
                r,
                rule_id,
                lambda cur: cur.model_copy(update={"weight": max(floor, cur.weight + delta)}),
            )
            return rule

        return await self._with_redis("adjust_rule_weight", _adjust, idempotent=False)

    async def _set_active(self, rule_ids: Iterable[int], active: bool, name: str) -> int:
        ids = sorted(set(rule_ids))

        async def _flip(r: aioredis.Redis):
            changed = 0
            for rid in ids:
                try:
                    _, written = await self._modify_rule(
                        r,
                        rid,
                        lambda cur: None
                        if cur.active == active
                        else cur.model_copy(update={"active": active}),
                    )
                except RuleNotFoundError:
                    logger.warning("[RedisRuleStorage] {}: rule {} not found", name, rid)
                    continue
                changed += int(written)
            return changed

        return await self._with_redis(name, _flip)

    async def deactivate_rules(self, rule_ids: Iterable[int]) -> int:
        return await self._set_active(rule_ids, False, "deactivate_rules")

    async def reactivate_rules(self, rule_ids: Iterable[int]) -> int:
        return await self._set_active(rule_ids, True, "reactivate_rules")

    async def get_lineage(self, lineage_id: str) -> list[Rule]:
        rules = await self._rules_from_set(self._k("lineage", lineage_id), "get_lineage")
        return sorted(rules, key=lambda r: r.id)

    # --- append-only log -----------------------------------------------------

    async def _append(self, kind: str, record: BaseModel, index_key: str | None) -> int:
        async def _op(r: aioredis.Redis):
            new_id = int(await r.incr(self._k("seq", kind)))
            stored = record.model_copy(update={"id": new_id})
            pipe = r.pipeline(transaction=True)
            pipe.set(self._k(kind, new_id), _dumps(stored.model_dump(mode="json")))
            if index_key is not None:
                pipe.sadd(index_key, new_id)
            await pipe.execute()
            return new_id

        return await self._with_redis(f"insert_{kind}", _op, idempotent=False)

    async def _get_one(self, model: type[M], key: str, ctx: str) -> M | None:
        async def _op(r: aioredis.Redis):
            raw = await r.get(key)
            return self._safe_deserialize(model, raw, ctx) if raw else None

        return await self._with_redis(ctx, _op)

    async def insert_event(self, event: Event) -> int:
        return await self._append("event", event, None)

    async def get_event(self, event_id: int) -> Event | None:
        return await self._get_one(Event, self._k_event(event_id), "get_event")

    async def insert_decision(self, decision: Decision) -> int:
        index = (
            self._k("rule", decision.rule_id, "decisions")
            if decision.rule_id is not None
            else None
        )
        return await self._append("decision", decision, index)

    async def get_decision(self, decision_id: int) -> Decision | None:
        return await self._get_one(Decision, self._k_decision(decision_id), "get_decision")

    async def insert_feedback(self, feedback: Feedback) -> int:
        return await self._append(
            "feedback", feedback, self._k("decision", feedback.decision_id, "feedback")
        )

    async def _indexed(
        self,
        model: type[M],
        owner_ids: Iterable[int],
        index_key: Callable[[int], str],
        record_key: Callable[[str], str],
        ctx: str,
    ) -> list[M]:
        owners = sorted(set(owner_ids))
        if not owners:
            return []

        async def _op(r: aioredis.Redis):
            pipe = r.pipeline(transaction=False)
            for oid in owners:
                pipe.smembers(index_key(oid))
            member_sets = await pipe.execute()
            ids = sorted({int(m) for members in member_sets for m in members})
            if not ids:
                return []
            return await self._mget_models(r, model, [record_key(str(i)) for i in ids], ctx)

        return await self._with_redis(ctx, _op)

    async def get_decisions_by_rule_ids(self, rule_ids: Iterable[int]) -> list[Decision]:
        return await self._indexed(
            Decision,
            rule_ids,
            lambda rid: self._k("rule", rid, "decisions"),
            self._k_decision,
            "get_decisions_by_rule_ids",
        )

    async def get_feedback_by_decision_ids(self, decision_ids: Iterable[int]) -> list[Feedback]:
        return await self._indexed(
            Feedback,
            decision_ids,
            lambda did: self._k("decision", did, "feedback"),
            self._k_feedback,
            "get_feedback_by_decision_ids",
        )

    # --- coordination / housekeeping -----------------------------------------

    @asynccontextmanager
    async def evolution_lock(self, timeout: float) -> AsyncIterator[None]:
        key = self._k("lock", "evolution")
        token = uuid.uuid4().hex
        ttl_ms = int(self.config.evolution_lock_ttl * 1000)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout

        async def _try_acquire(r: aioredis.Redis) -> bool:
            if await r.set(key, token, nx=True, px=ttl_ms):
                return True
            # A retried SET whose first reply was lost already holds the lock.
            return await r.get(key) == token

        while not await self._with_redis("evolution_lock", _try_acquire):
            if loop.time() >= deadline:
                raise EvolutionInProgressError(
                    f"Evolution lock not acquired within {timeout}s"
                )
            await asyncio.sleep(self._LOCK_POLL)

        logger.debug("[RedisRuleStorage] evolution lock acquired")
        try:
            yield
        finally:
            await self._release_lock(key, token)

    async def _release_lock(self, key: str, token: str) -> None:
        async def _release(r: aioredis.Redis):
            async with r.pipeline(transaction=True) as pipe:
                try:
                    await pipe.watch(key)
                    if await pipe.get(key) != token:
                        # Expired and taken over by another run; not ours to delete.
                        await pipe.unwatch()
                        return
                    pipe.multi()
                    pipe.delete(key)
                    await pipe.execute()
                except WatchError:
                    logger.warning("[RedisRuleStorage] evolution lock changed during release")

        await self._with_redis("release_evolution_lock", _release)

    async def flushdb(self) -> None:
        async def _flush(r: aioredis.Redis):
            await r.flushdb()

        await self._with_redis("flushdb", _flush)

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
