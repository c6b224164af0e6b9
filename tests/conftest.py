"""
Pytest configuration and shared fixtures for genealogy tests.
"""

from __future__ import annotations

import fakeredis
from fakeredis import aioredis as fake_aioredis
import pytest

from genealogy.database.memory_rule_storage import MemoryRuleStorage
from genealogy.database.redis_rule_storage import RedisRuleStorage, RedisRuleStorageConfig
from genealogy.decisions.feedback import FeedbackConfig
from genealogy.evolution.config import EvolutionConfig
from genealogy.service import GenealogyService


def make_redis_storage(max_retries: int = 1) -> RedisRuleStorage:
    client = fake_aioredis.FakeRedis(server=fakeredis.FakeServer(), decode_responses=True)
    config = RedisRuleStorageConfig(key_prefix="test", max_retries=max_retries, retry_delay=0.0)
    return RedisRuleStorage(config, client=client)


@pytest.fixture(params=["memory", "redis"])
async def storage(request):
    """Every storage backend behind the same interface."""
    store = MemoryRuleStorage() if request.param == "memory" else make_redis_storage()
    yield store
    await store.close()


@pytest.fixture
def memory_storage() -> MemoryRuleStorage:
    return MemoryRuleStorage()


@pytest.fixture
def service(memory_storage) -> GenealogyService:
    return GenealogyService.from_configs(
        memory_storage,
        feedback=FeedbackConfig(weight_step=0.5),
        evolution=EvolutionConfig(min_samples=5, lock_timeout=1.0),
    )
