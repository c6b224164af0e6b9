"""Tests for storage construction and registry seeding."""

from __future__ import annotations

import pytest

from genealogy.database.factory import build_storage
from genealogy.database.memory_rule_storage import MemoryRuleStorage
from genealogy.database.redis_rule_storage import RedisRuleStorage
from genealogy.exceptions import ConfigurationError
from genealogy.registry.seed import SeedRuleLoader
from genealogy.rules.models import RuleOrigin
from tests.helpers import make_rule


class TestBuildStorage:
    def test_memory(self):
        assert isinstance(build_storage("memory"), MemoryRuleStorage)

    def test_redis(self):
        store = build_storage("redis", redis_url="redis://localhost:6379/3", key_prefix="x")
        assert isinstance(store, RedisRuleStorage)
        assert store.config.key_prefix == "x"

    @pytest.mark.parametrize("url", [None, "", "   "])
    def test_redis_without_url(self, url):
        with pytest.raises(ConfigurationError):
            build_storage("redis", redis_url=url)

    def test_unknown_backend(self):
        with pytest.raises(ConfigurationError):
            build_storage("sqlite")


class TestSeedRuleLoader:
    async def test_seeds_empty_registry(self, storage):
        seeded = await SeedRuleLoader().load(storage)
        assert len(seeded) == 2
        assert all(r.origin == RuleOrigin.SEED for r in seeded)
        assert seeded[0].pattern == {"risk_level": {"gte": 8}}

    async def test_leaves_existing_registry_alone(self, storage):
        await storage.insert_rule(make_rule())
        assert await SeedRuleLoader().load(storage) == []
        assert len(await storage.get_rules()) == 1

    async def test_custom_rules(self, storage):
        loader = SeedRuleLoader([{"pattern": {}, "response": {"decision": "pass"}, "weight": 0.5}])
        seeded = await loader.load(storage)
        assert [(r.pattern, r.weight) for r in seeded] == [({}, 0.5)]
