from genealogy.database.factory import build_storage
from genealogy.database.memory_rule_storage import MemoryRuleStorage
from genealogy.database.redis_rule_storage import RedisRuleStorage, RedisRuleStorageConfig
from genealogy.database.rule_storage import RuleStorage

__all__ = [
    "MemoryRuleStorage",
    "RedisRuleStorage",
    "RedisRuleStorageConfig",
    "RuleStorage",
    "build_storage",
]
