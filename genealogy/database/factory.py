from __future__ import annotations

from loguru import logger

from genealogy.database.memory_rule_storage import MemoryRuleStorage
from genealogy.database.redis_rule_storage import RedisRuleStorage, RedisRuleStorageConfig
from genealogy.database.rule_storage import RuleStorage
from genealogy.exceptions import ConfigurationError


def build_storage(
    backend: str = "redis",
    redis_url: str | None = None,
    key_prefix: str = "genealogy",
    **redis_options,
) -> RuleStorage:
    """Build the configured storage backend.

    Raises:
        ConfigurationError: unknown backend, or Redis selected without a URL.
    """
    backend = (backend or "").strip().lower()
    if backend == "memory":
        logger.warning("[Storage] using in-memory storage; nothing survives a restart")
        return MemoryRuleStorage()
    if backend == "redis":
        if not redis_url or not str(redis_url).strip():
            raise ConfigurationError("redis_url is required for the redis storage backend")
        try:
            config = RedisRuleStorageConfig(
                redis_url=str(redis_url).strip(), key_prefix=key_prefix, **redis_options
            )
        except ValueError as e:
            raise ConfigurationError(f"Invalid redis storage config: {e}") from e
        return RedisRuleStorage(config)
    raise ConfigurationError(f"Unknown storage backend: {backend!r}")
