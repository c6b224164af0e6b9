from genealogy.registry.seed import DEFAULT_SEED_RULES, SeedRule, SeedRuleLoader

__all__ = ["DEFAULT_SEED_RULES", "SeedRule", "SeedRuleLoader"]
