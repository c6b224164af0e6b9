class GenealogyError(Exception):
    """Base for all Genealogy exceptions."""

    pass


# High-level families
class ConfigurationError(GenealogyError):
    """Required configuration (e.g. storage connection) is absent or invalid."""

    pass


class ValidationError(GenealogyError):
    """Malformed input."""

    pass


class StorageError(GenealogyError):
    """Storage operation failures."""

    pass


class EvolutionError(GenealogyError):
    """Evolution process failures."""

    pass


class NoMatchError(GenealogyError):
    """No active rule matched the event metadata.

    Not a failure: callers turn it into the default response.
    """

    pass


# Validation subtypes
class DecisionNotFoundError(ValidationError):
    """Feedback referenced a decision that does not exist."""

    pass


class RuleNotFoundError(ValidationError):
    """Operation referenced a rule that does not exist."""

    pass


# Evolution subtypes
class EvolutionInProgressError(EvolutionError):
    """Another evolution run holds the lock."""

    pass
