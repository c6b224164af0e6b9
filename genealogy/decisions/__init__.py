from genealogy.decisions.feedback import (
    FeedbackConfig,
    FeedbackProcessor,
    FeedbackResult,
    resolve_outcome,
)
from genealogy.decisions.recorder import DecisionConfig, DecisionRecorder

__all__ = [
    "DecisionConfig",
    "DecisionRecorder",
    "FeedbackConfig",
    "FeedbackProcessor",
    "FeedbackResult",
    "resolve_outcome",
]
