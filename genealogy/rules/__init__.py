from genealogy.rules.models import Decision, Event, Feedback, Outcome, Rule, RuleOrigin
from genealogy.rules.predicates import Operator, explain, matches
from genealogy.rules.selector import RuleSelector, SelectorConfig

__all__ = [
    "Decision",
    "Event",
    "Feedback",
    "Operator",
    "Outcome",
    "Rule",
    "RuleOrigin",
    "RuleSelector",
    "SelectorConfig",
    "explain",
    "matches",
]
