"""Pattern matching over event metadata.

A pattern maps a metadata field to either a scalar (equality shorthand) or a
mapping of operator -> expected value. Every field and every operator must
hold. Semantics of the degenerate cases:

* ``{}`` (empty pattern) always matches; it is how default rules are written.
* ``{"field": {}}`` (a field clause with no operators) never matches.
* A pattern that is not a mapping never matches.
* Unknown operators never match; they are not an error.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping, Sequence
from enum import Enum
from typing import Any, NamedTuple

__all__ = [
    "MISSING",
    "Operator",
    "ClauseResult",
    "evaluate",
    "matches",
    "explain",
    "pattern_complexity",
]


class _Missing:
    def __repr__(self) -> str:
        return "MISSING"

    def __bool__(self) -> bool:
        return False


MISSING: Any = _Missing()


class Operator(str, Enum):
    EQ = "eq"
    NEQ = "neq"
    GT = "gt"
    GTE = "gte"
    LT = "lt"
    LTE = "lte"
    IN = "in"
    CONTAINS = "contains"
    EXISTS = "exists"

    @classmethod
    def parse(cls, name: Any) -> "Operator | None":
        try:
            return cls(name)
        except ValueError:
            return None


def _is_number(v: Any) -> bool:
    return isinstance(v, (int, float)) and not isinstance(v, bool)


def _strict_equals(a: Any, b: Any) -> bool:
    """Equality that does not let ``True`` stand in for ``1``."""
    if a is MISSING or b is MISSING:
        return a is b
    if isinstance(a, bool) or isinstance(b, bool):
        return isinstance(a, bool) and isinstance(b, bool) and a is b
    if _is_number(a) and _is_number(b):
        return a == b
    if type(a) is not type(b) and not (
        isinstance(a, Sequence) and isinstance(b, Sequence)
    ):
        return False
    return a == b


def _as_text(v: Any) -> str:
    if isinstance(v, bool):
        return "true" if v else "false"
    if v is None:
        return "null"
    if isinstance(v, float) and v.is_integer():
        return str(int(v))
    return str(v)


def _absent(v: Any) -> bool:
    return v is MISSING or v is None


def _eq(actual: Any, expected: Any) -> bool:
    if _absent(actual):
        return expected is None
    return _strict_equals(actual, expected)


def _neq(actual: Any, expected: Any) -> bool:
    return not _eq(actual, expected)


def _numeric(cmp: Callable[[Any, Any], bool]) -> Callable[[Any, Any], bool]:
    def _op(actual: Any, expected: Any) -> bool:
        return _is_number(actual) and _is_number(expected) and cmp(actual, expected)

    return _op


def _in(actual: Any, expected: Any) -> bool:
    if _absent(actual) or not isinstance(expected, (list, tuple)):
        return False
    return any(_strict_equals(actual, item) for item in expected)


def _contains(actual: Any, expected: Any) -> bool:
    if isinstance(actual, str):
        return _as_text(expected) in actual
    if isinstance(actual, (list, tuple)):
        return any(_strict_equals(item, expected) for item in actual)
    return False


def _exists(actual: Any, expected: Any) -> bool:
    return not _absent(actual) if expected else _absent(actual)


_EVALUATORS: dict[Operator, Callable[[Any, Any], bool]] = {
    Operator.EQ: _eq,
    Operator.NEQ: _neq,
    Operator.GT: _numeric(lambda a, e: a > e),
    Operator.GTE: _numeric(lambda a, e: a >= e),
    Operator.LT: _numeric(lambda a, e: a < e),
    Operator.LTE: _numeric(lambda a, e: a <= e),
    Operator.IN: _in,
    Operator.CONTAINS: _contains,
    Operator.EXISTS: _exists,
}

_unhandled = set(Operator) - set(_EVALUATORS)
if _unhandled:  # pragma: no cover
    raise RuntimeError(f"Operators without evaluator: {sorted(o.value for o in _unhandled)}")


def evaluate(op: Operator | str, actual: Any, expected: Any) -> bool:
    """Evaluate a single clause. Unknown operators fail closed."""
    operator = op if isinstance(op, Operator) else Operator.parse(op)
    if operator is None:
        return False
    return _EVALUATORS[operator](actual, expected)


def _clauses(rule: Any) -> list[tuple[str, Any]]:
    if isinstance(rule, Mapping):
        return list(rule.items())
    return [(Operator.EQ.value, rule)]


def matches(pattern: Any, metadata: Mapping[str, Any] | None) -> bool:
    """Return True when every clause of *pattern* holds for *metadata*."""
    if not isinstance(pattern, Mapping):
        return False
    metadata = metadata or {}
    for field, rule in pattern.items():
        clauses = _clauses(rule)
        if not clauses:
            return False
        actual = metadata.get(field, MISSING)
        for op, expected in clauses:
            if not evaluate(op, actual, expected):
                return False
    return True


class ClauseResult(NamedTuple):
    field: str
    operator: str
    expected: Any
    actual: Any
    passed: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "field": self.field,
            "operator": self.operator,
            "expected": self.expected,
            "actual": None if self.actual is MISSING else self.actual,
            "present": self.actual is not MISSING,
            "passed": self.passed,
        }


def explain(pattern: Any, metadata: Mapping[str, Any] | None) -> list[ClauseResult]:
    """Evaluate every clause of *pattern* without short-circuiting."""
    if not isinstance(pattern, Mapping):
        return []
    metadata = metadata or {}
    out: list[ClauseResult] = []
    for field, rule in pattern.items():
        actual = metadata.get(field, MISSING)
        clauses = _clauses(rule)
        if not clauses:
            out.append(ClauseResult(field, "", None, actual, False))
            continue
        for op, expected in clauses:
            out.append(
                ClauseResult(field, str(op), expected, actual, evaluate(op, actual, expected))
            )
    return out


def pattern_complexity(pattern: Any) -> int:
    """Number of operator clauses across all fields."""
    if not isinstance(pattern, Mapping):
        return 0
    return sum(len(_clauses(rule)) for rule in pattern.values())
