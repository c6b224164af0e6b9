from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any
import uuid

from pydantic import BaseModel, ConfigDict, Field, field_validator


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RuleOrigin(str, Enum):
    SEED = "seed"
    REGISTRY = "registry"
    EVOLUTION = "evolution"


class Outcome(str, Enum):
    SUCCESS = "success"
    FAIL = "fail"
    UNKNOWN = "unknown"


class Rule(BaseModel):
    """A weighted, pattern-gated policy entry ("gene")."""

    id: int | None = Field(
        default=None, description="Storage-assigned id; lower means created earlier"
    )
    lineage_id: str = Field(
        default_factory=lambda: uuid.uuid4().hex,
        description="Shared by a rule and all its ancestors/descendants",
    )
    parent_id: int | None = Field(
        default=None, description="Rule this one was cloned from (lookup only)"
    )
    rule_type: str = Field(default="pattern")
    origin: RuleOrigin = Field(default=RuleOrigin.REGISTRY)
    pattern: dict[str, Any] = Field(
        default_factory=dict, description="Field name -> predicate specification"
    )
    response: Any = Field(
        default_factory=dict, description="Opaque payload returned when this rule wins"
    )
    weight: float = Field(default=1.0, ge=0.0)
    active: bool = Field(default=True)
    provenance: dict[str, Any] = Field(
        default_factory=dict, description="Clone bookkeeping; never read by matching"
    )
    created_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(extra="forbid", validate_assignment=True)

    @field_validator("pattern", mode="before")
    @classmethod
    def _pattern_is_mapping(cls, v: Any) -> Any:
        if v is None:
            return {}
        return v

    @property
    def is_root(self) -> bool:
        return self.parent_id is None

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Rule":
        return cls.model_validate(data)


class Event(BaseModel):
    """Immutable record of an ingested event."""

    id: int | None = None
    event_type: str = Field(default="event", min_length=1)
    metadata: dict[str, Any] = Field(default_factory=dict)
    context: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(extra="forbid", frozen=True)

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Event":
        return cls.model_validate(data)


class Decision(BaseModel):
    """What was decided for one event. A fact, never edited."""

    id: int | None = None
    event_id: int | None = None
    rule_id: int | None = Field(
        default=None, description="Winning rule; None when the default response was used"
    )
    response: Any = Field(default_factory=dict)
    confidence: float = Field(default=1.0, ge=0.0)
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(extra="forbid", frozen=True)

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Decision":
        return cls.model_validate(data)


class Feedback(BaseModel):
    """Outcome report for a decision. Append-only."""

    id: int | None = None
    decision_id: int
    outcome: Outcome = Outcome.UNKNOWN
    score: float | None = None
    created_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(extra="forbid", frozen=True)

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Feedback":
        return cls.model_validate(data)
