from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class EvolutionConfig(BaseModel):
    """Configuration options controlling EvolutionEngine behaviour."""

    min_samples: int = Field(
        default=5, ge=1, description="Feedback count before a rule is judged at all"
    )
    fail_threshold: float = Field(
        default=0.2, ge=0.0, le=1.0, description="Deactivate below this success rate"
    )
    promote_top_n: int = Field(default=1, ge=0)
    mutation_delta: float = Field(
        default=0.15, ge=0.0, description="Weight added to a promoted clone"
    )
    weight_cap: float = Field(default=50.0, ge=0.0)
    interval: float | None = Field(
        default=None,
        gt=0,
        description="Seconds between scheduled runs (None = on demand only)",
    )
    lock_timeout: float = Field(
        default=30.0, gt=0, description="Seconds to wait for a concurrent run to finish"
    )
    max_consecutive_errors: int = Field(default=5, ge=1)

    model_config = ConfigDict(extra="forbid")
