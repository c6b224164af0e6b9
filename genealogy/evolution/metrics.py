from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field


class EngineMetrics(BaseModel):
    """Counters accumulated across evolution runs."""

    total_runs: int = Field(default=0, description="Completed evolution runs")
    rules_deactivated: int = Field(default=0, description="Rules deactivated")
    rules_created: int = Field(default=0, description="Child rules created")
    promotions_skipped: int = Field(
        default=0, description="Promotions skipped because statistics were unchanged"
    )
    rule_errors: int = Field(default=0, description="Per-rule failures inside runs")
    errors_encountered: int = Field(default=0, description="Runs that failed outright")
    last_run_at: datetime | None = None

    def record_run(
        self,
        deactivated: int,
        created: int,
        skipped: int,
        rule_errors: int,
        at: datetime,
    ) -> None:
        self.total_runs += 1
        self.rules_deactivated += deactivated
        self.rules_created += created
        self.promotions_skipped += skipped
        self.rule_errors += rule_errors
        self.last_run_at = at

    def to_dict(self) -> dict:
        return self.model_dump(mode="json")
