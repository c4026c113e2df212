"""
Pydantic model for the aggregated run report
"""
from datetime import datetime, timezone
from typing import List, Literal

from pydantic import BaseModel, Field

from devguard.models.changes import OperationResult, PlannedChange


class HardeningReport(BaseModel):
    """Structured outcome of one hardening run."""

    status: Literal["Succeeded", "Failed", "Planned"]
    dry_run: bool = False
    steps: List[OperationResult] = Field(default_factory=list)
    applied_changes: List[PlannedChange] = Field(default_factory=list)
    planned_changes: List[PlannedChange] = Field(default_factory=list)
    failures: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    next_steps: List[str] = Field(default_factory=list)
    generated_at: datetime = Field(default_factory=lambda: datetime.now(tz=timezone.utc))

    @property
    def success(self) -> bool:
        return self.status != "Failed"

    def step(self, name: str) -> OperationResult | None:
        for result in self.steps:
            if result.step == name:
                return result
        return None
