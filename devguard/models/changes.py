"""
Pydantic models for planned mutations and per-step outcomes
"""
from datetime import datetime, timezone
from enum import Enum
from typing import List, Literal

from pydantic import BaseModel, ConfigDict, Field

Operation = Literal["set", "append", "replace", "restart", "reset", "enable", "write", "backup", "restore", "insert"]


class PlannedChange(BaseModel):
    """A single atomic mutation, described before it is attempted."""
    model_config = ConfigDict(frozen=True)

    target: str
    operation: Operation
    rationale: str
    command: List[str] = Field(default_factory=list)

    def describe(self) -> str:
        text = f"{self.operation} {self.target}"
        if self.command:
            text += f" ({' '.join(self.command)})"
        return text


class StepStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    WARNING = "warning"
    PLANNED = "planned"
    SKIPPED = "skipped"


class OperationResult(BaseModel):
    """Outcome of one component's work. Owned by exactly one component."""

    step: str
    status: StepStatus = StepStatus.SUCCEEDED
    applied: List[PlannedChange] = Field(default_factory=list)
    planned: List[PlannedChange] = Field(default_factory=list)
    failures: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    diagnostics: List[str] = Field(default_factory=list)
    next_steps: List[str] = Field(default_factory=list)
    error_type: str | None = None
    started_at: datetime = Field(default_factory=lambda: datetime.now(tz=timezone.utc))

    @property
    def success(self) -> bool:
        return self.status in {StepStatus.SUCCEEDED, StepStatus.WARNING, StepStatus.PLANNED}

    def fail(self, message: str, *, error_type: str | None = None, next_step: str | None = None) -> None:
        self.status = StepStatus.FAILED
        self.failures.append(message)
        if error_type:
            self.error_type = error_type
        if next_step and next_step not in self.next_steps:
            self.next_steps.append(next_step)

    def warn(self, message: str, *, next_step: str | None = None) -> None:
        self.warnings.append(message)
        if self.status == StepStatus.SUCCEEDED:
            self.status = StepStatus.WARNING
        if next_step and next_step not in self.next_steps:
            self.next_steps.append(next_step)

    def skip(self, reason: str) -> None:
        self.status = StepStatus.SKIPPED
        self.diagnostics.append(reason)
