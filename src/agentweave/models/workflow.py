from __future__ import annotations

from datetime import datetime
from typing import Any, Literal, Optional

from pydantic import Field

from agentweave.models.base import CamelModel

StageStatus = Literal["running", "completed", "failed"]
WorkflowStatus = Literal["running", "completed", "failed"]
CheckStatus = Literal["pending", "passed", "warning", "failed", "skipped"]

STAGES = (
    "fetch",
    "review",
    "validate-boundaries",
    "check-conflicts",
    "merge",
    "validate-integration",
    "push",
)


class StageRecord(CamelModel):
    status: StageStatus
    timestamp: datetime = Field(default_factory=datetime.now)
    error: Optional[str] = None


class StageResult(CamelModel):
    stage: str
    data: dict[str, Any] = Field(default_factory=dict)


class CheckResult(CamelModel):
    """Outcome of one integration check (build, tests, lint, security)."""

    status: CheckStatus = "pending"
    output: Optional[str] = None
    error: Optional[str] = None
    issues: list[str] = Field(default_factory=list)


class WorkflowState(CamelModel):
    """Audit record of one integration pipeline run."""

    id: str = Field(default_factory=lambda: f"workflow-{int(datetime.now().timestamp() * 1000)}")
    start_time: datetime = Field(default_factory=datetime.now)
    finished_at: Optional[datetime] = None
    status: WorkflowStatus = "running"
    start_branch: Optional[str] = None
    start_commit: Optional[str] = None
    stages: dict[str, StageRecord] = Field(default_factory=dict)
    results: list[StageResult] = Field(default_factory=list)

    def record(self, stage: str, **data: Any) -> StageResult:
        result = StageResult(stage=stage, data=data)
        self.results.append(result)
        return result

    def result_for(self, stage: str) -> dict[str, Any]:
        """Data of the latest result written by ``stage`` (empty if none)."""
        for result in reversed(self.results):
            if result.stage == stage:
                return result.data
        return {}

    def mark(self, stage: str, status: StageStatus, error: str | None = None) -> None:
        self.stages[stage] = StageRecord(status=status, error=error)

    def check_status(self, check: str) -> str | None:
        validation = self.result_for("validate-integration").get("validation") or {}
        entry = validation.get(check)
        if entry is None:
            return None
        return entry.get("status")

    def finish(self, status: WorkflowStatus) -> None:
        self.status = status
        self.finished_at = datetime.now()

    def duration(self) -> str:
        end = self.finished_at or datetime.now()
        seconds = int((end - self.start_time).total_seconds())
        return f"{seconds // 60} minutes {seconds % 60} seconds"
