from __future__ import annotations

from datetime import datetime
from typing import Literal, Optional

from pydantic import ConfigDict, Field

from agentweave.models.base import CamelModel

TaskState = Literal["active", "completed", "failed"]


class AgentDefinition(CamelModel):
    """Static definition of one agent role, loaded from configuration."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    role: str = ""
    model: str = Field(min_length=1)
    working_paths: list[str] = Field(min_length=1)
    exclude_paths: list[str] = Field(default_factory=list)
    branch_prefix: str = ""
    name: Optional[str] = None
    capabilities: list[str] = Field(default_factory=list)

    @property
    def display_name(self) -> str:
        return self.name or self.role


class AgentTaskStatus(CamelModel):
    """Lifecycle record of the task an agent is currently working on."""

    role: str
    current_branch: str
    task_id: str
    start_time: datetime = Field(default_factory=datetime.now)
    status: TaskState = "active"
    completed_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.status == "active"
