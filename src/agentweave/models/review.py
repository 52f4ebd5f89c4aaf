from __future__ import annotations

from typing import Literal

from pydantic import ConfigDict, Field

from agentweave.models.base import CamelModel

ViolationKind = Literal["not-allowed", "excluded"]


class BranchReview(CamelModel):
    """Outcome of reviewing one branch's changeset against policy."""

    model_config = ConfigDict(frozen=True)

    branch: str
    files: list[str] = Field(default_factory=list)
    passed: bool = True
    issues: list[str] = Field(default_factory=list)


class BoundaryViolation(CamelModel):
    """A file changed on a branch that its owning agent may not touch."""

    model_config = ConfigDict(frozen=True)

    branch: str
    agent: str
    file: str
    kind: ViolationKind
