from __future__ import annotations

from typing import Literal, Optional

from pydantic import Field

from agentweave.models.base import CamelModel

ResolutionStrategy = Literal["lockfile-regenerated", "json-shallow-merge", "theirs"]


class FileResolution(CamelModel):
    path: str
    strategy: ResolutionStrategy
    note: Optional[str] = None


class Resolution(CamelModel):
    """How each conflicted file of one merge was resolved."""

    branch: Optional[str] = None
    files: list[FileResolution] = Field(default_factory=list)

    def commit_message(self) -> str:
        title = "Master Agent: Resolved conflicts"
        if self.branch:
            title = f"{title} merging {self.branch}"
        lines = [title, ""]
        for item in self.files:
            line = f"- {item.path}: {item.strategy}"
            if item.note:
                line = f"{line} ({item.note})"
            lines.append(line)
        return "\n".join(lines)


class MergeProbe(CamelModel):
    """Result of a dry-run merge of a branch into the current HEAD."""

    branch: str
    clean: bool
    conflicts: list[str] = Field(default_factory=list)
