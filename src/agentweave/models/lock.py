from __future__ import annotations

from datetime import datetime

from pydantic import Field

from agentweave.models.base import CamelModel


class FileLock(CamelModel):
    """Exclusive claim of one repository path by one agent role."""

    path: str
    owner: str
    locked_at: datetime = Field(default_factory=datetime.now)
