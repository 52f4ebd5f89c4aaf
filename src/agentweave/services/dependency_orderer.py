from __future__ import annotations

from typing import Sequence

from agentweave.utils.config import DEFAULT_PRIORITY


class DependencyOrderer:
    """Orders branches for integration by a fixed precedence of agent roles.

    A branch ranks by the first priority entry found in its name; branches
    matching none go last. The sort is stable, so equal ranks keep their
    input order.
    """

    def __init__(self, priority: Sequence[str] | None = None):
        self.priority = list(priority) if priority else list(DEFAULT_PRIORITY)

    def rank(self, branch: str) -> int:
        for index, role in enumerate(self.priority):
            if role in branch:
                return index
        return len(self.priority)

    def order(self, branches: Sequence[str]) -> list[str]:
        return sorted(branches, key=self.rank)
