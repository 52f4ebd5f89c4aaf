from __future__ import annotations

import logging

from agentweave.errors import AgentNotFound
from agentweave.models.agent import AgentDefinition
from agentweave.utils.config import Config

logger = logging.getLogger(__name__)


class AgentRegistry:
    """Read-only view of the agent definitions in a loaded Config."""

    def __init__(self, config: Config):
        self._definitions: dict[str, AgentDefinition] = dict(config.agents.definitions)
        logger.debug("Registered agents: %s", ", ".join(self._definitions))

    def get(self, role: str) -> AgentDefinition:
        try:
            return self._definitions[role]
        except KeyError:
            raise AgentNotFound(role) from None

    def find(self, role: str) -> AgentDefinition | None:
        return self._definitions.get(role)

    def all(self) -> list[AgentDefinition]:
        return list(self._definitions.values())

    def roles(self) -> list[str]:
        return list(self._definitions)

    def for_branch(self, branch: str) -> AgentDefinition | None:
        """Owning agent of ``branch``, by the longest matching branch prefix."""
        best: AgentDefinition | None = None
        for definition in self._definitions.values():
            prefix = definition.branch_prefix
            if branch == prefix or branch.startswith(prefix + "/"):
                if best is None or len(prefix) > len(best.branch_prefix):
                    best = definition
        return best

    def __contains__(self, role: object) -> bool:
        return role in self._definitions

    def __len__(self) -> int:
        return len(self._definitions)
