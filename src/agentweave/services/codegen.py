from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Any, Protocol

from agentweave.errors import BoundaryError, CodeGenerationError
from agentweave.services.boundary import BoundaryEnforcer, normalize_path
from agentweave.services.registry import AgentRegistry
from agentweave.utils.config import Settings

logger = logging.getLogger(__name__)

_FENCE = re.compile(r"^```[\w.+-]*\s*\n?|\n?```\s*$")


class CodeGenerator(Protocol):
    async def generate(
        self, role: str, file_path: str, task: str, existing: str | None = None
    ) -> str: ...


def strip_fences(text: str) -> str:
    """Remove a markdown code fence wrapped around the whole response."""
    return _FENCE.sub("", text.strip()).strip()


def build_prompt(display_name: str, file_path: str, task: str, existing: str | None) -> str:
    current = (
        f"Existing code to modify:\n```\n{existing}\n```" if existing else "This is a new file."
    )
    return (
        f"You are the {display_name} agent on a multi-agent team.\n\n"
        f"Generate production-ready code for the file: {file_path}\n\n"
        f"Task: {task}\n\n"
        f"{current}\n\n"
        "Follow the existing import patterns and project structure, handle errors "
        "and keep the code testable.\n\n"
        f"Respond with ONLY the complete code for {file_path}. No explanations, "
        "no markdown formatting."
    )


class AnthropicCodeGenerator:
    """Generates file contents with the Anthropic Messages API.

    The agent's configured ``model`` is used; an ``anthropic/`` routing prefix
    is dropped.
    """

    def __init__(self, registry: AgentRegistry, settings: Settings, client: Any | None = None):
        self.registry = registry
        self.max_tokens = settings.codegen_max_tokens
        self._client = client

        if self._client is None and settings.anthropic_api_key:
            import anthropic

            self._client = anthropic.AsyncAnthropic(api_key=settings.anthropic_api_key)
        elif self._client is None:
            logger.warning("ANTHROPIC_API_KEY not set - code generation disabled")

    async def generate(
        self, role: str, file_path: str, task: str, existing: str | None = None
    ) -> str:
        if self._client is None:
            raise CodeGenerationError("ANTHROPIC_API_KEY not set - cannot generate code")

        definition = self.registry.get(role)
        model = definition.model.removeprefix("anthropic/")
        prompt = build_prompt(definition.display_name, file_path, task, existing)

        import anthropic

        try:
            response = await self._client.messages.create(
                model=model,
                max_tokens=self.max_tokens,
                messages=[{"role": "user", "content": prompt}],
            )
        except anthropic.APIError as exc:
            raise CodeGenerationError(f"Code generation for {file_path} failed: {exc}") from exc

        text = "".join(
            block.text for block in response.content if getattr(block, "type", None) == "text"
        )
        if not text.strip():
            raise CodeGenerationError(f"Model returned no code for {file_path}")
        logger.info("Generated %d characters for %s (%s)", len(text), file_path, model)
        return strip_fences(text)


class AgentWorker:
    """Applies generated code to the working tree inside an agent's boundary."""

    def __init__(
        self,
        enforcer: BoundaryEnforcer,
        generator: CodeGenerator,
        project_path: Path,
    ):
        self.enforcer = enforcer
        self.generator = generator
        self.project_path = Path(project_path)

    async def apply(self, role: str, file_path: str, task: str) -> Path:
        relative = normalize_path(file_path, self.project_path)
        if not await self.enforcer.can_access(role, relative):
            raise BoundaryError(role, relative)

        locked = await self.enforcer.lock(role, [relative])
        if relative not in locked:
            raise BoundaryError(role, relative)

        target = self.project_path / relative
        existing = target.read_text() if target.is_file() else None
        code = await self.generator.generate(role, relative, task, existing)

        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(code if code.endswith("\n") else code + "\n")
        logger.info("%s wrote %s", role, relative)
        return target
