from __future__ import annotations

import json
import os
import re
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import ConfigDict, Field, ValidationError, field_validator

from agentweave.errors import ConfigError
from agentweave.models.agent import AgentDefinition
from agentweave.models.base import CamelModel

load_dotenv()

CONFIG_FILE_NAME = "agent-orchestrator.config.json"

DEFAULT_PRIORITY = ["database", "backend", "integration", "frontend", "testing"]


@dataclass(frozen=True)
class Settings:
    """Runtime knobs loaded from environment variables."""

    config_path: Path = field(
        default_factory=lambda: Path(os.environ.get("AGENTWEAVE_CONFIG", CONFIG_FILE_NAME))
    )

    # Audit database; defaults to <stateDir>/audit.db when unset
    db_path: Optional[Path] = field(
        default_factory=lambda: (
            Path(os.environ["AGENTWEAVE_DB_PATH"]) if os.environ.get("AGENTWEAVE_DB_PATH") else None
        )
    )

    log_level: str = field(
        default_factory=lambda: os.environ.get("AGENTWEAVE_LOG_LEVEL", "INFO")
    )

    # Code generation
    anthropic_api_key: str | None = field(
        default_factory=lambda: os.environ.get("ANTHROPIC_API_KEY")
    )
    codegen_max_tokens: int = field(
        default_factory=lambda: int(os.environ.get("AGENTWEAVE_CODEGEN_MAX_TOKENS", "8000"))
    )


def get_settings() -> Settings:
    return Settings()


# ----------------------------------------------------------------------
# Configuration document
# ----------------------------------------------------------------------


class _Section(CamelModel):
    model_config = ConfigDict(extra="forbid", frozen=True)


class CommunicationSection(_Section):
    state_dir: str = ".agentweave"
    status_file: str = "status.json"
    lock_file: str = "locks.json"


class AgentsSection(_Section):
    definitions: dict[str, AgentDefinition] = Field(min_length=1)
    sync_interval: Optional[str] = None

    @field_validator("definitions")
    @classmethod
    def _bind_roles(cls, value: dict[str, AgentDefinition]) -> dict[str, AgentDefinition]:
        bound = {}
        for role, definition in value.items():
            prefix = (definition.branch_prefix or f"feature/{role}").rstrip("/")
            bound[role] = definition.model_copy(update={"role": role, "branch_prefix": prefix})
        return bound


class ConflictResolutionSection(_Section):
    priority_order: list[str] = Field(default_factory=lambda: list(DEFAULT_PRIORITY))
    update_frequency: str = "30m"
    # lockfile name -> command that regenerates it
    lockfile_commands: dict[str, str] = Field(default_factory=dict)


class IntegrationPolicy(_Section):
    rollback_on_failure: bool = True
    build_after_each_merge: bool = False


class TestingStandard(_Section):
    required: bool = False


class DocumentationStandard(_Section):
    required: bool = False
    min_files_for_doc_update: int = 5


class ReviewStandards(_Section):
    testing: TestingStandard = Field(default_factory=TestingStandard)
    documentation: DocumentationStandard = Field(default_factory=DocumentationStandard)
    max_files_changed: Optional[int] = None


class CodeReviewSection(_Section):
    standards: ReviewStandards = Field(default_factory=ReviewStandards)


class AgentManagementSection(_Section):
    can_override_any_agent: bool = False
    stale_threshold_hours: float = Field(default=24, gt=0)


class BoundaryPolicy(_Section):
    violations_fatal: bool = False


class Responsibilities(_Section):
    integration: IntegrationPolicy = Field(default_factory=IntegrationPolicy)
    code_review: CodeReviewSection = Field(default_factory=CodeReviewSection)
    agent_management: AgentManagementSection = Field(default_factory=AgentManagementSection)
    boundaries: BoundaryPolicy = Field(default_factory=BoundaryPolicy)


class MasterAgentSection(_Section):
    branch: str = "master-integration"
    branch_patterns: list[str] = Field(default_factory=lambda: ["feature/", "fix/", "test/"])
    ready_within_hours: Optional[float] = None
    responsibilities: Responsibilities = Field(default_factory=Responsibilities)


class ValidationSection(_Section):
    build: Optional[str] = "npm run build"
    tests: Optional[str] = "npm test"
    lint: Optional[str] = "npm run lint"
    secret_scan_extensions: list[str] = Field(
        default_factory=lambda: [".js", ".jsx", ".ts", ".tsx", ".py", ".json", ".env", ".yml", ".yaml"]
    )
    timeout_seconds: float = 900


class Config(_Section):
    """Typed configuration document. Constructed once and passed to every component."""

    project_path: Path
    project_master_branch: str = "main"
    remote: str = "origin"
    agent_communication: CommunicationSection = Field(default_factory=CommunicationSection)
    agents: AgentsSection
    conflict_resolution: ConflictResolutionSection = Field(
        default_factory=ConflictResolutionSection
    )
    master_agent: MasterAgentSection = Field(default_factory=MasterAgentSection)
    validation: ValidationSection = Field(default_factory=ValidationSection)

    @property
    def state_dir(self) -> Path:
        return self.project_path / self.agent_communication.state_dir

    @property
    def status_file(self) -> Path:
        return self.state_dir / self.agent_communication.status_file

    @property
    def lock_file(self) -> Path:
        return self.state_dir / self.agent_communication.lock_file

    @property
    def integration_branch(self) -> str:
        return self.master_agent.branch

    @property
    def policy(self) -> Responsibilities:
        return self.master_agent.responsibilities

    @property
    def sync_interval(self) -> timedelta:
        raw = self.agents.sync_interval or self.conflict_resolution.update_frequency
        return parse_interval(raw) or timedelta(minutes=30)


_INTERVAL_RE = re.compile(r"^(\d+)([smhd])$")
_INTERVAL_UNITS = {"s": "seconds", "m": "minutes", "h": "hours", "d": "days"}


def parse_interval(value: str | None) -> timedelta | None:
    """Parse ``"30m"``-style intervals. Returns None when unparseable."""
    if not value:
        return None
    match = _INTERVAL_RE.match(value.strip())
    if not match:
        return None
    amount, unit = match.groups()
    return timedelta(**{_INTERVAL_UNITS[unit]: int(amount)})


def _format_errors(exc: ValidationError) -> str:
    lines = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error["loc"])
        lines.append(f"- {location}: {error['msg']}")
    return "\n".join(lines)


def load_config(path: str | Path | None = None) -> Config:
    """Load and validate the configuration document.

    Raises ConfigError on a missing file, malformed JSON, unknown keys, or any
    agent lacking ``workingPaths`` or ``model``. A relative ``projectPath`` is
    resolved against the directory holding the document.
    """
    config_path = Path(path) if path else get_settings().config_path
    if not config_path.exists():
        raise ConfigError(f"Configuration file not found: {config_path}")

    try:
        raw = json.loads(config_path.read_text())
    except (OSError, json.JSONDecodeError) as exc:
        raise ConfigError(f"Error parsing configuration file {config_path}: {exc}") from exc

    try:
        config = Config.model_validate(raw)
    except ValidationError as exc:
        raise ConfigError(
            f"Configuration validation failed for {config_path}:\n{_format_errors(exc)}"
        ) from exc

    project_path = config.project_path
    if not project_path.is_absolute():
        project_path = (config_path.parent / project_path).resolve()
    if not project_path.exists():
        raise ConfigError(f"projectPath not found: {project_path}")

    if parse_interval(config.conflict_resolution.update_frequency) is None:
        raise ConfigError(
            "`conflictResolution.updateFrequency` is invalid. Use a format like \"30m\" or \"1h\"."
        )
    if config.agents.sync_interval is not None and parse_interval(config.agents.sync_interval) is None:
        raise ConfigError("`agents.syncInterval` is invalid. Use a format like \"30m\" or \"1h\".")

    return config.model_copy(update={"project_path": project_path})
