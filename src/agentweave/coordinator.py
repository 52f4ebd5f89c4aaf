from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator

from agentweave.db.database import Database
from agentweave.services.boundary import BoundaryEnforcer
from agentweave.services.branch_tracker import BranchTracker
from agentweave.services.codegen import AgentWorker, AnthropicCodeGenerator, CodeGenerator
from agentweave.services.commands import CommandRunner, SubprocessRunner
from agentweave.services.conflict_resolver import ConflictResolver
from agentweave.services.event_bus import EventBus
from agentweave.services.pipeline import IntegrationPipeline
from agentweave.services.registry import AgentRegistry
from agentweave.services.scheduler import SyncScheduler
from agentweave.services.state_store import ensure_state_dir
from agentweave.services.validators import IntegrationValidator
from agentweave.services.vcs import GitVcs, VersionControlPort
from agentweave.utils.config import Config, Settings

logger = logging.getLogger(__name__)


@dataclass
class Coordinator:
    """Every service of one coordinator process, wired to a single Config."""

    config: Config
    settings: Settings
    db: Database
    vcs: VersionControlPort
    runner: CommandRunner
    registry: AgentRegistry
    enforcer: BoundaryEnforcer
    tracker: BranchTracker
    events: EventBus = field(default_factory=EventBus)
    generator: CodeGenerator | None = None

    def pipeline(self, boundaries_fatal: bool | None = None) -> IntegrationPipeline:
        """A fresh pipeline run; each call gets its own WorkflowState."""
        return IntegrationPipeline(
            self.config,
            self.registry,
            self.enforcer,
            self.tracker,
            self.vcs,
            self.db,
            resolver=ConflictResolver(
                self.vcs,
                self.runner,
                self.config.project_path,
                lockfile_commands=self.config.conflict_resolution.lockfile_commands,
                command_timeout=self.config.validation.timeout_seconds,
            ),
            validator=IntegrationValidator(
                self.vcs, self.runner, self.config.validation, self.config.project_path
            ),
            events=self.events,
            boundaries_fatal=boundaries_fatal,
        )

    def scheduler(self) -> SyncScheduler:
        return SyncScheduler(self.tracker, self.config.sync_interval.total_seconds())

    def worker(self) -> AgentWorker:
        if self.generator is None:
            self.generator = AnthropicCodeGenerator(self.registry, self.settings)
        return AgentWorker(self.enforcer, self.generator, self.config.project_path)


@asynccontextmanager
async def open_coordinator(
    config: Config,
    settings: Settings,
    vcs: VersionControlPort | None = None,
    runner: CommandRunner | None = None,
    generator: CodeGenerator | None = None,
) -> AsyncIterator[Coordinator]:
    """Startup / shutdown lifecycle for the coordinator services."""
    ensure_state_dir(config.state_dir)

    # --- Database ---
    db = Database(settings.db_path or config.state_dir / "audit.db")
    await db.initialize()

    # --- Services ---
    vcs = vcs or GitVcs(config.project_path, config.remote)
    registry = AgentRegistry(config)
    enforcer = BoundaryEnforcer(registry, config.lock_file, db, config.project_path)
    tracker = BranchTracker(config, registry, enforcer, vcs, db)

    coordinator = Coordinator(
        config=config,
        settings=settings,
        db=db,
        vcs=vcs,
        runner=runner or SubprocessRunner(),
        registry=registry,
        enforcer=enforcer,
        tracker=tracker,
        generator=generator,
    )
    logger.info("Coordinator ready for %s (%d agents)", config.project_path, len(registry))

    try:
        yield coordinator
    finally:
        await db.close()
        logger.info("Coordinator stopped")
