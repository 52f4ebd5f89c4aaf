from __future__ import annotations

import asyncio
import logging
import re
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import AsyncIterator, Iterable

from filelock import AsyncFileLock, Timeout

from agentweave.db.database import Database
from agentweave.errors import (
    AgentBusy,
    BranchCreationError,
    CoordinationError,
    SyncError,
    VcsOperationError,
)
from agentweave.models.agent import AgentDefinition, AgentTaskStatus
from agentweave.services.boundary import BoundaryEnforcer
from agentweave.services.registry import AgentRegistry
from agentweave.services.state_store import JsonDocument
from agentweave.services.vcs import VersionControlPort
from agentweave.utils.config import Config

logger = logging.getLogger(__name__)


class BranchGuard:
    """Per-branch mutual exclusion between integration and background sync.

    The pipeline holds a branch while merging or pushing it; sync only tries
    and skips the branch when it is taken. Waiting happens off the event
    loop, so a sync holding the guard can finish while the pipeline waits.
    """

    def __init__(self, state_dir: Path):
        self.directory = Path(state_dir) / "branch-locks"

    def _lock_for(self, branch: str, timeout: float) -> AsyncFileLock:
        self.directory.mkdir(parents=True, exist_ok=True)
        name = re.sub(r"[^A-Za-z0-9_.-]+", "_", branch)
        return AsyncFileLock(str(self.directory / f"{name}.lock"), timeout=timeout)

    @asynccontextmanager
    async def hold(self, branch: str, timeout: float = -1) -> AsyncIterator[None]:
        async with self._lock_for(branch, timeout=timeout):
            yield

    @asynccontextmanager
    async def try_hold(self, branch: str) -> AsyncIterator[bool]:
        lock = self._lock_for(branch, timeout=0)
        try:
            await lock.acquire()
        except Timeout:
            yield False
            return
        try:
            yield True
        finally:
            await lock.release()


@dataclass
class MergeReport:
    role: str
    branch: str
    committed: bool
    pr_url: str | None = None
    released: list[str] = field(default_factory=list)


class BranchTracker:
    """Creates, syncs and merges one branch per active agent task."""

    def __init__(
        self,
        config: Config,
        registry: AgentRegistry,
        enforcer: BoundaryEnforcer,
        vcs: VersionControlPort,
        db: Database,
        guard: BranchGuard | None = None,
    ):
        self.registry = registry
        self.enforcer = enforcer
        self.vcs = vcs
        self.db = db
        self.base_branch = config.project_master_branch
        self.remote = config.remote
        self.guard = guard or BranchGuard(config.state_dir)
        self.stale_after = timedelta(hours=config.policy.agent_management.stale_threshold_hours)
        self._document = JsonDocument(config.status_file)
        self._mu = asyncio.Lock()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def create_branch(self, role: str, task_id: str) -> str:
        """Check out ``<branchPrefix>/<task_id>`` from the base branch."""
        definition = self.registry.get(role)
        branch = f"{definition.branch_prefix}/{task_id}"

        async with self._mu:
            current = (await self._load()).get(role)
            if current is not None and current.is_active:
                raise AgentBusy(role, current.current_branch)

            try:
                await self.vcs.create_branch(branch, self.base_branch)
            except VcsOperationError as exc:
                logger.error(
                    "Failed to create branch %s for %s: %s", branch, definition.display_name, exc
                )
                raise BranchCreationError(
                    f"Failed to create branch {branch} for {definition.display_name}",
                    command=exc.command,
                    returncode=exc.returncode,
                    stderr=exc.stderr,
                    branch=branch,
                ) from exc

            await self._put(AgentTaskStatus(role=role, current_branch=branch, task_id=task_id))

        await self.db.log_event("branch_created", role, {"branch": branch, "task_id": task_id})
        logger.info("Created branch %s for %s", branch, definition.display_name)
        return branch

    async def claim(self, role: str, paths: Iterable[str]) -> list[str]:
        """Lock files for the role's current work."""
        self.registry.get(role)
        return await self.enforcer.lock(role, paths)

    async def sync(self, role: str) -> bool:
        """Rebase the role's branch onto the base branch.

        Returns False when there is nothing to do (undefined or inactive agent,
        or a branch currently held by the integration pipeline).
        """
        definition = self.registry.find(role)
        if definition is None:
            logger.info("Agent %s not defined, skipping sync", role)
            return False

        status = (await self._load()).get(role)
        if status is None or not status.is_active:
            logger.info("%s is not active, skipping sync", definition.display_name)
            return False

        async with self.guard.try_hold(status.current_branch) as acquired:
            if not acquired:
                logger.info("%s is being integrated, skipping sync", status.current_branch)
                return False
            await self._rebase(definition, status)

        logger.info("Synced %s with %s", definition.display_name, self.base_branch)
        return True

    async def sync_all(self) -> dict[str, bool | str]:
        """Sync every defined agent. One failure does not stop the rest."""
        results: dict[str, bool | str] = {}
        for role in self.registry.roles():
            try:
                results[role] = await self.sync(role)
            except CoordinationError as exc:
                logger.error("Failed to sync %s: %s", role, exc)
                results[role] = str(exc)
        return results

    async def merge(self, role: str, message: str | None = None) -> MergeReport:
        """Commit and push the role's branch, open a PR, release its locks."""
        definition = self.registry.get(role)
        status = (await self._load()).get(role)
        if status is None or not status.is_active:
            raise CoordinationError(f"{definition.display_name} has no active branch")

        branch = status.current_branch
        title = f"{definition.display_name}: {status.task_id}"

        async with self.guard.hold(branch):
            try:
                if await self.vcs.current_branch() != branch:
                    await self.vcs.checkout(branch)
                committed = await self.vcs.commit(message or title, stage_all=True)
                await self.vcs.push(branch, set_upstream=True)
            except VcsOperationError as exc:
                logger.error("Merge failed for %s: %s", definition.display_name, exc)
                await self._set_state(role, "failed")
                raise

        pr_url: str | None = None
        try:
            pr_url = await self.vcs.create_pull_request(
                self.base_branch, branch, title, f"Automated PR from {definition.display_name}"
            )
            logger.info("Created PR for %s: %s", definition.display_name, pr_url)
        except VcsOperationError:
            logger.info("Pushed branch %s. Create PR manually.", branch)

        await self._set_state(role, "completed")
        released = await self.enforcer.unlock(role)
        await self.db.log_event(
            "branch_merged", role, {"branch": branch, "pr_url": pr_url, "committed": committed}
        )
        return MergeReport(role=role, branch=branch, committed=committed, pr_url=pr_url, released=released)

    async def mark_integrated(self, branch: str) -> list[str]:
        """Release the locks of the agent whose current branch reached the base branch."""
        for role, status in (await self._load()).items():
            if status.current_branch == branch:
                return await self.enforcer.unlock(role)
        return []

    async def status(self) -> dict[str, AgentTaskStatus]:
        return await self._load()

    async def stale_tasks(self, now: datetime | None = None) -> list[AgentTaskStatus]:
        """Active tasks open longer than the configured stale threshold."""
        cutoff = (now or datetime.now()) - self.stale_after
        return [
            status
            for status in (await self._load()).values()
            if status.is_active and status.start_time < cutoff
        ]

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _rebase(self, definition: AgentDefinition, status: AgentTaskStatus) -> None:
        previous = await self.vcs.current_branch()
        stashed = False
        try:
            stashed = await self.vcs.stash()
            if previous != status.current_branch:
                await self.vcs.checkout(status.current_branch)
            await self.vcs.fetch()
            await self.vcs.rebase(f"{self.remote}/{self.base_branch}")
        except VcsOperationError as exc:
            logger.error("Sync failed for %s: %s", definition.display_name, exc)
            await self.vcs.abort_rebase()
            await self._restore(previous, stashed)
            raise SyncError(
                f"Sync failed for {definition.display_name}",
                command=exc.command,
                returncode=exc.returncode,
                stderr=exc.stderr,
                branch=status.current_branch,
            ) from exc
        await self._restore(previous, stashed)

    async def _restore(self, previous: str, stashed: bool) -> None:
        if await self.vcs.current_branch() != previous:
            await self.vcs.checkout(previous)
        if stashed:
            await self.vcs.stash_pop()

    async def _set_state(self, role: str, state: str) -> None:
        async with self._mu:
            async with self._document.transaction() as raw:
                entry = raw.get(role)
                if entry is None:
                    return
                status = AgentTaskStatus.model_validate(entry)
                update: dict = {"status": state}
                if state == "completed":
                    update["completed_at"] = datetime.now()
                raw[role] = status.model_copy(update=update).to_document()

    async def _put(self, status: AgentTaskStatus) -> None:
        async with self._document.transaction() as raw:
            raw[status.role] = status.to_document()

    async def _load(self) -> dict[str, AgentTaskStatus]:
        return {
            role: AgentTaskStatus.model_validate(entry)
            for role, entry in (await self._document.read()).items()
        }
