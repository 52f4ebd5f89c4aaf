from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable

from agentweave.db.database import Database
from agentweave.errors import (
    BoundaryViolationsFatal,
    ConflictUnresolved,
    CoordinationError,
    PushRefused,
    StageError,
    ValidationFailure,
    VcsOperationError,
)
from agentweave.models.review import BoundaryViolation, BranchReview
from agentweave.models.workflow import STAGES, WorkflowState
from agentweave.services.boundary import BoundaryEnforcer
from agentweave.services.branch_tracker import BranchTracker
from agentweave.services.conflict_resolver import ConflictResolver
from agentweave.services.dependency_orderer import DependencyOrderer
from agentweave.services.event_bus import EventBus
from agentweave.services.registry import AgentRegistry
from agentweave.services.review_gate import ReviewGate
from agentweave.services.state_store import write_json_atomic
from agentweave.services.validators import IntegrationValidator
from agentweave.services.vcs import VersionControlPort
from agentweave.utils.config import Config

logger = logging.getLogger(__name__)


class IntegrationPipeline:
    """Reviews, merges and pushes agent branches into the base branch.

    Stages run strictly in order::

        fetch -> review -> validate-boundaries -> check-conflicts
              -> merge -> validate-integration -> push

    Each stage appends a result to ``state.results`` and records its status
    in ``state.stages``. A stage that raises is marked failed; when the policy
    asks for it the working tree is rolled back before the error surfaces as
    a StageError. The workflow state is persisted at the end of every run.
    """

    def __init__(
        self,
        config: Config,
        registry: AgentRegistry,
        enforcer: BoundaryEnforcer,
        tracker: BranchTracker,
        vcs: VersionControlPort,
        db: Database,
        resolver: ConflictResolver,
        validator: IntegrationValidator,
        events: EventBus | None = None,
        state: WorkflowState | None = None,
        boundaries_fatal: bool | None = None,
    ):
        self.config = config
        self.registry = registry
        self.enforcer = enforcer
        self.tracker = tracker
        self.vcs = vcs
        self.db = db
        self.resolver = resolver
        self.validator = validator
        self.events = events or EventBus()
        self.state = state or WorkflowState()

        policy = config.policy
        self.rollback_on_failure = policy.integration.rollback_on_failure
        self.build_after_each_merge = policy.integration.build_after_each_merge
        self.can_override = policy.agent_management.can_override_any_agent
        self.boundaries_fatal = (
            policy.boundaries.violations_fatal if boundaries_fatal is None else boundaries_fatal
        )

        self.base_branch = config.project_master_branch
        self.integration_branch = config.integration_branch
        self.review_gate = ReviewGate(
            vcs, policy.code_review.standards, base_ref=self.integration_branch
        )
        self.orderer = DependencyOrderer(config.conflict_resolution.priority_order)

        self._handlers: dict[str, Callable[[], Awaitable[None]]] = {
            "fetch": self.fetch,
            "review": self.review,
            "validate-boundaries": self.validate_boundaries,
            "check-conflicts": self.check_conflicts,
            "merge": self.merge,
            "validate-integration": self.validate_integration,
            "push": self.push,
        }

    # ------------------------------------------------------------------
    # Driver
    # ------------------------------------------------------------------

    async def run(self) -> WorkflowState:
        logger.info("Executing integration workflow %s", self.state.id)
        await self.events.publish("workflow_started", {"workflow_id": self.state.id})

        try:
            await self._capture_start()
            for stage in STAGES:
                await self._run_stage(stage)
        except StageError as exc:
            self.state.finish("failed")
            await self._persist()
            await self.events.publish(
                "workflow_finished",
                {"workflow_id": self.state.id, "status": "failed", "error": str(exc)},
            )
            raise

        self.state.finish("completed")
        await self._persist()
        await self.events.publish(
            "workflow_finished", {"workflow_id": self.state.id, "status": "completed"}
        )
        logger.info("Workflow %s completed", self.state.id)
        return self.state

    async def _capture_start(self) -> None:
        self.state.start_branch = await self.vcs.current_branch()
        self.state.start_commit = await self.vcs.head()
        if not await self.vcs.is_clean():
            error = CoordinationError("Working tree has uncommitted changes; refusing to integrate")
            self.state.mark("fetch", "failed", error=str(error))
            raise StageError("fetch", error)

    async def _run_stage(self, stage: str) -> None:
        self.state.mark(stage, "running")
        await self.events.publish("stage_started", {"stage": stage})
        try:
            await self._handlers[stage]()
        except Exception as exc:
            logger.error("%s failed: %s", stage, exc)
            self.state.mark(stage, "failed", error=str(exc))
            await self.events.publish("stage_failed", {"stage": stage, "error": str(exc)})
            if self.rollback_on_failure:
                await self.rollback()
            raise StageError(stage, exc) from exc

        self.state.mark(stage, "completed")
        await self.events.publish("stage_completed", {"stage": stage})

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    async def fetch(self) -> None:
        await self.vcs.fetch(prune=True)
        candidates = [b for b in await self.vcs.list_remote_branches() if self._is_agent_branch(b)]

        branches = candidates
        stale: list[str] = []
        hours = self.config.master_agent.ready_within_hours
        if hours is not None:
            cutoff = datetime.now() - timedelta(hours=hours)
            branches = []
            for branch in candidates:
                if await self.vcs.last_commit_time(branch) >= cutoff:
                    branches.append(branch)
                else:
                    stale.append(branch)

        await self.vcs.reset_branch(
            self.integration_branch, f"{self.config.remote}/{self.base_branch}"
        )
        self.state.record(
            "fetch",
            branches=branches,
            count=len(branches),
            stale=stale,
            integration_branch=self.integration_branch,
        )
        logger.info("Found %d agent branches", len(branches))

    async def review(self) -> None:
        reviews = [await self.review_gate.review(b) for b in self._fetched()]
        self.state.record(
            "review",
            reviews=[r.to_document() for r in reviews],
            passed=sum(1 for r in reviews if r.passed),
            failed=sum(1 for r in reviews if not r.passed),
        )

    async def validate_boundaries(self) -> None:
        violations: list[BoundaryViolation] = []
        for review in self._reviews():
            violations.extend(self.enforcer.validate_boundaries(review))

        self.state.record(
            "validate-boundaries",
            violations=[v.to_document() for v in violations],
            count=len(violations),
            fatal=self.boundaries_fatal,
        )
        if not violations:
            return
        if self.boundaries_fatal:
            raise BoundaryViolationsFatal(len(violations), [v.branch for v in violations])
        logger.warning("Found %d boundary violations (master override applied)", len(violations))

    async def check_conflicts(self) -> None:
        conflicts = []
        for branch in self._fetched():
            probe = await self.vcs.merge_tree(branch)
            if not probe.clean:
                conflicts.append(probe.to_document())

        self.state.record("check-conflicts", conflicts=conflicts, count=len(conflicts))
        logger.info("Found %d branches with potential conflicts", len(conflicts))

    async def merge(self) -> None:
        approved = [r.branch for r in self._reviews() if r.passed]
        ordered = self.orderer.order(approved)
        logger.info("Merging %d approved branches...", len(ordered))

        merged: list[dict[str, Any]] = []
        for branch in ordered:
            async with self.tracker.guard.hold(branch):
                entry = await self._merge_one(branch)
            merged.append(entry)
            await self.events.publish("branch_merged", entry)

        self.state.record("merge", order=ordered, merged=merged, count=len(merged))

    async def _merge_one(self, branch: str) -> dict[str, Any]:
        logger.info("Merging %s...", branch)
        before = await self.vcs.head()
        conflicts = await self.vcs.merge(branch, f"Master Agent: Integrated {branch}")

        entry: dict[str, Any] = {"branch": branch, "status": "success"}
        if conflicts:
            logger.info("Resolving conflicts for %s...", branch)
            resolution = await self.resolver.resolve(conflicts, branch)
            entry = {
                "branch": branch,
                "status": "merged-with-conflicts",
                "resolution": resolution.to_document(),
            }

        if self.build_after_each_merge:
            build = await self.validator.check_build()
            if build.status == "failed":
                logger.warning("Build failed after %s, rolling it back", branch)
                await self.vcs.reset_hard(before)
                entry = {"branch": branch, "status": "reverted", "error": build.error}

        return entry

    async def validate_integration(self) -> None:
        logger.info("Validating integrated codebase...")
        validation = await self.validator.run()
        self.state.record(
            "validate-integration",
            validation={name: check.to_document() for name, check in validation.items()},
        )

        failed = [name for name, check in validation.items() if check.status == "failed"]
        if not failed:
            return
        if not self.can_override:
            raise ValidationFailure(f"Validation failed: {', '.join(failed)}", failed)
        logger.warning("Validation failed for %s (override applied)", ", ".join(failed))

    async def push(self) -> None:
        build = self.state.check_status("build")
        if build is None:
            raise PushRefused("Cannot push - integration was not validated", ["build"])
        if build == "failed":
            raise PushRefused("Cannot push - build is broken", ["build"])

        logger.info("Pushing to %s/%s...", self.config.remote, self.base_branch)
        await self.vcs.checkout(self.base_branch)
        await self.vcs.pull(self.base_branch)
        conflicts = await self.vcs.merge(
            self.integration_branch, "Master Agent: Production deployment", from_remote=False
        )
        if conflicts:
            raise ConflictUnresolved(
                conflicts[0], f"{self.integration_branch} does not merge cleanly", self.base_branch
            )
        await self.vcs.push(self.base_branch)

        deleted: list[str] = []
        released: dict[str, list[str]] = {}
        for entry in self.state.result_for("merge").get("merged", []):
            if entry.get("status") == "reverted":
                continue
            branch = entry["branch"]
            async with self.tracker.guard.hold(branch):
                try:
                    await self.vcs.delete_remote_branch(branch)
                    deleted.append(branch)
                    logger.info("Deleted branch: %s", branch)
                except VcsOperationError as exc:
                    logger.warning("Could not delete %s: %s", branch, exc)
                freed = await self.tracker.mark_integrated(branch)
            if freed:
                released[branch] = freed

        self.state.record(
            "push",
            status="completed",
            branch=self.base_branch,
            deleted=deleted,
            released=released,
            timestamp=datetime.now().isoformat(),
        )

    async def rollback(self) -> None:
        """Restore the working tree and HEAD to where the run started."""
        logger.info("Rolling back changes...")
        await self.events.publish("rollback", {"target": self.state.start_commit})
        try:
            await self.vcs.abort_merge()
            await self.vcs.reset_hard("HEAD")
            await self.vcs.clean()
            start_branch = self.state.start_branch
            start_commit = self.state.start_commit
            if start_branch == "HEAD" and start_commit:
                # detached start: restore HEAD without moving any branch
                await self.vcs.checkout(start_commit)
            else:
                if start_branch and await self.vcs.current_branch() != start_branch:
                    await self.vcs.checkout(start_branch)
                if start_commit:
                    await self.vcs.reset_hard(start_commit)
        except VcsOperationError as exc:
            logger.error("Rollback failed: %s", exc)
            self.state.record("rollback", status="failed", error=str(exc))
            return
        self.state.record("rollback", status="completed", commit=self.state.start_commit)
        logger.info("Rollback completed")

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _is_agent_branch(self, branch: str) -> bool:
        if branch in (self.base_branch, self.integration_branch):
            return False
        if self.registry.for_branch(branch) is not None:
            return True
        return any(branch.startswith(p) for p in self.config.master_agent.branch_patterns)

    def _fetched(self) -> list[str]:
        return list(self.state.result_for("fetch").get("branches", []))

    def _reviews(self) -> list[BranchReview]:
        return [
            BranchReview.model_validate(r)
            for r in self.state.result_for("review").get("reviews", [])
        ]

    async def _persist(self) -> None:
        path = self.config.state_dir / "workflows" / f"{self.state.id}.json"
        write_json_atomic(path, self.state.to_document())
        await self.db.record_workflow_run(self.state)
        logger.info("Workflow state saved to: %s", path)


def summary_lines(state: WorkflowState) -> list[str]:
    """Human-readable pass/fail summary of a run."""
    branches = state.result_for("fetch").get("branches", [])
    merged = state.result_for("merge").get("merged", [])
    reviews = state.result_for("review").get("reviews", [])
    violations = state.result_for("validate-boundaries").get("violations", [])
    validation = state.result_for("validate-integration").get("validation", {})

    lines = [
        f"Workflow {state.id}: {state.status.upper()} ({state.duration()})",
        f"Reviewed {len(branches)} branch(es), merged "
        f"{sum(1 for m in merged if m.get('status') != 'reverted')}",
    ]
    for stage in STAGES:
        record = state.stages.get(stage)
        if record is None:
            continue
        line = f"  {stage}: {record.status}"
        if record.error:
            line = f"{line} - {record.error}"
        lines.append(line)
    for entry in merged:
        lines.append(f"  merged {entry['branch']}: {entry['status']}")
    failed_reviews = [r for r in reviews if not r.get("passed")]
    for review in failed_reviews:
        lines.append(f"  needs work {review['branch']}: {'; '.join(review.get('issues', []))}")
    if violations:
        lines.append(f"  boundary violations: {len(violations)}")
    for name, check in validation.items():
        lines.append(f"  {name}: {check.get('status')}")
    return lines
