from __future__ import annotations

import json
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Sequence

import pytest

from agentweave.db.database import Database
from agentweave.errors import VcsOperationError
from agentweave.models.conflict import MergeProbe
from agentweave.services.boundary import BoundaryEnforcer
from agentweave.services.branch_tracker import BranchTracker
from agentweave.services.commands import CommandResult
from agentweave.services.conflict_resolver import ConflictResolver
from agentweave.services.event_bus import EventBus
from agentweave.services.pipeline import IntegrationPipeline
from agentweave.services.registry import AgentRegistry
from agentweave.services.validators import IntegrationValidator
from agentweave.utils.config import Config, load_config

AGENTS = {
    "database": {"model": "claude-sonnet-4", "workingPaths": ["db/", "migrations/"]},
    "backend": {
        "model": "claude-sonnet-4",
        "workingPaths": ["src/server/", "src/shared/"],
        "excludePaths": ["src/shared/generated/"],
    },
    "frontend": {
        "model": "claude-sonnet-4",
        "name": "Frontend Agent",
        "workingPaths": ["src/client/", "**/*.css"],
    },
    "testing": {"model": "claude-sonnet-4", "workingPaths": ["tests/", "**/*.test.ts"]},
}


def _deep_merge(base: dict, extra: dict) -> dict:
    merged = dict(base)
    for key, value in extra.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


class FakeVcs:
    """In-memory VersionControlPort.

    Remote branches carry the files they change. Every call is recorded in
    ``calls``; put an exception in ``failures[<method>]`` to make it raise.
    """

    def __init__(self) -> None:
        self.branch = "main"
        self.commit_id = "c0"
        self.clean_tree = True
        self.remote: dict[str, dict[str, Any]] = {}
        self.local_branches: set[str] = {"main"}
        self.merge_conflicts: dict[str, list[str]] = {}
        self.pending_conflicts: list[str] = []
        self.stages: dict[tuple[str, int], str] = {}
        self.changed_since: list[str] = []
        self.failures: dict[str, Exception] = {}
        self.calls: list[tuple] = []
        self.merged: list[str] = []
        self.pushed: list[str] = []
        self.deleted: list[str] = []
        self.commits: list[str] = []
        self.stash_entries = 0
        self._counter = 0

    def add_remote_branch(
        self, name: str, files: Sequence[str], committed_at: datetime | None = None
    ) -> None:
        self.remote[name] = {"files": list(files), "time": committed_at or datetime.now()}

    def called(self, name: str) -> list[tuple]:
        return [call for call in self.calls if call[0] == name]

    def _record(self, name: str, *args: Any) -> None:
        self.calls.append((name, *args))
        if name in self.failures:
            raise self.failures[name]

    def _advance(self) -> str:
        self._counter += 1
        self.commit_id = f"c{self._counter}"
        return self.commit_id

    # --- queries ---

    async def current_branch(self) -> str:
        return self.branch

    async def head(self) -> str:
        return self.commit_id

    async def is_clean(self) -> bool:
        return self.clean_tree

    async def list_remote_branches(self) -> list[str]:
        return ["main", *self.remote]

    async def last_commit_time(self, branch: str) -> datetime:
        return self.remote[branch]["time"]

    async def changed_files(self, base: str, branch: str) -> list[str]:
        self._record("changed_files", base, branch)
        return list(self.remote[branch]["files"])

    async def conflicted_files(self) -> list[str]:
        return list(self.pending_conflicts)

    async def show_stage(self, path: str, stage: int) -> str | None:
        return self.stages.get((path, stage))

    async def files_changed_since(self, ref: str) -> list[str]:
        self._record("files_changed_since", ref)
        return list(self.changed_since)

    # --- branches ---

    async def checkout(self, branch: str) -> None:
        self._record("checkout", branch)
        self.branch = branch

    async def create_branch(self, branch: str, start_point: str) -> None:
        self._record("create_branch", branch, start_point)
        self.local_branches.add(branch)
        self.branch = branch

    async def reset_branch(self, branch: str, start_point: str) -> None:
        self._record("reset_branch", branch, start_point)
        self.local_branches.add(branch)
        self.branch = branch

    async def pull(self, branch: str) -> None:
        self._record("pull", branch)

    async def fetch(self, prune: bool = True) -> None:
        self._record("fetch", prune)

    async def push(self, branch: str, set_upstream: bool = False) -> None:
        self._record("push", branch, set_upstream)
        self.pushed.append(branch)

    async def delete_remote_branch(self, branch: str) -> None:
        self._record("delete_remote_branch", branch)
        self.remote.pop(branch, None)
        self.deleted.append(branch)

    async def rebase(self, onto: str) -> None:
        self._record("rebase", onto)

    async def abort_rebase(self) -> None:
        self._record("abort_rebase")

    async def stash(self) -> bool:
        self._record("stash")
        if self.clean_tree:
            return False
        self.stash_entries += 1
        return True

    async def stash_pop(self) -> None:
        self._record("stash_pop")
        self.stash_entries -= 1

    # --- merge ---

    async def merge_tree(self, branch: str) -> MergeProbe:
        self._record("merge_tree", branch)
        conflicts = self.merge_conflicts.get(branch, [])
        return MergeProbe(branch=branch, clean=not conflicts, conflicts=conflicts)

    async def merge(self, branch: str, message: str, *, from_remote: bool = True) -> list[str]:
        self._record("merge", branch, message, from_remote)
        conflicts = self.merge_conflicts.get(branch, [])
        self.merged.append(branch)
        if conflicts:
            self.pending_conflicts = list(conflicts)
            return list(conflicts)
        self._advance()
        return []

    async def abort_merge(self) -> None:
        self._record("abort_merge")
        self.pending_conflicts = []

    async def checkout_side(self, path: str, side: str) -> None:
        self._record("checkout_side", path, side)

    async def add(self, paths: Sequence[str]) -> None:
        self._record("add", list(paths))
        self.pending_conflicts = [p for p in self.pending_conflicts if p not in paths]

    async def remove(self, path: str) -> None:
        self._record("remove", path)
        self.pending_conflicts = [p for p in self.pending_conflicts if p != path]

    async def commit(self, message: str, stage_all: bool = False) -> bool:
        self._record("commit", message, stage_all)
        self.commits.append(message)
        self._advance()
        return True

    async def reset_hard(self, ref: str = "HEAD") -> None:
        self._record("reset_hard", ref)
        if ref != "HEAD":
            self.commit_id = ref

    async def clean(self) -> None:
        self._record("clean")

    async def create_pull_request(self, base: str, head: str, title: str, body: str) -> str:
        self._record("create_pull_request", base, head, title)
        return f"https://example.test/pull/{head}"


class FakeRunner:
    """CommandRunner returning canned results; every command succeeds by default."""

    def __init__(self) -> None:
        self.results: dict[str, CommandResult] = {}
        self.calls: list[tuple[str, Path | None]] = []
        # optional per-call override; returning None falls back to ``results``
        self.hook: Callable[[str], CommandResult | None] | None = None

    def fail(self, command: str, returncode: int = 1, stderr: str = "boom") -> None:
        self.results[command] = CommandResult(command.split(), returncode, "", stderr)

    async def run(self, command, cwd=None, timeout=None) -> CommandResult:
        key = command if isinstance(command, str) else " ".join(command)
        self.calls.append((key, cwd))
        if self.hook is not None:
            result = self.hook(key)
            if result is not None:
                return result
        return self.results.get(key, CommandResult(key.split(), 0, "ok", ""))

    def commands(self) -> list[str]:
        return [command for command, _ in self.calls]


@pytest.fixture
def project(tmp_path: Path) -> Path:
    path = tmp_path / "project"
    path.mkdir()
    return path


@pytest.fixture
def config_factory(tmp_path: Path, project: Path) -> Callable[..., Config]:
    def _make(overrides: dict | None = None) -> Config:
        document = {"projectPath": "project", "agents": {"definitions": AGENTS}}
        document = _deep_merge(document, overrides or {})
        path = tmp_path / "agent-orchestrator.config.json"
        path.write_text(json.dumps(document))
        return load_config(path)

    return _make


@pytest.fixture
def config(config_factory: Callable[..., Config]) -> Config:
    return config_factory()


@pytest.fixture
async def db(tmp_path: Path) -> Database:
    database = Database(tmp_path / "test.db")
    await database.initialize()
    yield database  # type: ignore[misc]
    await database.close()


@pytest.fixture
def vcs() -> FakeVcs:
    return FakeVcs()


@pytest.fixture
def runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def registry(config: Config) -> AgentRegistry:
    return AgentRegistry(config)


@pytest.fixture
def enforcer(registry: AgentRegistry, config: Config, db: Database) -> BoundaryEnforcer:
    return BoundaryEnforcer(registry, config.lock_file, db, config.project_path)


@pytest.fixture
def tracker(
    config: Config,
    registry: AgentRegistry,
    enforcer: BoundaryEnforcer,
    vcs: FakeVcs,
    db: Database,
) -> BranchTracker:
    return BranchTracker(config, registry, enforcer, vcs, db)


@pytest.fixture
def event_bus() -> EventBus:
    return EventBus()


@pytest.fixture
def pipeline_factory(
    registry: AgentRegistry,
    enforcer: BoundaryEnforcer,
    tracker: BranchTracker,
    vcs: FakeVcs,
    runner: FakeRunner,
    db: Database,
    event_bus: EventBus,
) -> Callable[..., IntegrationPipeline]:
    def _make(config: Config, boundaries_fatal: bool | None = None) -> IntegrationPipeline:
        return IntegrationPipeline(
            config,
            registry,
            enforcer,
            tracker,
            vcs,
            db,
            resolver=ConflictResolver(vcs, runner, config.project_path),
            validator=IntegrationValidator(vcs, runner, config.validation, config.project_path),
            events=event_bus,
            boundaries_fatal=boundaries_fatal,
        )

    return _make


@pytest.fixture
def vcs_error() -> VcsOperationError:
    return VcsOperationError("git failed", command=["git"], returncode=1, stderr="fatal: nope")
