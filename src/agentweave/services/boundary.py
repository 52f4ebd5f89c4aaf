from __future__ import annotations

import asyncio
import fnmatch
import logging
from datetime import datetime
from pathlib import Path, PurePosixPath
from typing import Iterable

from agentweave.db.database import Database
from agentweave.models.agent import AgentDefinition
from agentweave.models.lock import FileLock
from agentweave.models.review import BoundaryViolation, BranchReview
from agentweave.services.registry import AgentRegistry
from agentweave.services.state_store import JsonDocument

logger = logging.getLogger(__name__)

_GLOB_CHARS = set("*?[")


def normalize_path(path: str | Path, project_path: Path | None = None) -> str:
    """Repository-relative POSIX form of ``path``."""
    raw = str(path).replace("\\", "/")
    candidate = Path(raw)
    if candidate.is_absolute() and project_path is not None:
        try:
            raw = candidate.relative_to(project_path).as_posix()
        except ValueError:
            pass
    while raw.startswith("./"):
        raw = raw[2:]
    return str(PurePosixPath(raw)) if raw else raw


def path_matches(path: str, pattern: str) -> bool:
    """Prefix match of ``path`` against a boundary pattern.

    ``**/`` markers are stripped and the rest is treated as a prefix. A pattern
    that began with ``**/`` may also match at any directory boundary. Whatever
    still carries glob characters after stripping is matched with fnmatch.
    """
    anywhere = pattern.startswith("**/")
    stem = pattern.replace("**/", "")
    if stem.endswith("/**"):
        stem = stem[:-2]
    elif stem == "**":
        return True

    if _GLOB_CHARS & set(stem):
        return fnmatch.fnmatch(path, stem) or (
            anywhere and fnmatch.fnmatch(PurePosixPath(path).name, stem)
        )

    if path.startswith(stem):
        return True
    return anywhere and ("/" + stem) in ("/" + path)


def _matches_any(path: str, patterns: Iterable[str]) -> bool:
    return any(path_matches(path, pattern) for pattern in patterns)


def within_boundary(definition: AgentDefinition, path: str) -> bool:
    return _matches_any(path, definition.working_paths) and not _matches_any(
        path, definition.exclude_paths
    )


class BoundaryEnforcer:
    """Decides which agent may write which path and owns the lock table.

    Design:
    - Lock table persisted as a JSON document (``path -> FileLock``).
    - Every mutation re-reads the document inside a single-writer critical
      section: an asyncio.Lock in this process plus a file lock across
      processes, so concurrent coordinators never lose an update.
    - Lock changes are appended to the audit log.
    """

    def __init__(
        self,
        registry: AgentRegistry,
        lock_file: Path,
        db: Database,
        project_path: Path | None = None,
    ):
        self.registry = registry
        self.db = db
        self.project_path = project_path
        self._document = JsonDocument(lock_file)
        self._mu = asyncio.Lock()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def can_access(self, role: str, path: str | Path) -> bool:
        """True iff ``role`` may write ``path`` right now."""
        definition = self.registry.find(role)
        if definition is None:
            return False
        relative = normalize_path(path, self.project_path)
        table = await self._load()
        return self._accessible(definition, relative, table)

    async def lock(self, role: str, paths: Iterable[str | Path]) -> list[str]:
        """Lock every accessible path for ``role``; return the ones locked.

        Paths outside the boundary or held by another agent are skipped.
        """
        definition = self.registry.find(role)
        if definition is None:
            logger.warning("Lock request from unknown agent %s ignored", role)
            return []

        locked: list[str] = []
        async with self._mu:
            async with self._document.transaction() as raw:
                table = self._parse(raw)
                for path in paths:
                    relative = normalize_path(path, self.project_path)
                    if not self._accessible(definition, relative, table):
                        logger.debug("Skipping lock on %s for %s", relative, role)
                        continue
                    if relative not in table:
                        table[relative] = FileLock(
                            path=relative, owner=role, locked_at=datetime.now()
                        )
                    locked.append(relative)
                raw.clear()
                raw.update(self._dump(table))

        if locked:
            await self.db.log_event("lock_acquired", role, {"files": locked})
            logger.info("Locked %d file(s) for %s", len(locked), role)
        return locked

    async def unlock(self, role: str) -> list[str]:
        """Release every lock held by ``role``. Unlocking nothing is a no-op."""
        async with self._mu:
            async with self._document.transaction() as raw:
                table = self._parse(raw)
                released = [path for path, lock in table.items() if lock.owner == role]
                for path in released:
                    del table[path]
                raw.clear()
                raw.update(self._dump(table))

        if released:
            await self.db.log_event("lock_released", role, {"files": released})
            logger.info("Released %d lock(s) for %s", len(released), role)
        return released

    async def locks(self) -> dict[str, FileLock]:
        return await self._load()

    async def locks_for(self, role: str) -> list[str]:
        return sorted(path for path, lock in (await self._load()).items() if lock.owner == role)

    def validate_boundaries(self, review: BranchReview) -> list[BoundaryViolation]:
        """Files on ``review.branch`` that its owning agent may not touch."""
        definition = self.registry.for_branch(review.branch)
        if definition is None:
            return []

        violations: list[BoundaryViolation] = []
        for file in review.files:
            relative = normalize_path(file)
            allowed = _matches_any(relative, definition.working_paths)
            excluded = _matches_any(relative, definition.exclude_paths)
            if not allowed or excluded:
                violations.append(
                    BoundaryViolation(
                        branch=review.branch,
                        agent=definition.role,
                        file=relative,
                        kind="not-allowed" if not allowed else "excluded",
                    )
                )
        return violations

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _accessible(
        definition: AgentDefinition, relative: str, table: dict[str, FileLock]
    ) -> bool:
        if not within_boundary(definition, relative):
            return False
        holder = table.get(relative)
        return holder is None or holder.owner == definition.role

    async def _load(self) -> dict[str, FileLock]:
        return self._parse(await self._document.read())

    @staticmethod
    def _parse(raw: dict) -> dict[str, FileLock]:
        return {path: FileLock.model_validate(entry) for path, entry in raw.items()}

    @staticmethod
    def _dump(table: dict[str, FileLock]) -> dict:
        return {path: lock.to_document() for path, lock in table.items()}
