from __future__ import annotations

import json
import logging
from pathlib import Path, PurePosixPath
from typing import Mapping, Sequence

from agentweave.errors import ConflictUnresolved, VcsOperationError
from agentweave.models.conflict import FileResolution, Resolution
from agentweave.services.commands import CommandRunner
from agentweave.services.vcs import VersionControlPort

logger = logging.getLogger(__name__)

# lockfile name -> command that regenerates it from the manifest next to it
DEFAULT_LOCKFILE_COMMANDS: dict[str, str] = {
    "package-lock.json": "npm install",
    "yarn.lock": "yarn install",
    "pnpm-lock.yaml": "pnpm install",
    "poetry.lock": "poetry lock",
    "Pipfile.lock": "pipenv lock",
    "Cargo.lock": "cargo generate-lockfile",
    "composer.lock": "composer update --lock",
    "Gemfile.lock": "bundle lock",
}

_OURS = 2
_THEIRS = 3


class ConflictResolver:
    """Resolves merge conflicts file by file with a per-type strategy.

    - Lockfiles: keep the local version and regenerate it with the package manager.
    - JSON objects: shallow merge, incoming keys win.
    - Everything else: the incoming branch wins.

    The heuristics know nothing about code semantics.
    """

    def __init__(
        self,
        vcs: VersionControlPort,
        runner: CommandRunner,
        project_path: Path,
        lockfile_commands: Mapping[str, str] | None = None,
        command_timeout: float | None = 900,
    ):
        self.vcs = vcs
        self.runner = runner
        self.project_path = Path(project_path)
        self.lockfile_commands = {**DEFAULT_LOCKFILE_COMMANDS, **(lockfile_commands or {})}
        self.command_timeout = command_timeout

    def strategy_for(self, path: str) -> str:
        name = PurePosixPath(path).name
        if name in self.lockfile_commands:
            return "lockfile-regenerated"
        if name.endswith(".json"):
            return "json-shallow-merge"
        return "theirs"

    async def resolve(self, conflicted_files: Sequence[str], branch: str | None = None) -> Resolution:
        """Resolve and stage every conflicted file, then commit the merge."""
        resolution = Resolution(branch=branch)

        # lockfiles last: they are regenerated from the already-resolved manifests
        ordered = sorted(
            conflicted_files, key=lambda p: self.strategy_for(p) == "lockfile-regenerated"
        )
        for path in ordered:
            strategy = self.strategy_for(path)
            logger.info("Resolving %s with strategy %s", path, strategy)
            try:
                if strategy == "lockfile-regenerated":
                    item = await self._regenerate_lockfile(path)
                elif strategy == "json-shallow-merge":
                    item = await self._merge_json(path)
                else:
                    item = await self._take_theirs(path)
            except VcsOperationError as exc:
                raise ConflictUnresolved(path, str(exc), branch) from exc
            resolution.files.append(item)

        remaining = await self.vcs.conflicted_files()
        if remaining:
            raise ConflictUnresolved(remaining[0], "still conflicted after resolution", branch)

        await self.vcs.commit(resolution.commit_message())
        logger.info("Committed resolution of %d file(s)", len(resolution.files))
        return resolution

    # ------------------------------------------------------------------
    # Strategies
    # ------------------------------------------------------------------

    async def _regenerate_lockfile(self, path: str) -> FileResolution:
        await self.vcs.checkout_side(path, "ours")
        command = self.lockfile_commands[PurePosixPath(path).name]
        cwd = self.project_path / PurePosixPath(path).parent
        result = await self.runner.run(command, cwd=cwd, timeout=self.command_timeout)

        note = None
        if not result.ok:
            logger.warning(
                "Could not regenerate %s with '%s' (exit %d); keeping local version",
                path,
                command,
                result.returncode,
            )
            await self.vcs.checkout_side(path, "ours")
            note = f"'{command}' failed, kept local version"

        await self.vcs.add([path])
        return FileResolution(path=path, strategy="lockfile-regenerated", note=note)

    async def _merge_json(self, path: str) -> FileResolution:
        ours_text = await self.vcs.show_stage(path, _OURS)
        theirs_text = await self.vcs.show_stage(path, _THEIRS)
        if ours_text is None or theirs_text is None:
            return await self._take_theirs(path, note="one side missing")

        try:
            ours = json.loads(ours_text)
            theirs = json.loads(theirs_text)
        except ValueError:
            return await self._take_theirs(path, note="unparseable JSON")

        if not isinstance(ours, dict) or not isinstance(theirs, dict):
            return await self._take_theirs(path, note="not a JSON object")

        merged = {**ours, **theirs}
        target = self.project_path / path
        target.write_text(json.dumps(merged, indent=2) + "\n")
        await self.vcs.add([path])
        return FileResolution(path=path, strategy="json-shallow-merge")

    async def _take_theirs(self, path: str, note: str | None = None) -> FileResolution:
        if await self.vcs.show_stage(path, _THEIRS) is None:
            await self.vcs.remove(path)
            return FileResolution(path=path, strategy="theirs", note="deleted by incoming branch")

        await self.vcs.checkout_side(path, "theirs")
        await self.vcs.add([path])
        return FileResolution(path=path, strategy="theirs", note=note)
