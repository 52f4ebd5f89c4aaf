from __future__ import annotations

import asyncio
import logging
import shlex
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol, Sequence

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CommandResult:
    command: list[str]
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    def tail(self, limit: int = 500) -> str:
        """Last ``limit`` characters of combined output, for audit records."""
        text = (self.stdout + ("\n" + self.stderr if self.stderr else "")).strip()
        return text[-limit:]


class CommandRunner(Protocol):
    async def run(
        self,
        command: str | Sequence[str],
        cwd: Path | None = None,
        timeout: float | None = None,
    ) -> CommandResult: ...


class SubprocessRunner:
    """Runs build, test, lint and package-manager commands as subprocesses."""

    async def run(
        self,
        command: str | Sequence[str],
        cwd: Path | None = None,
        timeout: float | None = None,
    ) -> CommandResult:
        argv = shlex.split(command) if isinstance(command, str) else list(command)
        logger.debug("Running %s in %s", argv, cwd or ".")
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                cwd=str(cwd) if cwd else None,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            return CommandResult(argv, 127, "", str(exc))

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            return CommandResult(argv, -1, "", f"Timed out after {timeout}s")

        return CommandResult(
            argv,
            proc.returncode if proc.returncode is not None else -1,
            stdout.decode(errors="replace"),
            stderr.decode(errors="replace"),
        )
