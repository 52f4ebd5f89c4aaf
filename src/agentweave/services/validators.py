from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Iterable, Protocol, Sequence

from agentweave.errors import VcsOperationError
from agentweave.models.workflow import CheckResult
from agentweave.services.commands import CommandRunner
from agentweave.services.vcs import VersionControlPort
from agentweave.utils.config import ValidationSection

logger = logging.getLogger(__name__)


class Linter(Protocol):
    """Pluggable content check run over files touched by the integration."""

    name: str

    def applies_to(self, path: str) -> bool: ...

    def scan(self, path: str, content: str) -> list[str]: ...


class SecretPatternLinter:
    """Flags lines that look like hard-coded credentials."""

    name = "secrets"

    PATTERNS: list[tuple[str, re.Pattern[str]]] = [
        ("possible API key", re.compile(r"api[_-]?key.*=.*[\"'][\w-]+[\"']", re.IGNORECASE)),
        ("possible AWS access key", re.compile(r"AKIA[0-9A-Z]{16}")),
        ("private key material", re.compile(r"-----BEGIN (?:RSA |EC |OPENSSH |DSA )?PRIVATE KEY-----")),
        ("possible password", re.compile(r"password\s*[:=]\s*[\"'][^\"']{4,}[\"']", re.IGNORECASE)),
    ]

    def __init__(self, extensions: Iterable[str] | None = None):
        self.extensions = tuple(extensions) if extensions else ()

    def applies_to(self, path: str) -> bool:
        if not self.extensions:
            return True
        return path.endswith(self.extensions)

    def scan(self, path: str, content: str) -> list[str]:
        issues: list[str] = []
        for lineno, line in enumerate(content.splitlines(), start=1):
            for label, pattern in self.PATTERNS:
                if pattern.search(line):
                    issues.append(f"{path}:{lineno}: {label}")
                    break
        return issues


class IntegrationValidator:
    """Runs build, tests, lint and content scans on the integrated tree."""

    def __init__(
        self,
        vcs: VersionControlPort,
        runner: CommandRunner,
        settings: ValidationSection,
        project_path: Path,
        linters: Sequence[Linter] | None = None,
    ):
        self.vcs = vcs
        self.runner = runner
        self.settings = settings
        self.project_path = Path(project_path)
        self.linters = list(linters) if linters is not None else [
            SecretPatternLinter(settings.secret_scan_extensions)
        ]

    async def run(self) -> dict[str, CheckResult]:
        validation = {
            "build": await self.check_build(),
            "tests": await self._command_check(self.settings.tests, failure="failed"),
            "lint": await self._command_check(self.settings.lint, failure="warning"),
            "security": await self._scan(),
        }
        for name, result in validation.items():
            logger.info("  %s: %s", name, result.status)
        return validation

    async def check_build(self) -> CheckResult:
        return await self._command_check(self.settings.build, failure="failed")

    async def _command_check(self, command: str | None, failure: str) -> CheckResult:
        if not command:
            return CheckResult(status="skipped")
        result = await self.runner.run(
            command, cwd=self.project_path, timeout=self.settings.timeout_seconds
        )
        if result.ok:
            return CheckResult(status="passed", output=result.tail())
        return CheckResult(
            status=failure,
            output=result.tail(),
            error=f"'{command}' exited with {result.returncode}",
        )

    async def _scan(self) -> CheckResult:
        try:
            files = await self.vcs.files_changed_since("HEAD~1")
        except VcsOperationError as exc:
            logger.info("Skipping content scan: %s", exc)
            return CheckResult(status="skipped", error=str(exc))

        issues: list[str] = []
        for path in files:
            linters = [linter for linter in self.linters if linter.applies_to(path)]
            if not linters:
                continue
            target = self.project_path / path
            if not target.is_file():
                continue
            try:
                content = target.read_text()
            except (OSError, UnicodeDecodeError):
                continue
            for linter in linters:
                issues.extend(linter.scan(path, content))

        return CheckResult(status="warning" if issues else "passed", issues=issues)
