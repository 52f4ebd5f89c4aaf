from __future__ import annotations


class CoordinationError(Exception):
    """Base class for every error the coordination layer raises."""


class ConfigError(CoordinationError):
    """Configuration is missing or invalid. Raised before any work starts."""


class AgentNotFound(CoordinationError):
    def __init__(self, role: str):
        super().__init__(f"Agent configuration for '{role}' not found")
        self.role = role


class AgentBusy(CoordinationError):
    def __init__(self, role: str, branch: str):
        super().__init__(f"Agent '{role}' already has an active task on {branch}")
        self.role = role
        self.branch = branch


class BoundaryError(CoordinationError):
    """An agent tried to write a path outside its boundary."""

    def __init__(self, role: str, path: str):
        super().__init__(f"Agent '{role}' may not modify {path}")
        self.role = role
        self.path = path


class VcsOperationError(CoordinationError):
    """A version-control command failed."""

    def __init__(
        self,
        message: str,
        *,
        command: list[str] | None = None,
        returncode: int | None = None,
        stderr: str = "",
        branch: str | None = None,
    ):
        super().__init__(message)
        self.command = command or []
        self.returncode = returncode
        self.stderr = stderr
        self.branch = branch

    def __str__(self) -> str:
        text = super().__str__()
        if self.stderr:
            text = f"{text}: {self.stderr.strip()}"
        return text


class BranchCreationError(VcsOperationError):
    pass


class SyncError(VcsOperationError):
    pass


class ConflictUnresolved(CoordinationError):
    def __init__(self, path: str, reason: str, branch: str | None = None):
        where = f" while merging {branch}" if branch else ""
        super().__init__(f"Could not resolve conflict in {path}{where}: {reason}")
        self.path = path
        self.branch = branch


class ValidationFailure(CoordinationError):
    """Build, test or lint checks failed on the integrated tree."""

    def __init__(self, message: str, failed_checks: list[str] | None = None):
        super().__init__(message)
        self.failed_checks = failed_checks or []


class PushRefused(ValidationFailure):
    """The push stage will not run on a tree whose build is broken."""


class StageError(CoordinationError):
    """A pipeline stage failed. Wraps the original cause."""

    def __init__(self, stage: str, cause: BaseException):
        super().__init__(f"Stage '{stage}' failed: {cause}")
        self.stage = stage
        self.cause = cause


class CodeGenerationError(CoordinationError):
    pass


class BoundaryViolationsFatal(CoordinationError):
    """Boundary violations were found and policy makes them fatal."""

    def __init__(self, count: int, branches: list[str]):
        super().__init__(
            f"{count} boundary violation(s) on {', '.join(sorted(set(branches)))}"
        )
        self.count = count
        self.branches = branches
