from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path
from typing import Literal, Protocol, Sequence

from agentweave.errors import VcsOperationError
from agentweave.models.conflict import MergeProbe
from agentweave.services.commands import CommandResult, SubprocessRunner

logger = logging.getLogger(__name__)

Side = Literal["ours", "theirs"]


class VersionControlPort(Protocol):
    """The narrow set of version-control operations the coordinator needs.

    Branch arguments name agent branches without the remote prefix; methods
    that read agent work (``changed_files``, ``merge_tree``, ``merge``) use
    the remote-tracking ref unless told otherwise.
    """

    async def current_branch(self) -> str: ...
    async def head(self) -> str: ...
    async def is_clean(self) -> bool: ...
    async def checkout(self, branch: str) -> None: ...
    async def create_branch(self, branch: str, start_point: str) -> None: ...
    async def reset_branch(self, branch: str, start_point: str) -> None: ...
    async def pull(self, branch: str) -> None: ...
    async def fetch(self, prune: bool = True) -> None: ...
    async def list_remote_branches(self) -> list[str]: ...
    async def last_commit_time(self, branch: str) -> datetime: ...
    async def changed_files(self, base: str, branch: str) -> list[str]: ...
    async def rebase(self, onto: str) -> None: ...
    async def abort_rebase(self) -> None: ...
    async def stash(self) -> bool: ...
    async def stash_pop(self) -> None: ...
    async def merge_tree(self, branch: str) -> MergeProbe: ...
    async def merge(self, branch: str, message: str, *, from_remote: bool = True) -> list[str]: ...
    async def abort_merge(self) -> None: ...
    async def conflicted_files(self) -> list[str]: ...
    async def show_stage(self, path: str, stage: int) -> str | None: ...
    async def checkout_side(self, path: str, side: Side) -> None: ...
    async def add(self, paths: Sequence[str]) -> None: ...
    async def remove(self, path: str) -> None: ...
    async def commit(self, message: str, stage_all: bool = False) -> bool: ...
    async def push(self, branch: str, set_upstream: bool = False) -> None: ...
    async def delete_remote_branch(self, branch: str) -> None: ...
    async def reset_hard(self, ref: str = "HEAD") -> None: ...
    async def clean(self) -> None: ...
    async def files_changed_since(self, ref: str) -> list[str]: ...
    async def create_pull_request(self, base: str, head: str, title: str, body: str) -> str: ...


def _lines(text: str) -> list[str]:
    return [line.strip() for line in text.splitlines() if line.strip()]


class GitVcs:
    """VersionControlPort backed by the git and gh command-line tools.

    Requires git 2.38+ for ``merge-tree --write-tree``.
    """

    def __init__(self, repo_path: Path, remote: str = "origin"):
        self.repo_path = Path(repo_path)
        self.remote = remote
        self._runner = SubprocessRunner()

    def remote_ref(self, branch: str) -> str:
        return f"{self.remote}/{branch}"

    async def _git(self, *args: str, check: bool = True, branch: str | None = None) -> CommandResult:
        result = await self._runner.run(["git", *args], cwd=self.repo_path)
        if check and not result.ok:
            logger.error("git %s failed (%d): %s", " ".join(args), result.returncode, result.stderr.strip())
            raise VcsOperationError(
                f"git {args[0]} failed",
                command=result.command,
                returncode=result.returncode,
                stderr=result.stderr,
                branch=branch,
            )
        return result

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    async def current_branch(self) -> str:
        return (await self._git("rev-parse", "--abbrev-ref", "HEAD")).stdout.strip()

    async def head(self) -> str:
        return (await self._git("rev-parse", "HEAD")).stdout.strip()

    async def is_clean(self) -> bool:
        return not (await self._git("status", "--porcelain")).stdout.strip()

    async def list_remote_branches(self) -> list[str]:
        result = await self._git(
            "for-each-ref", "--format=%(refname:short)", f"refs/remotes/{self.remote}"
        )
        prefix = f"{self.remote}/"
        branches = []
        for name in _lines(result.stdout):
            if not name.startswith(prefix):
                continue
            short = name[len(prefix):]
            if short != "HEAD":
                branches.append(short)
        return branches

    async def last_commit_time(self, branch: str) -> datetime:
        result = await self._git("log", "-1", "--format=%ct", self.remote_ref(branch), branch=branch)
        return datetime.fromtimestamp(int(result.stdout.strip()))

    async def changed_files(self, base: str, branch: str) -> list[str]:
        result = await self._git(
            "diff", "--name-only", f"{base}...{self.remote_ref(branch)}", branch=branch
        )
        return _lines(result.stdout)

    async def conflicted_files(self) -> list[str]:
        result = await self._git("diff", "--name-only", "--diff-filter=U")
        return _lines(result.stdout)

    async def show_stage(self, path: str, stage: int) -> str | None:
        result = await self._git("show", f":{stage}:{path}", check=False)
        return result.stdout if result.ok else None

    async def files_changed_since(self, ref: str) -> list[str]:
        result = await self._git("diff", "--name-only", ref)
        return _lines(result.stdout)

    async def _has_ref(self, ref: str) -> str | None:
        result = await self._git("rev-parse", "-q", "--verify", ref, check=False)
        return result.stdout.strip() if result.ok else None

    async def _git_path_exists(self, name: str) -> bool:
        result = await self._git("rev-parse", "--git-path", name)
        path = Path(result.stdout.strip())
        if not path.is_absolute():
            path = self.repo_path / path
        return path.exists()

    # ------------------------------------------------------------------
    # Branches
    # ------------------------------------------------------------------

    async def checkout(self, branch: str) -> None:
        await self._git("checkout", branch, branch=branch)

    async def create_branch(self, branch: str, start_point: str) -> None:
        await self._git("checkout", "-b", branch, start_point, branch=branch)

    async def reset_branch(self, branch: str, start_point: str) -> None:
        await self._git("checkout", "-B", branch, start_point, branch=branch)

    async def pull(self, branch: str) -> None:
        await self._git("pull", self.remote, branch, branch=branch)

    async def fetch(self, prune: bool = True) -> None:
        args = ["fetch", self.remote]
        if prune:
            args.append("--prune")
        await self._git(*args)

    async def push(self, branch: str, set_upstream: bool = False) -> None:
        args = ["push"]
        if set_upstream:
            args.append("-u")
        await self._git(*args, self.remote, branch, branch=branch)

    async def delete_remote_branch(self, branch: str) -> None:
        await self._git("push", self.remote, "--delete", branch, branch=branch)

    # ------------------------------------------------------------------
    # Rebase / stash
    # ------------------------------------------------------------------

    async def rebase(self, onto: str) -> None:
        await self._git("rebase", onto)

    async def abort_rebase(self) -> None:
        if await self._git_path_exists("rebase-merge") or await self._git_path_exists("rebase-apply"):
            await self._git("rebase", "--abort")

    async def stash(self) -> bool:
        before = await self._has_ref("refs/stash")
        await self._git("stash", "push", "--include-untracked", "-m", "agentweave-sync")
        after = await self._has_ref("refs/stash")
        return after is not None and after != before

    async def stash_pop(self) -> None:
        await self._git("stash", "pop")

    # ------------------------------------------------------------------
    # Merge
    # ------------------------------------------------------------------

    async def merge_tree(self, branch: str) -> MergeProbe:
        """Dry-run merge of ``branch`` into HEAD; the working tree is untouched."""
        result = await self._git(
            "merge-tree",
            "--write-tree",
            "--name-only",
            "--no-messages",
            "HEAD",
            self.remote_ref(branch),
            check=False,
        )
        if result.returncode == 0:
            return MergeProbe(branch=branch, clean=True)
        if result.returncode == 1:
            names = _lines(result.stdout)[1:]
            conflicts = list(dict.fromkeys(names))
            return MergeProbe(branch=branch, clean=False, conflicts=conflicts)
        raise VcsOperationError(
            "git merge-tree failed",
            command=result.command,
            returncode=result.returncode,
            stderr=result.stderr,
            branch=branch,
        )

    async def merge(self, branch: str, message: str, *, from_remote: bool = True) -> list[str]:
        """Merge ``branch`` with ``--no-ff``. Returns conflicted paths, empty on success."""
        ref = self.remote_ref(branch) if from_remote else branch
        result = await self._git("merge", "--no-ff", "-m", message, ref, check=False)
        if result.ok:
            return []
        conflicts = await self.conflicted_files()
        if conflicts:
            return conflicts
        raise VcsOperationError(
            f"git merge of {ref} failed",
            command=result.command,
            returncode=result.returncode,
            stderr=result.stderr or result.stdout,
            branch=branch,
        )

    async def abort_merge(self) -> None:
        if await self._has_ref("MERGE_HEAD"):
            await self._git("merge", "--abort")

    async def checkout_side(self, path: str, side: Side) -> None:
        await self._git("checkout", f"--{side}", "--", path)

    async def add(self, paths: Sequence[str]) -> None:
        if paths:
            await self._git("add", "--", *paths)

    async def remove(self, path: str) -> None:
        await self._git("rm", "--quiet", "--", path)

    async def commit(self, message: str, stage_all: bool = False) -> bool:
        """Commit the index. Returns False when there is nothing to commit."""
        if stage_all:
            await self._git("add", "-A")
        merging = await self._has_ref("MERGE_HEAD") is not None
        if not merging:
            staged = await self._git("diff", "--cached", "--quiet", check=False)
            if staged.returncode == 0:
                return False
        await self._git("commit", "-m", message)
        return True

    # ------------------------------------------------------------------
    # Recovery
    # ------------------------------------------------------------------

    async def reset_hard(self, ref: str = "HEAD") -> None:
        await self._git("reset", "--hard", ref)

    async def clean(self) -> None:
        await self._git("clean", "-fd")

    # ------------------------------------------------------------------
    # Hosting
    # ------------------------------------------------------------------

    async def create_pull_request(self, base: str, head: str, title: str, body: str) -> str:
        result = await self._runner.run(
            ["gh", "pr", "create", "--base", base, "--head", head, "--title", title, "--body", body],
            cwd=self.repo_path,
        )
        if not result.ok:
            raise VcsOperationError(
                "gh pr create failed",
                command=result.command,
                returncode=result.returncode,
                stderr=result.stderr,
                branch=head,
            )
        return result.stdout.strip()
