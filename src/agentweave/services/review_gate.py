from __future__ import annotations

import logging
import re
from pathlib import PurePosixPath

from agentweave.models.review import BranchReview
from agentweave.services.vcs import VersionControlPort
from agentweave.utils.config import ReviewStandards

logger = logging.getLogger(__name__)

_TEST_NAME = re.compile(r"(\.test\.|\.spec\.|^test_.*\.py$|_test\.[A-Za-z0-9]+$)")
_TEST_DIRS = {"tests", "test", "__tests__", "spec"}


def is_test_file(path: str) -> bool:
    posix = PurePosixPath(path)
    if _TEST_NAME.search(posix.name):
        return True
    return any(part in _TEST_DIRS for part in posix.parts[:-1])


def is_doc_file(path: str) -> bool:
    lowered = path.lower()
    name = PurePosixPath(lowered).name
    return (
        name.startswith("readme")
        or lowered.endswith((".md", ".rst"))
        or "doc" in lowered
    )


class ReviewGate:
    """Checks a branch's changeset against the code-review standards.

    Policy violations are recorded as issues on the returned review; only a
    failing version-control call raises.
    """

    def __init__(self, vcs: VersionControlPort, standards: ReviewStandards, base_ref: str):
        self.vcs = vcs
        self.standards = standards
        self.base_ref = base_ref

    async def review(self, branch: str) -> BranchReview:
        files = await self.vcs.changed_files(self.base_ref, branch)
        issues = self.evaluate(files)
        review = BranchReview(branch=branch, files=files, passed=not issues, issues=issues)
        if issues:
            logger.info("Review of %s failed: %s", branch, "; ".join(issues))
        else:
            logger.info("Review of %s passed (%d files)", branch, len(files))
        return review

    def evaluate(self, files: list[str]) -> list[str]:
        issues: list[str] = []
        standards = self.standards

        if standards.testing.required and not any(is_test_file(f) for f in files):
            issues.append("No test files found")

        docs = standards.documentation
        if (
            docs.required
            and len(files) > docs.min_files_for_doc_update
            and not any(is_doc_file(f) for f in files)
        ):
            issues.append("No documentation updates for significant changes")

        limit = standards.max_files_changed
        if limit is not None and len(files) > limit:
            issues.append(f"Changeset touches {len(files)} files (limit {limit})")

        return issues
