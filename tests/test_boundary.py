from __future__ import annotations

import json
from pathlib import Path

import pytest

from agentweave.db.database import Database
from agentweave.models.review import BranchReview
from agentweave.services.boundary import (
    BoundaryEnforcer,
    normalize_path,
    path_matches,
)
from agentweave.services.registry import AgentRegistry


class TestPathMatching:
    @pytest.mark.parametrize(
        "path, pattern, expected",
        [
            ("src/client/App.tsx", "src/client/", True),
            ("src/clientele/x.ts", "src/client/", False),
            ("src/client/a/b.ts", "src/client/**", True),
            ("styles/main.css", "**/*.css", True),
            ("src/client/deep/theme.css", "**/*.css", True),
            ("src/server/app.ts", "**/*.css", False),
            ("db/schema.sql", "db", True),
            ("pkg/tests/unit.py", "**/tests/", True),
        ],
    )
    def test_patterns(self, path: str, pattern: str, expected: bool) -> None:
        assert path_matches(path, pattern) is expected

    def test_normalize(self, tmp_path: Path) -> None:
        assert normalize_path("./src/a.ts") == "src/a.ts"
        assert normalize_path("src\\win\\a.ts") == "src/win/a.ts"
        assert normalize_path(tmp_path / "src" / "a.ts", tmp_path) == "src/a.ts"


@pytest.mark.asyncio
class TestBoundaryEnforcer:
    async def test_can_access_respects_boundaries(self, enforcer: BoundaryEnforcer) -> None:
        assert await enforcer.can_access("backend", "src/server/api.ts") is True
        assert await enforcer.can_access("backend", "src/client/App.tsx") is False
        assert await enforcer.can_access("backend", "src/shared/generated/types.ts") is False
        assert await enforcer.can_access("ghost", "src/server/api.ts") is False

    async def test_lock_is_exclusive(self, enforcer: BoundaryEnforcer) -> None:
        # frontend and testing both cover this path; only the first gets the lock
        assert await enforcer.lock("frontend", ["src/client/App.test.ts"]) == ["src/client/App.test.ts"]
        assert await enforcer.can_access("frontend", "src/client/App.test.ts") is True

        assert await enforcer.lock("testing", ["src/client/App.test.ts"]) == []
        assert await enforcer.can_access("testing", "src/client/App.test.ts") is False

        locks = await enforcer.locks()
        assert locks["src/client/App.test.ts"].owner == "frontend"

    async def test_lock_skips_outside_paths(self, enforcer: BoundaryEnforcer) -> None:
        locked = await enforcer.lock("frontend", ["src/client/App.tsx", "db/schema.sql"])
        assert locked == ["src/client/App.tsx"]

    async def test_lock_from_unknown_agent(self, enforcer: BoundaryEnforcer) -> None:
        assert await enforcer.lock("ghost", ["src/client/App.tsx"]) == []

    async def test_relock_by_owner_keeps_lock(self, enforcer: BoundaryEnforcer) -> None:
        await enforcer.lock("frontend", ["src/client/App.tsx"])
        assert await enforcer.lock("frontend", ["src/client/App.tsx"]) == ["src/client/App.tsx"]
        assert await enforcer.locks_for("frontend") == ["src/client/App.tsx"]

    async def test_unlock_is_idempotent(self, enforcer: BoundaryEnforcer) -> None:
        await enforcer.lock("frontend", ["src/client/App.tsx", "src/client/Nav.tsx"])
        await enforcer.lock("backend", ["src/server/api.ts"])

        released = await enforcer.unlock("frontend")
        assert sorted(released) == ["src/client/App.tsx", "src/client/Nav.tsx"]
        assert await enforcer.unlock("frontend") == []
        assert list(await enforcer.locks()) == ["src/server/api.ts"]

    async def test_locks_persist_as_camel_case_json(
        self, enforcer: BoundaryEnforcer, registry: AgentRegistry, config, db: Database
    ) -> None:
        await enforcer.lock("database", ["db/schema.sql"])

        raw = json.loads(config.lock_file.read_text())
        assert raw["db/schema.sql"]["owner"] == "database"
        assert "lockedAt" in raw["db/schema.sql"]

        reloaded = BoundaryEnforcer(registry, config.lock_file, db, config.project_path)
        assert await reloaded.can_access("backend", "db/schema.sql") is False
        assert (await reloaded.locks())["db/schema.sql"].owner == "database"

    async def test_lock_events_logged(self, enforcer: BoundaryEnforcer, db: Database) -> None:
        await enforcer.lock("database", ["db/schema.sql"])
        await enforcer.unlock("database")

        events = await db.get_events(agent_role="database")
        assert [e["event_type"] for e in events] == ["lock_released", "lock_acquired"]
        assert events[1]["details"] == {"files": ["db/schema.sql"]}


@pytest.mark.asyncio
class TestValidateBoundaries:
    async def test_reports_each_offending_file(self, enforcer: BoundaryEnforcer) -> None:
        review = BranchReview(
            branch="feature/backend/T3",
            files=["src/server/api.ts", "src/client/App.tsx", "src/shared/generated/x.ts"],
        )
        violations = enforcer.validate_boundaries(review)

        assert [(v.file, v.kind) for v in violations] == [
            ("src/client/App.tsx", "not-allowed"),
            ("src/shared/generated/x.ts", "excluded"),
        ]
        assert all(v.agent == "backend" for v in violations)

    async def test_unowned_branch_has_no_violations(self, enforcer: BoundaryEnforcer) -> None:
        review = BranchReview(branch="fix/typo", files=["anything.txt"])
        assert enforcer.validate_boundaries(review) == []
