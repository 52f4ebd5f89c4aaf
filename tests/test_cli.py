from __future__ import annotations

import json
from pathlib import Path

import pytest
from click.testing import CliRunner

from agentweave import __version__
from agentweave.cli import main


@pytest.fixture(autouse=True)
def _quiet_logging(monkeypatch: pytest.MonkeyPatch) -> None:
    # log records go to pytest's capture instead of the CLI's stderr
    monkeypatch.setattr("agentweave.cli.setup_logging", lambda level: None)


@pytest.fixture
def config_path(config, tmp_path: Path) -> Path:
    return tmp_path / "agent-orchestrator.config.json"


@pytest.fixture
def cli(config_path: Path, vcs, runner, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.delenv("AGENTWEAVE_DB_PATH", raising=False)
    monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
    cli_runner = CliRunner()

    def _invoke(*args: str):
        return cli_runner.invoke(
            main, ["--config", str(config_path), *args], obj={"vcs": vcs, "runner": runner}
        )

    return _invoke


class TestCli:
    def test_version(self) -> None:
        result = CliRunner().invoke(main, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.output

        result = CliRunner().invoke(main, ["version"])
        assert result.output.strip() == f"agentweave {__version__}"

    def test_init(self, cli, vcs, config) -> None:
        result = cli("init")

        assert result.exit_code == 0, result.output
        assert vcs.called("checkout") == [("checkout", "main")]
        assert vcs.called("pull") == [("pull", "main")]
        assert (config.state_dir / ".gitignore").exists()
        assert (config.state_dir / "audit.db").exists()

    def test_missing_config(self, tmp_path: Path) -> None:
        result = CliRunner().invoke(main, ["--config", str(tmp_path / "missing.json"), "status"])
        assert result.exit_code == 1
        assert "Configuration file not found" in result.output

    def test_create_lock_status_merge(self, cli, vcs) -> None:
        result = cli("create", "frontend", "T2")
        assert result.exit_code == 0, result.output
        assert "feature/frontend/T2" in result.output

        result = cli("lock", "frontend", "src/client/App.tsx", "db/schema.sql")
        assert "locked src/client/App.tsx" in result.output
        assert "1 path(s) skipped" in result.output

        result = cli("status")
        assert "Frontend Agent: active on feature/frontend/T2" in result.output
        assert "src/client/App.tsx -> frontend" in result.output
        assert "database: idle" in result.output

        result = cli("merge", "frontend", "Add", "nav", "bar")
        assert result.exit_code == 0, result.output
        assert "Pull request: https://example.test/pull/feature/frontend/T2" in result.output
        assert vcs.commits == ["Add nav bar"]

    def test_create_twice_fails(self, cli) -> None:
        cli("create", "backend", "T3")
        result = cli("create", "backend", "T4")
        assert result.exit_code == 1
        assert "already has an active task" in result.output

    def test_unknown_agent(self, cli) -> None:
        result = cli("create", "ops", "T1")
        assert result.exit_code == 1
        assert "'ops' not found" in result.output

    def test_unlock(self, cli) -> None:
        cli("lock", "database", "db/schema.sql")
        result = cli("unlock", "database")
        assert "Released 1 lock(s) for database" in result.output

    def test_sync(self, cli, vcs) -> None:
        cli("create", "backend", "T3")
        result = cli("sync")
        assert "backend: synced" in result.output
        assert "frontend: skipped" in result.output

        result = cli("sync", "frontend")
        assert result.output.strip() == "frontend: skipped"

    def test_integrate(self, cli, vcs) -> None:
        vcs.add_remote_branch("feature/frontend/T2", ["src/client/App.tsx"])
        vcs.add_remote_branch("feature/database/T1", ["db/schema.sql"])

        result = cli("integrate")

        assert result.exit_code == 0, result.output
        assert "-> fetch" in result.output
        assert "-> push" in result.output
        assert "merged feature/database/T1 (success)" in result.output
        assert "COMPLETED" in result.output

        result = cli("status")
        assert "completed" in result.output.split("Recent integrations:")[1]

    def test_integrate_failure_exits_non_zero(self, cli, vcs, runner) -> None:
        vcs.add_remote_branch("feature/database/T1", ["db/schema.sql"])
        runner.fail("npm run build")

        result = cli("integrate")

        assert result.exit_code == 1
        assert "validate-integration: failed" in result.output
        assert "Stage 'validate-integration' failed" in result.output
        assert vcs.pushed == []

    def test_integrate_fatal_boundaries_flag(self, cli, vcs) -> None:
        vcs.add_remote_branch("feature/frontend/T2", ["src/server/api.ts"])

        result = cli("integrate", "--fatal-boundaries")

        assert result.exit_code == 1
        assert "boundary violation" in result.output
        assert vcs.merged == []

    def test_generate_without_api_key(self, cli) -> None:
        result = cli("generate", "frontend", "src/client/App.tsx", "Add", "nav")
        assert result.exit_code == 1
        assert "ANTHROPIC_API_KEY" in result.output

    def test_generate_outside_boundary(self, cli) -> None:
        result = cli("generate", "frontend", "src/server/api.ts", "Sneak")
        assert result.exit_code == 1
        assert "may not modify src/server/api.ts" in result.output

    def test_status_flags_stale_agent(self, cli, config) -> None:
        cli("create", "backend", "T3")
        raw = json.loads(config.status_file.read_text())
        raw["backend"]["startTime"] = "2020-01-01T00:00:00"
        config.status_file.write_text(json.dumps(raw))

        result = cli("status")
        assert "backend: active on feature/backend/T3 (stale)" in result.output
