from __future__ import annotations

import json
import logging
from importlib import resources
from pathlib import Path
from typing import Any

import aiosqlite

from agentweave.models.workflow import WorkflowState

logger = logging.getLogger(__name__)

_DEFAULT_DB_PATH = Path(".agentweave/audit.db")


class Database:
    """Async SQLite audit log for coordination events and pipeline runs.

    The lock and status tables live in JSON documents (see ``state_store``);
    this database only records what happened, for audit and reporting.
    """

    def __init__(self, db_path: str | Path | None = None):
        self.db_path = Path(db_path) if db_path else _DEFAULT_DB_PATH
        self._conn: aiosqlite.Connection | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        """Create the database file, apply the schema, and open the persistent connection."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        schema_sql = (
            resources.files("agentweave.db").joinpath("schema.sql").read_text()
        )

        self._conn = await aiosqlite.connect(self.db_path)
        self._conn.row_factory = aiosqlite.Row
        await self._conn.execute("PRAGMA journal_mode=WAL")
        await self._conn.executescript(schema_sql)
        await self._conn.commit()

        logger.info("Audit database initialized at %s", self.db_path)

    async def close(self) -> None:
        if self._conn:
            await self._conn.close()
            self._conn = None

    @property
    def conn(self) -> aiosqlite.Connection:
        assert self._conn is not None, "Database not initialized; call initialize() first"
        return self._conn

    # ------------------------------------------------------------------
    # Event log
    # ------------------------------------------------------------------

    async def log_event(
        self, event_type: str, agent_role: str | None, details: dict[str, Any] | None = None
    ) -> None:
        await self.conn.execute(
            """
            INSERT INTO event_log (event_type, agent_role, details)
            VALUES (?, ?, ?)
            """,
            (event_type, agent_role, json.dumps(details, default=str) if details else None),
        )
        await self.conn.commit()

    async def get_events(
        self,
        event_type: str | None = None,
        agent_role: str | None = None,
        limit: int = 100,
    ) -> list[dict[str, Any]]:
        clauses: list[str] = []
        params: list[Any] = []
        if event_type:
            clauses.append("event_type = ?")
            params.append(event_type)
        if agent_role:
            clauses.append("agent_role = ?")
            params.append(agent_role)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(limit)

        cursor = await self.conn.execute(
            f"""
            SELECT id, event_type, agent_role, details, created_at
            FROM event_log {where}
            ORDER BY id DESC LIMIT ?
            """,
            params,
        )
        rows = await cursor.fetchall()
        events = []
        for row in rows:
            d = dict(row)
            d["details"] = json.loads(d["details"]) if d["details"] else {}
            events.append(d)
        return events

    # ------------------------------------------------------------------
    # Workflow runs
    # ------------------------------------------------------------------

    async def record_workflow_run(self, state: WorkflowState) -> None:
        failed_stage = next(
            (name for name, record in state.stages.items() if record.status == "failed"),
            None,
        )
        await self.conn.execute(
            """
            INSERT INTO workflow_runs
                (id, started_at, finished_at, status, start_commit, failed_stage, state_json)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                finished_at = excluded.finished_at,
                status = excluded.status,
                failed_stage = excluded.failed_stage,
                state_json = excluded.state_json
            """,
            (
                state.id,
                state.start_time.isoformat(),
                state.finished_at.isoformat() if state.finished_at else None,
                state.status,
                state.start_commit,
                failed_stage,
                state.model_dump_json(by_alias=True),
            ),
        )
        await self.conn.commit()

    async def get_workflow_runs(self, limit: int = 20) -> list[dict[str, Any]]:
        cursor = await self.conn.execute(
            """
            SELECT id, started_at, finished_at, status, start_commit, failed_stage
            FROM workflow_runs ORDER BY started_at DESC LIMIT ?
            """,
            (limit,),
        )
        rows = await cursor.fetchall()
        return [dict(row) for row in rows]

    async def get_workflow_state(self, workflow_id: str) -> WorkflowState | None:
        cursor = await self.conn.execute(
            "SELECT state_json FROM workflow_runs WHERE id = ?", (workflow_id,)
        )
        row = await cursor.fetchone()
        if not row:
            return None
        return WorkflowState.model_validate_json(row["state_json"])
