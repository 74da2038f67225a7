"""
SQLite storage backend.

This is the default storage backend. It provides zero-configuration local
storage for runbook executions, script runs, their events and artifacts,
and answers the failure-grouping queries used to spot recurring failures.
"""

from __future__ import annotations

import asyncio
import json
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, List, Optional

from controlroom.core.models import (
    Artifact,
    ExecutionStatus,
    FailureGroup,
    Run,
    RunbookExecution,
    Runbook,
    RunEvent,
    RunEventKind,
    RunStatus,
    RunSummary,
    Script,
    ScriptConfig,
    StepExecution,
    StepStatus,
)
from controlroom.storage.base import StorageBackend, StorageCapabilities
from controlroom.storage.serialization import json_safe


def _iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    ts = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc).isoformat()


def _parse(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromisoformat(value)


class SQLiteStorageBackend(StorageBackend):
    """
    SQLite-based storage backend.

    Features:
    - Zero configuration (single file database)
    - Write-Ahead Logging so readers (CLI) do not block the engine
    - Failure grouping by fingerprint in plain SQL
    """

    def __init__(self, db_path: str | Path = ".controlroom/controlroom.db"):
        """
        Initialize SQLite storage backend.

        Args:
            db_path: Path to SQLite database file (``:memory:`` for a private in-memory DB)
        """
        self.db_path = db_path if str(db_path) == ":memory:" else Path(db_path)
        self._conn: Optional[sqlite3.Connection] = None

    @property
    def capabilities(self) -> StorageCapabilities:
        """Return capabilities supported by SQLite backend"""
        return StorageCapabilities(
            durable=str(self.db_path) != ":memory:",
            failure_groups=True,
            run_events=True,
        )

    async def initialize(self) -> None:
        """Initialize database schema, running blocking setup in the default executor"""
        if isinstance(self.db_path, Path):
            self.db_path.parent.mkdir(parents=True, exist_ok=True)

        loop = asyncio.get_running_loop()
        self._conn = await loop.run_in_executor(None, self._connect_db)
        await loop.run_in_executor(None, self._create_schema_blocking)

    def _connect_db(self) -> sqlite3.Connection:
        """Create SQLite connection (blocking operation for executor)"""
        conn = sqlite3.connect(
            self.db_path,
            check_same_thread=False,  # Allow multi-threaded access
            isolation_level=None,  # Autocommit mode
        )
        conn.row_factory = sqlite3.Row  # Dict-like row access
        conn.execute("PRAGMA foreign_keys = ON")
        conn.execute("PRAGMA journal_mode = WAL")  # Write-Ahead Logging
        return conn

    def _require_conn(self) -> sqlite3.Connection:
        conn = self._conn
        if conn is None:
            raise RuntimeError("SQLite connection has not been initialized")
        return conn

    def _create_schema_blocking(self) -> None:
        """Create database schema (blocking operation for executor)"""
        conn = self._require_conn()

        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS runbooks (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                definition TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """
        )

        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS scripts (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                config TEXT NOT NULL
            )
            """
        )

        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS runbook_executions (
                id TEXT PRIMARY KEY,
                runbook_id TEXT NOT NULL,
                status TEXT NOT NULL CHECK (status IN (
                    'running', 'paused', 'succeeded', 'partial_success', 'failed', 'canceled'
                )),
                started_at TEXT NOT NULL,
                ended_at TEXT,
                trigger_info TEXT,
                error_message TEXT
            )
            """
        )
        conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_executions_runbook ON runbook_executions(runbook_id, started_at DESC)"
        )

        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS step_executions (
                execution_id TEXT NOT NULL,
                step_id TEXT NOT NULL,
                position INTEGER NOT NULL DEFAULT 0,
                step_name TEXT NOT NULL,
                run_id TEXT,
                status TEXT NOT NULL CHECK (status IN (
                    'pending', 'running', 'succeeded', 'failed', 'skipped', 'canceled'
                )),
                started_at TEXT,
                ended_at TEXT,
                attempt INTEGER NOT NULL DEFAULT 0,
                error_message TEXT,
                output TEXT,
                PRIMARY KEY (execution_id, step_id),
                FOREIGN KEY (execution_id) REFERENCES runbook_executions(id) ON DELETE CASCADE
            )
            """
        )

        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS runs (
                run_id TEXT PRIMARY KEY,
                script_id TEXT NOT NULL,
                script_name TEXT,
                started_at TEXT NOT NULL,
                ended_at TEXT,
                status TEXT NOT NULL CHECK (status IN ('running', 'succeeded', 'failed', 'canceled')),
                exit_code INTEGER,
                failure_fingerprint TEXT,
                last_stderr_line TEXT,
                summary TEXT
            )
            """
        )
        conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_runs_script_started ON runs(script_id, started_at DESC)"
        )
        conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_runs_fingerprint ON runs(failure_fingerprint, started_at DESC)"
        )

        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS run_events (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                run_id TEXT NOT NULL,
                ts TEXT NOT NULL,
                kind TEXT NOT NULL,
                message TEXT,
                payload TEXT NOT NULL DEFAULT '{}',
                FOREIGN KEY (run_id) REFERENCES runs(run_id) ON DELETE CASCADE
            )
            """
        )
        conn.execute("CREATE INDEX IF NOT EXISTS idx_run_events_run ON run_events(run_id, id)")

        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS artifacts (
                artifact_id TEXT PRIMARY KEY,
                run_id TEXT NOT NULL,
                media_type TEXT NOT NULL,
                locator TEXT NOT NULL,
                sha256_hex TEXT NOT NULL,
                size_bytes INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL,
                FOREIGN KEY (run_id) REFERENCES runs(run_id) ON DELETE CASCADE
            )
            """
        )
        conn.execute("CREATE INDEX IF NOT EXISTS idx_artifacts_run ON artifacts(run_id)")

    async def close(self) -> None:
        """Close database connection"""
        if self._conn:
            self._conn.close()
            self._conn = None

    # ------------------------------------------------------------------
    # Executions
    # ------------------------------------------------------------------

    async def save_execution(self, execution: RunbookExecution) -> None:
        """Upsert an execution header and all of its step records."""
        conn = self._require_conn()
        conn.execute(
            """
            INSERT INTO runbook_executions (
                id, runbook_id, status, started_at, ended_at, trigger_info, error_message
            ) VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                runbook_id=excluded.runbook_id,
                status=excluded.status,
                started_at=excluded.started_at,
                ended_at=excluded.ended_at,
                trigger_info=excluded.trigger_info,
                error_message=excluded.error_message
            """,
            (
                execution.id,
                execution.runbook_id,
                execution.status.value,
                _iso(execution.started_at),
                _iso(execution.ended_at),
                execution.trigger_info,
                execution.error_message,
            ),
        )
        for position, step in enumerate(execution.steps):
            self._upsert_step(conn, execution.id, step, position)

    async def save_step_execution(self, execution_id: str, step: StepExecution) -> None:
        """Upsert one step record, keeping its original position."""
        conn = self._require_conn()
        row = conn.execute(
            "SELECT position FROM step_executions WHERE execution_id = ? AND step_id = ?",
            (execution_id, step.step_id),
        ).fetchone()
        if row is not None:
            position = row["position"]
        else:
            count = conn.execute(
                "SELECT COUNT(*) AS n FROM step_executions WHERE execution_id = ?",
                (execution_id,),
            ).fetchone()
            position = count["n"]
        self._upsert_step(conn, execution_id, step, position)

    def _upsert_step(
        self, conn: sqlite3.Connection, execution_id: str, step: StepExecution, position: int
    ) -> None:
        conn.execute(
            """
            INSERT INTO step_executions (
                execution_id, step_id, position, step_name, run_id, status,
                started_at, ended_at, attempt, error_message, output
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(execution_id, step_id) DO UPDATE SET
                step_name=excluded.step_name,
                run_id=excluded.run_id,
                status=excluded.status,
                started_at=excluded.started_at,
                ended_at=excluded.ended_at,
                attempt=excluded.attempt,
                error_message=excluded.error_message,
                output=excluded.output
            """,
            (
                execution_id,
                step.step_id,
                position,
                step.name,
                step.run_id,
                step.status.value,
                _iso(step.started_at),
                _iso(step.ended_at),
                step.attempt,
                step.error_message,
                step.output,
            ),
        )

    async def get_execution(self, execution_id: str) -> Optional[RunbookExecution]:
        """Get an execution with its step records."""
        conn = self._require_conn()
        row = conn.execute(
            "SELECT * FROM runbook_executions WHERE id = ?", (execution_id,)
        ).fetchone()
        if not row:
            return None
        return self._row_to_execution(conn, row)

    async def list_executions(
        self,
        runbook_id: Optional[str] = None,
        status: Optional[ExecutionStatus] = None,
        limit: int = 50,
    ) -> List[RunbookExecution]:
        """List executions, newest first."""
        conn = self._require_conn()

        query = "SELECT * FROM runbook_executions WHERE 1=1"
        params: List[Any] = []

        if runbook_id:
            query += " AND runbook_id = ?"
            params.append(runbook_id)

        if status:
            query += " AND status = ?"
            params.append(ExecutionStatus(status).value)

        query += " ORDER BY started_at DESC LIMIT ?"
        params.append(limit)

        rows = conn.execute(query, params).fetchall()
        return [self._row_to_execution(conn, row) for row in rows]

    def _row_to_execution(self, conn: sqlite3.Connection, row: sqlite3.Row) -> RunbookExecution:
        step_rows = conn.execute(
            "SELECT * FROM step_executions WHERE execution_id = ? ORDER BY position ASC",
            (row["id"],),
        ).fetchall()
        return RunbookExecution(
            id=row["id"],
            runbook_id=row["runbook_id"],
            status=ExecutionStatus(row["status"]),
            started_at=_parse(row["started_at"]),
            ended_at=_parse(row["ended_at"]),
            trigger_info=row["trigger_info"],
            error_message=row["error_message"],
            steps=[
                StepExecution(
                    step_id=step["step_id"],
                    name=step["step_name"],
                    status=StepStatus(step["status"]),
                    run_id=step["run_id"],
                    started_at=_parse(step["started_at"]),
                    ended_at=_parse(step["ended_at"]),
                    attempt=step["attempt"],
                    error_message=step["error_message"],
                    output=step["output"],
                )
                for step in step_rows
            ],
        )

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------

    async def create_run(self, run: Run) -> None:
        """Insert a new run header."""
        conn = self._require_conn()
        conn.execute(
            """
            INSERT INTO runs (
                run_id, script_id, script_name, started_at, ended_at, status,
                exit_code, failure_fingerprint, last_stderr_line, summary
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            self._run_params(run),
        )

    async def update_run(self, run: Run) -> None:
        """Replace status, end time, exit code and summary of a run."""
        conn = self._require_conn()
        params = self._run_params(run)
        conn.execute(
            """
            UPDATE runs SET
                script_id = ?, script_name = ?, started_at = ?, ended_at = ?, status = ?,
                exit_code = ?, failure_fingerprint = ?, last_stderr_line = ?, summary = ?
            WHERE run_id = ?
            """,
            (*params[1:], params[0]),
        )

    def _run_params(self, run: Run) -> tuple[Any, ...]:
        summary = run.summary
        return (
            run.run_id,
            run.script_id,
            run.script_name,
            _iso(run.started_at),
            _iso(run.ended_at),
            run.status.value,
            run.exit_code,
            summary.failure_fingerprint if summary else None,
            summary.last_stderr_line if summary else None,
            summary.model_dump_json() if summary else None,
        )

    async def get_run(self, run_id: str) -> Optional[Run]:
        """Get a run or None if not found."""
        conn = self._require_conn()
        row = conn.execute("SELECT * FROM runs WHERE run_id = ?", (run_id,)).fetchone()
        if not row:
            return None
        return self._row_to_run(row)

    async def list_runs(
        self,
        script_id: Optional[str] = None,
        status: Optional[RunStatus] = None,
        limit: int = 50,
    ) -> List[Run]:
        """List runs, newest first."""
        conn = self._require_conn()

        query = "SELECT * FROM runs WHERE 1=1"
        params: List[Any] = []

        if script_id:
            query += " AND script_id = ?"
            params.append(script_id)

        if status:
            query += " AND status = ?"
            params.append(RunStatus(status).value)

        query += " ORDER BY started_at DESC LIMIT ?"
        params.append(limit)

        return [self._row_to_run(row) for row in conn.execute(query, params).fetchall()]

    def _row_to_run(self, row: sqlite3.Row) -> Run:
        return Run(
            run_id=row["run_id"],
            script_id=row["script_id"],
            script_name=row["script_name"],
            started_at=_parse(row["started_at"]),
            ended_at=_parse(row["ended_at"]),
            status=RunStatus(row["status"]),
            exit_code=row["exit_code"],
            summary=RunSummary.model_validate_json(row["summary"]) if row["summary"] else None,
        )

    async def append_run_event(self, event: RunEvent) -> None:
        """Append an event to a run's event log."""
        conn = self._require_conn()
        conn.execute(
            """
            INSERT INTO run_events (run_id, ts, kind, message, payload)
            VALUES (?, ?, ?, ?, ?)
            """,
            (
                event.run_id,
                _iso(event.ts),
                event.kind.value,
                event.message,
                json.dumps(json_safe(event.payload), ensure_ascii=False),
            ),
        )

    async def get_run_events(self, run_id: str, limit: Optional[int] = None) -> List[RunEvent]:
        """Return a run's events in insertion order."""
        conn = self._require_conn()
        query = "SELECT * FROM run_events WHERE run_id = ? ORDER BY id ASC"
        params: List[Any] = [run_id]
        if limit:
            query += " LIMIT ?"
            params.append(limit)
        return [
            RunEvent(
                run_id=row["run_id"],
                ts=_parse(row["ts"]),
                kind=RunEventKind(row["kind"]),
                message=row["message"],
                payload=json.loads(row["payload"]),
            )
            for row in conn.execute(query, params).fetchall()
        ]

    async def add_artifact(self, artifact: Artifact) -> None:
        """Record an artifact captured from a run."""
        conn = self._require_conn()
        conn.execute(
            """
            INSERT INTO artifacts (
                artifact_id, run_id, media_type, locator, sha256_hex, size_bytes, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                artifact.artifact_id,
                artifact.run_id,
                artifact.media_type,
                artifact.locator,
                artifact.sha256_hex,
                artifact.size_bytes,
                _iso(artifact.created_at),
            ),
        )

    async def list_artifacts(self, run_id: str) -> List[Artifact]:
        """Return a run's artifacts ordered by locator."""
        conn = self._require_conn()
        rows = conn.execute(
            "SELECT * FROM artifacts WHERE run_id = ? ORDER BY locator ASC", (run_id,)
        ).fetchall()
        return [
            Artifact(
                artifact_id=row["artifact_id"],
                run_id=row["run_id"],
                media_type=row["media_type"],
                locator=row["locator"],
                sha256_hex=row["sha256_hex"],
                size_bytes=row["size_bytes"],
                created_at=_parse(row["created_at"]),
            )
            for row in rows
        ]

    # ------------------------------------------------------------------
    # Definitions
    # ------------------------------------------------------------------

    async def save_script(self, script: Script) -> None:
        """Upsert a script definition."""
        conn = self._require_conn()
        conn.execute(
            """
            INSERT INTO scripts (id, name, config) VALUES (?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET name=excluded.name, config=excluded.config
            """,
            (script.id, script.name, script.config.model_dump_json()),
        )

    async def get_script(self, script_id: str) -> Optional[Script]:
        """Get a script definition or None if not found."""
        conn = self._require_conn()
        row = conn.execute("SELECT * FROM scripts WHERE id = ?", (script_id,)).fetchone()
        if not row:
            return None
        return Script(
            id=row["id"], name=row["name"], config=ScriptConfig.model_validate_json(row["config"])
        )

    async def list_scripts(self) -> List[Script]:
        """List script definitions by name."""
        conn = self._require_conn()
        rows = conn.execute("SELECT * FROM scripts ORDER BY name ASC").fetchall()
        return [
            Script(
                id=row["id"], name=row["name"], config=ScriptConfig.model_validate_json(row["config"])
            )
            for row in rows
        ]

    async def save_runbook(self, runbook: Runbook) -> None:
        """Upsert a runbook definition."""
        conn = self._require_conn()
        conn.execute(
            """
            INSERT INTO runbooks (id, name, definition, updated_at) VALUES (?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                name=excluded.name,
                definition=excluded.definition,
                updated_at=excluded.updated_at
            """,
            (runbook.id, runbook.name, runbook.model_dump_json(), _iso(runbook.updated_at)),
        )

    async def get_runbook(self, runbook_id: str) -> Optional[Runbook]:
        """Get a runbook definition or None if not found."""
        conn = self._require_conn()
        row = conn.execute(
            "SELECT definition FROM runbooks WHERE id = ?", (runbook_id,)
        ).fetchone()
        if not row:
            return None
        return Runbook.model_validate_json(row["definition"])

    async def list_runbooks(self) -> List[Runbook]:
        """List runbook definitions by name."""
        conn = self._require_conn()
        rows = conn.execute("SELECT definition FROM runbooks ORDER BY name ASC").fetchall()
        return [Runbook.model_validate_json(row["definition"]) for row in rows]

    # ------------------------------------------------------------------
    # Failure analysis
    # ------------------------------------------------------------------

    async def list_failure_groups(self, min_count: int = 1, limit: int = 50) -> List[FailureGroup]:
        """Group failed runs by failure fingerprint."""
        conn = self._require_conn()
        rows = conn.execute(
            """
            SELECT
                r.failure_fingerprint AS fingerprint,
                COUNT(*) AS failure_count,
                MIN(r.started_at) AS first_seen,
                MAX(r.started_at) AS last_seen,
                COUNT(DISTINCT r.script_id) AS distinct_scripts,
                (SELECT l.run_id FROM runs l
                  WHERE l.failure_fingerprint = r.failure_fingerprint AND l.status = 'failed'
                  ORDER BY l.started_at DESC LIMIT 1) AS latest_run_id,
                (SELECT f.run_id FROM runs f
                  WHERE f.failure_fingerprint = r.failure_fingerprint AND f.status = 'failed'
                  ORDER BY f.started_at ASC LIMIT 1) AS first_run_id,
                (SELECT l.script_name FROM runs l
                  WHERE l.failure_fingerprint = r.failure_fingerprint AND l.status = 'failed'
                  ORDER BY l.started_at DESC LIMIT 1) AS script_name,
                (SELECT l.last_stderr_line FROM runs l
                  WHERE l.failure_fingerprint = r.failure_fingerprint AND l.status = 'failed'
                  ORDER BY l.started_at DESC LIMIT 1) AS last_stderr_line
            FROM runs r
            WHERE r.status = 'failed' AND r.failure_fingerprint IS NOT NULL
            GROUP BY r.failure_fingerprint
            HAVING COUNT(*) >= ?
            ORDER BY last_seen DESC
            LIMIT ?
            """,
            (min_count, limit),
        ).fetchall()
        return [
            FailureGroup(
                fingerprint=row["fingerprint"],
                count=row["failure_count"],
                first_seen=_parse(row["first_seen"]),
                last_seen=_parse(row["last_seen"]),
                latest_run_id=row["latest_run_id"],
                first_run_id=row["first_run_id"],
                script_name=row["script_name"],
                last_stderr_line=row["last_stderr_line"],
                distinct_scripts=row["distinct_scripts"],
            )
            for row in rows
        ]

    async def get_recurrence_count(self, fingerprint: str) -> int:
        """Count failed runs sharing a fingerprint."""
        conn = self._require_conn()
        row = conn.execute(
            "SELECT COUNT(*) AS n FROM runs WHERE status = 'failed' AND failure_fingerprint = ?",
            (fingerprint,),
        ).fetchone()
        return int(row["n"]) if row else 0
