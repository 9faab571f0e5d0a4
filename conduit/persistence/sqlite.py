"""SQLite implementation of the execution repository."""

from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from ..contracts import ExecutionStatus, StepStatus, utc_now
from ..errors import NotFoundError
from .models import ExecutionRecord, StepLog, duration_ms, new_id
from .repository import ExecutionRepository, check_transition

_EXECUTION_COLUMNS = (
    "id, workflow_id, organization_id, status, trigger_source, input_payload, "
    "output_payload, error, started_at, finished_at, duration_ms"
)
_STEP_COLUMNS = (
    "id, execution_id, step_number, step_name, integration, action, status, "
    "input, output, error, attempts, started_at, finished_at, duration_ms"
)


def _dumps(value: Any) -> str | None:
    return None if value is None else json.dumps(value, default=str)


def _loads(value: str | None) -> Any:
    return None if value is None else json.loads(value)


def _parse_dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class SQLiteExecutionRepository(ExecutionRepository):
    """Persist execution state using SQLite."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_definitions (
                workflow_id TEXT PRIMARY KEY,
                definition TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS executions (
                id TEXT PRIMARY KEY,
                workflow_id TEXT NOT NULL,
                organization_id TEXT NOT NULL,
                status TEXT NOT NULL,
                trigger_source TEXT NOT NULL,
                input_payload TEXT,
                output_payload TEXT,
                error TEXT,
                started_at TEXT NOT NULL,
                finished_at TEXT,
                duration_ms INTEGER
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS step_logs (
                id TEXT PRIMARY KEY,
                execution_id TEXT NOT NULL,
                step_number INTEGER NOT NULL,
                step_name TEXT NOT NULL,
                integration TEXT,
                action TEXT,
                status TEXT NOT NULL,
                input TEXT,
                output TEXT,
                error TEXT,
                attempts INTEGER NOT NULL DEFAULT 0,
                started_at TEXT NOT NULL,
                finished_at TEXT,
                duration_ms INTEGER
            )
            """
        )
        cur.execute(
            "CREATE INDEX IF NOT EXISTS idx_step_logs_execution ON step_logs (execution_id)"
        )
        self._conn.commit()

    def close(self) -> None:
        self._conn.close()

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> None:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            self._conn.commit()

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchall()

    @staticmethod
    def _execution_from_row(row: sqlite3.Row) -> ExecutionRecord:
        return ExecutionRecord(
            id=row["id"],
            workflow_id=row["workflow_id"],
            organization_id=row["organization_id"],
            status=ExecutionStatus(row["status"]),
            trigger_source=row["trigger_source"],
            input_payload=_loads(row["input_payload"]),
            output_payload=_loads(row["output_payload"]),
            error=_loads(row["error"]),
            started_at=_parse_dt(row["started_at"]),
            finished_at=_parse_dt(row["finished_at"]),
            duration_ms=row["duration_ms"],
        )

    @staticmethod
    def _step_from_row(row: sqlite3.Row) -> StepLog:
        return StepLog(
            id=row["id"],
            execution_id=row["execution_id"],
            step_number=row["step_number"],
            step_name=row["step_name"],
            integration=row["integration"],
            action=row["action"],
            status=StepStatus(row["status"]),
            input=_loads(row["input"]),
            output=_loads(row["output"]),
            error=_loads(row["error"]),
            attempts=row["attempts"],
            started_at=_parse_dt(row["started_at"]),
            finished_at=_parse_dt(row["finished_at"]),
            duration_ms=row["duration_ms"],
        )

    # ------------------------------------------------------------------
    # Repository API
    async def save_definition(self, workflow_id: str, definition: dict) -> None:
        await asyncio.to_thread(
            self._execute,
            """
            INSERT INTO workflow_definitions (workflow_id, definition, updated_at)
            VALUES (?, ?, ?)
            ON CONFLICT(workflow_id) DO UPDATE SET
                definition = excluded.definition, updated_at = excluded.updated_at
            """,
            workflow_id,
            json.dumps(definition),
            utc_now().isoformat(),
        )

    async def get_definition(self, workflow_id: str) -> dict | None:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT definition FROM workflow_definitions WHERE workflow_id = ?",
            workflow_id,
        )
        return json.loads(row["definition"]) if row else None

    async def create_execution(self, execution: ExecutionRecord) -> None:
        await asyncio.to_thread(
            self._execute,
            f"INSERT INTO executions ({_EXECUTION_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            execution.id,
            execution.workflow_id,
            execution.organization_id,
            execution.status.value,
            execution.trigger_source,
            _dumps(execution.input_payload),
            _dumps(execution.output_payload),
            _dumps(execution.error),
            execution.started_at.isoformat(),
            execution.finished_at.isoformat() if execution.finished_at else None,
            execution.duration_ms,
        )

    async def finish_execution(
        self,
        execution_id: str,
        status: ExecutionStatus,
        *,
        output: Any = None,
        error: Optional[dict] = None,
    ) -> ExecutionRecord:
        row = await asyncio.to_thread(
            self._fetchone,
            f"SELECT {_EXECUTION_COLUMNS} FROM executions WHERE id = ?",
            execution_id,
        )
        if row is None:
            raise NotFoundError(f"Execution {execution_id} not found")
        execution = self._execution_from_row(row)
        check_transition(execution_id, execution.status, status)

        finished_at = utc_now()
        execution.status = status
        execution.output_payload = output
        execution.error = error
        execution.finished_at = finished_at
        execution.duration_ms = duration_ms(execution.started_at, finished_at)
        await asyncio.to_thread(
            self._execute,
            """
            UPDATE executions
            SET status = ?, output_payload = ?, error = ?, finished_at = ?, duration_ms = ?
            WHERE id = ?
            """,
            status.value,
            _dumps(output),
            _dumps(error),
            finished_at.isoformat(),
            execution.duration_ms,
            execution_id,
        )
        return execution

    async def mark_step_started(
        self,
        execution_id: str,
        step_number: int,
        step_name: str,
        integration: Optional[str] = None,
        action: Optional[str] = None,
    ) -> str:
        step_log_id = new_id()
        await asyncio.to_thread(
            self._execute,
            """
            INSERT INTO step_logs
                (id, execution_id, step_number, step_name, integration, action, status, started_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            step_log_id,
            execution_id,
            step_number,
            step_name,
            integration,
            action,
            StepStatus.RUNNING.value,
            utc_now().isoformat(),
        )
        return step_log_id

    async def record_step_input(self, step_log_id: str, input: Any) -> None:
        await asyncio.to_thread(
            self._execute,
            "UPDATE step_logs SET input = ? WHERE id = ?",
            _dumps(input),
            step_log_id,
        )

    async def mark_step_completed(
        self,
        step_log_id: str,
        status: StepStatus,
        *,
        output: Any = None,
        error: Optional[dict] = None,
        attempts: int = 1,
    ) -> None:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT started_at FROM step_logs WHERE id = ?", step_log_id
        )
        if row is None:
            return
        finished_at = utc_now()
        await asyncio.to_thread(
            self._execute,
            """
            UPDATE step_logs
            SET status = ?, output = ?, error = ?, attempts = ?, finished_at = ?, duration_ms = ?
            WHERE id = ?
            """,
            status.value,
            _dumps(output),
            _dumps(error),
            attempts,
            finished_at.isoformat(),
            duration_ms(_parse_dt(row["started_at"]), finished_at),
            step_log_id,
        )

    async def get_execution(self, execution_id: str) -> ExecutionRecord | None:
        row = await asyncio.to_thread(
            self._fetchone,
            f"SELECT {_EXECUTION_COLUMNS} FROM executions WHERE id = ?",
            execution_id,
        )
        if not row:
            return None
        step_rows = await asyncio.to_thread(
            self._fetchall,
            f"SELECT {_STEP_COLUMNS} FROM step_logs WHERE execution_id = ? "
            "ORDER BY step_number, started_at",
            execution_id,
        )
        execution = self._execution_from_row(row)
        execution.steps = [self._step_from_row(r) for r in step_rows]
        return execution

    async def list_executions(
        self,
        workflow_id: Optional[str] = None,
        status: Optional[ExecutionStatus] = None,
        limit: int = 50,
    ) -> list[ExecutionRecord]:
        clauses: list[str] = []
        params: list[Any] = []
        if workflow_id is not None:
            clauses.append("workflow_id = ?")
            params.append(workflow_id)
        if status is not None:
            clauses.append("status = ?")
            params.append(ExecutionStatus(status).value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = await asyncio.to_thread(
            self._fetchall,
            f"SELECT {_EXECUTION_COLUMNS} FROM executions {where} "
            "ORDER BY started_at DESC LIMIT ?",
            *params,
            limit,
        )
        return [self._execution_from_row(r) for r in rows]
