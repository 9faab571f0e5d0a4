"""PostgreSQL implementation of the execution repository."""

from __future__ import annotations

import json
from typing import Any, Optional

import asyncpg

from ..contracts import ExecutionStatus, StepStatus, utc_now
from ..errors import NotFoundError, TransientInfraError
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


class PostgresExecutionRepository(ExecutionRepository):
    """Persist execution state using PostgreSQL."""

    def __init__(self, dsn: str, min_size: int = 1, max_size: int = 10):
        self._dsn = dsn
        self._min_size = min_size
        self._max_size = max_size
        self._pool: Optional[asyncpg.Pool] = None

    async def _get_pool(self) -> asyncpg.Pool:
        if self._pool is None:
            try:
                pool = await asyncpg.create_pool(
                    self._dsn, min_size=self._min_size, max_size=self._max_size
                )
            except (OSError, asyncpg.PostgresError) as exc:
                raise TransientInfraError(f"PostgreSQL unavailable: {exc}") from exc
            async with pool.acquire() as conn:
                await self._ensure_schema(conn)
            self._pool = pool
        return self._pool

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_definitions (
                workflow_id TEXT PRIMARY KEY,
                definition JSONB NOT NULL,
                updated_at TIMESTAMPTZ NOT NULL
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS executions (
                id TEXT PRIMARY KEY,
                workflow_id TEXT NOT NULL,
                organization_id TEXT NOT NULL,
                status TEXT NOT NULL,
                trigger_source TEXT NOT NULL,
                input_payload JSONB,
                output_payload JSONB,
                error JSONB,
                started_at TIMESTAMPTZ NOT NULL,
                finished_at TIMESTAMPTZ,
                duration_ms BIGINT
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS step_logs (
                id TEXT PRIMARY KEY,
                execution_id TEXT NOT NULL REFERENCES executions (id),
                step_number INTEGER NOT NULL,
                step_name TEXT NOT NULL,
                integration TEXT,
                action TEXT,
                status TEXT NOT NULL,
                input JSONB,
                output JSONB,
                error JSONB,
                attempts INTEGER NOT NULL DEFAULT 0,
                started_at TIMESTAMPTZ NOT NULL,
                finished_at TIMESTAMPTZ,
                duration_ms BIGINT
            )
            """
        )
        await conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_step_logs_execution ON step_logs (execution_id)"
        )

    @staticmethod
    def _execution_from_row(row: asyncpg.Record) -> ExecutionRecord:
        return ExecutionRecord(
            id=row["id"],
            workflow_id=row["workflow_id"],
            organization_id=row["organization_id"],
            status=ExecutionStatus(row["status"]),
            trigger_source=row["trigger_source"],
            input_payload=_loads(row["input_payload"]),
            output_payload=_loads(row["output_payload"]),
            error=_loads(row["error"]),
            started_at=row["started_at"],
            finished_at=row["finished_at"],
            duration_ms=row["duration_ms"],
        )

    @staticmethod
    def _step_from_row(row: asyncpg.Record) -> StepLog:
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
            started_at=row["started_at"],
            finished_at=row["finished_at"],
            duration_ms=row["duration_ms"],
        )

    # ------------------------------------------------------------------
    async def save_definition(self, workflow_id: str, definition: dict) -> None:
        pool = await self._get_pool()
        await pool.execute(
            """
            INSERT INTO workflow_definitions (workflow_id, definition, updated_at)
            VALUES ($1, $2::jsonb, $3)
            ON CONFLICT (workflow_id) DO UPDATE SET
                definition = EXCLUDED.definition, updated_at = EXCLUDED.updated_at
            """,
            workflow_id,
            json.dumps(definition),
            utc_now(),
        )

    async def get_definition(self, workflow_id: str) -> dict | None:
        pool = await self._get_pool()
        value = await pool.fetchval(
            "SELECT definition FROM workflow_definitions WHERE workflow_id = $1",
            workflow_id,
        )
        return _loads(value)

    async def create_execution(self, execution: ExecutionRecord) -> None:
        pool = await self._get_pool()
        await pool.execute(
            f"""
            INSERT INTO executions ({_EXECUTION_COLUMNS})
            VALUES ($1, $2, $3, $4, $5, $6::jsonb, $7::jsonb, $8::jsonb, $9, $10, $11)
            """,
            execution.id,
            execution.workflow_id,
            execution.organization_id,
            execution.status.value,
            execution.trigger_source,
            _dumps(execution.input_payload),
            _dumps(execution.output_payload),
            _dumps(execution.error),
            execution.started_at,
            execution.finished_at,
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
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    f"SELECT {_EXECUTION_COLUMNS} FROM executions WHERE id = $1 FOR UPDATE",
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
                await conn.execute(
                    """
                    UPDATE executions
                    SET status = $1, output_payload = $2::jsonb, error = $3::jsonb,
                        finished_at = $4, duration_ms = $5
                    WHERE id = $6
                    """,
                    status.value,
                    _dumps(output),
                    _dumps(error),
                    finished_at,
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
        pool = await self._get_pool()
        step_log_id = new_id()
        await pool.execute(
            """
            INSERT INTO step_logs
                (id, execution_id, step_number, step_name, integration, action, status, started_at)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
            """,
            step_log_id,
            execution_id,
            step_number,
            step_name,
            integration,
            action,
            StepStatus.RUNNING.value,
            utc_now(),
        )
        return step_log_id

    async def record_step_input(self, step_log_id: str, input: Any) -> None:
        pool = await self._get_pool()
        await pool.execute(
            "UPDATE step_logs SET input = $1::jsonb WHERE id = $2",
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
        pool = await self._get_pool()
        started_at = await pool.fetchval(
            "SELECT started_at FROM step_logs WHERE id = $1", step_log_id
        )
        if started_at is None:
            return
        finished_at = utc_now()
        await pool.execute(
            """
            UPDATE step_logs
            SET status = $1, output = $2::jsonb, error = $3::jsonb, attempts = $4,
                finished_at = $5, duration_ms = $6
            WHERE id = $7
            """,
            status.value,
            _dumps(output),
            _dumps(error),
            attempts,
            finished_at,
            duration_ms(started_at, finished_at),
            step_log_id,
        )

    async def get_execution(self, execution_id: str) -> ExecutionRecord | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"SELECT {_EXECUTION_COLUMNS} FROM executions WHERE id = $1", execution_id
        )
        if not row:
            return None
        step_rows = await pool.fetch(
            f"SELECT {_STEP_COLUMNS} FROM step_logs WHERE execution_id = $1 "
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
        pool = await self._get_pool()
        clauses: list[str] = []
        params: list[Any] = []
        if workflow_id is not None:
            params.append(workflow_id)
            clauses.append(f"workflow_id = ${len(params)}")
        if status is not None:
            params.append(ExecutionStatus(status).value)
            clauses.append(f"status = ${len(params)}")
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(limit)
        rows = await pool.fetch(
            f"SELECT {_EXECUTION_COLUMNS} FROM executions {where} "
            f"ORDER BY started_at DESC LIMIT ${len(params)}",
            *params,
        )
        return [self._execution_from_row(r) for r in rows]
