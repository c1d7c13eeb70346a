"""PostgreSQL implementation of the workflow repository."""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from typing import Any

import asyncpg

from ..errors import ConflictError
from .models import (
    Event,
    LedgerRecord,
    Run,
    RunStatus,
    Step,
    TERMINAL_RUN_STATUSES,
    utcnow,
)
from .repository import WorkflowRepository


def _load(value: Any) -> Any:
    return json.loads(value) if isinstance(value, str) else value


class PostgresWorkflowRepository(WorkflowRepository):
    """Persist workflow state using PostgreSQL."""

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        conn = await asyncpg.connect(self._dsn)
        if not self._initialized:
            await self._ensure_schema(conn)
            self._initialized = True
        return conn

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS qf_runs (
                run_id TEXT PRIMARY KEY,
                workflow_name TEXT NOT NULL,
                input JSONB,
                status TEXT NOT NULL,
                created_at TIMESTAMPTZ NOT NULL,
                completed_at TIMESTAMPTZ,
                result JSONB,
                error JSONB
            );
            CREATE TABLE IF NOT EXISTS qf_steps (
                seq BIGSERIAL PRIMARY KEY,
                step_id TEXT NOT NULL UNIQUE,
                run_id TEXT NOT NULL,
                name TEXT NOT NULL,
                input JSONB,
                status TEXT NOT NULL,
                attempt INTEGER NOT NULL DEFAULT 0,
                output JSONB,
                error JSONB,
                wake_at DOUBLE PRECISION,
                created_at TIMESTAMPTZ NOT NULL,
                updated_at TIMESTAMPTZ NOT NULL
            );
            CREATE TABLE IF NOT EXISTS qf_events (
                seq BIGSERIAL PRIMARY KEY,
                event_id TEXT NOT NULL UNIQUE,
                run_id TEXT NOT NULL,
                type TEXT NOT NULL,
                payload JSONB NOT NULL,
                created_at TIMESTAMPTZ NOT NULL
            );
            CREATE INDEX IF NOT EXISTS qf_events_run_idx ON qf_events (run_id, created_at);
            CREATE TABLE IF NOT EXISTS qf_ledger (
                key TEXT PRIMARY KEY,
                record JSONB NOT NULL,
                created_at TIMESTAMPTZ NOT NULL
            );
            CREATE TABLE IF NOT EXISTS qf_leases (
                name TEXT PRIMARY KEY,
                owner TEXT NOT NULL,
                expires_at TIMESTAMPTZ NOT NULL
            );
            """
        )

    @staticmethod
    def _row_to_run(r: asyncpg.Record) -> Run:
        return Run(
            run_id=r["run_id"],
            workflow_name=r["workflow_name"],
            input=_load(r["input"]),
            status=r["status"],
            created_at=r["created_at"],
            completed_at=r["completed_at"],
            result=_load(r["result"]),
            error=_load(r["error"]),
        )

    @staticmethod
    def _row_to_step(r: asyncpg.Record) -> Step:
        return Step(
            step_id=r["step_id"],
            run_id=r["run_id"],
            name=r["name"],
            input=_load(r["input"]),
            status=r["status"],
            attempt=r["attempt"],
            output=_load(r["output"]),
            error=_load(r["error"]),
            wake_at=r["wake_at"],
            created_at=r["created_at"],
            updated_at=r["updated_at"],
        )

    @staticmethod
    def _row_to_event(r: asyncpg.Record) -> Event:
        return Event(
            event_id=r["event_id"],
            run_id=r["run_id"],
            type=r["type"],
            payload=_load(r["payload"]),
            created_at=r["created_at"],
        )

    # ------------------------------------------------------------------
    async def create_run(self, run: Run) -> bool:
        conn = await self._connect()
        try:
            status = await conn.execute(
                """
                INSERT INTO qf_runs (run_id, workflow_name, input, status, created_at)
                VALUES ($1, $2, $3::jsonb, $4, $5)
                ON CONFLICT (run_id) DO NOTHING
                """,
                run.run_id,
                run.workflow_name,
                json.dumps(run.input),
                run.status.value,
                run.created_at,
            )
        finally:
            await conn.close()
        return status.endswith(" 1")

    async def get_run(self, run_id: str) -> Run | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow("SELECT * FROM qf_runs WHERE run_id = $1", run_id)
        finally:
            await conn.close()
        return self._row_to_run(row) if row else None

    async def list_runs(self) -> list[Run]:
        conn = await self._connect()
        try:
            rows = await conn.fetch("SELECT * FROM qf_runs ORDER BY created_at")
        finally:
            await conn.close()
        return [self._row_to_run(r) for r in rows]

    async def update_run(
        self,
        run_id: str,
        status: RunStatus,
        result: Any = None,
        error: Any = None,
    ) -> Run | None:
        terminal = status in TERMINAL_RUN_STATUSES
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                """
                UPDATE qf_runs
                SET status = $2, completed_at = $3, result = $4::jsonb, error = $5::jsonb
                WHERE run_id = $1 AND status NOT IN ('completed', 'failed')
                RETURNING *
                """,
                run_id,
                status.value,
                utcnow() if terminal else None,
                json.dumps(result) if terminal else None,
                json.dumps(error) if terminal else None,
            )
            if row is None:
                existing = await conn.fetchrow(
                    "SELECT * FROM qf_runs WHERE run_id = $1", run_id
                )
                if existing is None:
                    return None
                raise ConflictError(f"{run_id}:terminal", self._row_to_run(existing))
        finally:
            await conn.close()
        return self._row_to_run(row)

    # ------------------------------------------------------------------
    async def create_step_if_absent(self, step: Step) -> tuple[bool, Step]:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                """
                INSERT INTO qf_steps
                    (step_id, run_id, name, input, status, attempt, created_at, updated_at)
                VALUES ($1, $2, $3, $4::jsonb, $5, $6, $7, $8)
                ON CONFLICT (step_id) DO NOTHING
                RETURNING *
                """,
                step.step_id,
                step.run_id,
                step.name,
                json.dumps(step.input),
                step.status.value,
                step.attempt,
                step.created_at,
                step.updated_at,
            )
            created = row is not None
            if row is None:
                row = await conn.fetchrow(
                    "SELECT * FROM qf_steps WHERE step_id = $1", step.step_id
                )
        finally:
            await conn.close()
        return created, self._row_to_step(row)

    async def get_step(self, step_id: str) -> Step | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow("SELECT * FROM qf_steps WHERE step_id = $1", step_id)
        finally:
            await conn.close()
        return self._row_to_step(row) if row else None

    async def list_steps(self, run_id: str) -> list[Step]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                "SELECT * FROM qf_steps WHERE run_id = $1 ORDER BY seq", run_id
            )
        finally:
            await conn.close()
        return [self._row_to_step(r) for r in rows]

    async def update_step(self, step: Step) -> Step:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                """
                UPDATE qf_steps
                SET status = $2, attempt = $3, output = $4::jsonb, error = $5::jsonb,
                    wake_at = $6, updated_at = $7
                WHERE step_id = $1 AND status NOT IN ('completed', 'failed')
                RETURNING *
                """,
                step.step_id,
                step.status.value,
                step.attempt,
                json.dumps(step.output),
                json.dumps(step.error),
                step.wake_at,
                utcnow(),
            )
            if row is None:
                existing = await conn.fetchrow(
                    "SELECT * FROM qf_steps WHERE step_id = $1", step.step_id
                )
                if existing is None:
                    return step
                raise ConflictError(f"{step.step_id}:terminal", self._row_to_step(existing))
        finally:
            await conn.close()
        return self._row_to_step(row)

    # ------------------------------------------------------------------
    async def append_event(self, event: Event) -> tuple[bool, Event]:
        conn = await self._connect()
        try:
            async with conn.transaction():
                # Serialize appends per run so created_at never goes backwards.
                await conn.execute("SELECT pg_advisory_xact_lock(hashtext($1))", event.run_id)
                existing = await conn.fetchrow(
                    "SELECT * FROM qf_events WHERE event_id = $1", event.event_id
                )
                if existing is not None:
                    return False, self._row_to_event(existing)
                last = await conn.fetchval(
                    "SELECT max(created_at) FROM qf_events WHERE run_id = $1", event.run_id
                )
                created_at = event.created_at
                if last is not None and last > created_at:
                    created_at = last
                row = await conn.fetchrow(
                    """
                    INSERT INTO qf_events (event_id, run_id, type, payload, created_at)
                    VALUES ($1, $2, $3, $4::jsonb, $5)
                    RETURNING *
                    """,
                    event.event_id,
                    event.run_id,
                    event.type.value,
                    json.dumps(event.payload),
                    created_at,
                )
        finally:
            await conn.close()
        return True, self._row_to_event(row)

    async def list_events(self, run_id: str) -> list[Event]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                "SELECT * FROM qf_events WHERE run_id = $1 ORDER BY created_at, seq", run_id
            )
        finally:
            await conn.close()
        return [self._row_to_event(r) for r in rows]

    # ------------------------------------------------------------------
    async def create_record_if_absent(
        self, key: str, record: dict[str, Any]
    ) -> tuple[bool, LedgerRecord]:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                """
                INSERT INTO qf_ledger (key, record, created_at)
                VALUES ($1, $2::jsonb, $3)
                ON CONFLICT (key) DO NOTHING
                RETURNING *
                """,
                key,
                json.dumps(record),
                utcnow(),
            )
            created = row is not None
            if row is None:
                row = await conn.fetchrow("SELECT * FROM qf_ledger WHERE key = $1", key)
        finally:
            await conn.close()
        return created, LedgerRecord(
            key=row["key"], record=_load(row["record"]), created_at=row["created_at"]
        )

    async def get_record(self, key: str) -> LedgerRecord | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow("SELECT * FROM qf_ledger WHERE key = $1", key)
        finally:
            await conn.close()
        if not row:
            return None
        return LedgerRecord(
            key=row["key"], record=_load(row["record"]), created_at=row["created_at"]
        )

    # ------------------------------------------------------------------
    async def acquire_lease(self, name: str, owner: str, ttl_seconds: float) -> bool:
        now = datetime.now(timezone.utc)
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                """
                INSERT INTO qf_leases (name, owner, expires_at)
                VALUES ($1, $2, $3)
                ON CONFLICT (name) DO UPDATE
                SET owner = EXCLUDED.owner, expires_at = EXCLUDED.expires_at
                WHERE qf_leases.owner = EXCLUDED.owner OR qf_leases.expires_at <= $4
                RETURNING owner
                """,
                name,
                owner,
                now + timedelta(seconds=ttl_seconds),
                now,
            )
        finally:
            await conn.close()
        return row is not None

    async def release_lease(self, name: str, owner: str) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                "DELETE FROM qf_leases WHERE name = $1 AND owner = $2", name, owner
            )
        finally:
            await conn.close()
