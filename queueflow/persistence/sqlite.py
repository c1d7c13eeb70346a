"""SQLite implementation of the workflow repository."""

from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
import time
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, TypeVar

from ..errors import ConflictError
from .models import (
    Event,
    LedgerRecord,
    Run,
    RunStatus,
    Step,
    TERMINAL_RUN_STATUSES,
    TERMINAL_STEP_STATUSES,
    utcnow,
)
from .repository import WorkflowRepository

T = TypeVar("T")


def _dump(value: Any) -> str:
    return json.dumps(value)


def _load(value: str | None) -> Any:
    return json.loads(value) if value is not None else None


def _ts(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class SQLiteWorkflowRepository(WorkflowRepository):
    """Persist workflow state using SQLite."""

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
        cur.executescript(
            """
            CREATE TABLE IF NOT EXISTS runs (
                run_id TEXT PRIMARY KEY,
                workflow_name TEXT NOT NULL,
                input TEXT,
                status TEXT NOT NULL,
                created_at TEXT NOT NULL,
                completed_at TEXT,
                result TEXT,
                error TEXT
            );
            CREATE TABLE IF NOT EXISTS steps (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                step_id TEXT NOT NULL UNIQUE,
                run_id TEXT NOT NULL,
                name TEXT NOT NULL,
                input TEXT,
                status TEXT NOT NULL,
                attempt INTEGER NOT NULL DEFAULT 0,
                output TEXT,
                error TEXT,
                wake_at REAL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );
            CREATE TABLE IF NOT EXISTS events (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                event_id TEXT NOT NULL UNIQUE,
                run_id TEXT NOT NULL,
                type TEXT NOT NULL,
                payload TEXT NOT NULL,
                created_at TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS events_run_idx ON events (run_id, created_at);
            CREATE TABLE IF NOT EXISTS ledger (
                key TEXT PRIMARY KEY,
                record TEXT NOT NULL,
                created_at TEXT NOT NULL
            );
            CREATE TABLE IF NOT EXISTS leases (
                name TEXT PRIMARY KEY,
                owner TEXT NOT NULL,
                expires_at REAL NOT NULL
            );
            """
        )
        self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    def _transaction(self, fn: Callable[[sqlite3.Cursor], T]) -> T:
        with self._lock:
            cur = self._conn.cursor()
            try:
                result = fn(cur)
            except BaseException:
                self._conn.rollback()
                raise
            self._conn.commit()
            return result

    async def _run(self, fn: Callable[[sqlite3.Cursor], T]) -> T:
        return await asyncio.to_thread(self._transaction, fn)

    @staticmethod
    def _row_to_run(row: sqlite3.Row) -> Run:
        return Run(
            run_id=row["run_id"],
            workflow_name=row["workflow_name"],
            input=_load(row["input"]),
            status=row["status"],
            created_at=_ts(row["created_at"]),
            completed_at=_ts(row["completed_at"]),
            result=_load(row["result"]),
            error=_load(row["error"]),
        )

    @staticmethod
    def _row_to_step(row: sqlite3.Row) -> Step:
        return Step(
            step_id=row["step_id"],
            run_id=row["run_id"],
            name=row["name"],
            input=_load(row["input"]),
            status=row["status"],
            attempt=row["attempt"],
            output=_load(row["output"]),
            error=_load(row["error"]),
            wake_at=row["wake_at"],
            created_at=_ts(row["created_at"]),
            updated_at=_ts(row["updated_at"]),
        )

    @staticmethod
    def _row_to_event(row: sqlite3.Row) -> Event:
        return Event(
            event_id=row["event_id"],
            run_id=row["run_id"],
            type=row["type"],
            payload=json.loads(row["payload"]),
            created_at=_ts(row["created_at"]),
        )

    # ------------------------------------------------------------------
    # Runs
    async def create_run(self, run: Run) -> bool:
        def op(cur: sqlite3.Cursor) -> bool:
            cur.execute(
                "INSERT OR IGNORE INTO runs (run_id, workflow_name, input, status, created_at) VALUES (?, ?, ?, ?, ?)",
                (
                    run.run_id,
                    run.workflow_name,
                    _dump(run.input),
                    run.status.value,
                    run.created_at.isoformat(),
                ),
            )
            return cur.rowcount == 1

        return await self._run(op)

    async def get_run(self, run_id: str) -> Run | None:
        def op(cur: sqlite3.Cursor) -> sqlite3.Row | None:
            cur.execute("SELECT * FROM runs WHERE run_id = ?", (run_id,))
            return cur.fetchone()

        row = await self._run(op)
        return self._row_to_run(row) if row else None

    async def list_runs(self) -> list[Run]:
        def op(cur: sqlite3.Cursor) -> list[sqlite3.Row]:
            cur.execute("SELECT * FROM runs ORDER BY created_at")
            return cur.fetchall()

        return [self._row_to_run(r) for r in await self._run(op)]

    async def update_run(
        self,
        run_id: str,
        status: RunStatus,
        result: Any = None,
        error: Any = None,
    ) -> Run | None:
        terminal = status in TERMINAL_RUN_STATUSES

        def op(cur: sqlite3.Cursor) -> sqlite3.Row | None:
            cur.execute("SELECT * FROM runs WHERE run_id = ?", (run_id,))
            row = cur.fetchone()
            if row is None:
                return None
            if RunStatus(row["status"]) in TERMINAL_RUN_STATUSES:
                raise ConflictError(f"{run_id}:terminal", self._row_to_run(row))
            cur.execute(
                "UPDATE runs SET status = ?, completed_at = ?, result = ?, error = ? WHERE run_id = ?",
                (
                    status.value,
                    utcnow().isoformat() if terminal else None,
                    _dump(result) if terminal else None,
                    _dump(error) if terminal else None,
                    run_id,
                ),
            )
            cur.execute("SELECT * FROM runs WHERE run_id = ?", (run_id,))
            return cur.fetchone()

        row = await self._run(op)
        return self._row_to_run(row) if row else None

    # ------------------------------------------------------------------
    # Steps
    async def create_step_if_absent(self, step: Step) -> tuple[bool, Step]:
        def op(cur: sqlite3.Cursor) -> tuple[bool, sqlite3.Row]:
            cur.execute(
                """
                INSERT OR IGNORE INTO steps
                    (step_id, run_id, name, input, status, attempt, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    step.step_id,
                    step.run_id,
                    step.name,
                    _dump(step.input),
                    step.status.value,
                    step.attempt,
                    step.created_at.isoformat(),
                    step.updated_at.isoformat(),
                ),
            )
            created = cur.rowcount == 1
            cur.execute("SELECT * FROM steps WHERE step_id = ?", (step.step_id,))
            return created, cur.fetchone()

        created, row = await self._run(op)
        return created, self._row_to_step(row)

    async def get_step(self, step_id: str) -> Step | None:
        def op(cur: sqlite3.Cursor) -> sqlite3.Row | None:
            cur.execute("SELECT * FROM steps WHERE step_id = ?", (step_id,))
            return cur.fetchone()

        row = await self._run(op)
        return self._row_to_step(row) if row else None

    async def list_steps(self, run_id: str) -> list[Step]:
        def op(cur: sqlite3.Cursor) -> list[sqlite3.Row]:
            cur.execute("SELECT * FROM steps WHERE run_id = ? ORDER BY seq", (run_id,))
            return cur.fetchall()

        return [self._row_to_step(r) for r in await self._run(op)]

    async def update_step(self, step: Step) -> Step:
        def op(cur: sqlite3.Cursor) -> sqlite3.Row:
            cur.execute("SELECT status FROM steps WHERE step_id = ?", (step.step_id,))
            row = cur.fetchone()
            if row is not None and row["status"] in {s.value for s in TERMINAL_STEP_STATUSES}:
                cur.execute("SELECT * FROM steps WHERE step_id = ?", (step.step_id,))
                raise ConflictError(
                    f"{step.step_id}:terminal", self._row_to_step(cur.fetchone())
                )
            cur.execute(
                """
                UPDATE steps
                SET status = ?, attempt = ?, output = ?, error = ?, wake_at = ?, updated_at = ?
                WHERE step_id = ?
                """,
                (
                    step.status.value,
                    step.attempt,
                    _dump(step.output),
                    _dump(step.error),
                    step.wake_at,
                    utcnow().isoformat(),
                    step.step_id,
                ),
            )
            cur.execute("SELECT * FROM steps WHERE step_id = ?", (step.step_id,))
            return cur.fetchone()

        return self._row_to_step(await self._run(op))

    # ------------------------------------------------------------------
    # Events
    async def append_event(self, event: Event) -> tuple[bool, Event]:
        def op(cur: sqlite3.Cursor) -> tuple[bool, sqlite3.Row]:
            cur.execute("SELECT * FROM events WHERE event_id = ?", (event.event_id,))
            row = cur.fetchone()
            if row is not None:
                return False, row
            cur.execute(
                "SELECT created_at FROM events WHERE run_id = ? ORDER BY seq DESC LIMIT 1",
                (event.run_id,),
            )
            last = cur.fetchone()
            created_at = event.created_at
            if last is not None and _ts(last["created_at"]) > created_at:
                created_at = _ts(last["created_at"])
            cur.execute(
                "INSERT INTO events (event_id, run_id, type, payload, created_at) VALUES (?, ?, ?, ?, ?)",
                (
                    event.event_id,
                    event.run_id,
                    event.type.value,
                    json.dumps(event.payload),
                    created_at.isoformat(),
                ),
            )
            cur.execute("SELECT * FROM events WHERE event_id = ?", (event.event_id,))
            return True, cur.fetchone()

        created, row = await self._run(op)
        return created, self._row_to_event(row)

    async def list_events(self, run_id: str) -> list[Event]:
        def op(cur: sqlite3.Cursor) -> list[sqlite3.Row]:
            cur.execute("SELECT * FROM events WHERE run_id = ? ORDER BY seq", (run_id,))
            return cur.fetchall()

        return [self._row_to_event(r) for r in await self._run(op)]

    # ------------------------------------------------------------------
    # Ledger
    async def create_record_if_absent(
        self, key: str, record: dict[str, Any]
    ) -> tuple[bool, LedgerRecord]:
        def op(cur: sqlite3.Cursor) -> tuple[bool, sqlite3.Row]:
            cur.execute(
                "INSERT OR IGNORE INTO ledger (key, record, created_at) VALUES (?, ?, ?)",
                (key, json.dumps(record), utcnow().isoformat()),
            )
            created = cur.rowcount == 1
            cur.execute("SELECT * FROM ledger WHERE key = ?", (key,))
            return created, cur.fetchone()

        created, row = await self._run(op)
        return created, LedgerRecord(
            key=row["key"], record=json.loads(row["record"]), created_at=_ts(row["created_at"])
        )

    async def get_record(self, key: str) -> LedgerRecord | None:
        def op(cur: sqlite3.Cursor) -> sqlite3.Row | None:
            cur.execute("SELECT * FROM ledger WHERE key = ?", (key,))
            return cur.fetchone()

        row = await self._run(op)
        if not row:
            return None
        return LedgerRecord(
            key=row["key"], record=json.loads(row["record"]), created_at=_ts(row["created_at"])
        )

    # ------------------------------------------------------------------
    # Leases
    async def acquire_lease(self, name: str, owner: str, ttl_seconds: float) -> bool:
        def op(cur: sqlite3.Cursor) -> bool:
            now = time.time()
            cur.execute("SELECT owner, expires_at FROM leases WHERE name = ?", (name,))
            row = cur.fetchone()
            if row is not None and row["owner"] != owner and row["expires_at"] > now:
                return False
            cur.execute(
                "INSERT OR REPLACE INTO leases (name, owner, expires_at) VALUES (?, ?, ?)",
                (name, owner, now + ttl_seconds),
            )
            return True

        return await self._run(op)

    async def release_lease(self, name: str, owner: str) -> None:
        def op(cur: sqlite3.Cursor) -> None:
            cur.execute("DELETE FROM leases WHERE name = ? AND owner = ?", (name, owner))

        await self._run(op)
