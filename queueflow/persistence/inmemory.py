"""In-memory implementation of the workflow repository."""

from __future__ import annotations

import time
from typing import Any, Dict, List, Tuple

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


class InMemoryWorkflowRepository(WorkflowRepository):
    """Store workflow state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. Records are copied on the way in and
    out so callers never alias stored state.
    """

    def __init__(self) -> None:
        self._runs: Dict[str, Run] = {}
        self._steps: Dict[str, Step] = {}
        self._events: Dict[str, List[Event]] = {}
        self._event_ids: Dict[str, Event] = {}
        self._records: Dict[str, LedgerRecord] = {}
        self._leases: Dict[str, Tuple[str, float]] = {}

    # ------------------------------------------------------------------
    async def create_run(self, run: Run) -> bool:
        if run.run_id in self._runs:
            return False
        self._runs[run.run_id] = run.model_copy(deep=True)
        return True

    async def get_run(self, run_id: str) -> Run | None:
        run = self._runs.get(run_id)
        return run.model_copy(deep=True) if run else None

    async def list_runs(self) -> list[Run]:
        return [r.model_copy(deep=True) for r in self._runs.values()]

    async def update_run(
        self,
        run_id: str,
        status: RunStatus,
        result: Any = None,
        error: Any = None,
    ) -> Run | None:
        run = self._runs.get(run_id)
        if run is None:
            return None
        if run.status in TERMINAL_RUN_STATUSES:
            raise ConflictError(f"{run_id}:terminal", run.model_copy(deep=True))
        run.status = status
        if status in TERMINAL_RUN_STATUSES:
            run.completed_at = utcnow()
            run.result = result
            run.error = error
        return run.model_copy(deep=True)

    # ------------------------------------------------------------------
    async def create_step_if_absent(self, step: Step) -> tuple[bool, Step]:
        existing = self._steps.get(step.step_id)
        if existing is not None:
            return False, existing.model_copy(deep=True)
        self._steps[step.step_id] = step.model_copy(deep=True)
        return True, step.model_copy(deep=True)

    async def get_step(self, step_id: str) -> Step | None:
        step = self._steps.get(step_id)
        return step.model_copy(deep=True) if step else None

    async def list_steps(self, run_id: str) -> list[Step]:
        return [
            s.model_copy(deep=True) for s in self._steps.values() if s.run_id == run_id
        ]

    async def update_step(self, step: Step) -> Step:
        existing = self._steps.get(step.step_id)
        if existing is not None and existing.is_terminal:
            raise ConflictError(f"{step.step_id}:terminal", existing.model_copy(deep=True))
        stored = step.model_copy(deep=True, update={"updated_at": utcnow()})
        self._steps[step.step_id] = stored
        return stored.model_copy(deep=True)

    # ------------------------------------------------------------------
    async def append_event(self, event: Event) -> tuple[bool, Event]:
        existing = self._event_ids.get(event.event_id)
        if existing is not None:
            return False, existing.model_copy(deep=True)
        log = self._events.setdefault(event.run_id, [])
        created_at = event.created_at
        if log and log[-1].created_at > created_at:
            created_at = log[-1].created_at
        stored = event.model_copy(deep=True, update={"created_at": created_at})
        log.append(stored)
        self._event_ids[event.event_id] = stored
        return True, stored.model_copy(deep=True)

    async def list_events(self, run_id: str) -> list[Event]:
        return [e.model_copy(deep=True) for e in self._events.get(run_id, [])]

    # ------------------------------------------------------------------
    async def create_record_if_absent(
        self, key: str, record: dict[str, Any]
    ) -> tuple[bool, LedgerRecord]:
        existing = self._records.get(key)
        if existing is not None:
            return False, existing.model_copy(deep=True)
        stored = LedgerRecord(key=key, record=dict(record))
        self._records[key] = stored
        return True, stored.model_copy(deep=True)

    async def get_record(self, key: str) -> LedgerRecord | None:
        record = self._records.get(key)
        return record.model_copy(deep=True) if record else None

    # ------------------------------------------------------------------
    async def acquire_lease(self, name: str, owner: str, ttl_seconds: float) -> bool:
        now = time.time()
        held = self._leases.get(name)
        if held is not None and held[0] != owner and held[1] > now:
            return False
        self._leases[name] = (owner, now + ttl_seconds)
        return True

    async def release_lease(self, name: str, owner: str) -> None:
        held = self._leases.get(name)
        if held is not None and held[0] == owner:
            del self._leases[name]
