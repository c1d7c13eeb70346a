"""Repository abstraction for workflow state persistence."""

from __future__ import annotations

from typing import Any, Protocol

from .models import Event, LedgerRecord, Run, RunStatus, Step


class WorkflowRepository(Protocol):
    """Protocol for workflow state persistence backends.

    Every write is conditional: creates are insert-if-absent and updates
    refuse to touch a terminal record (``ConflictError``).
    """

    async def create_run(self, run: Run) -> bool:
        """Persist a new run. Returns ``False`` if the id already exists."""

    async def get_run(self, run_id: str) -> Run | None:
        """Retrieve the run by id."""

    async def list_runs(self) -> list[Run]:
        """Return all persisted runs."""

    async def update_run(
        self,
        run_id: str,
        status: RunStatus,
        result: Any = None,
        error: Any = None,
    ) -> Run | None:
        """Transition a non-terminal run. Raises ``ConflictError`` if terminal."""

    async def create_step_if_absent(self, step: Step) -> tuple[bool, Step]:
        """Insert ``step`` unless its id exists; return the stored record."""

    async def get_step(self, step_id: str) -> Step | None:
        """Retrieve a step by id."""

    async def list_steps(self, run_id: str) -> list[Step]:
        """Return the steps of a run in creation order."""

    async def update_step(self, step: Step) -> Step:
        """Overwrite mutable step fields. Raises ``ConflictError`` if terminal."""

    async def append_event(self, event: Event) -> tuple[bool, Event]:
        """Append unless ``event_id`` exists; return the stored event."""

    async def list_events(self, run_id: str) -> list[Event]:
        """Return the run's events ordered by ``created_at``."""

    async def create_record_if_absent(
        self, key: str, record: dict[str, Any]
    ) -> tuple[bool, LedgerRecord]:
        """Ledger conditional create."""

    async def get_record(self, key: str) -> LedgerRecord | None:
        """Ledger lookup."""

    async def acquire_lease(self, name: str, owner: str, ttl_seconds: float) -> bool:
        """Take or renew the named lease unless another owner holds it."""

    async def release_lease(self, name: str, owner: str) -> None:
        """Drop the lease if ``owner`` holds it."""
