"""Trigger and observability API for workflow runs."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Any, List, Optional

from pydantic import BaseModel

from .contracts import WorkflowMessage, workflow_queue
from .persistence import Event, Run, RunStatus, Step, WorkflowRepository
from .transports import BaseTransport

logger = logging.getLogger(__name__)


class RunView(BaseModel):
    """Read-only status of a run."""

    run_id: str
    workflow_name: str
    status: RunStatus
    result: Any = None
    error: Any = None
    created_at: datetime
    completed_at: Optional[datetime] = None

    @classmethod
    def from_run(cls, run: Run) -> "RunView":
        return cls(
            run_id=run.run_id,
            workflow_name=run.workflow_name,
            status=run.status,
            result=run.result,
            error=run.error,
            created_at=run.created_at,
            completed_at=run.completed_at,
        )


class WorkflowClient:
    """Service responsible for starting and inspecting runs."""

    def __init__(self, transport: BaseTransport, repository: WorkflowRepository) -> None:
        self._transport = transport
        self._repository = repository

    async def start_run(
        self, workflow_name: str, input: Any = None, run_id: Optional[str] = None
    ) -> str:
        """Create a run and enqueue its start message.

        Args:
            workflow_name: Registered name of the workflow to run.
            input: JSON-serializable workflow input.
            run_id: Optional caller-chosen id; starting the same id twice
                enqueues a single start message.

        Returns:
            The run identifier.
        """
        run_id = run_id or f"wrun_{uuid.uuid4().hex}"
        created = await self._repository.create_run(
            Run(run_id=run_id, workflow_name=workflow_name, input=input)
        )
        if not created:
            logger.info(f"Run {run_id} already exists; re-sending start message")
        message = WorkflowMessage(run_id=run_id, cause="start")
        await self._transport.enqueue(
            workflow_queue(workflow_name),
            message.model_dump(exclude_none=True),
            idempotency_key=f"{run_id}:start",
            group_key=run_id,
        )
        logger.info(f"Started run {run_id} of {workflow_name}")
        return run_id

    async def get_run(self, run_id: str) -> Optional[RunView]:
        run = await self._repository.get_run(run_id)
        return RunView.from_run(run) if run else None

    async def list_runs(self) -> List[RunView]:
        return [RunView.from_run(r) for r in await self._repository.list_runs()]

    async def list_steps(self, run_id: str) -> List[Step]:
        return await self._repository.list_steps(run_id)

    async def list_events(self, run_id: str) -> List[Event]:
        return await self._repository.list_events(run_id)
