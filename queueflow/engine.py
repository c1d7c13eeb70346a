"""Interfaces to the replay engine and the step-body executor."""

from __future__ import annotations

from typing import Any, List, Protocol

from pydantic import BaseModel

from .contracts import Directive, WorkflowMessage
from .persistence import Event, Run


class StepContext(BaseModel):
    """What a step body knows about the delivery executing it."""

    run_id: str
    step_id: str
    name: str
    attempt: int


class ReplayEngine(Protocol):
    """Rebuilds workflow state from the event log and says what to do next.

    Must be pure with respect to events already applied and is never entered
    concurrently for one run.
    """

    async def advance(
        self, run: Run, events: List[Event], cause: WorkflowMessage
    ) -> List[Directive]:
        ...


class StepExecutor(Protocol):
    """Runs a step body.

    Raises ``StepDeferred`` to postpone the step and any other exception to
    fail the attempt.
    """

    async def execute(self, name: str, input: Any, context: StepContext) -> Any:
        ...
