"""Workflow resume handler."""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, Optional

from pydantic import ValidationError

from ..constants import SLEEP_KEY_NAME
from ..contracts import (
    Complete,
    Directive,
    Fail,
    MessageEnvelope,
    OutcomeStatus,
    ScheduleStep,
    Sleep,
    StepMessage,
    WorkflowMessage,
    derive_key,
    step_queue,
    workflow_queue,
)
from ..deferral import Deferral
from ..engine import ReplayEngine
from ..errors import DuplicateOperation, ReplayFault
from ..ledger import IdempotencyLedger, enqueued_key, terminal_key
from ..persistence import Event, EventType, Run, RunStatus, Step, WorkflowRepository
from ..transports import BaseTransport
from .step import describe_error

logger = logging.getLogger(__name__)


class WorkflowResumeHandler:
    """Advances a run by one replay and applies the resulting directives.

    Must not be entered concurrently for the same run; the dispatcher
    provides that guarantee.
    """

    def __init__(
        self,
        transport: BaseTransport,
        repository: WorkflowRepository,
        engine: ReplayEngine,
        deferral: Optional[Deferral] = None,
        replay_max_attempts: int = 5,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._transport = transport
        self._repository = repository
        self._engine = engine
        self._deferral = deferral or Deferral(transport, clock=clock)
        self._ledger = IdempotencyLedger(repository)
        self._replay_max_attempts = replay_max_attempts
        self._clock = clock

    async def handle(self, envelope: MessageEnvelope) -> OutcomeStatus:
        try:
            message = WorkflowMessage.model_validate(envelope.payload)
        except ValidationError as e:
            logger.error(f"Dropping malformed workflow message {envelope.message_id}: {e}")
            await self._transport.acknowledge(envelope)
            return OutcomeStatus.DROPPED

        try:
            return await self._process(envelope, message)
        except DuplicateOperation as dup:
            logger.info(f"Duplicate resume of run {message.run_id}: {dup.key}")
            await self._transport.acknowledge(envelope)
            return OutcomeStatus.DUPLICATE

    async def _process(
        self, envelope: MessageEnvelope, message: WorkflowMessage
    ) -> OutcomeStatus:
        remaining = self._deferral.remaining(message.resume_at)
        if remaining > 0:
            await self._deferral.schedule_wake(
                envelope, remaining, resume_at=message.resume_at
            )
            return OutcomeStatus.DEFERRED

        run = await self._repository.get_run(message.run_id)
        if run is None:
            logger.warning(f"Run {message.run_id} not found; dropping {envelope.message_id}")
            await self._transport.acknowledge(envelope)
            return OutcomeStatus.DROPPED
        if run.is_terminal:
            logger.info(f"Run {run.run_id} already {run.status.value}; acknowledging")
            await self._transport.acknowledge(envelope)
            return OutcomeStatus.DUPLICATE

        if run.status == RunStatus.CREATED:
            await self._append(run, f"{run.run_id}:started", EventType.RUN_STARTED, {})
            run = await self._repository.update_run(run.run_id, RunStatus.RUNNING)
            logger.info(f"Run {run.run_id} ({run.workflow_name}) started")

        if message.cause == "wake" and message.wait_id:
            await self._append(
                run,
                f"{message.wait_id}:completed",
                EventType.WAIT_COMPLETED,
                {"wait_id": message.wait_id},
            )

        events = await self._repository.list_events(run.run_id)
        try:
            directives = await self._engine.advance(run, events, message)
        except Exception as e:
            faults = await self._record_fault(run, len(events), e)
            if faults < self._replay_max_attempts:
                logger.warning(
                    f"Replay of run {run.run_id} raised ({faults}/{self._replay_max_attempts}): {e}"
                )
                return OutcomeStatus.RETRY
            logger.error(f"Replay of run {run.run_id} failed {faults} times; failing run")
            fault = e if isinstance(e, ReplayFault) else ReplayFault(str(e))
            return await self._terminate(envelope, run, Fail(error=describe_error(fault)))

        for directive in directives:
            if isinstance(directive, ScheduleStep):
                await self._schedule_step(run, directive)
            elif isinstance(directive, Sleep):
                await self._sleep(run, directive)
            else:
                return await self._terminate(envelope, run, directive)

        await self._transport.acknowledge(envelope)
        return OutcomeStatus.ACKNOWLEDGED

    async def _record_fault(self, run: Run, position: int, error: Exception) -> int:
        """Durably count replay faults for ``run`` at one event-log length.

        Counted independent of the delivery attempt, which wake hops also
        advance. Any progress of the log starts a fresh count.
        """
        for n in range(1, self._replay_max_attempts + 1):
            result = await self._ledger.create_if_absent(
                f"{run.run_id}:replay_fault:{position}:{n}", describe_error(error)
            )
            if result.created:
                return n
        return self._replay_max_attempts

    async def _append(
        self, run: Run, event_id: str, event_type: EventType, payload: Dict[str, Any]
    ) -> Event:
        _, event = await self._repository.append_event(
            Event(event_id=event_id, run_id=run.run_id, type=event_type, payload=payload)
        )
        return event

    async def _schedule_step(self, run: Run, directive: ScheduleStep) -> None:
        step_id = derive_key(run.run_id, directive.name, directive.occurrence)
        await self._repository.create_step_if_absent(
            Step(step_id=step_id, run_id=run.run_id, name=directive.name, input=directive.input)
        )
        key = enqueued_key(step_id)
        if await self._ledger.exists(key):
            return
        message = StepMessage(
            run_id=run.run_id,
            workflow_name=run.workflow_name,
            step_id=step_id,
            name=directive.name,
            input=directive.input,
        )
        message_id = await self._transport.enqueue(
            step_queue(directive.name),
            message.model_dump(),
            idempotency_key=step_id,
            group_key=step_id,
        )
        await self._ledger.create_if_absent(key, {"message_id": message_id})
        logger.info(f"Scheduled step {directive.name} ({step_id})")

    async def _sleep(self, run: Run, directive: Sleep) -> None:
        wait_id = derive_key(run.run_id, SLEEP_KEY_NAME, directive.occurrence)
        event = await self._append(
            run,
            f"{wait_id}:created",
            EventType.WAIT_CREATED,
            {
                "wait_id": wait_id,
                "seconds": directive.seconds,
                "resume_at": self._clock() + directive.seconds,
            },
        )
        key = enqueued_key(wait_id)
        if await self._ledger.exists(key):
            return
        resume_at = event.payload["resume_at"]
        wake = WorkflowMessage(run_id=run.run_id, cause="wake", wait_id=wait_id)
        schedule = await self._deferral.schedule_wake(
            workflow_queue(run.workflow_name),
            self._deferral.remaining(resume_at),
            payload=wake.model_dump(exclude_none=True),
            idempotency_key=wait_id,
            group_key=run.run_id,
            resume_at=resume_at,
        )
        await self._ledger.create_if_absent(key, {"message_id": schedule.message_id})
        logger.info(f"Run {run.run_id} sleeping until {resume_at:.0f} ({wait_id})")

    async def _terminate(
        self, envelope: MessageEnvelope, run: Run, directive: Directive
    ) -> OutcomeStatus:
        if isinstance(directive, Complete):
            outcome = {"status": RunStatus.COMPLETED.value, "result": directive.result}
        else:
            outcome = {"status": RunStatus.FAILED.value, "error": directive.error}
        result = await self._ledger.create_if_absent(terminal_key(run.run_id), outcome)
        outcome = result.existing.record
        status = RunStatus(outcome["status"])
        event_type = (
            EventType.RUN_COMPLETED if status == RunStatus.COMPLETED else EventType.RUN_FAILED
        )
        await self._append(
            run,
            f"{run.run_id}:{event_type.value}",
            event_type,
            {k: v for k, v in outcome.items() if k != "status"},
        )
        await self._repository.update_run(
            run.run_id, status, result=outcome.get("result"), error=outcome.get("error")
        )
        await self._transport.acknowledge(envelope)
        logger.info(f"Run {run.run_id} {status.value}")
        return OutcomeStatus.ACKNOWLEDGED
