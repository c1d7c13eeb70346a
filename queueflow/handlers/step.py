"""Step execution handler."""

from __future__ import annotations

import logging
import time
import uuid
from typing import Any, Callable, Dict, Optional

from pydantic import ValidationError

from ..contracts import (
    MessageEnvelope,
    OutcomeStatus,
    StepMessage,
    WorkflowMessage,
    workflow_queue,
)
from ..deferral import Deferral
from ..engine import StepContext, StepExecutor
from ..errors import DuplicateOperation, StepDeferred
from ..ledger import IdempotencyLedger, outcome_key
from ..persistence import Event, EventType, Step, StepStatus, WorkflowRepository
from ..transports import BaseTransport
from ..utils.retry import compute_backoff

logger = logging.getLogger(__name__)


def describe_error(error: BaseException) -> Dict[str, str]:
    return {"name": type(error).__name__, "message": str(error)}


class StepExecutionHandler:
    """Executes step messages with at-most-once application of outcomes.

    The authoritative outcome of a step is the first ledger record written
    under ``<step_id>:outcome``. Every delivery that reaches the end re-applies
    that record in a fixed order (event, resume message, step status), so a
    terminal step always implies its event and resume message exist. A
    per-step lease keeps concurrent copies of one message from running the
    body twice.
    """

    def __init__(
        self,
        transport: BaseTransport,
        repository: WorkflowRepository,
        executor: StepExecutor,
        deferral: Optional[Deferral] = None,
        max_attempts: int = 3,
        retry_backoff_base: float = 2.0,
        lease_seconds: float = 300,
        lease_retry_seconds: float = 5,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._transport = transport
        self._repository = repository
        self._executor = executor
        self._deferral = deferral or Deferral(transport, clock=clock)
        self._ledger = IdempotencyLedger(repository)
        self._max_attempts = max_attempts
        self._retry_backoff_base = retry_backoff_base
        self._lease_seconds = lease_seconds
        self._lease_retry_seconds = lease_retry_seconds
        self._clock = clock

    async def handle(self, envelope: MessageEnvelope) -> OutcomeStatus:
        try:
            message = StepMessage.model_validate(envelope.payload)
        except ValidationError as e:
            logger.error(f"Dropping malformed step message {envelope.message_id}: {e}")
            await self._transport.acknowledge(envelope)
            return OutcomeStatus.DROPPED

        try:
            return await self._process(envelope, message)
        except DuplicateOperation as dup:
            logger.info(f"Duplicate delivery of step {message.step_id}: {dup.key}")
            await self._transport.acknowledge(envelope)
            return OutcomeStatus.DUPLICATE

    async def _process(self, envelope: MessageEnvelope, message: StepMessage) -> OutcomeStatus:
        _, step = await self._repository.create_step_if_absent(
            Step(
                step_id=message.step_id,
                run_id=message.run_id,
                name=message.name,
                input=message.input,
            )
        )
        if step.is_terminal:
            logger.info(f"Step {step.step_id} already {step.status.value}; acknowledging")
            await self._transport.acknowledge(envelope)
            return OutcomeStatus.DUPLICATE

        # One delivery at a time may run a step; the lease expires if its holder dies.
        lease = f"step:{step.step_id}"
        owner = f"{envelope.message_id}:{uuid.uuid4().hex[:12]}"
        if not await self._repository.acquire_lease(lease, owner, self._lease_seconds):
            logger.info(f"Step {step.step_id} is running under another delivery; deferring")
            await self._transport.extend_invisibility(envelope, self._lease_retry_seconds)
            return OutcomeStatus.RETRY
        try:
            return await self._run_leased(envelope, message)
        finally:
            await self._repository.release_lease(lease, owner)

    async def _run_leased(
        self, envelope: MessageEnvelope, message: StepMessage
    ) -> OutcomeStatus:
        step = await self._repository.get_step(message.step_id)
        if step.is_terminal:
            logger.info(f"Step {step.step_id} finished by another delivery; acknowledging")
            await self._transport.acknowledge(envelope)
            return OutcomeStatus.DUPLICATE

        recorded = await self._ledger.get(outcome_key(step.step_id))
        if recorded is not None:
            logger.info(f"Step {step.step_id} has a recorded outcome; finishing bookkeeping")
            return await self._finish(envelope, message, step, recorded.record)

        if step.status == StepStatus.DEFERRED:
            remaining = self._deferral.remaining(step.wake_at)
            if remaining > 0:
                await self._deferral.schedule_wake(
                    envelope, remaining, resume_at=step.wake_at
                )
                return OutcomeStatus.DEFERRED

        await self._repository.append_event(
            Event(
                event_id=f"{step.step_id}:started",
                run_id=step.run_id,
                type=EventType.STEP_STARTED,
                payload={"step_id": step.step_id, "name": step.name},
            )
        )
        step = await self._repository.update_step(
            step.model_copy(
                update={
                    "status": StepStatus.RUNNING,
                    "attempt": step.attempt + 1,
                    "wake_at": None,
                }
            )
        )
        context = StepContext(
            run_id=step.run_id, step_id=step.step_id, name=step.name, attempt=step.attempt
        )
        logger.info(f"Executing step {step.name} ({step.step_id}) attempt {step.attempt}")

        try:
            output = await self._executor.execute(step.name, step.input, context)
        except StepDeferred as signal:
            return await self._defer(envelope, step, signal.seconds)
        except Exception as e:
            return await self._fail_attempt(envelope, message, step, e)

        return await self._finish(
            envelope, message, step, {"status": StepStatus.COMPLETED.value, "output": output}
        )

    async def _defer(
        self, envelope: MessageEnvelope, step: Step, seconds: float
    ) -> OutcomeStatus:
        wake_at = self._clock() + seconds
        # A deferral is not a failed attempt.
        await self._repository.update_step(
            step.model_copy(
                update={
                    "status": StepStatus.DEFERRED,
                    "attempt": step.attempt - 1,
                    "wake_at": wake_at,
                }
            )
        )
        await self._deferral.schedule_wake(envelope, seconds, resume_at=wake_at)
        logger.info(f"Step {step.step_id} deferred for {seconds}s")
        return OutcomeStatus.DEFERRED

    async def _fail_attempt(
        self,
        envelope: MessageEnvelope,
        message: StepMessage,
        step: Step,
        error: Exception,
    ) -> OutcomeStatus:
        details = describe_error(error)
        if step.attempt < self._max_attempts:
            backoff = compute_backoff(step.attempt, base=self._retry_backoff_base, jitter=0)
            logger.warning(
                f"Step {step.step_id} attempt {step.attempt}/{self._max_attempts} failed: "
                f"{error}; retrying in {backoff:.0f}s"
            )
            await self._repository.update_step(step.model_copy(update={"error": details}))
            await self._transport.extend_invisibility(envelope, backoff)
            return OutcomeStatus.RETRY

        logger.error(
            f"Step {step.step_id} failed after {step.attempt} attempts: {error}"
        )
        return await self._finish(
            envelope, message, step, {"status": StepStatus.FAILED.value, "error": details}
        )

    async def _finish(
        self,
        envelope: MessageEnvelope,
        message: StepMessage,
        step: Step,
        outcome: Dict[str, Any],
    ) -> OutcomeStatus:
        result = await self._ledger.create_if_absent(outcome_key(step.step_id), outcome)
        outcome = result.existing.record
        completed = outcome["status"] == StepStatus.COMPLETED.value
        event_type = EventType.STEP_COMPLETED if completed else EventType.STEP_FAILED

        payload: Dict[str, Any] = {"step_id": step.step_id, "name": step.name}
        if completed:
            payload["output"] = outcome.get("output")
        else:
            payload["error"] = outcome.get("error")
        await self._repository.append_event(
            Event(
                event_id=f"{step.step_id}:{event_type.value}",
                run_id=step.run_id,
                type=event_type,
                payload=payload,
            )
        )

        resume = WorkflowMessage(
            run_id=step.run_id,
            cause=event_type.value,
            step_id=step.step_id,
        )
        await self._transport.enqueue(
            workflow_queue(message.workflow_name),
            resume.model_dump(exclude_none=True),
            idempotency_key=f"{step.step_id}:{event_type.value}",
            group_key=step.run_id,
        )

        await self._repository.update_step(
            step.model_copy(
                update={
                    "status": StepStatus(outcome["status"]),
                    "output": outcome.get("output"),
                    "error": outcome.get("error"),
                }
            )
        )
        await self._transport.acknowledge(envelope)
        logger.info(f"Step {step.step_id} {outcome['status']}")
        return OutcomeStatus.ACKNOWLEDGED
