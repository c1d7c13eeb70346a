"""Batch dispatcher: routes received messages to the two handlers."""

from __future__ import annotations

import asyncio
import logging
import uuid
import weakref
from typing import Awaitable, Callable, List, Optional

from .contracts import DispatchOutcome, MessageEnvelope, OutcomeStatus, QueueKind
from .errors import TransportError
from .handlers import StepExecutionHandler, WorkflowResumeHandler
from .persistence import WorkflowRepository
from .transports import BaseTransport

logger = logging.getLogger(__name__)

Handler = Callable[[MessageEnvelope], Awaitable[OutcomeStatus]]


class BatchDispatcher:
    """Applies the concurrency policy to one received batch.

    Step messages run concurrently, at most ``step_concurrency`` at a time.
    Workflow messages run one after another in receipt order, each under an
    in-process lock and a durable lease for its run, so the replay engine is
    never entered twice at once for the same run, even across batches and
    processes.
    """

    def __init__(
        self,
        transport: BaseTransport,
        repository: WorkflowRepository,
        step_handler: StepExecutionHandler,
        workflow_handler: WorkflowResumeHandler,
        step_concurrency: int = 10,
        lease_seconds: float = 300,
        lease_retry_seconds: float = 5,
        owner: Optional[str] = None,
    ) -> None:
        self._transport = transport
        self._repository = repository
        self._step_handler = step_handler
        self._workflow_handler = workflow_handler
        self._step_concurrency = step_concurrency
        self._lease_seconds = lease_seconds
        self._lease_retry_seconds = lease_retry_seconds
        self.owner = owner or f"dispatcher-{uuid.uuid4().hex[:12]}"
        self._run_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = (
            weakref.WeakValueDictionary()
        )

    async def dispatch(self, batch: List[MessageEnvelope]) -> List[DispatchOutcome]:
        """Process ``batch`` and return one outcome per message, in batch order."""
        outcomes: List[Optional[DispatchOutcome]] = [None] * len(batch)
        steps = [(i, env) for i, env in enumerate(batch) if env.kind == QueueKind.STEP]
        resumes = [(i, env) for i, env in enumerate(batch) if env.kind == QueueKind.WORKFLOW]
        semaphore = asyncio.Semaphore(self._step_concurrency)

        async def run_step(index: int, envelope: MessageEnvelope) -> None:
            async with semaphore:
                outcomes[index] = await self._guard(envelope, self._step_handler.handle)

        async def run_resumes() -> None:
            for index, envelope in resumes:
                outcomes[index] = await self._guard(envelope, self._resume)

        await asyncio.gather(run_resumes(), *(run_step(i, env) for i, env in steps))
        return [o for o in outcomes if o is not None]

    def _lock_for(self, run_id: str) -> asyncio.Lock:
        lock = self._run_locks.get(run_id)
        if lock is None:
            lock = asyncio.Lock()
            self._run_locks[run_id] = lock
        return lock

    async def _resume(self, envelope: MessageEnvelope) -> OutcomeStatus:
        run_id = envelope.payload.get("run_id")
        if not run_id:
            return await self._workflow_handler.handle(envelope)

        lease = f"run:{run_id}"
        async with self._lock_for(run_id):
            if not await self._repository.acquire_lease(lease, self.owner, self._lease_seconds):
                logger.info(f"Run {run_id} is being resumed elsewhere; deferring")
                await self._transport.extend_invisibility(envelope, self._lease_retry_seconds)
                return OutcomeStatus.RETRY
            try:
                return await self._workflow_handler.handle(envelope)
            finally:
                await self._repository.release_lease(lease, self.owner)

    async def _guard(self, envelope: MessageEnvelope, handler: Handler) -> DispatchOutcome:
        detail = None
        try:
            status = await handler(envelope)
        except TransportError as e:
            logger.error(f"Transport error on {envelope.message_id}: {e}")
            status, detail = OutcomeStatus.RETRY, str(e)
        except Exception as e:
            logger.exception(f"Unhandled error processing {envelope.message_id}")
            status, detail = OutcomeStatus.RETRY, str(e)
        return DispatchOutcome(
            message_id=envelope.message_id,
            queue_name=envelope.queue_name,
            status=status,
            detail=detail,
        )
