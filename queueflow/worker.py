"""Worker process: polls both queues and hands batches to the dispatcher."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, List, Optional

from .config import QueueflowConfig, load_config
from .contracts import DispatchOutcome, QueueKind
from .deferral import Deferral
from .dispatch import BatchDispatcher
from .engine import ReplayEngine, StepExecutor
from .handlers import StepExecutionHandler, WorkflowResumeHandler
from .persistence import WorkflowRepository
from .transports import BaseTransport

logger = logging.getLogger(__name__)


class Worker:
    """Long-polls the workflow and step queues concurrently."""

    def __init__(
        self,
        transport: BaseTransport,
        repository: WorkflowRepository,
        engine: ReplayEngine,
        executor: StepExecutor,
        config: Optional[QueueflowConfig] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config or load_config()
        self._transport = transport
        worker_conf = self.config.worker
        deferral = Deferral(transport, clock=clock)
        self.dispatcher = BatchDispatcher(
            transport,
            repository,
            StepExecutionHandler(
                transport,
                repository,
                executor,
                deferral=deferral,
                max_attempts=worker_conf.max_attempts,
                retry_backoff_base=worker_conf.retry_backoff_base,
                lease_seconds=self.config.queues.visibility_timeout,
                lease_retry_seconds=worker_conf.lease_retry_seconds,
                clock=clock,
            ),
            WorkflowResumeHandler(
                transport,
                repository,
                engine,
                deferral=deferral,
                replay_max_attempts=worker_conf.replay_max_attempts,
                clock=clock,
            ),
            step_concurrency=worker_conf.step_concurrency,
            lease_seconds=self.config.queues.visibility_timeout,
            lease_retry_seconds=worker_conf.lease_retry_seconds,
        )
        self._stopping = False

    def stop(self) -> None:
        self._stopping = True

    async def poll_once(
        self, kind: QueueKind, wait_seconds: Optional[float] = None
    ) -> List[DispatchOutcome]:
        """Receive one batch from ``kind`` and dispatch it."""
        queues = self.config.queues
        batch = await self._transport.receive_batch(
            kind,
            max_messages=queues.batch_size,
            wait_seconds=queues.wait_seconds if wait_seconds is None else wait_seconds,
        )
        if not batch:
            return []
        logger.debug(f"Received {len(batch)} message(s) from {kind.value}")
        return await self.dispatcher.dispatch(batch)

    async def drain(self, max_rounds: int = 1000) -> List[DispatchOutcome]:
        """Process visible messages on both queues until neither has any."""
        outcomes: List[DispatchOutcome] = []
        for _ in range(max_rounds):
            flow = await self.poll_once(QueueKind.WORKFLOW, wait_seconds=0)
            steps = await self.poll_once(QueueKind.STEP, wait_seconds=0)
            outcomes.extend(flow)
            outcomes.extend(steps)
            if not flow and not steps:
                break
        return outcomes

    async def _poll(self, kind: QueueKind, deadline: Optional[float]) -> None:
        loop = asyncio.get_running_loop()
        wait = self.config.queues.wait_seconds
        while not self._stopping:
            if deadline is not None:
                left = deadline - loop.time()
                if left <= 0:
                    break
                wait = min(self.config.queues.wait_seconds, left)
            try:
                await self.poll_once(kind, wait_seconds=wait)
            except Exception as e:
                logger.error(f"Error polling {kind.value}: {e}")
                await asyncio.sleep(self.config.worker.poll_error_backoff)

    async def start(self, lifespan: Optional[float] = None) -> None:
        """Poll until stopped.

        Args:
            lifespan: Maximum time in seconds to keep polling. If None, runs
                until :meth:`stop` is called.
        """
        self._stopping = False
        await self._transport.connect()
        loop = asyncio.get_running_loop()
        deadline = loop.time() + lifespan if lifespan else None
        logger.info("Worker polling workflow and step queues")
        try:
            await asyncio.gather(
                self._poll(QueueKind.WORKFLOW, deadline),
                self._poll(QueueKind.STEP, deadline),
            )
        finally:
            await self._transport.disconnect()
            logger.info("Worker stopped")
