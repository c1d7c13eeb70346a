import asyncio

import pytest

from queueflow.contracts import (
    Complete,
    OutcomeStatus,
    QueueKind,
    StepMessage,
    WorkflowMessage,
    step_queue,
    workflow_queue,
)
from queueflow.dispatch import BatchDispatcher
from queueflow.handlers import StepExecutionHandler, WorkflowResumeHandler
from queueflow.persistence import Run, RunStatus


class ExclusiveEngine:
    """Notices if it is ever entered twice at once for the same run."""

    def __init__(self):
        self.active = set()
        self.reentered = False
        self.calls = 0

    async def advance(self, run, events, cause):
        if run.run_id in self.active:
            self.reentered = True
        self.active.add(run.run_id)
        try:
            self.calls += 1
            await asyncio.sleep(0.01)
            return []
        finally:
            self.active.discard(run.run_id)


class ConcurrencyTrackingExecutor:
    def __init__(self):
        self.running = 0
        self.peak = 0

    async def execute(self, name, input, context):
        self.running += 1
        self.peak = max(self.peak, self.running)
        await asyncio.sleep(0.01)
        self.running -= 1
        return name


def _dispatcher(transport, repository, engine, executor, clock, **kwargs):
    return BatchDispatcher(
        transport,
        repository,
        StepExecutionHandler(transport, repository, executor, clock=clock),
        WorkflowResumeHandler(transport, repository, engine, clock=clock),
        **kwargs,
    )


async def _resume_messages(transport, repository, run_id, count):
    await repository.create_run(Run(run_id=run_id, workflow_name="signup"))
    for n in range(count):
        await transport.enqueue(
            workflow_queue("signup"),
            WorkflowMessage(run_id=run_id, cause="step_completed", step_id=f"s{n}").model_dump(),
        )


@pytest.mark.asyncio
async def test_workflow_messages_for_one_run_are_serialized(transport, repository, clock):
    engine = ExclusiveEngine()
    dispatcher = _dispatcher(transport, repository, engine, ConcurrencyTrackingExecutor(), clock)
    await _resume_messages(transport, repository, "r1", 3)

    batch = await transport.receive_batch(QueueKind.WORKFLOW)
    outcomes = await dispatcher.dispatch(batch)

    assert [o.status for o in outcomes] == [OutcomeStatus.ACKNOWLEDGED] * 3
    assert [o.message_id for o in outcomes] == [env.message_id for env in batch]
    assert engine.calls == 3
    assert not engine.reentered


@pytest.mark.asyncio
async def test_concurrent_batches_never_replay_one_run_twice(transport, repository, clock):
    engine = ExclusiveEngine()
    executor = ConcurrencyTrackingExecutor()
    first = _dispatcher(transport, repository, engine, executor, clock)
    second = _dispatcher(transport, repository, engine, executor, clock)
    await _resume_messages(transport, repository, "r1", 2)

    batch_a = await transport.receive_batch(QueueKind.WORKFLOW, max_messages=1)
    batch_b = await transport.receive_batch(QueueKind.WORKFLOW, max_messages=1)
    outcomes_a, outcomes_b = await asyncio.gather(
        first.dispatch(batch_a), second.dispatch(batch_b)
    )

    statuses = sorted(o.status.value for o in outcomes_a + outcomes_b)
    assert statuses == [OutcomeStatus.ACKNOWLEDGED.value, OutcomeStatus.RETRY.value]
    assert not engine.reentered
    assert engine.calls == 1
    # The loser is hidden for the lease retry interval, not dropped.
    assert len(transport.pending(QueueKind.WORKFLOW)) == 1


@pytest.mark.asyncio
async def test_lease_held_elsewhere_defers_message(transport, repository, clock):
    engine = ExclusiveEngine()
    dispatcher = _dispatcher(
        transport, repository, engine, ConcurrencyTrackingExecutor(), clock,
        lease_retry_seconds=7,
    )
    await _resume_messages(transport, repository, "r1", 1)
    await repository.acquire_lease("run:r1", "other-worker", 60)

    outcomes = await dispatcher.dispatch(await transport.receive_batch(QueueKind.WORKFLOW))

    assert outcomes[0].status == OutcomeStatus.RETRY
    assert engine.calls == 0
    (message,) = transport.pending(QueueKind.WORKFLOW)
    assert message.visible_at == clock() + 7


@pytest.mark.asyncio
async def test_lease_is_released_after_resume(transport, repository, clock):
    engine = ExclusiveEngine()
    dispatcher = _dispatcher(transport, repository, engine, ConcurrencyTrackingExecutor(), clock)
    await _resume_messages(transport, repository, "r1", 1)

    await dispatcher.dispatch(await transport.receive_batch(QueueKind.WORKFLOW))

    assert await repository.acquire_lease("run:r1", "someone-else", 60)


@pytest.mark.asyncio
async def test_steps_run_concurrently_up_to_limit(transport, repository, clock):
    executor = ConcurrencyTrackingExecutor()
    dispatcher = _dispatcher(
        transport, repository, ExclusiveEngine(), executor, clock, step_concurrency=2
    )
    await repository.create_run(Run(run_id="r1", workflow_name="signup"))
    for n in range(5):
        message = StepMessage(
            run_id="r1", workflow_name="signup", step_id=f"r1/fetch/{n}", name="fetch"
        )
        await transport.enqueue(step_queue("fetch"), message.model_dump())

    outcomes = await dispatcher.dispatch(await transport.receive_batch(QueueKind.STEP))

    assert [o.status for o in outcomes] == [OutcomeStatus.ACKNOWLEDGED] * 5
    assert executor.peak == 2


@pytest.mark.asyncio
async def test_handler_errors_become_retry_outcomes(transport, repository, clock):
    class CompletingEngine:
        async def advance(self, run, events, cause):
            return [Complete(result=None)]

    class FailingRepository(type(repository)):
        async def update_run(self, *args, **kwargs):
            raise RuntimeError("database went away")

    broken_repo = FailingRepository()
    dispatcher = _dispatcher(
        transport, broken_repo, CompletingEngine(), ConcurrencyTrackingExecutor(), clock
    )
    await broken_repo.create_run(Run(run_id="r1", workflow_name="signup", status=RunStatus.RUNNING))
    await transport.enqueue(
        workflow_queue("signup"), WorkflowMessage(run_id="r1").model_dump(exclude_none=True)
    )

    outcomes = await dispatcher.dispatch(await transport.receive_batch(QueueKind.WORKFLOW))

    assert outcomes[0].status == OutcomeStatus.RETRY
    assert "database went away" in outcomes[0].detail
    assert len(transport.pending(QueueKind.WORKFLOW)) == 1
