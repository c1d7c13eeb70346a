import asyncio

import pytest

from queueflow.contracts import OutcomeStatus, QueueKind, StepMessage, step_queue
from queueflow.errors import StepDeferred
from queueflow.handlers import StepExecutionHandler
from queueflow.ledger import outcome_key
from queueflow.persistence import EventType, Run, StepStatus
from queueflow.transports.inmemory import InMemoryTransport

STEP_ID = "r1/charge/0"


class ScriptedExecutor:
    """Returns (or raises) the scripted results in order."""

    def __init__(self, *results):
        self.results = list(results)
        self.calls = []

    async def execute(self, name, input, context):
        self.calls.append(context)
        result = self.results.pop(0)
        if isinstance(result, BaseException):
            raise result
        return result


async def _send_step(transport, repository):
    await repository.create_run(Run(run_id="r1", workflow_name="signup"))
    message = StepMessage(
        run_id="r1", workflow_name="signup", step_id=STEP_ID, name="charge", input={"amount": 5}
    )
    await transport.enqueue(step_queue("charge"), message.model_dump())


async def _deliver(transport):
    batch = await transport.receive_batch(QueueKind.STEP)
    assert len(batch) == 1
    return batch[0]


def _handler(transport, repository, executor, clock):
    return StepExecutionHandler(transport, repository, executor, max_attempts=3, clock=clock)


@pytest.mark.asyncio
async def test_successful_step(transport, repository, clock):
    executor = ScriptedExecutor({"charged": 5})
    handler = _handler(transport, repository, executor, clock)
    await _send_step(transport, repository)

    status = await handler.handle(await _deliver(transport))

    assert status == OutcomeStatus.ACKNOWLEDGED
    step = await repository.get_step(STEP_ID)
    assert step.status == StepStatus.COMPLETED
    assert step.output == {"charged": 5}
    assert step.attempt == 1
    assert executor.calls[0].attempt == 1
    assert executor.calls[0].step_id == STEP_ID

    events = await repository.list_events("r1")
    assert [e.type for e in events] == [EventType.STEP_STARTED, EventType.STEP_COMPLETED]
    assert events[1].payload["output"] == {"charged": 5}

    assert transport.pending(QueueKind.STEP) == []
    resume = (await transport.receive_batch(QueueKind.WORKFLOW))[0]
    assert resume.queue_name == "__wkf_workflow_signup"
    assert resume.payload == {"run_id": "r1", "cause": "step_completed", "step_id": STEP_ID}


@pytest.mark.asyncio
async def test_failed_attempt_is_retried_after_backoff(transport, repository, clock):
    executor = ScriptedExecutor(RuntimeError("card declined"), {"charged": 5})
    handler = _handler(transport, repository, executor, clock)
    await _send_step(transport, repository)

    status = await handler.handle(await _deliver(transport))

    assert status == OutcomeStatus.RETRY
    step = await repository.get_step(STEP_ID)
    assert step.status == StepStatus.RUNNING
    assert step.attempt == 1
    assert step.error == {"name": "RuntimeError", "message": "card declined"}
    assert await transport.receive_batch(QueueKind.WORKFLOW) == []

    assert await transport.receive_batch(QueueKind.STEP) == []
    clock.advance(2)
    status = await handler.handle(await _deliver(transport))

    assert status == OutcomeStatus.ACKNOWLEDGED
    assert executor.calls[1].attempt == 2
    assert (await repository.get_step(STEP_ID)).status == StepStatus.COMPLETED


@pytest.mark.asyncio
async def test_step_fails_after_max_attempts(transport, repository, clock):
    executor = ScriptedExecutor(*(RuntimeError(f"boom {n}") for n in range(3)))
    handler = _handler(transport, repository, executor, clock)
    await _send_step(transport, repository)

    statuses = []
    for _ in range(3):
        statuses.append(await handler.handle(await _deliver(transport)))
        clock.advance(60)

    assert statuses == [OutcomeStatus.RETRY, OutcomeStatus.RETRY, OutcomeStatus.ACKNOWLEDGED]
    step = await repository.get_step(STEP_ID)
    assert step.status == StepStatus.FAILED
    assert step.attempt == 3
    assert step.error == {"name": "RuntimeError", "message": "boom 2"}

    events = await repository.list_events("r1")
    assert [e.type for e in events].count(EventType.STEP_FAILED) == 1
    resume = (await transport.receive_batch(QueueKind.WORKFLOW))[0]
    assert resume.payload["cause"] == "step_failed"
    assert transport.pending(QueueKind.STEP) == []


@pytest.mark.asyncio
async def test_deferral_does_not_consume_an_attempt(repository, clock):
    transport = InMemoryTransport(clock=clock, max_visibility_extension=300)
    executor = ScriptedExecutor(StepDeferred(600), "done")
    handler = _handler(transport, repository, executor, clock)
    await _send_step(transport, repository)

    status = await handler.handle(await _deliver(transport))
    assert status == OutcomeStatus.DEFERRED
    step = await repository.get_step(STEP_ID)
    assert step.status == StepStatus.DEFERRED
    assert step.attempt == 0
    assert step.wake_at == clock() + 600

    # First hop ends early; the body must not run yet.
    clock.advance(300)
    status = await handler.handle(await _deliver(transport))
    assert status == OutcomeStatus.DEFERRED
    assert len(executor.calls) == 1

    clock.advance(300)
    status = await handler.handle(await _deliver(transport))
    assert status == OutcomeStatus.ACKNOWLEDGED
    assert executor.calls[1].attempt == 1
    step = await repository.get_step(STEP_ID)
    assert step.status == StepStatus.COMPLETED
    assert step.wake_at is None


@pytest.mark.asyncio
async def test_redelivery_of_terminal_step_is_duplicate(transport, repository, clock):
    executor = ScriptedExecutor("done")
    handler = _handler(transport, repository, executor, clock)
    await _send_step(transport, repository)
    await handler.handle(await _deliver(transport))

    # A second copy of the same step message.
    message = StepMessage(run_id="r1", workflow_name="signup", step_id=STEP_ID, name="charge")
    await transport.enqueue(step_queue("charge"), message.model_dump())
    status = await handler.handle(await _deliver(transport))

    assert status == OutcomeStatus.DUPLICATE
    assert len(executor.calls) == 1
    assert transport.pending(QueueKind.STEP) == []
    events = await repository.list_events("r1")
    assert [e.type for e in events].count(EventType.STEP_COMPLETED) == 1


@pytest.mark.asyncio
async def test_recorded_outcome_is_finished_without_running_body(transport, repository, clock):
    executor = ScriptedExecutor()
    handler = _handler(transport, repository, executor, clock)
    await _send_step(transport, repository)
    # An earlier delivery recorded the outcome and then crashed.
    await repository.create_record_if_absent(
        outcome_key(STEP_ID), {"status": "completed", "output": 42}
    )

    status = await handler.handle(await _deliver(transport))

    assert status == OutcomeStatus.ACKNOWLEDGED
    assert executor.calls == []
    step = await repository.get_step(STEP_ID)
    assert step.status == StepStatus.COMPLETED
    assert step.output == 42
    events = await repository.list_events("r1")
    assert [e.type for e in events] == [EventType.STEP_COMPLETED]
    assert len(await transport.receive_batch(QueueKind.WORKFLOW)) == 1


@pytest.mark.asyncio
async def test_malformed_message_is_dropped(transport, repository, clock):
    handler = _handler(transport, repository, ScriptedExecutor(), clock)
    await transport.enqueue(step_queue("charge"), {"unexpected": True})

    status = await handler.handle(await _deliver(transport))

    assert status == OutcomeStatus.DROPPED
    assert transport.pending(QueueKind.STEP) == []


class YieldingExecutor(ScriptedExecutor):
    """Gives up the event loop once before returning, like real I/O."""

    async def execute(self, name, input, context):
        await asyncio.sleep(0)
        return await super().execute(name, input, context)


@pytest.mark.asyncio
async def test_concurrent_copies_run_the_body_once(transport, repository, clock):
    executor = YieldingExecutor({"charged": 5}, {"charged": 5})
    handler = _handler(transport, repository, executor, clock)
    await _send_step(transport, repository)
    message = StepMessage(
        run_id="r1", workflow_name="signup", step_id=STEP_ID, name="charge", input={"amount": 5}
    )
    await transport.enqueue(step_queue("charge"), message.model_dump())

    first, second = await transport.receive_batch(QueueKind.STEP)
    statuses = await asyncio.gather(handler.handle(first), handler.handle(second))

    assert sorted(s.value for s in statuses) == sorted(
        [OutcomeStatus.ACKNOWLEDGED.value, OutcomeStatus.RETRY.value]
    )
    assert len(executor.calls) == 1
    (step,) = await repository.list_steps("r1")
    assert step.status == StepStatus.COMPLETED
    assert step.attempt == 1

    clock.advance(5)
    status = await handler.handle(await _deliver(transport))

    assert status == OutcomeStatus.DUPLICATE
    assert len(executor.calls) == 1
    assert transport.pending(QueueKind.STEP) == []
    events = await repository.list_events("r1")
    assert [e.type for e in events].count(EventType.STEP_COMPLETED) == 1
