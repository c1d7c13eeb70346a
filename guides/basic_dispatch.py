"""Simple example showing how to start a run and drive it in-process."""

import asyncio

from queueflow import RegistryReplayEngine, RegistryStepExecutor, Worker, WorkflowClient
from queueflow.config import QueueflowConfig
from queueflow.persistence import InMemoryWorkflowRepository
from queueflow.transports import InMemoryTransport

from order_workflow import registry


async def main():
    """Start one order run and poll until it finishes."""
    config = QueueflowConfig()
    config.queues.wait_seconds = 1
    transport = InMemoryTransport(visibility_timeout=config.queues.visibility_timeout)
    repository = InMemoryWorkflowRepository()

    client = WorkflowClient(transport, repository)
    worker = Worker(
        transport,
        repository,
        RegistryReplayEngine(registry),
        RegistryStepExecutor(registry),
        config=config,
    )

    run_id = await client.start_run(
        "order-fulfilment",
        {"sku": "A-1", "quantity": 2, "amount": 40, "cancel_window": 2},
    )
    print(f"Run started: {run_id}")

    worker_task = asyncio.create_task(worker.start())
    while True:
        run = await client.get_run(run_id)
        if run.status.value in ("completed", "failed"):
            break
        await asyncio.sleep(0.5)
    worker.stop()
    await worker_task

    print(f"Run {run.status.value}: {run.result or run.error}")
    for event in await client.list_events(run_id):
        print(f"  {event.type.value}")


if __name__ == "__main__":
    asyncio.run(main())
