"""Shared fixtures: a controllable clock and in-memory backends."""

from __future__ import annotations

import pytest

from queueflow import RegistryReplayEngine, RegistryStepExecutor, Worker
from queueflow.config import QueueflowConfig
from queueflow.persistence import InMemoryWorkflowRepository
from queueflow.transports.inmemory import InMemoryTransport


class FakeClock:
    """Wall clock stand-in that only moves when told to."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def transport(clock) -> InMemoryTransport:
    return InMemoryTransport(clock=clock)


@pytest.fixture
def repository() -> InMemoryWorkflowRepository:
    return InMemoryWorkflowRepository()


@pytest.fixture
def config() -> QueueflowConfig:
    config = QueueflowConfig()
    config.queues.wait_seconds = 0
    return config


@pytest.fixture
def make_worker(transport, repository, config, clock):
    """Build a worker over the shared in-memory fixtures."""

    def factory(registry, engine=None, executor=None):
        return Worker(
            transport,
            repository,
            engine or RegistryReplayEngine(registry),
            executor or RegistryStepExecutor(registry),
            config=config,
            clock=clock,
        )

    return factory
