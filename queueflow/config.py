from __future__ import annotations

import os
from typing import Literal, Optional

import yaml
from pydantic import BaseModel

from .constants import (
    DEFAULT_BATCH_SIZE,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_POLL_ERROR_BACKOFF,
    DEFAULT_REPLAY_MAX_ATTEMPTS,
    DEFAULT_VISIBILITY_TIMEOUT,
    DEFAULT_WAIT_SECONDS,
    SQS_MAX_DELAY,
    SQS_MAX_VISIBILITY_EXTENSION,
)


class RedisConfig(BaseModel):
    """Configuration for Redis transport."""

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None
    namespace: str = "queueflow"


class SQSConfig(BaseModel):
    """Configuration for the SQS transport."""

    region: str = "us-east-1"
    endpoint_url: Optional[str] = None
    workflow_queue_url: Optional[str] = None
    step_queue_url: Optional[str] = None


class TransportConfig(BaseModel):
    """Transport configuration settings."""

    backend: Literal["inmemory", "redis", "sqs"] = "inmemory"
    redis: RedisConfig = RedisConfig()
    sqs: SQSConfig = SQSConfig()


class QueueConfig(BaseModel):
    """Substrate capabilities and polling parameters.

    ``max_visibility_extension`` and ``max_delay`` describe what the queue
    substrate accepts in a single call. ``None`` means unlimited.
    """

    visibility_timeout: int = DEFAULT_VISIBILITY_TIMEOUT
    max_visibility_extension: Optional[int] = SQS_MAX_VISIBILITY_EXTENSION
    max_delay: Optional[int] = SQS_MAX_DELAY
    wait_seconds: int = DEFAULT_WAIT_SECONDS
    batch_size: int = DEFAULT_BATCH_SIZE


class WorkerConfig(BaseModel):
    """Retry and concurrency policy for the worker."""

    step_concurrency: int = 10
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    replay_max_attempts: int = DEFAULT_REPLAY_MAX_ATTEMPTS
    retry_backoff_base: float = 2.0
    poll_error_backoff: float = DEFAULT_POLL_ERROR_BACKOFF
    lease_retry_seconds: int = 5


class QueueflowConfig(BaseModel):
    """Top-level configuration model."""

    transport: TransportConfig = TransportConfig()
    queues: QueueConfig = QueueConfig()
    worker: WorkerConfig = WorkerConfig()
    database_url: Optional[str] = None


def load_config(path: Optional[str] = None) -> QueueflowConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to QUEUEFLOW_CONFIG env
            variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("QUEUEFLOW_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = QueueflowConfig(**data)
    else:
        config = QueueflowConfig()

    env_backend = os.getenv("QUEUEFLOW_TRANSPORT")
    if env_backend:
        config.transport.backend = env_backend.lower()
    env_db_url = os.getenv("QUEUEFLOW_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    workflow_url = os.getenv("QUEUEFLOW_WORKFLOW_QUEUE_URL")
    if workflow_url:
        config.transport.sqs.workflow_queue_url = workflow_url
    step_url = os.getenv("QUEUEFLOW_STEP_QUEUE_URL")
    if step_url:
        config.transport.sqs.step_queue_url = step_url
    return config
