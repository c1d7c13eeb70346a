"""Transport factory and initialization."""

from __future__ import annotations

import os
from typing import Optional

from ..config import QueueflowConfig, load_config
from .base import BaseTransport
from .inmemory import InMemoryTransport


def get_transport(
    backend: Optional[str] = None, config: Optional[QueueflowConfig] = None
) -> BaseTransport:
    """Factory function to get the configured transport."""

    config = config or load_config()
    backend = (
        backend
        or os.getenv("QUEUEFLOW_TRANSPORT")
        or config.transport.backend
    ).lower()
    queues = config.queues

    if backend == "inmemory":
        return InMemoryTransport(
            visibility_timeout=queues.visibility_timeout,
            max_visibility_extension=queues.max_visibility_extension,
            max_delay=queues.max_delay,
        )
    elif backend == "redis":
        from .redis import RedisTransport

        redis_conf = config.transport.redis
        return RedisTransport(
            host=redis_conf.host,
            port=redis_conf.port,
            db=redis_conf.db,
            password=redis_conf.password,
            namespace=redis_conf.namespace,
            visibility_timeout=queues.visibility_timeout,
            max_visibility_extension=queues.max_visibility_extension,
            max_delay=queues.max_delay,
        )
    elif backend == "sqs":
        from .sqs import SQSTransport

        sqs_conf = config.transport.sqs
        return SQSTransport(
            workflow_queue_url=sqs_conf.workflow_queue_url,
            step_queue_url=sqs_conf.step_queue_url,
            region=sqs_conf.region,
            endpoint_url=sqs_conf.endpoint_url,
            visibility_timeout=queues.visibility_timeout,
            max_visibility_extension=queues.max_visibility_extension,
            max_delay=queues.max_delay,
        )
    else:
        raise ValueError(f"Unsupported transport backend: {backend}")


__all__ = ["BaseTransport", "InMemoryTransport", "get_transport"]
