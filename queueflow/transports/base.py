"""Base transport interface for the two coordinator queues."""

from __future__ import annotations

import abc
import math
from typing import Any, Dict, List, Optional

from ..contracts import MessageEnvelope, QueueKind


class BaseTransport(metaclass=abc.ABCMeta):
    """Abstract queue client with visibility-timeout semantics.

    Unacknowledged messages are redelivered once their visibility window
    lapses, with ``attempt`` incremented by the substrate. That redelivery is
    the only retry mechanism the coordinator relies on.

    ``max_visibility_extension`` and ``max_delay`` are the substrate's limits
    for one ``extend_invisibility`` call and one delayed ``enqueue``; ``None``
    means unlimited.
    """

    max_visibility_extension: Optional[int] = None
    max_delay: Optional[int] = None

    async def connect(self) -> None:
        """Open connection to broker (no-op by default)."""
        pass

    async def disconnect(self) -> None:
        """Close connection to broker (no-op by default)."""
        pass

    @abc.abstractmethod
    async def enqueue(
        self,
        queue_name: str,
        payload: Dict[str, Any],
        idempotency_key: Optional[str] = None,
        group_key: Optional[str] = None,
        delay_seconds: float = 0,
    ) -> str:
        """Send ``payload`` to ``queue_name`` and return the message id.

        Raises:
            TransportError: The substrate rejected or could not take the message.
        """
        raise NotImplementedError

    @abc.abstractmethod
    async def receive_batch(
        self, kind: QueueKind, max_messages: int = 10, wait_seconds: float = 0
    ) -> List[MessageEnvelope]:
        """Long-poll up to ``max_messages`` visible messages from one queue."""
        raise NotImplementedError

    @abc.abstractmethod
    async def acknowledge(self, envelope: MessageEnvelope) -> None:
        """Delete the message after successful terminal processing."""
        raise NotImplementedError

    @abc.abstractmethod
    async def extend_invisibility(self, envelope: MessageEnvelope, seconds: float) -> float:
        """Hide the message for ``seconds`` more without acknowledging it.

        Returns the applied (clamped) number of seconds.
        """
        raise NotImplementedError

    def clamp_extension(self, seconds: float) -> int:
        seconds = max(0, math.ceil(seconds))
        if self.max_visibility_extension is not None:
            seconds = min(seconds, self.max_visibility_extension)
        return seconds

    def clamp_delay(self, seconds: float) -> int:
        seconds = max(0, math.ceil(seconds))
        if self.max_delay is not None:
            seconds = min(seconds, self.max_delay)
        return seconds
