"""In-memory transport for testing."""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..constants import DEFAULT_VISIBILITY_TIMEOUT
from ..contracts import (
    MessageEnvelope,
    QueueBody,
    QueueKind,
    new_message_id,
    parse_queue_name,
)
from ..errors import TransportError
from .base import BaseTransport

logger = logging.getLogger(__name__)


@dataclass
class QueuedMessage:
    """A message held by :class:`InMemoryTransport`."""

    kind: QueueKind
    body: QueueBody
    group_key: Optional[str]
    visible_at: float
    receive_count: int = 0
    receipt: Optional[str] = None


class InMemoryTransport(BaseTransport):
    """Simple in-process queue pair for unit tests.

    Models the parts of a visibility-timeout queue the coordinator relies on:
    receive counts, redelivery after the visibility window, delayed sends,
    a deduplication window for idempotency keys and, when ``fifo`` is set,
    one in-flight message per group. Time comes from ``clock`` so tests can
    advance it without sleeping.
    """

    def __init__(
        self,
        visibility_timeout: int = DEFAULT_VISIBILITY_TIMEOUT,
        max_visibility_extension: Optional[int] = None,
        max_delay: Optional[int] = None,
        fifo: bool = False,
        dedup_window: float = 300,
        clock: Callable[[], float] = time.time,
        poll_interval: float = 0.05,
    ) -> None:
        self.visibility_timeout = visibility_timeout
        self.max_visibility_extension = max_visibility_extension
        self.max_delay = max_delay
        self.fifo = fifo
        self.dedup_window = dedup_window
        self.clock = clock
        self.poll_interval = poll_interval
        self._queues: Dict[QueueKind, List[QueuedMessage]] = {
            QueueKind.WORKFLOW: [],
            QueueKind.STEP: [],
        }
        self._dedup: Dict[Tuple[QueueKind, str], Tuple[float, str]] = {}
        self._lock = asyncio.Lock()

    async def enqueue(
        self,
        queue_name: str,
        payload: Dict[str, Any],
        idempotency_key: Optional[str] = None,
        group_key: Optional[str] = None,
        delay_seconds: float = 0,
    ) -> str:
        kind, queue_id = parse_queue_name(queue_name)
        now = self.clock()
        async with self._lock:
            self._prune_dedup(now)
            if idempotency_key is not None:
                seen = self._dedup.get((kind, idempotency_key))
                if seen is not None and seen[0] > now:
                    logger.debug(f"Deduplicated message {idempotency_key} on {queue_name}")
                    return seen[1]
            message_id = new_message_id()
            if idempotency_key is not None:
                self._dedup[(kind, idempotency_key)] = (now + self.dedup_window, message_id)
            body = QueueBody.build(queue_id, payload, message_id, idempotency_key)
            self._queues[kind].append(
                QueuedMessage(
                    kind=kind,
                    body=body,
                    group_key=group_key,
                    visible_at=now + self.clamp_delay(delay_seconds),
                )
            )
        return message_id

    def _prune_dedup(self, now: float) -> None:
        expired = [key for key, (until, _) in self._dedup.items() if until <= now]
        for key in expired:
            del self._dedup[key]

    def _claimable(self, kind: QueueKind, now: float) -> List[QueuedMessage]:
        blocked: set[str] = set()
        ready: List[QueuedMessage] = []
        for msg in self._queues[kind]:
            if self.fifo:
                # Same grouping as SQS: ungrouped messages share their queue id.
                group = msg.group_key or msg.body.id
                if group in blocked:
                    continue
                blocked.add(group)
            if msg.visible_at <= now:
                ready.append(msg)
        return ready

    async def receive_batch(
        self, kind: QueueKind, max_messages: int = 10, wait_seconds: float = 0
    ) -> List[MessageEnvelope]:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + wait_seconds
        while True:
            async with self._lock:
                now = self.clock()
                batch: List[MessageEnvelope] = []
                for msg in self._claimable(kind, now)[:max_messages]:
                    msg.receive_count += 1
                    msg.receipt = uuid.uuid4().hex
                    msg.visible_at = now + self.visibility_timeout
                    batch.append(
                        MessageEnvelope.from_body(
                            kind, msg.body, msg.receive_count, msg.receipt
                        )
                    )
            if batch or loop.time() >= deadline:
                return batch
            await asyncio.sleep(self.poll_interval)

    def _find(self, envelope: MessageEnvelope) -> Optional[QueuedMessage]:
        for msg in self._queues[envelope.kind]:
            if msg.body.message_id == envelope.message_id:
                return msg
        return None

    async def acknowledge(self, envelope: MessageEnvelope) -> None:
        async with self._lock:
            msg = self._find(envelope)
            if msg is None:
                return
            if msg.receipt != envelope.receipt:
                logger.warning(
                    f"Ignoring stale acknowledgement for {envelope.message_id}"
                )
                return
            self._queues[envelope.kind].remove(msg)

    async def extend_invisibility(self, envelope: MessageEnvelope, seconds: float) -> float:
        applied = self.clamp_extension(seconds)
        async with self._lock:
            msg = self._find(envelope)
            if msg is None or msg.receipt != envelope.receipt:
                raise TransportError(
                    f"Message {envelope.message_id} is not in flight under this receipt"
                )
            msg.visible_at = self.clock() + applied
        return applied

    def pending(self, kind: QueueKind) -> List[QueuedMessage]:
        """Return the messages still held on ``kind`` (visible or not)."""
        return list(self._queues[kind])
