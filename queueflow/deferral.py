"""Deferral: turn a requested delay into queue redelivery timing.

A wait longer than the substrate accepts in one call is split into hops.
The first hop is scheduled here; the absolute ``resume_at`` travels with the
message (or on the deferred step) and the handler that receives the early
redelivery calls :meth:`Deferral.schedule_wake` again for what is left.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, Optional, Union

from pydantic import BaseModel

from .contracts import MessageEnvelope
from .transports import BaseTransport

logger = logging.getLogger(__name__)


class WakeSchedule(BaseModel):
    hop_seconds: float
    remaining_seconds: float
    resume_at: float
    message_id: Optional[str] = None

    @property
    def needs_another_hop(self) -> bool:
        return self.remaining_seconds > 0


class Deferral:
    """Schedules wakes on ``transport`` without the caller knowing its limits."""

    def __init__(
        self, transport: BaseTransport, clock: Callable[[], float] = time.time
    ) -> None:
        self._transport = transport
        self._clock = clock

    def remaining(self, resume_at: Optional[float]) -> float:
        """Seconds left until ``resume_at``; zero once due."""
        if resume_at is None:
            return 0.0
        return max(0.0, resume_at - self._clock())

    async def schedule_wake(
        self,
        target: Union[MessageEnvelope, str],
        total_seconds: float,
        payload: Optional[Dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
        group_key: Optional[str] = None,
        resume_at: Optional[float] = None,
    ) -> WakeSchedule:
        """Arrange for ``target`` to be (re)delivered ``total_seconds`` from now.

        Args:
            target: A received envelope, whose invisibility is extended, or a
                queue name, to which ``payload`` is sent with a delay.
            total_seconds: Full wait requested by the caller.
            payload: Message body for a queue-name target. ``resume_at`` is
                stamped into it.
            resume_at: Absolute wake time when already fixed by an earlier hop.
        """
        now = self._clock()
        total_seconds = max(0.0, total_seconds)
        if resume_at is None:
            resume_at = now + total_seconds

        if isinstance(target, MessageEnvelope):
            hop = await self._transport.extend_invisibility(target, total_seconds)
            message_id = target.message_id
        else:
            hop = self._transport.clamp_delay(total_seconds)
            message_id = await self._transport.enqueue(
                target,
                {**(payload or {}), "resume_at": resume_at},
                idempotency_key=idempotency_key,
                group_key=group_key,
                delay_seconds=hop,
            )

        remaining = max(0.0, total_seconds - hop)
        if remaining:
            logger.info(
                f"Wake for {message_id} split: {hop}s now, {remaining:.0f}s in later hops"
            )
        else:
            logger.debug(f"Wake for {message_id} scheduled in {hop}s")
        return WakeSchedule(
            hop_seconds=hop,
            remaining_seconds=remaining,
            resume_at=resume_at,
            message_id=message_id,
        )
