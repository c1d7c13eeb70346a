"""Redis transport for cross-process messaging."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Dict, List, Optional

try:
    import redis.asyncio as redis
except ImportError:
    redis = None

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

# KEYS[1] visibility zset; ARGV: now, visibility timeout, max messages, hash key prefix
_CLAIM_SCRIPT = """
local ids = redis.call('ZRANGEBYSCORE', KEYS[1], '-inf', ARGV[1], 'LIMIT', 0, ARGV[3])
local out = {}
for _, id in ipairs(ids) do
  redis.call('ZADD', KEYS[1], tonumber(ARGV[1]) + tonumber(ARGV[2]), id)
  local key = ARGV[4] .. id
  local receives = redis.call('HINCRBY', key, 'receives', 1)
  local receipt = id .. ':' .. receives
  redis.call('HSET', key, 'receipt', receipt)
  table.insert(out, {id, redis.call('HGET', key, 'body'), receives, receipt})
end
return out
"""

# KEYS[1] visibility zset, KEYS[2] message hash; ARGV: message id, receipt
_ACK_SCRIPT = """
if redis.call('HGET', KEYS[2], 'receipt') ~= ARGV[2] then
  return 0
end
redis.call('ZREM', KEYS[1], ARGV[1])
redis.call('DEL', KEYS[2])
return 1
"""

# KEYS[1] visibility zset, KEYS[2] message hash; ARGV: message id, receipt, visible_at
_EXTEND_SCRIPT = """
if redis.call('HGET', KEYS[2], 'receipt') ~= ARGV[2] then
  return 0
end
redis.call('ZADD', KEYS[1], 'XX', ARGV[3], ARGV[1])
return 1
"""


class RedisTransport(BaseTransport):
    """Redis-based visibility queue.

    Each queue is a sorted set of message ids scored by the time they become
    visible, plus one hash per message holding the body and receive count.
    Claims, acknowledgements and extensions run as Lua scripts so competing
    workers never receive the same message inside one visibility window.
    Message groups are not supported; per-run ordering relies on the
    dispatcher's lease.
    """

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
        namespace: str = "queueflow",
        visibility_timeout: int = DEFAULT_VISIBILITY_TIMEOUT,
        max_visibility_extension: Optional[int] = None,
        max_delay: Optional[int] = None,
        dedup_window: int = 300,
    ) -> None:
        if redis is None:
            raise ImportError("redis package is required for RedisTransport")

        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self.namespace = namespace
        self.visibility_timeout = visibility_timeout
        self.max_visibility_extension = max_visibility_extension
        self.max_delay = max_delay
        self.dedup_window = dedup_window
        self._redis: Optional[Any] = None
        self._claim = None
        self._ack = None
        self._extend = None

    async def connect(self) -> None:
        """Connect to Redis."""
        self._redis = redis.Redis(
            host=self.host,
            port=self.port,
            db=self.db,
            password=self.password,
            decode_responses=True,
        )
        # Test connection
        await self._redis.ping()
        self._claim = self._redis.register_script(_CLAIM_SCRIPT)
        self._ack = self._redis.register_script(_ACK_SCRIPT)
        self._extend = self._redis.register_script(_EXTEND_SCRIPT)

    async def disconnect(self) -> None:
        """Disconnect from Redis."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    async def _ensure(self) -> None:
        if not self._redis:
            try:
                await self.connect()
            except redis.RedisError as e:
                self._redis = None
                raise TransportError(f"Redis unavailable: {e}") from e

    def _zset(self, kind: QueueKind) -> str:
        return f"{self.namespace}:{kind.value}:visible"

    def _hash_prefix(self, kind: QueueKind) -> str:
        return f"{self.namespace}:{kind.value}:msg:"

    async def enqueue(
        self,
        queue_name: str,
        payload: Dict[str, Any],
        idempotency_key: Optional[str] = None,
        group_key: Optional[str] = None,
        delay_seconds: float = 0,
    ) -> str:
        kind, queue_id = parse_queue_name(queue_name)
        await self._ensure()
        message_id = new_message_id()
        body = QueueBody.build(queue_id, payload, message_id, idempotency_key)
        try:
            if idempotency_key is not None:
                dedup_key = f"{self.namespace}:{kind.value}:dedup:{idempotency_key}"
                fresh = await self._redis.set(
                    dedup_key, message_id, nx=True, ex=self.dedup_window
                )
                if not fresh:
                    logger.debug(f"Deduplicated message {idempotency_key} on {queue_name}")
                    return await self._redis.get(dedup_key) or message_id
            visible_at = time.time() + self.clamp_delay(delay_seconds)
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.hset(
                    self._hash_prefix(kind) + message_id,
                    mapping={"body": body.to_json(), "receives": 0, "group": group_key or ""},
                )
                pipe.zadd(self._zset(kind), {message_id: visible_at})
                await pipe.execute()
        except redis.RedisError as e:
            raise TransportError(f"Failed to enqueue to {queue_name}: {e}") from e
        return message_id

    async def receive_batch(
        self, kind: QueueKind, max_messages: int = 10, wait_seconds: float = 0
    ) -> List[MessageEnvelope]:
        await self._ensure()
        loop = asyncio.get_running_loop()
        deadline = loop.time() + wait_seconds
        while True:
            try:
                claimed = await self._claim(
                    keys=[self._zset(kind)],
                    args=[
                        time.time(),
                        self.visibility_timeout,
                        max_messages,
                        self._hash_prefix(kind),
                    ],
                )
            except redis.RedisError as e:
                raise TransportError(f"Failed to receive from {kind.value}: {e}") from e

            batch: List[MessageEnvelope] = []
            for message_id, raw_body, receives, receipt in claimed:
                try:
                    body = QueueBody.from_json(raw_body)
                    envelope = MessageEnvelope.from_body(kind, body, int(receives), receipt)
                except ValueError as e:
                    logger.error(f"Failed to parse message {message_id}: {e}")
                    continue
                batch.append(envelope)

            if batch or loop.time() >= deadline:
                return batch
            # Brief sleep to prevent busy waiting when no messages
            await asyncio.sleep(0.1)

    async def acknowledge(self, envelope: MessageEnvelope) -> None:
        await self._ensure()
        kind = envelope.kind
        try:
            removed = await self._ack(
                keys=[self._zset(kind), self._hash_prefix(kind) + envelope.message_id],
                args=[envelope.message_id, envelope.receipt],
            )
        except redis.RedisError as e:
            raise TransportError(f"Failed to acknowledge {envelope.message_id}: {e}") from e
        if not removed:
            logger.warning(f"Ignoring stale acknowledgement for {envelope.message_id}")

    async def extend_invisibility(self, envelope: MessageEnvelope, seconds: float) -> float:
        await self._ensure()
        applied = self.clamp_extension(seconds)
        kind = envelope.kind
        try:
            ok = await self._extend(
                keys=[self._zset(kind), self._hash_prefix(kind) + envelope.message_id],
                args=[envelope.message_id, envelope.receipt, time.time() + applied],
            )
        except redis.RedisError as e:
            raise TransportError(f"Failed to extend {envelope.message_id}: {e}") from e
        if not ok:
            raise TransportError(
                f"Message {envelope.message_id} is not in flight under this receipt"
            )
        return applied
