"""Amazon SQS transport using boto3."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from ..constants import (
    DEFAULT_VISIBILITY_TIMEOUT,
    SQS_MAX_DELAY,
    SQS_MAX_VISIBILITY_EXTENSION,
)
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

# ReceiveMessage limits
_MAX_BATCH = 10
_MAX_WAIT = 20


class SQSTransport(BaseTransport):
    """Two SQS queues, one per queue kind.

    FIFO queues are detected by the ``.fifo`` suffix; for them the
    idempotency key becomes the deduplication id and the group key (or the
    queue id) the message group. FIFO queues reject per-message delays, so a
    delayed send to one goes out immediately and the consumer re-defers it
    from the ``resume_at`` carried in the payload. Blocking boto3 calls run
    in a worker thread.
    """

    def __init__(
        self,
        workflow_queue_url: str,
        step_queue_url: str,
        region: str = "us-east-1",
        endpoint_url: Optional[str] = None,
        visibility_timeout: int = DEFAULT_VISIBILITY_TIMEOUT,
        max_visibility_extension: Optional[int] = SQS_MAX_VISIBILITY_EXTENSION,
        max_delay: Optional[int] = SQS_MAX_DELAY,
        client: Any = None,
    ) -> None:
        if not workflow_queue_url or not step_queue_url:
            raise ValueError("SQSTransport needs both workflow and step queue URLs")
        self.queue_urls = {
            QueueKind.WORKFLOW: workflow_queue_url,
            QueueKind.STEP: step_queue_url,
        }
        self.region = region
        self.endpoint_url = endpoint_url
        self.visibility_timeout = visibility_timeout
        self.max_visibility_extension = max_visibility_extension
        self.max_delay = max_delay
        self._client = client

    @property
    def client(self) -> Any:
        if self._client is None:
            kwargs: dict = {"region_name": self.region}
            if self.endpoint_url:
                kwargs["endpoint_url"] = self.endpoint_url
            self._client = boto3.client("sqs", **kwargs)
        return self._client

    async def _call(self, method: str, **kwargs: Any) -> Dict[str, Any]:
        try:
            return await asyncio.to_thread(getattr(self.client, method), **kwargs)
        except (BotoCoreError, ClientError) as e:
            raise TransportError(f"SQS {method} failed: {e}") from e

    async def enqueue(
        self,
        queue_name: str,
        payload: Dict[str, Any],
        idempotency_key: Optional[str] = None,
        group_key: Optional[str] = None,
        delay_seconds: float = 0,
    ) -> str:
        kind, queue_id = parse_queue_name(queue_name)
        queue_url = self.queue_urls[kind]
        message_id = new_message_id()
        body = QueueBody.build(queue_id, payload, message_id, idempotency_key)
        params: Dict[str, Any] = {"QueueUrl": queue_url, "MessageBody": body.to_json()}
        if queue_url.endswith(".fifo"):
            params["MessageDeduplicationId"] = idempotency_key or message_id
            params["MessageGroupId"] = group_key or queue_id
        else:
            delay = self.clamp_delay(delay_seconds)
            if delay:
                params["DelaySeconds"] = delay

        logger.debug(f"Sending {message_id} to {queue_url}")
        await self._call("send_message", **params)
        return message_id

    async def receive_batch(
        self, kind: QueueKind, max_messages: int = 10, wait_seconds: float = 0
    ) -> List[MessageEnvelope]:
        response = await self._call(
            "receive_message",
            QueueUrl=self.queue_urls[kind],
            MaxNumberOfMessages=max(1, min(max_messages, _MAX_BATCH)),
            WaitTimeSeconds=int(min(wait_seconds, _MAX_WAIT)),
            VisibilityTimeout=self.visibility_timeout,
            AttributeNames=["ApproximateReceiveCount"],
        )
        batch: List[MessageEnvelope] = []
        for message in response.get("Messages", []):
            if not message.get("Body") or not message.get("ReceiptHandle"):
                continue
            attempt = int(message.get("Attributes", {}).get("ApproximateReceiveCount", 1))
            try:
                body = QueueBody.from_json(message["Body"])
                envelope = MessageEnvelope.from_body(kind, body, attempt, message["ReceiptHandle"])
            except ValueError as e:
                # Left in place; the queue's redrive policy handles poison messages.
                logger.error(f"Failed to parse SQS message {message.get('MessageId')}: {e}")
                continue
            batch.append(envelope)
        return batch

    async def acknowledge(self, envelope: MessageEnvelope) -> None:
        await self._call(
            "delete_message",
            QueueUrl=self.queue_urls[envelope.kind],
            ReceiptHandle=envelope.receipt,
        )

    async def extend_invisibility(self, envelope: MessageEnvelope, seconds: float) -> float:
        applied = self.clamp_extension(seconds)
        await self._call(
            "change_message_visibility",
            QueueUrl=self.queue_urls[envelope.kind],
            ReceiptHandle=envelope.receipt,
            VisibilityTimeout=applied,
        )
        return applied
