"""Core message contracts for the queueflow coordinator."""

from __future__ import annotations

import base64
import json
import uuid
from enum import Enum
from typing import Any, Dict, Literal, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field

from .constants import STEP_QUEUE_PREFIX, WORKFLOW_QUEUE_PREFIX


class QueueKind(str, Enum):
    """The two physical queues, identified by their name prefix."""

    WORKFLOW = WORKFLOW_QUEUE_PREFIX
    STEP = STEP_QUEUE_PREFIX


def parse_queue_name(queue_name: str) -> Tuple[QueueKind, str]:
    """Split ``__wkf_workflow_<id>`` / ``__wkf_step_<id>`` into kind and id."""
    for kind in (QueueKind.WORKFLOW, QueueKind.STEP):
        if queue_name.startswith(kind.value):
            return kind, queue_name[len(kind.value) :]
    raise ValueError(f"Invalid queue name format: {queue_name}")


def workflow_queue(queue_id: str) -> str:
    return f"{WORKFLOW_QUEUE_PREFIX}{queue_id}"


def step_queue(queue_id: str) -> str:
    return f"{STEP_QUEUE_PREFIX}{queue_id}"


def new_message_id() -> str:
    return f"msg_{uuid.uuid4().hex}"


def derive_key(run_id: str, name: str, occurrence: int) -> str:
    """Stable identifier for the ``occurrence``-th use of ``name`` in a run."""
    return f"{run_id}/{name}/{occurrence}"


class QueueBody(BaseModel):
    """Wire body stored in the queue substrate."""

    id: str
    data: str
    attempt: int = 1
    message_id: str = Field(alias="messageId")
    idempotency_key: Optional[str] = Field(default=None, alias="idempotencyKey")

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def build(
        cls,
        queue_id: str,
        payload: Dict[str, Any],
        message_id: str,
        idempotency_key: Optional[str] = None,
    ) -> "QueueBody":
        raw = json.dumps(payload).encode("utf-8")
        return cls(
            id=queue_id,
            data=base64.b64encode(raw).decode("ascii"),
            message_id=message_id,
            idempotency_key=idempotency_key,
        )

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)

    @classmethod
    def from_json(cls, data: str) -> "QueueBody":
        return cls.model_validate_json(data)

    def payload(self) -> Dict[str, Any]:
        return json.loads(base64.b64decode(self.data))


class MessageEnvelope(BaseModel):
    """A received message together with its delivery metadata."""

    id: str
    queue_name: str
    attempt: int
    message_id: str
    idempotency_key: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)
    receipt: Any = None

    @property
    def kind(self) -> QueueKind:
        return parse_queue_name(self.queue_name)[0]

    @classmethod
    def from_body(
        cls, kind: QueueKind, body: QueueBody, attempt: int, receipt: Any
    ) -> "MessageEnvelope":
        return cls(
            id=body.id,
            queue_name=f"{kind.value}{body.id}",
            attempt=attempt,
            message_id=body.message_id,
            idempotency_key=body.idempotency_key,
            payload=body.payload(),
            receipt=receipt,
        )


class StepMessage(BaseModel):
    """Payload of a step-execution message."""

    run_id: str
    workflow_name: str
    step_id: str
    name: str
    input: Any = None


ResumeCause = Literal["start", "step_completed", "step_failed", "wake"]


class WorkflowMessage(BaseModel):
    """Payload of a workflow-resume message."""

    run_id: str
    cause: ResumeCause = "start"
    step_id: Optional[str] = None
    wait_id: Optional[str] = None
    resume_at: Optional[float] = None


class ScheduleStep(BaseModel):
    """Directive: run step ``name`` with ``input``."""

    kind: Literal["schedule_step"] = "schedule_step"
    name: str
    input: Any = None
    occurrence: int = 0


class Sleep(BaseModel):
    """Directive: suspend the run for ``seconds``."""

    kind: Literal["sleep"] = "sleep"
    seconds: float
    occurrence: int = 0


class Complete(BaseModel):
    """Directive: finish the run with ``result``."""

    kind: Literal["complete"] = "complete"
    result: Any = None


class Fail(BaseModel):
    """Directive: fail the run with ``error``."""

    kind: Literal["fail"] = "fail"
    error: Any = None


Directive = Union[ScheduleStep, Sleep, Complete, Fail]


class OutcomeStatus(str, Enum):
    """What happened to one delivered message."""

    ACKNOWLEDGED = "acknowledged"
    DUPLICATE = "duplicate"
    DEFERRED = "deferred"
    RETRY = "retry"
    DROPPED = "dropped"


class DispatchOutcome(BaseModel):
    message_id: str
    queue_name: str
    status: OutcomeStatus
    detail: Optional[str] = None
