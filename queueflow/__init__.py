"""queueflow: durable workflow execution over two message queues."""

from .client import RunView, WorkflowClient
from .contracts import (
    Complete,
    DispatchOutcome,
    Fail,
    MessageEnvelope,
    OutcomeStatus,
    QueueKind,
    ScheduleStep,
    Sleep,
)
from .deferral import Deferral, WakeSchedule
from .dispatch import BatchDispatcher
from .engine import ReplayEngine, StepContext, StepExecutor
from .errors import (
    ConflictError,
    DuplicateOperation,
    QueueflowError,
    ReplayFault,
    StepDeferred,
    StepExecutionError,
    StepFailed,
    TransportError,
)
from .handlers import StepExecutionHandler, WorkflowResumeHandler
from .ledger import IdempotencyLedger, LedgerResult
from .persistence import get_repository
from .registry import RegistryReplayEngine, RegistryStepExecutor, WorkflowRegistry
from .transports import get_transport
from .worker import Worker

__version__ = "0.1.0"
__all__ = [
    "BatchDispatcher",
    "Complete",
    "ConflictError",
    "Deferral",
    "DispatchOutcome",
    "DuplicateOperation",
    "Fail",
    "IdempotencyLedger",
    "LedgerResult",
    "MessageEnvelope",
    "OutcomeStatus",
    "QueueKind",
    "QueueflowError",
    "RegistryReplayEngine",
    "RegistryStepExecutor",
    "ReplayEngine",
    "ReplayFault",
    "RunView",
    "ScheduleStep",
    "Sleep",
    "StepContext",
    "StepDeferred",
    "StepExecutionError",
    "StepExecutionHandler",
    "StepExecutor",
    "StepFailed",
    "TransportError",
    "WakeSchedule",
    "Worker",
    "WorkflowClient",
    "WorkflowRegistry",
    "WorkflowResumeHandler",
    "get_repository",
    "get_transport",
]
