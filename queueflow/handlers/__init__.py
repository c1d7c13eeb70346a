"""Message handlers for the two coordinator queues."""

from .step import StepExecutionHandler
from .workflow import WorkflowResumeHandler

__all__ = ["StepExecutionHandler", "WorkflowResumeHandler"]
