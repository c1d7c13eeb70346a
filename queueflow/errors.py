"""Exception taxonomy for the queueflow coordinator."""

from __future__ import annotations

from typing import Any, Optional


class QueueflowError(Exception):
    """Base class for all coordinator errors."""


class TransportError(QueueflowError):
    """Queue or store unavailable. Resolved by redelivery, never by failing a run."""


class DuplicateOperation(QueueflowError):
    """The operation was already applied by an earlier delivery."""

    def __init__(self, key: str, existing: Optional[Any] = None) -> None:
        super().__init__(f"Operation already applied: {key}")
        self.key = key
        self.existing = existing


class ConflictError(DuplicateOperation):
    """A conditional write lost a race against another writer."""


class StepExecutionError(QueueflowError):
    """A step body raised."""

    def __init__(self, step_name: str, message: str) -> None:
        super().__init__(f"Step {step_name} failed: {message}")
        self.step_name = step_name
        self.message = message


class ReplayFault(QueueflowError):
    """The replay engine raised unexpectedly."""


class StepDeferred(Exception):
    """Raised by a step body to postpone itself for ``seconds``.

    Not an error: the step handler turns it into a deferral of the step
    message instead of a failed attempt.
    """

    def __init__(self, seconds: float) -> None:
        super().__init__(f"Step deferred for {seconds}s")
        self.seconds = seconds


class StepFailed(QueueflowError):
    """Raised inside workflow code when a step it awaits has failed terminally."""

    def __init__(self, step_name: str, error: Any) -> None:
        super().__init__(f"Step {step_name} failed: {error}")
        self.step_name = step_name
        self.error = error
