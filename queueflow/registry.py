"""Reference replay engine and step executor backed by decorated functions.

Workflows are ``async def workflow(ctx, input)`` functions. Each call to
``ctx.step`` or ``ctx.sleep`` either returns what the event log says already
happened or suspends the replay with the directive that makes it happen.
Replay is a pure function of the event log: the workflow is re-run from the
top on every resume.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from .constants import SLEEP_KEY_NAME
from .contracts import (
    Complete,
    Directive,
    Fail,
    ScheduleStep,
    Sleep,
    WorkflowMessage,
    derive_key,
)
from .engine import StepContext
from .errors import ReplayFault, StepDeferred, StepExecutionError, StepFailed
from .persistence import Event, EventType, Run

logger = logging.getLogger(__name__)

WorkflowFn = Callable[["WorkflowContext", Any], Any]
StepFn = Callable[..., Any]


class _Suspend(BaseException):
    """Unwinds workflow code at the first step that has not happened yet.

    Derives from ``BaseException``: ``except Exception`` in workflow code must
    not catch it.
    """

    def __init__(self, directives: Sequence[Directive]) -> None:
        super().__init__("suspended")
        self.directives = list(directives)


class WorkflowContext:
    """Replay view of one run, rebuilt from its event log."""

    def __init__(self, run: Run, events: List[Event]) -> None:
        self.run_id = run.run_id
        self.workflow_name = run.workflow_name
        self._outputs: Dict[str, Any] = {}
        self._errors: Dict[str, Any] = {}
        self._waits_done: set[str] = set()
        self._occurrences: Dict[str, int] = {}
        for event in events:
            if event.type == EventType.STEP_COMPLETED:
                self._outputs[event.payload["step_id"]] = event.payload.get("output")
            elif event.type == EventType.STEP_FAILED:
                self._errors[event.payload["step_id"]] = event.payload.get("error")
            elif event.type == EventType.WAIT_COMPLETED:
                self._waits_done.add(event.payload["wait_id"])

    def _next(self, name: str) -> int:
        occurrence = self._occurrences.get(name, 0)
        self._occurrences[name] = occurrence + 1
        return occurrence

    def _resolve(self, name: str, input: Any) -> Tuple[bool, Any, Optional[ScheduleStep]]:
        occurrence = self._next(name)
        step_id = derive_key(self.run_id, name, occurrence)
        if step_id in self._outputs:
            return True, self._outputs[step_id], None
        if step_id in self._errors:
            raise StepFailed(name, self._errors[step_id])
        return False, None, ScheduleStep(name=name, input=input, occurrence=occurrence)

    async def step(self, name: str, input: Any = None) -> Any:
        """Run step ``name`` and return its output."""
        done, output, directive = self._resolve(name, input)
        if not done:
            raise _Suspend([directive])
        return output

    async def parallel(self, calls: Sequence[Tuple[str, Any]]) -> List[Any]:
        """Run several steps concurrently; return their outputs in order."""
        outputs: List[Any] = []
        pending: List[Directive] = []
        for name, input in calls:
            done, output, directive = self._resolve(name, input)
            if done:
                outputs.append(output)
            else:
                pending.append(directive)
        if pending:
            raise _Suspend(pending)
        return outputs

    async def sleep(self, seconds: float) -> None:
        """Suspend the run for ``seconds`` without holding a worker."""
        occurrence = self._next(SLEEP_KEY_NAME)
        if derive_key(self.run_id, SLEEP_KEY_NAME, occurrence) in self._waits_done:
            return
        raise _Suspend([Sleep(seconds=seconds, occurrence=occurrence)])


class WorkflowRegistry:
    """Named workflows and steps for a worker process."""

    def __init__(self) -> None:
        self.workflows: Dict[str, WorkflowFn] = {}
        self.steps: Dict[str, StepFn] = {}

    def workflow(self, name: Optional[str] = None) -> Callable[[WorkflowFn], WorkflowFn]:
        def decorator(fn: WorkflowFn) -> WorkflowFn:
            self.workflows[name or fn.__name__] = fn
            return fn

        return decorator

    def step(self, name: Optional[str] = None) -> Callable[[StepFn], StepFn]:
        def decorator(fn: StepFn) -> StepFn:
            self.steps[name or fn.__name__] = fn
            return fn

        return decorator


class RegistryReplayEngine:
    """Replays registered workflow functions against the event log."""

    def __init__(self, registry: WorkflowRegistry) -> None:
        self._registry = registry

    async def advance(
        self, run: Run, events: List[Event], cause: WorkflowMessage
    ) -> List[Directive]:
        definition = self._registry.workflows.get(run.workflow_name)
        if definition is None:
            raise ReplayFault(f"Unknown workflow: {run.workflow_name}")

        ctx = WorkflowContext(run, events)
        try:
            result = await definition(ctx, run.input)
        except _Suspend as suspended:
            return suspended.directives
        except StepFailed as e:
            return [Fail(error={"name": "StepFailed", "step": e.step_name, "error": e.error})]
        except Exception as e:
            logger.info(f"Workflow {run.workflow_name} raised in run {run.run_id}: {e}")
            return [Fail(error={"name": type(e).__name__, "message": str(e)})]
        return [Complete(result=result)]


class RegistryStepExecutor:
    """Runs registered step functions; sync functions run in a worker thread."""

    def __init__(self, registry: WorkflowRegistry) -> None:
        self._registry = registry

    async def execute(self, name: str, input: Any, context: StepContext) -> Any:
        fn = self._registry.steps.get(name)
        if fn is None:
            raise StepExecutionError(name, "no such step registered")
        kwargs = {}
        if "context" in inspect.signature(fn).parameters:
            kwargs["context"] = context
        try:
            if inspect.iscoroutinefunction(fn):
                return await fn(input, **kwargs)
            return await asyncio.to_thread(fn, input, **kwargs)
        except StepDeferred:
            raise
        except Exception as e:
            raise StepExecutionError(name, str(e)) from e
