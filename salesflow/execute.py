"""Step execution engine for salesflow workflows."""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Optional

from pydantic import JsonValue

from .actions import ActionRegistry, default_registry, render
from .conditions import evaluate
from .config import EngineConfig
from .contracts import (
    ActionStep,
    ConditionStep,
    EndStep,
    ExecutionStatus,
    OutcomeKind,
    StepOutcome,
    WaitStep,
    WorkflowDefinition,
)
from .exceptions import ActionHandlerError
from .persistence import Repository
from .persistence.models import StepRecord, StepResult, WorkflowExecution
from .utils.time import Clock, utcnow

logger = logging.getLogger(__name__)


class StepExecutor:
    """Runs exactly one step of an execution and reports its outcome.

    Every call appends one :class:`StepRecord`. Action outputs are written
    into ``execution.context``; persisting the execution itself is left to
    the caller.
    """

    def __init__(
        self,
        repository: Repository,
        actions: ActionRegistry | None = None,
        config: EngineConfig | None = None,
        clock: Clock = utcnow,
    ) -> None:
        self._repository = repository
        self._actions = actions or default_registry()
        self._config = config or EngineConfig()
        self._clock = clock

    async def execute_step(
        self, execution: WorkflowExecution, definition: WorkflowDefinition
    ) -> StepOutcome:
        index = execution.current_step_index
        if index >= len(definition.steps):
            await self._record(execution, index, None, "end", StepResult.SUCCESS)
            return StepOutcome.complete()

        step = definition.steps[index]
        if not step.enabled:
            await self._record(execution, index, step.name, step.type, StepResult.SKIPPED)
            return StepOutcome.advance(index + 1)

        if isinstance(step, ActionStep):
            return await self._run_action(execution, definition, index, step)
        if isinstance(step, ConditionStep):
            return await self._run_condition(execution, index, step)
        if isinstance(step, WaitStep):
            return await self._run_wait(execution, index, step)
        if isinstance(step, EndStep):
            await self._record(execution, index, step.name, step.type, StepResult.SUCCESS)
            return StepOutcome.complete()
        raise TypeError(f"Unsupported step type {type(step).__name__}")

    async def _run_action(
        self,
        execution: WorkflowExecution,
        definition: WorkflowDefinition,
        index: int,
        step: ActionStep,
    ) -> StepOutcome:
        next_index = step.next if step.next is not None else index + 1
        handler = self._actions.get(step.action)
        variables = execution.context.variables()
        error: Optional[str] = None
        output: JsonValue = None

        if handler is None:
            error = f"No handler registered for action '{step.action.value}'"
        else:
            try:
                result = await handler.execute(render(step.config, variables), variables)
            except ActionHandlerError as exc:
                error = str(exc)
            except Exception as exc:
                # handlers are external collaborators; any failure fails the step
                logger.exception(f"Action {step.action.value} raised unexpectedly")
                error = f"{type(exc).__name__}: {exc}"
            else:
                output = result.output
                if not result.success:
                    error = result.error or f"Action '{step.action.value}' failed"

        if error is None:
            execution.context.record_output(definition.step_key(index), output)
            await self._record(
                execution, index, step.name, step.type, StepResult.SUCCESS, output=output
            )
            return StepOutcome.advance(next_index, output)

        await self._record(
            execution, index, step.name, step.type, StepResult.FAILURE, error=error
        )
        if step.best_effort:
            logger.warning(
                f"Best-effort step {index} of execution {execution.id} failed: {error}"
            )
            return StepOutcome.advance(next_index)
        return StepOutcome.fail(f"Step {index} ({step.action.value}) failed: {error}")

    async def _run_condition(
        self, execution: WorkflowExecution, index: int, step: ConditionStep
    ) -> StepOutcome:
        matched = evaluate(step.condition, execution.context.variables())
        target = step.on_true if matched else step.on_false
        next_index = target if target is not None else index + 1
        output = {"result": matched, "next_step": next_index}
        await self._record(
            execution, index, step.name, step.type, StepResult.SUCCESS, output=output
        )
        return StepOutcome.advance(next_index, output)

    async def _run_wait(
        self, execution: WorkflowExecution, index: int, step: WaitStep
    ) -> StepOutcome:
        now = self._clock()
        next_index = step.next if step.next is not None else index + 1

        if step.until is None:
            until = now + step.duration()
            output = {"wait_until": until.isoformat()}
            await self._record(
                execution, index, step.name, step.type, StepResult.SUCCESS, output=output
            )
            return StepOutcome.wait(next_index, until, output=output)

        if evaluate(step.until, execution.context.variables()):
            output = {"condition_met": True}
            await self._record(
                execution, index, step.name, step.type, StepResult.SUCCESS, output=output
            )
            return StepOutcome.advance(next_index, output)

        timeout = step.timeout_seconds
        if timeout is None:
            timeout = self._config.default_wait_timeout_seconds
        deadline = now + timedelta(seconds=timeout)
        condition = {
            "until": step.until,
            "step_index": index,
            "continue_on_timeout": step.continue_on_timeout,
            "event_type": step.event_type,
            "correlate_on": step.correlate_on,
        }
        output = {"waiting_for_condition": True, "timeout_at": deadline.isoformat()}
        await self._record(
            execution, index, step.name, step.type, StepResult.SUCCESS, output=output
        )
        return StepOutcome.wait(next_index, deadline, condition=condition, output=output)

    async def _record(
        self,
        execution: WorkflowExecution,
        index: int,
        name: Optional[str],
        step_type: str,
        outcome: StepResult,
        output: JsonValue = None,
        error: Optional[str] = None,
    ) -> StepRecord:
        return await self._repository.append_step_record(
            StepRecord(
                execution_id=execution.id,
                step_index=index,
                step_name=name,
                step_type=step_type,
                outcome=outcome,
                output=output,
                error=error,
                created_at=self._clock(),
            )
        )


class WorkflowRunner:
    """Drives an execution step by step until it waits or terminates.

    The caller must own the execution (freshly created, or claimed from
    ``waiting`` by compare-and-swap). Every state write is conditional on the
    stored status still being ``running``, so an out-of-band cancellation
    stops the loop at the next step boundary.
    """

    def __init__(
        self,
        repository: Repository,
        executor: StepExecutor | None = None,
        config: EngineConfig | None = None,
        clock: Clock = utcnow,
    ) -> None:
        self._repository = repository
        self._config = config or EngineConfig()
        self._clock = clock
        self._executor = executor or StepExecutor(repository, config=self._config, clock=clock)

    @property
    def executor(self) -> StepExecutor:
        return self._executor

    async def run(
        self, execution: WorkflowExecution, definition: WorkflowDefinition
    ) -> WorkflowExecution:
        steps_run = 0
        while True:
            stored = await self._repository.get_execution(execution.id)
            if stored is None or stored.status != ExecutionStatus.RUNNING:
                status = stored.status.value if stored else "missing"
                logger.info(f"Execution {execution.id} stopped: status is {status}")
                return stored or execution

            if steps_run >= self._config.max_steps_per_run:
                await self.fail(
                    execution,
                    f"Step limit of {self._config.max_steps_per_run} per run exceeded",
                )
                return execution

            outcome = await self._executor.execute_step(execution, definition)
            steps_run += 1
            self._apply(execution, definition, outcome)

            written = await self._repository.update_execution(
                execution, expected=ExecutionStatus.RUNNING
            )
            if not written:
                logger.info(
                    f"Execution {execution.id} changed status while running; "
                    "discarding local state"
                )
                return await self._repository.get_execution(execution.id) or execution

            if outcome.kind is OutcomeKind.ADVANCE:
                continue
            self._log_outcome(execution, outcome)
            return execution

    async def fail(self, execution: WorkflowExecution, error: str) -> bool:
        """Mark a running execution failed. Returns whether the write won."""
        now = self._clock()
        execution.status = ExecutionStatus.FAILED
        execution.last_error = error
        execution.completed_at = now
        execution.updated_at = now
        execution.wait_until = None
        execution.wait_condition = None
        written = await self._repository.update_execution(
            execution, expected=ExecutionStatus.RUNNING
        )
        if written:
            logger.warning(f"Execution {execution.id} failed: {error}")
        return written

    def _apply(
        self,
        execution: WorkflowExecution,
        definition: WorkflowDefinition,
        outcome: StepOutcome,
    ) -> None:
        now = self._clock()
        execution.updated_at = now
        if outcome.kind is OutcomeKind.ADVANCE:
            execution.current_step_index = outcome.next_index
        elif outcome.kind is OutcomeKind.WAIT:
            execution.status = ExecutionStatus.WAITING
            execution.current_step_index = outcome.next_index
            execution.wait_until = outcome.wait_until
            execution.wait_condition = outcome.wait_condition
        elif outcome.kind is OutcomeKind.COMPLETE:
            execution.status = ExecutionStatus.COMPLETED
            execution.current_step_index = len(definition.steps)
            execution.completed_at = now
        else:
            execution.status = ExecutionStatus.FAILED
            execution.last_error = outcome.error
            execution.completed_at = now

    def _log_outcome(self, execution: WorkflowExecution, outcome: StepOutcome) -> None:
        if outcome.kind is OutcomeKind.WAIT:
            logger.info(
                f"Execution {execution.id} waiting until {execution.wait_until} "
                f"at step {execution.current_step_index}"
            )
        elif outcome.kind is OutcomeKind.COMPLETE:
            logger.info(f"Execution {execution.id} completed")
        else:
            logger.warning(f"Execution {execution.id} failed: {outcome.error}")

