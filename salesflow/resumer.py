"""Resumption of executions parked at wait steps."""

from __future__ import annotations

import logging
from typing import List

from pydantic import BaseModel, Field

from .conditions import evaluate
from .contracts import ExecutionStatus
from .execute import WorkflowRunner
from .persistence import Repository
from .persistence.models import StepRecord, StepResult, WorkflowExecution
from .utils.time import Clock, ensure_utc, utcnow

logger = logging.getLogger(__name__)


class ResumeSummary(BaseModel):
    """Counts reported by one resume pass."""

    checked: int = 0
    resumed: int = 0
    skipped: int = 0
    timed_out: int = 0
    completed: int = 0
    waiting: int = 0
    failed: int = 0
    errors: int = 0
    execution_ids: List[str] = Field(default_factory=list)


class ExecutionResumer:
    """Claim due waiting executions and continue them from their cursor.

    Claiming is a ``waiting`` -> ``running`` compare-and-swap, so overlapping
    passes (or processes) resume any execution at most once.
    """

    def __init__(
        self,
        repository: Repository,
        runner: WorkflowRunner,
        clock: Clock = utcnow,
    ) -> None:
        self._repository = repository
        self._runner = runner
        self._clock = clock

    async def resume_waiting_executions(self) -> ResumeSummary:
        summary = ResumeSummary()
        now = self._clock()
        for candidate in await self._repository.list_resumable_executions(now):
            summary.checked += 1
            try:
                result = await self._resume_one(candidate, summary)
            except Exception:
                logger.exception(f"Resuming execution {candidate.id} failed")
                summary.errors += 1
                continue
            if result is None:
                summary.skipped += 1
                continue
            summary.execution_ids.append(result.id)
            if result.status == ExecutionStatus.COMPLETED:
                summary.completed += 1
            elif result.status == ExecutionStatus.WAITING:
                summary.waiting += 1
            elif result.status == ExecutionStatus.FAILED:
                summary.failed += 1
        logger.info(
            f"Resumer checked {summary.checked} executions, resumed {summary.resumed}"
        )
        return summary

    async def resume_execution(self, execution_id: str) -> WorkflowExecution | None:
        """Resume one waiting execution right away if its wait is satisfied.

        Returns the execution after the run, or ``None`` when it is not
        waiting, still has to wait, or another pass claimed it first.
        """
        candidate = await self._repository.get_execution(execution_id)
        if candidate is None or candidate.status != ExecutionStatus.WAITING:
            return None
        return await self._resume_one(candidate, ResumeSummary())

    async def _resume_one(
        self, candidate: WorkflowExecution, summary: ResumeSummary
    ) -> WorkflowExecution | None:
        now = self._clock()
        timed_out = False
        wait = candidate.wait_condition
        if wait is None and candidate.wait_until is not None:
            if ensure_utc(candidate.wait_until) > now:
                return None
        if wait is not None and not evaluate(
            wait.get("until"), candidate.context.variables()
        ):
            if candidate.wait_until is None or ensure_utc(candidate.wait_until) > now:
                return None
            timed_out = True

        if not await self._repository.transition_execution(
            candidate.id, ExecutionStatus.WAITING, ExecutionStatus.RUNNING, now=now
        ):
            logger.debug(f"Execution {candidate.id} already claimed by another pass")
            return None

        execution = await self._repository.get_execution(candidate.id)
        if execution is None:
            return None
        summary.resumed += 1
        definition = await self._repository.get_definition(execution.workflow_id)
        if definition is None:
            await self._runner.fail(
                execution, f"Workflow definition {execution.workflow_id} not found"
            )
            return execution

        if timed_out:
            summary.timed_out += 1
            if not wait.get("continue_on_timeout", False):
                step_index = wait.get("step_index", execution.current_step_index)
                error = f"Wait condition at step {step_index} timed out"
                await self._repository.append_step_record(
                    StepRecord(
                        execution_id=execution.id,
                        step_index=step_index,
                        step_name=definition.steps[step_index].name
                        if step_index < len(definition.steps)
                        else None,
                        step_type="wait",
                        outcome=StepResult.FAILURE,
                        error=error,
                        created_at=now,
                    )
                )
                await self._runner.fail(execution, error)
                return execution
            logger.info(f"Execution {execution.id} continuing after wait timeout")

        logger.info(
            f"Resuming execution {execution.id} at step {execution.current_step_index}"
        )
        return await self._runner.run(execution, definition)
