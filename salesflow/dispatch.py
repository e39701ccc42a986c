"""Workflow dispatcher: registration, direct triggers, event triggers, cancellation."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ValidationError

from .conditions import MISSING, evaluate, resolve_field, validate_expression
from .contracts import (
    TERMINAL_STATUSES,
    ConditionStep,
    ExecutionContext,
    ExecutionStatus,
    TriggerType,
    WaitStep,
    WorkflowDefinition,
)
from .exceptions import EvaluationError, InvalidRequest, NotFound
from .execute import WorkflowRunner
from .persistence import Repository
from .persistence.models import WorkflowExecution
from .utils.time import Clock, ensure_utc, utcnow

logger = logging.getLogger(__name__)


class WorkflowStats(BaseModel):
    """Execution counters for one workflow."""

    workflow_id: str
    total_executions: int = 0
    running: int = 0
    waiting: int = 0
    successful_executions: int = 0
    failed_executions: int = 0
    cancelled: int = 0
    success_rate: float = 0.0
    average_duration_seconds: Optional[float] = None
    last_started_at: Optional[datetime] = None


def _feeds(
    wait: Dict[str, Any], event_type: str, event: Dict[str, Any], payload: Dict[str, Any]
) -> bool:
    expected = wait.get("event_type")
    if expected is not None and expected != event_type:
        return False
    for key in wait.get("correlate_on") or []:
        value = resolve_field(event, key)
        if value is MISSING or value != resolve_field(payload, key):
            return False
    return True


class WorkflowDispatcher:
    """Service responsible for starting and stopping workflow executions."""

    def __init__(
        self,
        repository: Repository,
        runner: WorkflowRunner,
        clock: Clock = utcnow,
    ) -> None:
        self._repository = repository
        self._runner = runner
        self._clock = clock

    async def register(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        """Validate every condition in ``definition`` and store it.

        Raises:
            InvalidRequest: If a branch, wait or filter condition is malformed.
        """
        expressions: List[tuple[str, Any]] = []
        if definition.trigger.filter is not None:
            expressions.append(("trigger filter", definition.trigger.filter))
        for index, step in enumerate(definition.steps):
            if isinstance(step, ConditionStep):
                expressions.append((f"step {index}", step.condition))
            elif isinstance(step, WaitStep) and step.until is not None:
                expressions.append((f"step {index}", step.until))
        for where, expression in expressions:
            try:
                validate_expression(expression)
            except EvaluationError as exc:
                raise InvalidRequest(f"Invalid condition in {where}: {exc}") from exc

        await self._repository.save_definition(definition)
        logger.info(f"Registered workflow {definition.id} ({definition.name})")
        return definition

    async def get_definition(
        self, workflow_id: str, tenant_id: Optional[str] = None
    ) -> WorkflowDefinition:
        definition = await self._repository.get_definition(workflow_id)
        if definition is None or (
            tenant_id is not None and definition.tenant_id != tenant_id
        ):
            raise NotFound(f"Workflow {workflow_id} not found")
        return definition

    async def trigger_workflow(
        self,
        workflow_id: str,
        payload: Optional[Dict[str, Any]] = None,
        tenant_id: Optional[str] = None,
    ) -> WorkflowExecution:
        """Start ``workflow_id`` now and run it until it waits or terminates.

        Raises:
            NotFound: If the workflow does not exist for ``tenant_id``.
            InvalidRequest: If the workflow is disabled.
        """
        definition = await self.get_definition(workflow_id, tenant_id)
        if not definition.enabled:
            raise InvalidRequest(f"Workflow {workflow_id} is disabled")
        return await self._start(definition, payload or {}, "manual")

    async def dispatch_event(
        self,
        event_type: str,
        payload: Optional[Dict[str, Any]] = None,
        tenant_id: Optional[str] = None,
    ) -> List[WorkflowExecution]:
        """Start every enabled workflow triggered by ``event_type``.

        Never raises: a failing workflow is logged and the others still start.
        """
        payload = payload or {}
        started: List[WorkflowExecution] = []
        try:
            definitions = await self._repository.list_definitions(
                trigger_type=TriggerType.EVENT, enabled_only=True, tenant_id=tenant_id
            )
        except Exception:
            logger.exception(f"Could not load workflows for event {event_type}")
            return started

        for definition in definitions:
            # a missing tenant only starts tenant-less workflows
            if definition.tenant_id != tenant_id:
                continue
            if definition.trigger.event_type != event_type:
                continue
            trigger_filter = definition.trigger.filter
            if trigger_filter is not None and not evaluate(trigger_filter, payload):
                logger.debug(f"Event {event_type} filtered out for workflow {definition.id}")
                continue
            try:
                started.append(
                    await self._start(definition, payload, f"event:{event_type}")
                )
            except Exception:
                logger.exception(
                    f"Starting workflow {definition.id} for event {event_type} failed"
                )
        return started

    async def cancel_execution(
        self, execution_id: str, tenant_id: Optional[str] = None
    ) -> WorkflowExecution:
        """Move a running or waiting execution to ``cancelled``.

        Raises:
            NotFound: If the execution does not exist for ``tenant_id``.
            InvalidRequest: If the execution already reached a terminal state.
        """
        for _ in range(3):
            execution = await self.get_execution(execution_id, tenant_id)
            if execution.status in TERMINAL_STATUSES:
                raise InvalidRequest(
                    f"Execution {execution_id} is already {execution.status.value}"
                )
            if await self._repository.transition_execution(
                execution_id, execution.status, ExecutionStatus.CANCELLED, now=self._clock()
            ):
                logger.info(f"Cancelled execution {execution_id}")
                return await self.get_execution(execution_id, tenant_id)
        raise InvalidRequest(f"Execution {execution_id} kept changing state; retry")

    async def signal_execution(
        self,
        execution_id: str,
        data: Dict[str, Any],
        tenant_id: Optional[str] = None,
    ) -> WorkflowExecution:
        """Merge ``data`` into the payload of a waiting execution.

        The write is conditional on the execution still waiting, so a
        concurrent resume or cancellation wins and the signal is rejected.

        Raises:
            NotFound: If the execution does not exist for ``tenant_id``.
            InvalidRequest: If the execution is not waiting or ``data`` is not JSON.
        """
        for _ in range(3):
            execution = await self.get_execution(execution_id, tenant_id)
            if execution.status != ExecutionStatus.WAITING:
                raise InvalidRequest(
                    f"Execution {execution_id} is {execution.status.value}, not waiting"
                )
            self._merge(execution, data)
            if await self._repository.update_execution(
                execution, expected=ExecutionStatus.WAITING
            ):
                logger.info(f"Signalled execution {execution_id} with {sorted(data)}")
                return execution
        raise InvalidRequest(f"Execution {execution_id} kept changing state; retry")

    async def feed_waiting_executions(
        self,
        event_type: str,
        payload: Optional[Dict[str, Any]] = None,
        tenant_id: Optional[str] = None,
    ) -> List[str]:
        """Merge an event payload into the tenant's condition waits it matches.

        Returns the ids of the executions that took the data. Never raises.
        """
        payload = payload or {}
        fed: List[str] = []
        try:
            waiting = await self._repository.list_executions(
                status=ExecutionStatus.WAITING, tenant_id=tenant_id
            )
        except Exception:
            logger.exception(f"Could not load waiting executions for event {event_type}")
            return fed

        for execution in waiting:
            wait = execution.wait_condition
            if execution.tenant_id != tenant_id or wait is None:
                continue
            if not _feeds(wait, event_type, payload, execution.context.payload):
                continue
            try:
                self._merge(execution, payload)
                written = await self._repository.update_execution(
                    execution, expected=ExecutionStatus.WAITING
                )
            except Exception:
                logger.exception(f"Feeding {event_type} to execution {execution.id} failed")
                continue
            if written:
                fed.append(execution.id)
        if fed:
            logger.info(f"Event {event_type} fed {len(fed)} waiting executions")
        return fed

    async def list_workflow_executions(
        self,
        workflow_id: str,
        tenant_id: Optional[str] = None,
        status: Optional[ExecutionStatus] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[WorkflowExecution]:
        """Execution history of one workflow, newest first."""
        await self.get_definition(workflow_id, tenant_id)
        return await self._repository.list_executions(
            workflow_id=workflow_id, status=status, limit=limit, offset=offset
        )

    async def get_workflow_stats(
        self, workflow_id: str, tenant_id: Optional[str] = None
    ) -> WorkflowStats:
        await self.get_definition(workflow_id, tenant_id)
        executions = await self._repository.list_executions(workflow_id=workflow_id)
        stats = WorkflowStats(workflow_id=workflow_id, total_executions=len(executions))
        durations = []
        for execution in executions:
            if execution.status == ExecutionStatus.RUNNING:
                stats.running += 1
            elif execution.status == ExecutionStatus.WAITING:
                stats.waiting += 1
            elif execution.status == ExecutionStatus.COMPLETED:
                stats.successful_executions += 1
                if execution.completed_at is not None:
                    elapsed = ensure_utc(execution.completed_at) - ensure_utc(
                        execution.started_at
                    )
                    durations.append(elapsed.total_seconds())
            elif execution.status == ExecutionStatus.FAILED:
                stats.failed_executions += 1
            else:
                stats.cancelled += 1
        finished = stats.successful_executions + stats.failed_executions
        if finished:
            stats.success_rate = round(stats.successful_executions / finished * 100, 2)
        if durations:
            stats.average_duration_seconds = round(sum(durations) / len(durations), 3)
        if executions:
            stats.last_started_at = executions[0].started_at
        return stats

    async def get_execution(
        self, execution_id: str, tenant_id: Optional[str] = None
    ) -> WorkflowExecution:
        execution = await self._repository.get_execution(execution_id)
        if execution is None or (
            tenant_id is not None and execution.tenant_id != tenant_id
        ):
            raise NotFound(f"Execution {execution_id} not found")
        return execution

    async def _start(
        self, definition: WorkflowDefinition, payload: Dict[str, Any], source: str
    ) -> WorkflowExecution:
        try:
            context = ExecutionContext(payload=payload)
        except ValidationError as exc:
            raise InvalidRequest(f"Trigger payload is not JSON: {exc}") from exc
        now = self._clock()
        execution = WorkflowExecution(
            workflow_id=definition.id,
            tenant_id=definition.tenant_id,
            trigger_source=source,
            context=context,
            started_at=now,
            updated_at=now,
        )
        await self._repository.create_execution(execution)
        logger.info(f"Created execution {execution.id} for workflow {definition.id}")
        return await self._runner.run(execution, definition)

    def _merge(self, execution: WorkflowExecution, data: Dict[str, Any]) -> None:
        try:
            execution.context = ExecutionContext(
                payload={**execution.context.payload, **data},
                outputs=execution.context.outputs,
            )
        except ValidationError as exc:
            raise InvalidRequest(f"Signal data is not JSON: {exc}") from exc
        execution.updated_at = self._clock()
