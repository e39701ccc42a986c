"""In-memory implementation of the store."""

from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Optional, Tuple

from ..contracts import ExecutionStatus, TriggerType, WorkflowDefinition
from .models import (
    DeliveryAttempt,
    DeliveryFailure,
    StepRecord,
    WebhookEvent,
    WebhookSubscription,
    WorkflowExecution,
)


class InMemoryRepository:
    """Store workflow and webhook state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. Conditional writes never await
    between their check and their write, so they are atomic on one event
    loop.
    """

    def __init__(self) -> None:
        self._definitions: Dict[str, WorkflowDefinition] = {}
        self._executions: Dict[str, WorkflowExecution] = {}
        self._occurrences: Dict[Tuple[str, datetime], str] = {}
        self._steps: List[StepRecord] = []
        self._step_id = 0
        self._subscriptions: Dict[str, WebhookSubscription] = {}
        self._events: Dict[str, WebhookEvent] = {}
        self._attempts: Dict[str, DeliveryAttempt] = {}
        self._failures: Dict[str, DeliveryFailure] = {}

    # ------------------------------------------------------------------
    # Workflows
    async def save_definition(self, definition: WorkflowDefinition) -> None:
        self._definitions[definition.id] = definition.model_copy(deep=True)

    async def get_definition(self, workflow_id: str) -> WorkflowDefinition | None:
        definition = self._definitions.get(workflow_id)
        return definition.model_copy(deep=True) if definition else None

    async def list_definitions(
        self,
        trigger_type: Optional[TriggerType] = None,
        enabled_only: bool = False,
        tenant_id: Optional[str] = None,
    ) -> list[WorkflowDefinition]:
        result = []
        for definition in self._definitions.values():
            if trigger_type is not None and definition.trigger.type != trigger_type:
                continue
            if enabled_only and not definition.enabled:
                continue
            if tenant_id is not None and definition.tenant_id != tenant_id:
                continue
            result.append(definition.model_copy(deep=True))
        return result

    async def create_execution(self, execution: WorkflowExecution) -> bool:
        if execution.scheduled_for is not None:
            key = (execution.workflow_id, execution.scheduled_for)
            if key in self._occurrences:
                return False
            self._occurrences[key] = execution.id
        self._executions[execution.id] = execution.model_copy(deep=True)
        return True

    async def get_execution(self, execution_id: str) -> WorkflowExecution | None:
        execution = self._executions.get(execution_id)
        return execution.model_copy(deep=True) if execution else None

    async def update_execution(
        self, execution: WorkflowExecution, expected: Optional[ExecutionStatus] = None
    ) -> bool:
        stored = self._executions.get(execution.id)
        if stored is None or (expected is not None and stored.status != expected):
            return False
        self._executions[execution.id] = execution.model_copy(deep=True)
        return True

    async def transition_execution(
        self,
        execution_id: str,
        expected: ExecutionStatus,
        new: ExecutionStatus,
        now: Optional[datetime] = None,
    ) -> bool:
        execution = self._executions.get(execution_id)
        if execution is None or execution.status != expected:
            return False
        execution.status = new
        if expected == ExecutionStatus.WAITING:
            execution.wait_until = None
            execution.wait_condition = None
        if now is not None:
            execution.updated_at = now
            if new == ExecutionStatus.CANCELLED:
                execution.completed_at = now
        return True

    async def list_executions(
        self,
        workflow_id: Optional[str] = None,
        status: Optional[ExecutionStatus] = None,
        tenant_id: Optional[str] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> list[WorkflowExecution]:
        rows = [
            e
            for e in self._executions.values()
            if (workflow_id is None or e.workflow_id == workflow_id)
            and (status is None or e.status == status)
            and (tenant_id is None or e.tenant_id == tenant_id)
        ]
        rows = list(reversed(rows))
        rows.sort(key=lambda e: e.started_at, reverse=True)
        end = None if limit is None else offset + limit
        rows = rows[offset:end]
        return [e.model_copy(deep=True) for e in rows]

    async def latest_scheduled_execution(
        self, workflow_id: str
    ) -> WorkflowExecution | None:
        scheduled = [
            e
            for e in self._executions.values()
            if e.workflow_id == workflow_id and e.scheduled_for is not None
        ]
        if not scheduled:
            return None
        latest = max(scheduled, key=lambda e: e.scheduled_for)
        return latest.model_copy(deep=True)

    async def list_resumable_executions(self, now: datetime) -> list[WorkflowExecution]:
        return [
            e.model_copy(deep=True)
            for e in self._executions.values()
            if e.status == ExecutionStatus.WAITING
            and (
                e.wait_condition is not None
                or (e.wait_until is not None and e.wait_until <= now)
            )
        ]

    async def append_step_record(self, record: StepRecord) -> StepRecord:
        self._step_id += 1
        stored = record.model_copy(update={"id": self._step_id}, deep=True)
        self._steps.append(stored)
        return stored.model_copy(deep=True)

    async def list_step_records(self, execution_id: str) -> list[StepRecord]:
        return [
            r.model_copy(deep=True) for r in self._steps if r.execution_id == execution_id
        ]

    # ------------------------------------------------------------------
    # Webhooks
    async def create_subscription(self, subscription: WebhookSubscription) -> None:
        self._subscriptions[subscription.id] = subscription.model_copy(deep=True)

    async def get_subscription(
        self, subscription_id: str, tenant_id: Optional[str] = None
    ) -> WebhookSubscription | None:
        sub = self._subscriptions.get(subscription_id)
        if sub is None or (tenant_id is not None and sub.tenant_id != tenant_id):
            return None
        return sub.model_copy(deep=True)

    async def list_subscriptions(
        self, tenant_id: Optional[str] = None
    ) -> list[WebhookSubscription]:
        rows = [
            s
            for s in reversed(list(self._subscriptions.values()))
            if tenant_id is None or s.tenant_id == tenant_id
        ]
        rows.sort(key=lambda s: s.created_at, reverse=True)
        return [s.model_copy(deep=True) for s in rows]

    async def update_subscription(self, subscription: WebhookSubscription) -> None:
        if subscription.id in self._subscriptions:
            self._subscriptions[subscription.id] = subscription.model_copy(deep=True)

    async def delete_subscription(
        self, subscription_id: str, tenant_id: Optional[str] = None
    ) -> bool:
        sub = self._subscriptions.get(subscription_id)
        if sub is None or (tenant_id is not None and sub.tenant_id != tenant_id):
            return False
        del self._subscriptions[subscription_id]
        for attempt_id in [
            a.id for a in self._attempts.values() if a.subscription_id == subscription_id
        ]:
            del self._attempts[attempt_id]
        for failure_id in [
            f.id for f in self._failures.values() if f.subscription_id == subscription_id
        ]:
            del self._failures[failure_id]
        return True

    async def list_subscriptions_for_event(
        self, event_type: str, tenant_id: Optional[str] = None
    ) -> list[WebhookSubscription]:
        return [
            s.model_copy(deep=True)
            for s in self._subscriptions.values()
            if s.is_active
            and event_type in s.events
            and s.tenant_id == tenant_id
        ]

    async def touch_subscription(self, subscription_id: str, when: datetime) -> None:
        sub = self._subscriptions.get(subscription_id)
        if sub:
            sub.last_triggered_at = when

    async def create_event(self, event: WebhookEvent) -> None:
        self._events[event.id] = event.model_copy(deep=True)

    async def get_event(self, event_id: str) -> WebhookEvent | None:
        event = self._events.get(event_id)
        return event.model_copy(deep=True) if event else None

    async def list_events(
        self,
        event_type: Optional[str] = None,
        tenant_id: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[WebhookEvent]:
        rows = [
            e
            for e in reversed(list(self._events.values()))
            if (event_type is None or e.event_type == event_type)
            and (tenant_id is None or e.tenant_id == tenant_id)
        ]
        rows.sort(key=lambda e: e.created_at, reverse=True)
        return [e.model_copy(deep=True) for e in rows[offset : offset + limit]]

    async def delete_events_before(self, cutoff: datetime) -> int:
        stale = [e.id for e in self._events.values() if e.created_at < cutoff]
        for event_id in stale:
            del self._events[event_id]
        for attempt_id in [a.id for a in self._attempts.values() if a.event_id in stale]:
            del self._attempts[attempt_id]
        for failure_id in [f.id for f in self._failures.values() if f.event_id in stale]:
            del self._failures[failure_id]
        return len(stale)

    async def record_attempt(self, attempt: DeliveryAttempt) -> None:
        self._attempts[attempt.id] = attempt.model_copy(deep=True)

    async def list_attempts(
        self,
        subscription_id: str,
        limit: Optional[int] = None,
        offset: int = 0,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> list[DeliveryAttempt]:
        rows = [
            a
            for a in reversed(list(self._attempts.values()))
            if a.subscription_id == subscription_id
            and (since is None or a.created_at >= since)
            and (until is None or a.created_at <= until)
        ]
        rows.sort(key=lambda a: a.created_at, reverse=True)
        end = None if limit is None else offset + limit
        return [a.model_copy(deep=True) for a in rows[offset:end]]

    async def count_attempts(self, subscription_id: str, event_id: str) -> int:
        return sum(
            1
            for a in self._attempts.values()
            if a.subscription_id == subscription_id and a.event_id == event_id
        )

    async def list_due_retries(self, now: datetime, limit: int) -> list[DeliveryAttempt]:
        due = [
            a
            for a in self._attempts.values()
            if not a.success and a.next_retry_at is not None and a.next_retry_at <= now
        ]
        due.sort(key=lambda a: a.next_retry_at)
        return [a.model_copy(deep=True) for a in due[:limit]]

    async def claim_retry(self, attempt_id: str) -> bool:
        attempt = self._attempts.get(attempt_id)
        if attempt is None or attempt.next_retry_at is None:
            return False
        attempt.next_retry_at = None
        return True

    async def record_failure(self, failure: DeliveryFailure) -> None:
        self._failures[failure.id] = failure.model_copy(deep=True)

    async def get_failure(self, failure_id: str) -> DeliveryFailure | None:
        failure = self._failures.get(failure_id)
        return failure.model_copy(deep=True) if failure else None

    async def list_failures(
        self, subscription_id: str, replayable_only: bool = True
    ) -> list[DeliveryFailure]:
        rows = [
            f
            for f in reversed(list(self._failures.values()))
            if f.subscription_id == subscription_id
            and (not replayable_only or (f.can_replay and f.replayed_at is None))
        ]
        rows.sort(key=lambda f: f.created_at, reverse=True)
        return [f.model_copy(deep=True) for f in rows]

    async def mark_failure_replayed(self, failure_id: str, when: datetime) -> bool:
        failure = self._failures.get(failure_id)
        if failure is None or failure.replayed_at is not None:
            return False
        failure.replayed_at = when
        return True
