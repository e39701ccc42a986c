"""Repository abstraction for the event/trigger store."""

from __future__ import annotations

from datetime import datetime
from typing import Optional, Protocol

from ..contracts import ExecutionStatus, TriggerType, WorkflowDefinition
from .models import (
    DeliveryAttempt,
    DeliveryFailure,
    StepRecord,
    WebhookEvent,
    WebhookSubscription,
    WorkflowExecution,
)


class WorkflowRepository(Protocol):
    """Protocol for workflow definitions, executions and step records."""

    async def save_definition(self, definition: WorkflowDefinition) -> None:
        """Insert or replace a workflow definition."""

    async def get_definition(self, workflow_id: str) -> WorkflowDefinition | None:
        """Retrieve a workflow definition by id."""

    async def list_definitions(
        self,
        trigger_type: Optional[TriggerType] = None,
        enabled_only: bool = False,
        tenant_id: Optional[str] = None,
    ) -> list[WorkflowDefinition]:
        """Return definitions, optionally filtered."""

    async def create_execution(self, execution: WorkflowExecution) -> bool:
        """Insert an execution.

        Returns ``False`` without inserting when an execution for the same
        workflow and ``scheduled_for`` occurrence already exists.
        """

    async def get_execution(self, execution_id: str) -> WorkflowExecution | None:
        """Retrieve an execution by id."""

    async def update_execution(
        self, execution: WorkflowExecution, expected: Optional[ExecutionStatus] = None
    ) -> bool:
        """Persist the mutable fields of ``execution``.

        When ``expected`` is given the write only happens if the stored status
        still equals it. Returns whether a row was written.
        """

    async def transition_execution(
        self,
        execution_id: str,
        expected: ExecutionStatus,
        new: ExecutionStatus,
        now: Optional[datetime] = None,
    ) -> bool:
        """Compare-and-swap the execution status.

        Only succeeds when the stored status equals ``expected``. Leaving
        ``waiting`` clears the wait fields.
        """

    async def list_executions(
        self,
        workflow_id: Optional[str] = None,
        status: Optional[ExecutionStatus] = None,
        tenant_id: Optional[str] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> list[WorkflowExecution]:
        """Return executions, newest first."""

    async def latest_scheduled_execution(
        self, workflow_id: str
    ) -> WorkflowExecution | None:
        """Return the execution with the most recent ``scheduled_for``."""

    async def list_resumable_executions(self, now: datetime) -> list[WorkflowExecution]:
        """Return waiting executions that are due or wait on a condition."""

    async def append_step_record(self, record: StepRecord) -> StepRecord:
        """Append a step record and return it with its id."""

    async def list_step_records(self, execution_id: str) -> list[StepRecord]:
        """Return the step records of an execution in append order."""


class WebhookRepository(Protocol):
    """Protocol for webhook subscriptions, events, attempts and failures."""

    async def create_subscription(self, subscription: WebhookSubscription) -> None:
        """Insert a subscription."""

    async def get_subscription(
        self, subscription_id: str, tenant_id: Optional[str] = None
    ) -> WebhookSubscription | None:
        """Retrieve a subscription, scoped to ``tenant_id`` when given."""

    async def list_subscriptions(
        self, tenant_id: Optional[str] = None
    ) -> list[WebhookSubscription]:
        """Return subscriptions, newest first."""

    async def update_subscription(self, subscription: WebhookSubscription) -> None:
        """Persist the mutable fields of ``subscription``."""

    async def delete_subscription(
        self, subscription_id: str, tenant_id: Optional[str] = None
    ) -> bool:
        """Delete a subscription; return whether a row was removed."""

    async def list_subscriptions_for_event(
        self, event_type: str, tenant_id: Optional[str] = None
    ) -> list[WebhookSubscription]:
        """Return active subscriptions whose event set contains ``event_type``.

        The tenant must match exactly; ``None`` matches only subscriptions
        that have no tenant.
        """

    async def touch_subscription(self, subscription_id: str, when: datetime) -> None:
        """Set ``last_triggered_at``."""

    async def create_event(self, event: WebhookEvent) -> None:
        """Insert an event."""

    async def get_event(self, event_id: str) -> WebhookEvent | None:
        """Retrieve an event by id."""

    async def list_events(
        self,
        event_type: Optional[str] = None,
        tenant_id: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[WebhookEvent]:
        """Return events, newest first."""

    async def delete_events_before(self, cutoff: datetime) -> int:
        """Delete events created before ``cutoff``; return the count."""

    async def record_attempt(self, attempt: DeliveryAttempt) -> None:
        """Insert a delivery attempt."""

    async def list_attempts(
        self,
        subscription_id: str,
        limit: Optional[int] = None,
        offset: int = 0,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> list[DeliveryAttempt]:
        """Return attempts for a subscription, newest first."""

    async def count_attempts(self, subscription_id: str, event_id: str) -> int:
        """Return the number of attempts for a (subscription, event) pair."""

    async def list_due_retries(self, now: datetime, limit: int) -> list[DeliveryAttempt]:
        """Return failed attempts whose ``next_retry_at`` has passed."""

    async def claim_retry(self, attempt_id: str) -> bool:
        """Clear ``next_retry_at`` if still set; return whether this call did."""

    async def record_failure(self, failure: DeliveryFailure) -> None:
        """Insert a dead-letter row."""

    async def get_failure(self, failure_id: str) -> DeliveryFailure | None:
        """Retrieve a failure by id."""

    async def list_failures(
        self, subscription_id: str, replayable_only: bool = True
    ) -> list[DeliveryFailure]:
        """Return failures for a subscription, newest first."""

    async def mark_failure_replayed(self, failure_id: str, when: datetime) -> bool:
        """Set ``replayed_at`` if still unset; return whether this call did."""


class Repository(WorkflowRepository, WebhookRepository, Protocol):
    """The full store used by the automation and delivery core."""
