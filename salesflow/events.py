"""Business-event ingress: webhook fan-out plus event-triggered workflows."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from .dispatch import WorkflowDispatcher
from .resumer import ExecutionResumer
from .webhooks import WebhookManager

logger = logging.getLogger(__name__)


class PublishSummary(BaseModel):
    event_id: Optional[str] = None
    event_type: str
    deliveries: int = 0
    delivered: int = 0
    delivery_errors: int = 0
    execution_ids: List[str] = Field(default_factory=list)
    resumed_execution_ids: List[str] = Field(default_factory=list)


class EventPublisher:
    """Entry point for producers of business events (orders, payments, ...).

    Publishing never fails the producer: delivery and workflow problems are
    logged and only show up in the returned summary and the observability
    views. Executions of the same tenant parked on a condition wait take the
    event payload and, when their condition now holds, resume before new
    workflows start.
    """

    def __init__(
        self,
        webhooks: WebhookManager,
        dispatcher: WorkflowDispatcher,
        resumer: Optional[ExecutionResumer] = None,
    ) -> None:
        self._webhooks = webhooks
        self._dispatcher = dispatcher
        self._resumer = resumer

    async def publish(
        self,
        event_type: str,
        payload: Optional[Dict[str, Any]] = None,
        tenant_id: Optional[str] = None,
        resource_id: Optional[str] = None,
        resource_type: Optional[str] = None,
    ) -> PublishSummary:
        payload = payload or {}
        result = await self._webhooks.publish_event(
            event_type,
            payload,
            tenant_id=tenant_id,
            resource_id=resource_id,
            resource_type=resource_type,
        )
        resumed = await self._resume_fed(event_type, payload, tenant_id)
        executions = await self._dispatcher.dispatch_event(event_type, payload, tenant_id)
        summary = PublishSummary(
            event_id=result.event.id if result.event else None,
            event_type=event_type,
            deliveries=len(result.attempts) + result.errors,
            delivered=sum(1 for a in result.attempts if a.success),
            delivery_errors=result.errors,
            execution_ids=[e.id for e in executions],
            resumed_execution_ids=resumed,
        )
        logger.info(
            f"Published {event_type}: {summary.delivered}/{summary.deliveries} deliveries, "
            f"{len(summary.execution_ids)} workflows started, {len(resumed)} resumed"
        )
        return summary

    async def _resume_fed(
        self, event_type: str, payload: Dict[str, Any], tenant_id: Optional[str]
    ) -> List[str]:
        fed = await self._dispatcher.feed_waiting_executions(event_type, payload, tenant_id)
        if self._resumer is None:
            return []
        resumed = []
        for execution_id in fed:
            try:
                execution = await self._resumer.resume_execution(execution_id)
            except Exception:
                logger.exception(f"Resuming execution {execution_id} after {event_type} failed")
                continue
            if execution is not None:
                resumed.append(execution.id)
        return resumed
