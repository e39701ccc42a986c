"""Wiring of the automation and delivery services around one store."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

import httpx

from .actions import ActionRegistry, default_registry
from .config import SalesflowConfig
from .dispatch import WorkflowDispatcher
from .events import EventPublisher
from .execute import StepExecutor, WorkflowRunner
from .persistence import Repository
from .resumer import ExecutionResumer, ResumeSummary
from .scheduler import ScheduleSummary, WorkflowScheduler
from .utils.time import Clock, utcnow
from .webhooks import RetrySummary, WebhookDeliveryService, WebhookManager
from .webhooks.delivery import Resolver, resolve_host

logger = logging.getLogger(__name__)


@dataclass
class Services:
    repository: Repository
    config: SalesflowConfig
    runner: WorkflowRunner
    scheduler: WorkflowScheduler
    resumer: ExecutionResumer
    dispatcher: WorkflowDispatcher
    delivery: WebhookDeliveryService
    webhooks: WebhookManager
    events: EventPublisher
    clock: Clock = utcnow

    async def run_workflow_cron(self) -> tuple[ScheduleSummary, ResumeSummary]:
        """One cron tick for workflows: scheduler first, then resumer."""
        scheduled = await self.scheduler.schedule_workflows()
        resumed = await self.resumer.resume_waiting_executions()
        return scheduled, resumed

    async def run_webhook_cron(self) -> RetrySummary:
        return await self.delivery.process_retry_queue()

    async def run_retention(self) -> int:
        """Drop webhook events older than the configured retention window."""
        return await self.webhooks.cleanup_old_events()


def build_services(
    repository: Repository,
    config: Optional[SalesflowConfig] = None,
    actions: Optional[ActionRegistry] = None,
    http_client: Optional[httpx.AsyncClient] = None,
    clock: Clock = utcnow,
    resolver: Resolver = resolve_host,
) -> Services:
    """Build every service over ``repository``.

    ``http_client`` is shared by webhook delivery and the ``http_call``
    action; ``clock`` drives every timestamp and due-time decision.
    """
    config = config or SalesflowConfig()
    actions = actions or default_registry(http_client=http_client)
    executor = StepExecutor(repository, actions=actions, config=config.engine, clock=clock)
    runner = WorkflowRunner(repository, executor=executor, config=config.engine, clock=clock)
    dispatcher = WorkflowDispatcher(repository, runner, clock=clock)
    delivery = WebhookDeliveryService(
        repository, config=config.delivery, client=http_client, clock=clock, resolver=resolver
    )
    webhooks = WebhookManager(repository, delivery, config=config.delivery, clock=clock)
    resumer = ExecutionResumer(repository, runner, clock=clock)
    return Services(
        repository=repository,
        config=config,
        runner=runner,
        scheduler=WorkflowScheduler(repository, runner, clock=clock),
        resumer=resumer,
        dispatcher=dispatcher,
        delivery=delivery,
        webhooks=webhooks,
        events=EventPublisher(webhooks, dispatcher, resumer),
        clock=clock,
    )
