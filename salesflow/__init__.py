"""Salesflow: workflow automation and webhook delivery core for a multi-tenant back office."""

from .conditions import evaluate
from .contracts import ExecutionStatus, StepOutcome, TriggerSpec, WorkflowDefinition
from .dispatch import WorkflowDispatcher
from .execute import StepExecutor, WorkflowRunner
from .persistence import get_repository
from .resumer import ExecutionResumer
from .scheduler import WorkflowScheduler
from .services import Services, build_services
from .webhooks import WebhookDeliveryService, WebhookManager

__version__ = "0.1.0"
__all__ = [
    "ExecutionResumer",
    "ExecutionStatus",
    "Services",
    "StepExecutor",
    "StepOutcome",
    "TriggerSpec",
    "WebhookDeliveryService",
    "WebhookManager",
    "WorkflowDefinition",
    "WorkflowDispatcher",
    "WorkflowRunner",
    "WorkflowScheduler",
    "build_services",
    "evaluate",
    "get_repository",
]
