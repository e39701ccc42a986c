"""Row models persisted in the event/trigger store."""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, JsonValue

from ..contracts import ExecutionContext, ExecutionStatus
from ..utils.time import utcnow


def new_id() -> str:
    return str(uuid.uuid4())


class WorkflowExecution(BaseModel):
    """One run of a workflow definition.

    ``wait_until`` is set only while ``status`` is ``waiting``. For condition
    waits it holds the timeout deadline and ``wait_condition`` holds the
    expression re-checked by the resumer.
    """

    id: str = Field(default_factory=new_id)
    workflow_id: str
    tenant_id: Optional[str] = None
    status: ExecutionStatus = ExecutionStatus.RUNNING
    current_step_index: int = 0
    context: ExecutionContext = Field(default_factory=ExecutionContext)
    trigger_source: str = "manual"
    scheduled_for: Optional[datetime] = None
    started_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    wait_until: Optional[datetime] = None
    wait_condition: Optional[Dict[str, Any]] = None
    last_error: Optional[str] = None


class StepResult(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    SKIPPED = "skipped"


class StepRecord(BaseModel):
    """Append-only audit record of one step invocation."""

    id: Optional[int] = None
    execution_id: str
    step_index: int
    step_name: Optional[str] = None
    step_type: str
    outcome: StepResult
    output: JsonValue = None
    error: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


class WebhookSubscription(BaseModel):
    """An outbound webhook endpoint and the event types it receives."""

    id: str = Field(default_factory=new_id)
    tenant_id: Optional[str] = None
    name: str = ""
    description: Optional[str] = None
    url: str
    events: List[str] = Field(default_factory=list)
    secret: str
    is_active: bool = True
    retry_enabled: bool = True
    max_retries: int = 3
    timeout_seconds: float = 30.0
    api_key: Optional[str] = None
    ip_allowlist: Optional[List[str]] = None
    headers: Dict[str, str] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    last_triggered_at: Optional[datetime] = None


class WebhookEvent(BaseModel):
    """An immutable business event offered to webhook subscribers."""

    id: str = Field(default_factory=new_id)
    tenant_id: Optional[str] = None
    event_type: str
    payload: Dict[str, JsonValue] = Field(default_factory=dict)
    resource_id: Optional[str] = None
    resource_type: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


class DeliveryStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    TIMEOUT = "timeout"


class DeliveryAttempt(BaseModel):
    """One HTTP push of one event to one subscription."""

    id: str = Field(default_factory=new_id)
    subscription_id: str
    event_id: str
    attempt_number: int = 1
    status: DeliveryStatus
    success: bool = False
    http_status: Optional[int] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    response_body: Optional[str] = None
    duration_ms: Optional[int] = None
    next_retry_at: Optional[datetime] = None
    exhausted: bool = False
    replay: bool = False
    created_at: datetime = Field(default_factory=utcnow)


class DeliveryFailure(BaseModel):
    """Dead-letter row for a delivery whose automatic retries are exhausted."""

    id: str = Field(default_factory=new_id)
    subscription_id: str
    event_id: str
    attempt_id: str
    attempt_number: int
    reason: str
    http_status: Optional[int] = None
    can_replay: bool = True
    replayed_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
