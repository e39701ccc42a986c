"""Core contracts for salesflow workflows: definitions, steps, triggers and outcomes."""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from croniter import croniter
from pydantic import BaseModel, Field, JsonValue, model_validator

from .utils.time import utcnow


class ActionType(str, Enum):
    """External effects an action step can invoke."""

    SEND_EMAIL = "send_email"
    SEND_SMS = "send_sms"
    HTTP_CALL = "http_call"
    UPDATE_RECORD = "update_record"
    ADD_TAG = "add_tag"
    CREATE_TASK = "create_task"


class StepBase(BaseModel):
    name: Optional[str] = None
    enabled: bool = True


class ActionStep(StepBase):
    """Invoke a registered action handler."""

    type: Literal["action"] = "action"
    action: ActionType
    config: Dict[str, JsonValue] = Field(default_factory=dict)
    best_effort: bool = False
    next: Optional[int] = None


class ConditionStep(StepBase):
    """Branch on a condition expression evaluated against the context."""

    type: Literal["condition"] = "condition"
    condition: Dict[str, Any] = Field(default_factory=dict)
    on_true: Optional[int] = None
    on_false: Optional[int] = None


class WaitStep(StepBase):
    """Suspend the execution for a duration or until a condition holds.

    When ``until`` is set the execution is parked until the condition
    evaluates true, or until ``timeout_seconds`` elapse, in which case the
    execution fails unless ``continue_on_timeout`` is set. While parked,
    business events of the same tenant are merged into the payload; an
    ``event_type`` limits this to one event type and ``correlate_on`` names
    payload fields that must be equal in the event and the execution.
    """

    type: Literal["wait"] = "wait"
    seconds: float = 0
    minutes: float = 0
    hours: float = 0
    days: float = 0
    until: Optional[Dict[str, Any]] = None
    timeout_seconds: Optional[float] = None
    continue_on_timeout: bool = False
    event_type: Optional[str] = None
    correlate_on: List[str] = Field(default_factory=list)
    next: Optional[int] = None

    def duration(self) -> timedelta:
        return timedelta(
            seconds=self.seconds, minutes=self.minutes, hours=self.hours, days=self.days
        )


class EndStep(StepBase):
    type: Literal["end"] = "end"


Step = Annotated[
    Union[ActionStep, ConditionStep, WaitStep, EndStep], Field(discriminator="type")
]


class TriggerType(str, Enum):
    SCHEDULE = "schedule"
    EVENT = "event"
    MANUAL = "manual"


class TriggerSpec(BaseModel):
    """Trigger descriptor: trigger type plus its static configuration.

    Schedules use exactly one of ``cron``, ``interval_seconds`` or ``run_at``.
    Event triggers name a business ``event_type`` and may carry a ``filter``
    condition evaluated against the event payload.
    """

    type: TriggerType = TriggerType.MANUAL
    cron: Optional[str] = None
    interval_seconds: Optional[float] = None
    run_at: Optional[datetime] = None
    timezone: str = "UTC"
    event_type: Optional[str] = None
    filter: Optional[Dict[str, Any]] = None

    @model_validator(mode="after")
    def _check_config(self) -> "TriggerSpec":
        if self.type is TriggerType.SCHEDULE:
            chosen = [
                v for v in (self.cron, self.interval_seconds, self.run_at) if v is not None
            ]
            if len(chosen) != 1:
                raise ValueError(
                    "schedule trigger needs exactly one of cron, interval_seconds, run_at"
                )
            if self.cron is not None and not croniter.is_valid(self.cron):
                raise ValueError(f"invalid cron expression: {self.cron}")
            if self.interval_seconds is not None and self.interval_seconds <= 0:
                raise ValueError("interval_seconds must be positive")
        if self.type is TriggerType.EVENT and not self.event_type:
            raise ValueError("event trigger needs an event_type")
        return self


class WorkflowDefinition(BaseModel):
    """A workflow: trigger descriptor plus an ordered list of steps."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    tenant_id: Optional[str] = None
    name: str = ""
    description: Optional[str] = None
    trigger: TriggerSpec = Field(default_factory=TriggerSpec)
    steps: List[Step] = Field(default_factory=list)
    enabled: bool = True
    created_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def _check_targets(self) -> "WorkflowDefinition":
        if not self.steps:
            raise ValueError("workflow needs at least one step")
        limit = len(self.steps)
        for index, step in enumerate(self.steps):
            targets = []
            if isinstance(step, (ActionStep, WaitStep)):
                targets.append(step.next)
            elif isinstance(step, ConditionStep):
                targets.extend([step.on_true, step.on_false])
            for target in targets:
                if target is not None and not 0 <= target <= limit:
                    raise ValueError(f"step {index} points at invalid index {target}")
        return self

    def step_key(self, index: int) -> str:
        step = self.steps[index]
        return step.name or f"step_{index}"


class ExecutionStatus(str, Enum):
    RUNNING = "running"
    WAITING = "waiting"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset(
    {ExecutionStatus.COMPLETED, ExecutionStatus.FAILED, ExecutionStatus.CANCELLED}
)


class ExecutionContext(BaseModel):
    """Trigger payload captured at start plus accumulated step outputs."""

    payload: Dict[str, JsonValue] = Field(default_factory=dict)
    outputs: Dict[str, JsonValue] = Field(default_factory=dict)

    def record_output(self, key: str, output: JsonValue) -> None:
        if output is not None:
            self.outputs[key] = output

    def variables(self) -> Dict[str, Any]:
        """Payload merged with object-shaped step outputs, in step order.

        All outputs are also reachable under ``steps.<step key>``.
        """
        merged: Dict[str, Any] = dict(self.payload)
        for output in self.outputs.values():
            if isinstance(output, dict):
                merged.update(output)
        merged["steps"] = dict(self.outputs)
        return merged


class OutcomeKind(str, Enum):
    ADVANCE = "advance"
    WAIT = "wait"
    COMPLETE = "complete"
    FAIL = "fail"


class StepOutcome(BaseModel):
    """Result of executing one step."""

    kind: OutcomeKind
    next_index: Optional[int] = None
    wait_until: Optional[datetime] = None
    wait_condition: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    output: JsonValue = None

    @classmethod
    def advance(cls, next_index: int, output: JsonValue = None) -> "StepOutcome":
        return cls(kind=OutcomeKind.ADVANCE, next_index=next_index, output=output)

    @classmethod
    def wait(
        cls,
        next_index: int,
        until: datetime,
        condition: Optional[Dict[str, Any]] = None,
        output: JsonValue = None,
    ) -> "StepOutcome":
        return cls(
            kind=OutcomeKind.WAIT,
            next_index=next_index,
            wait_until=until,
            wait_condition=condition,
            output=output,
        )

    @classmethod
    def complete(cls, output: JsonValue = None) -> "StepOutcome":
        return cls(kind=OutcomeKind.COMPLETE, output=output)

    @classmethod
    def fail(cls, error: str, output: JsonValue = None) -> "StepOutcome":
        return cls(kind=OutcomeKind.FAIL, error=error, output=output)
