"""Column mapping shared by the SQL backends."""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Mapping, Type, TypeVar

from pydantic import BaseModel

from ..utils.time import to_iso
from .models import (
    DeliveryAttempt,
    DeliveryFailure,
    StepRecord,
    WebhookEvent,
    WebhookSubscription,
    WorkflowExecution,
)

ModelT = TypeVar("ModelT", bound=BaseModel)


@dataclass(frozen=True)
class Table:
    name: str
    model: Type[BaseModel]
    json_fields: tuple[str, ...] = ()
    datetime_fields: tuple[str, ...] = ()
    exclude: tuple[str, ...] = ()

    @property
    def columns(self) -> list[str]:
        return [f for f in self.model.model_fields if f not in self.exclude]


EXECUTIONS = Table(
    "workflow_executions",
    WorkflowExecution,
    json_fields=("context", "wait_condition"),
    datetime_fields=("scheduled_for", "started_at", "updated_at", "completed_at", "wait_until"),
)
STEP_RECORDS = Table(
    "workflow_step_records",
    StepRecord,
    json_fields=("output",),
    datetime_fields=("created_at",),
    exclude=("id",),
)
SUBSCRIPTIONS = Table(
    "webhook_subscriptions",
    WebhookSubscription,
    json_fields=("events", "ip_allowlist", "headers"),
    datetime_fields=("created_at", "updated_at", "last_triggered_at"),
)
EVENTS = Table(
    "webhook_events",
    WebhookEvent,
    json_fields=("payload",),
    datetime_fields=("created_at",),
)
ATTEMPTS = Table(
    "webhook_deliveries",
    DeliveryAttempt,
    datetime_fields=("next_retry_at", "created_at"),
)
FAILURES = Table(
    "webhook_failures",
    DeliveryFailure,
    datetime_fields=("replayed_at", "created_at"),
)


def to_row(table: Table, model: BaseModel, native_datetimes: bool = False) -> dict[str, Any]:
    """Flatten ``model`` into column values.

    JSON fields become JSON text (SQL NULL for ``None``). Datetimes become
    fixed-width ISO strings unless ``native_datetimes`` is set.
    """
    data = model.model_dump(mode="json")
    row: dict[str, Any] = {}
    for column in table.columns:
        value = data[column]
        if column in table.json_fields:
            value = None if value is None else json.dumps(value)
        elif column in table.datetime_fields:
            raw = getattr(model, column)
            value = raw if native_datetimes else to_iso(raw)
        row[column] = value
    return row


def from_row(table: Table, row: Mapping[str, Any]) -> Any:
    data = dict(row)
    for column in table.json_fields:
        value = data.get(column)
        if isinstance(value, str):
            data[column] = json.loads(value)
    return table.model.model_validate(data)


def load_json(value: Any) -> Any:
    return json.loads(value) if isinstance(value, str) else value
