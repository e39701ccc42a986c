"""Built-in action handlers."""

from __future__ import annotations

import logging
import uuid
from typing import Any, Dict, List, Optional

import httpx

from ..contracts import ActionType
from ..exceptions import ActionHandlerError
from .base import ActionHandler, ActionResult, MessageSender, RecordSink

logger = logging.getLogger(__name__)


class LoggingSender:
    """Default sender: logs the message instead of contacting a provider."""

    async def send(
        self, channel: str, recipient: str, message: Dict[str, Any]
    ) -> Optional[str]:
        message_id = str(uuid.uuid4())
        logger.info(f"{channel} to {recipient} queued as {message_id}")
        return message_id


class InMemoryRecordSink:
    """Record sink keeping applied operations in local memory.

    Useful for tests or when no back-office store is wired in.
    """

    def __init__(self) -> None:
        self.operations: List[Dict[str, Any]] = []

    async def apply(self, operation: str, data: Dict[str, Any]) -> Dict[str, Any]:
        entry = {"operation": operation, **data}
        self.operations.append(entry)
        return entry


def _require(config: Dict[str, Any], key: str, action: ActionType) -> Any:
    value = config.get(key)
    if value in (None, ""):
        raise ActionHandlerError(f"{action.value} requires '{key}'")
    return value


class SendEmailHandler(ActionHandler):
    action_type = ActionType.SEND_EMAIL

    def __init__(self, sender: MessageSender) -> None:
        self._sender = sender

    async def execute(
        self, config: Dict[str, Any], context: Dict[str, Any]
    ) -> ActionResult:
        to = config.get("to") or context.get("customer_email")
        if not to:
            raise ActionHandlerError("send_email requires 'to' or customer_email")
        message = {
            "subject": config.get("subject", ""),
            "body": config.get("body", ""),
            "template_id": config.get("template_id"),
        }
        message_id = await self._sender.send("email", str(to), message)
        return ActionResult(output={"email_sent_to": to, "message_id": message_id})


class SendSmsHandler(ActionHandler):
    action_type = ActionType.SEND_SMS

    def __init__(self, sender: MessageSender) -> None:
        self._sender = sender

    async def execute(
        self, config: Dict[str, Any], context: Dict[str, Any]
    ) -> ActionResult:
        to = config.get("to") or context.get("customer_phone")
        if not to:
            raise ActionHandlerError("send_sms requires 'to' or customer_phone")
        message_id = await self._sender.send(
            "sms", str(to), {"message": config.get("message", "")}
        )
        return ActionResult(output={"sms_sent_to": to, "message_id": message_id})


class HttpCallHandler(ActionHandler):
    """Issue an HTTP request; non-2xx responses fail the action."""

    action_type = ActionType.HTTP_CALL

    def __init__(self, client: Optional[httpx.AsyncClient] = None) -> None:
        self._client = client

    async def execute(
        self, config: Dict[str, Any], context: Dict[str, Any]
    ) -> ActionResult:
        url = _require(config, "url", self.action_type)
        method = str(config.get("method", "POST")).upper()
        kwargs: Dict[str, Any] = {
            "headers": config.get("headers") or {},
            "timeout": float(config.get("timeout_seconds", 30)),
        }
        if "json" in config:
            kwargs["json"] = config["json"]
        elif "body" in config:
            kwargs["content"] = str(config["body"])

        try:
            if self._client is not None:
                response = await self._client.request(method, url, **kwargs)
            else:
                async with httpx.AsyncClient() as client:
                    response = await client.request(method, url, **kwargs)
        except httpx.HTTPError as exc:
            raise ActionHandlerError(f"http_call to {url} failed: {exc}") from exc

        if not response.is_success:
            raise ActionHandlerError(f"http_call to {url} returned {response.status_code}")
        try:
            body: Any = response.json()
        except ValueError:
            body = response.text
        return ActionResult(output={"status_code": response.status_code, "response": body})


class UpdateRecordHandler(ActionHandler):
    """Set one field on a record; the record id is read from ``<table>_id``."""

    action_type = ActionType.UPDATE_RECORD

    def __init__(self, sink: RecordSink) -> None:
        self._sink = sink

    async def execute(
        self, config: Dict[str, Any], context: Dict[str, Any]
    ) -> ActionResult:
        table = _require(config, "table", self.action_type)
        field = _require(config, "field", self.action_type)
        record_id = config.get("record_id") or context.get(f"{table}_id")
        if not record_id:
            raise ActionHandlerError(f"{table} ID not found in context")
        await self._sink.apply(
            "update_record",
            {"table": table, "record_id": record_id, "updates": {field: config.get("value")}},
        )
        return ActionResult(output={"field_updated": field})


class AddTagHandler(ActionHandler):
    action_type = ActionType.ADD_TAG

    def __init__(self, sink: RecordSink) -> None:
        self._sink = sink

    async def execute(
        self, config: Dict[str, Any], context: Dict[str, Any]
    ) -> ActionResult:
        tag = _require(config, "tag", self.action_type)
        customer_id = config.get("customer_id") or context.get("customer_id")
        if not customer_id:
            raise ActionHandlerError("customer ID not found in context")
        await self._sink.apply("add_tag", {"customer_id": customer_id, "tag": tag})
        return ActionResult(output={"tag_added": tag})


class CreateTaskHandler(ActionHandler):
    action_type = ActionType.CREATE_TASK

    def __init__(self, sink: RecordSink) -> None:
        self._sink = sink

    async def execute(
        self, config: Dict[str, Any], context: Dict[str, Any]
    ) -> ActionResult:
        task = {
            "title": _require(config, "title", self.action_type),
            "description": config.get("description"),
            "assigned_to": config.get("assigned_to"),
            "due_date": config.get("due_date"),
            "priority": config.get("priority") or "medium",
            "status": "pending",
        }
        created = await self._sink.apply("create_task", task)
        return ActionResult(output={"task_created": created})
