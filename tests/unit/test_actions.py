"""Built-in action handler tests."""

import json

import httpx
import pytest

from salesflow.actions import InMemoryRecordSink, default_registry
from salesflow.actions.builtin import (
    AddTagHandler,
    CreateTaskHandler,
    HttpCallHandler,
    SendEmailHandler,
    SendSmsHandler,
    UpdateRecordHandler,
)
from salesflow.contracts import ActionType
from salesflow.exceptions import ActionHandlerError


class RecordingSender:
    def __init__(self):
        self.sent = []

    async def send(self, channel, recipient, message):
        self.sent.append((channel, recipient, message))
        return f"msg-{len(self.sent)}"


def test_default_registry_covers_every_action_type():
    registry = default_registry()
    for action_type in ActionType:
        assert action_type in registry
        assert registry.get(action_type).action_type is action_type


@pytest.mark.asyncio
async def test_send_email_falls_back_to_customer_email():
    sender = RecordingSender()
    handler = SendEmailHandler(sender)

    result = await handler.execute(
        {"subject": "Thanks", "body": "Your order shipped"},
        {"customer_email": "ann@example.com"},
    )

    assert result.success
    assert result.output == {"email_sent_to": "ann@example.com", "message_id": "msg-1"}
    assert sender.sent[0][0] == "email"
    assert sender.sent[0][2]["subject"] == "Thanks"


@pytest.mark.asyncio
async def test_send_email_and_sms_need_a_recipient():
    sender = RecordingSender()
    with pytest.raises(ActionHandlerError):
        await SendEmailHandler(sender).execute({"subject": "x"}, {})
    with pytest.raises(ActionHandlerError):
        await SendSmsHandler(sender).execute({"message": "x"}, {})
    assert sender.sent == []


@pytest.mark.asyncio
async def test_sms_uses_explicit_recipient():
    sender = RecordingSender()
    result = await SendSmsHandler(sender).execute(
        {"to": "+15550100", "message": "Your code is 1234"}, {"customer_phone": "+1999"}
    )
    assert result.output["sms_sent_to"] == "+15550100"
    assert sender.sent == [("sms", "+15550100", {"message": "Your code is 1234"})]


@pytest.mark.asyncio
async def test_http_call_returns_status_and_body():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"tier": "gold"})

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    result = await HttpCallHandler(client).execute(
        {"url": "https://crm.example.com/lookup", "method": "post", "json": {"id": "c1"}},
        {},
    )

    assert result.output == {"status_code": 200, "response": {"tier": "gold"}}
    assert seen[0].method == "POST"
    assert json.loads(seen[0].content) == {"id": "c1"}


@pytest.mark.asyncio
async def test_http_call_non_2xx_fails():
    statuses = iter([503, 404])
    client = httpx.AsyncClient(
        transport=httpx.MockTransport(lambda request: httpx.Response(next(statuses)))
    )
    handler = HttpCallHandler(client)

    with pytest.raises(ActionHandlerError) as server_error:
        await handler.execute({"url": "https://crm.example.com/a"}, {})
    assert "returned 503" in str(server_error.value)

    with pytest.raises(ActionHandlerError) as client_error:
        await handler.execute({"url": "https://crm.example.com/a"}, {})
    assert "returned 404" in str(client_error.value)


@pytest.mark.asyncio
async def test_http_call_requires_url():
    with pytest.raises(ActionHandlerError):
        await HttpCallHandler().execute({}, {})


@pytest.mark.asyncio
async def test_record_handlers_write_to_sink():
    sink = InMemoryRecordSink()
    context = {"order_id": "o-1", "customer_id": "c-1"}

    await UpdateRecordHandler(sink).execute(
        {"table": "order", "field": "status", "value": "shipped"}, context
    )
    await AddTagHandler(sink).execute({"tag": "repeat-buyer"}, context)
    task = await CreateTaskHandler(sink).execute({"title": "Call back"}, context)

    assert sink.operations[0] == {
        "operation": "update_record",
        "table": "order",
        "record_id": "o-1",
        "updates": {"status": "shipped"},
    }
    assert sink.operations[1] == {
        "operation": "add_tag",
        "customer_id": "c-1",
        "tag": "repeat-buyer",
    }
    assert task.output["task_created"]["priority"] == "medium"
    assert task.output["task_created"]["status"] == "pending"


@pytest.mark.asyncio
async def test_update_record_without_record_id_fails():
    with pytest.raises(ActionHandlerError, match="order ID not found"):
        await UpdateRecordHandler(InMemoryRecordSink()).execute(
            {"table": "order", "field": "status", "value": "x"}, {}
        )
