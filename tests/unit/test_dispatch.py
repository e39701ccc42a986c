"""Workflow dispatcher tests: registration, triggers, events and cancellation."""

import pytest

from salesflow.contracts import ExecutionStatus, WorkflowDefinition
from salesflow.exceptions import InvalidRequest, NotFound


def _workflow(steps, **extra) -> WorkflowDefinition:
    return WorkflowDefinition.model_validate({"name": "wf", "steps": steps, **extra})


TAG = [{"type": "action", "action": "add_tag", "config": {"tag": "{{event_tag}}"}}]


@pytest.mark.asyncio
async def test_register_rejects_malformed_conditions(services):
    bad_branch = _workflow(
        [{"type": "condition", "condition": {"field": "x", "operator": "between"}}]
    )
    bad_filter = _workflow(
        TAG,
        trigger={"type": "event", "event_type": "order.created", "filter": {"and": []}},
    )

    with pytest.raises(InvalidRequest, match="step 0"):
        await services.dispatcher.register(bad_branch)
    with pytest.raises(InvalidRequest, match="trigger filter"):
        await services.dispatcher.register(bad_filter)


def test_definition_validation():
    with pytest.raises(ValueError):
        _workflow([])
    with pytest.raises(ValueError):
        _workflow([{"type": "action", "action": "add_tag", "next": 7}])
    with pytest.raises(ValueError):
        _workflow([{"type": "action", "action": "launch_rocket"}])
    with pytest.raises(ValueError):
        _workflow(TAG, trigger={"type": "event"})


@pytest.mark.asyncio
async def test_trigger_is_tenant_scoped(services):
    definition = _workflow(TAG, tenant_id="shop-a")
    await services.dispatcher.register(definition)

    with pytest.raises(NotFound):
        await services.dispatcher.trigger_workflow(definition.id, {}, tenant_id="shop-b")
    with pytest.raises(NotFound):
        await services.dispatcher.trigger_workflow("missing", {})

    execution = await services.dispatcher.trigger_workflow(
        definition.id, {"customer_id": "c-1", "event_tag": "manual"}, tenant_id="shop-a"
    )
    assert execution.tenant_id == "shop-a"
    assert execution.trigger_source == "manual"


@pytest.mark.asyncio
async def test_disabled_workflow_cannot_be_triggered(services):
    definition = _workflow(TAG, enabled=False)
    await services.dispatcher.register(definition)

    with pytest.raises(InvalidRequest, match="disabled"):
        await services.dispatcher.trigger_workflow(definition.id, {})


@pytest.mark.asyncio
async def test_non_json_payload_is_rejected(services):
    definition = _workflow(TAG)
    await services.dispatcher.register(definition)

    with pytest.raises(InvalidRequest):
        await services.dispatcher.trigger_workflow(definition.id, {"when": object()})


@pytest.mark.asyncio
async def test_dispatch_event_applies_type_filter_and_tenant(services, sink):
    big_orders = _workflow(
        TAG,
        tenant_id="shop-a",
        trigger={
            "type": "event",
            "event_type": "order.created",
            "filter": {"field": "total", "operator": "gte", "value": 100},
        },
    )
    all_orders = _workflow(
        TAG, tenant_id="shop-a", trigger={"type": "event", "event_type": "order.created"}
    )
    other_tenant = _workflow(
        TAG, tenant_id="shop-b", trigger={"type": "event", "event_type": "order.created"}
    )
    refunds = _workflow(
        TAG, tenant_id="shop-a", trigger={"type": "event", "event_type": "order.refunded"}
    )
    for definition in (big_orders, all_orders, other_tenant, refunds):
        await services.dispatcher.register(definition)

    started = await services.dispatcher.dispatch_event(
        "order.created", {"total": 20, "customer_id": "c-1", "event_tag": "new"}, "shop-a"
    )

    assert [e.workflow_id for e in started] == [all_orders.id]
    assert started[0].trigger_source == "event:order.created"
    assert started[0].status == ExecutionStatus.COMPLETED
    assert sink.operations == [{"operation": "add_tag", "customer_id": "c-1", "tag": "new"}]

    unscoped = await services.dispatcher.dispatch_event(
        "order.created", {"total": 500, "customer_id": "c-2", "event_tag": "new"}
    )
    assert unscoped == []


@pytest.mark.asyncio
async def test_dispatch_event_isolates_failing_workflows(services):
    failing = _workflow(
        [{"type": "action", "action": "add_tag", "config": {"tag": "x"}}],
        trigger={"type": "event", "event_type": "payment.received"},
    )
    working = _workflow(
        [{"type": "end"}], trigger={"type": "event", "event_type": "payment.received"}
    )
    await services.dispatcher.register(failing)
    await services.dispatcher.register(working)

    started = await services.dispatcher.dispatch_event("payment.received", {"amount": 5})

    statuses = {e.workflow_id: e.status for e in started}
    assert statuses == {
        failing.id: ExecutionStatus.FAILED,
        working.id: ExecutionStatus.COMPLETED,
    }


@pytest.mark.asyncio
async def test_cancel_execution(services):
    definition = _workflow([{"type": "wait", "days": 3}, {"type": "end"}], tenant_id="shop-a")
    await services.dispatcher.register(definition)
    execution = await services.dispatcher.trigger_workflow(definition.id, {})

    with pytest.raises(NotFound):
        await services.dispatcher.cancel_execution(execution.id, tenant_id="shop-b")

    cancelled = await services.dispatcher.cancel_execution(execution.id, tenant_id="shop-a")
    assert cancelled.status == ExecutionStatus.CANCELLED
    assert cancelled.completed_at is not None
    assert cancelled.wait_until is None

    with pytest.raises(InvalidRequest, match="already cancelled"):
        await services.dispatcher.cancel_execution(execution.id)


PAYMENT_WAIT = {
    "type": "wait",
    "until": {"field": "paid", "operator": "eq", "value": True},
    "timeout_seconds": 3600,
}


@pytest.mark.asyncio
async def test_signal_merges_data_into_waiting_execution(services, repo):
    definition = _workflow([PAYMENT_WAIT, {"type": "end"}], tenant_id="shop-a")
    await services.dispatcher.register(definition)
    execution = await services.dispatcher.trigger_workflow(
        definition.id, {"order_id": "o1"}, tenant_id="shop-a"
    )

    signalled = await services.dispatcher.signal_execution(
        execution.id, {"paid": False, "note": "partial"}, tenant_id="shop-a"
    )

    assert signalled.status == ExecutionStatus.WAITING
    stored = await repo.get_execution(execution.id)
    assert stored.context.payload == {"order_id": "o1", "paid": False, "note": "partial"}
    assert stored.wait_condition is not None

    with pytest.raises(NotFound):
        await services.dispatcher.signal_execution(execution.id, {"paid": True}, "shop-b")
    with pytest.raises(InvalidRequest):
        await services.dispatcher.signal_execution(execution.id, {"when": object()}, "shop-a")


@pytest.mark.asyncio
async def test_signal_rejects_executions_that_are_not_waiting(services):
    definition = _workflow([PAYMENT_WAIT, {"type": "end"}])
    await services.dispatcher.register(definition)
    execution = await services.dispatcher.trigger_workflow(definition.id, {})
    await services.dispatcher.cancel_execution(execution.id)

    with pytest.raises(InvalidRequest, match="not waiting"):
        await services.dispatcher.signal_execution(execution.id, {"paid": True})


@pytest.mark.asyncio
async def test_feed_matches_event_type_correlation_and_tenant(services, repo):
    wait = {**PAYMENT_WAIT, "event_type": "payment.received", "correlate_on": ["order_id"]}
    definition = _workflow([wait, {"type": "end"}], tenant_id="shop-a")
    await services.dispatcher.register(definition)
    first = await services.dispatcher.trigger_workflow(
        definition.id, {"order_id": "o1"}, tenant_id="shop-a"
    )
    second = await services.dispatcher.trigger_workflow(
        definition.id, {"order_id": "o2"}, tenant_id="shop-a"
    )
    paid = {"order_id": "o1", "paid": True}

    assert await services.dispatcher.feed_waiting_executions("order.shipped", paid, "shop-a") == []
    assert await services.dispatcher.feed_waiting_executions("payment.received", paid, "shop-b") == []
    assert await services.dispatcher.feed_waiting_executions("payment.received", paid) == []
    assert await services.dispatcher.feed_waiting_executions(
        "payment.received", {"paid": True}, "shop-a"
    ) == []

    fed = await services.dispatcher.feed_waiting_executions("payment.received", paid, "shop-a")

    assert fed == [first.id]
    assert (await repo.get_execution(first.id)).context.payload["paid"] is True
    assert "paid" not in (await repo.get_execution(second.id)).context.payload


@pytest.mark.asyncio
async def test_workflow_history_and_stats(services, clock):
    definition = _workflow(
        [{"type": "wait", "minutes": 5}, {"type": "action", "action": "add_tag", "config": {"tag": "x"}}],
        tenant_id="shop-a",
    )
    await services.dispatcher.register(definition)
    started = []
    for payload in ({"customer_id": "c-1"}, {}, {"customer_id": "c-3"}):
        started.append(
            await services.dispatcher.trigger_workflow(definition.id, payload, "shop-a")
        )
        clock.advance(minutes=1)
    clock.advance(minutes=10)
    await services.resumer.resume_waiting_executions()
    latest = await services.dispatcher.trigger_workflow(
        definition.id, {"customer_id": "c-4"}, "shop-a"
    )

    stats = await services.dispatcher.get_workflow_stats(definition.id, "shop-a")

    assert stats.total_executions == 4
    assert (stats.successful_executions, stats.failed_executions, stats.waiting) == (2, 1, 1)
    assert stats.success_rate == 66.67
    # 13 and 11 minutes between start and completion
    assert stats.average_duration_seconds == 720.0
    assert stats.last_started_at == latest.started_at

    page = await services.dispatcher.list_workflow_executions(
        definition.id, "shop-a", limit=2, offset=1
    )
    assert [e.id for e in page] == [started[2].id, started[1].id]
    failed = await services.dispatcher.list_workflow_executions(
        definition.id, "shop-a", status=ExecutionStatus.FAILED
    )
    assert [e.id for e in failed] == [started[1].id]
    with pytest.raises(NotFound):
        await services.dispatcher.get_workflow_stats(definition.id, "shop-b")
