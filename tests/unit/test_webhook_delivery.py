"""Webhook delivery tests: signing, retry budget, fan-out isolation and replay."""

import json
from datetime import timedelta

import httpx
import pytest

from salesflow.exceptions import ConcurrencyConflict, NotFound
from salesflow.persistence import DeliveryStatus, WebhookEvent
from salesflow.webhooks import sign_payload, verify_signature
from salesflow.webhooks.delivery import error_code_for_status, ip_allowed


async def _subscribe(services, host, **extra):
    return await services.webhooks.create_subscription(
        "shop-a",
        {"url": f"https://{host}/hooks", "events": ["order.created"], **extra},
    )


async def _drain_retries(services, clock, ticks=6):
    for _ in range(ticks):
        clock.advance(hours=2)
        await services.delivery.process_retry_queue()


@pytest.mark.asyncio
async def test_delivery_is_signed_and_carries_headers(services, endpoint):
    subscription = await _subscribe(
        services, "a.example.com", secret="s3cret", api_key="key-1", headers={"X-Shop": "a"}
    )

    result = await services.webhooks.publish_event(
        "order.created", {"order_id": "o-1", "total": 99}, tenant_id="shop-a"
    )

    assert len(result.attempts) == 1 and result.attempts[0].success
    request = endpoint.requests[0]
    assert request.method == "POST"
    assert request.headers["X-Webhook-Signature"] == sign_payload(request.content, "s3cret")
    assert verify_signature(request.content, "s3cret", request.headers["X-Webhook-Signature"])
    assert request.headers["X-Webhook-ID"] == subscription.id
    assert request.headers["X-Webhook-Event"] == "order.created"
    assert request.headers["Authorization"] == "Bearer key-1"
    assert request.headers["X-Shop"] == "a"
    assert request.headers["Content-Type"] == "application/json"
    body = json.loads(request.content)
    assert body["id"] == result.event.id
    assert body["event"] == "order.created"
    assert body["data"] == {"order_id": "o-1", "total": 99}
    stored = await services.repository.get_subscription(subscription.id)
    assert stored.last_triggered_at is not None


@pytest.mark.asyncio
async def test_retry_budget_is_bounded(services, endpoint, clock):
    subscription = await _subscribe(services, "down.example.com", max_retries=3)
    endpoint.fail_always("down.example.com", 500)

    result = await services.webhooks.publish_event("order.created", {"id": 1}, "shop-a")
    first = result.attempts[0]
    assert first.next_retry_at == first.created_at + timedelta(seconds=1)
    assert first.error_code == "server_error"

    clock.advance(seconds=1)
    await services.delivery.process_retry_queue()
    second = (await services.repository.list_attempts(subscription.id))[0]
    assert second.attempt_number == 2
    assert second.next_retry_at == second.created_at + timedelta(seconds=2)

    await _drain_retries(services, clock)

    attempts = await services.repository.list_attempts(subscription.id)
    assert [a.attempt_number for a in attempts] == [3, 2, 1]
    assert attempts[0].exhausted and attempts[0].next_retry_at is None
    assert not any(a.success for a in attempts)
    assert len(endpoint.to("down.example.com")) == 3
    failures = await services.webhooks.get_failed_deliveries(subscription.id, "shop-a")
    assert len(failures) == 1
    assert failures[0].attempt_number == 3
    assert failures[0].http_status == 500


@pytest.mark.asyncio
async def test_retry_succeeds_before_budget_runs_out(services, endpoint, clock):
    subscription = await _subscribe(services, "flaky.example.com", max_retries=5)
    endpoint.plan("flaky.example.com", 503, 429)

    await services.webhooks.publish_event("order.created", {}, "shop-a")
    await _drain_retries(services, clock)

    attempts = await services.repository.list_attempts(subscription.id)
    assert [(a.attempt_number, a.success) for a in attempts] == [
        (3, True),
        (2, False),
        (1, False),
    ]
    assert attempts[1].error_code == "rate_limited"
    assert await services.repository.list_failures(subscription.id) == []


@pytest.mark.asyncio
async def test_fan_out_isolates_a_timing_out_target(services, endpoint):
    ok_a = await _subscribe(services, "a.example.com")
    slow = await _subscribe(services, "slow.example.com")
    ok_c = await _subscribe(services, "c.example.com")
    endpoint.fail_always("slow.example.com", httpx.ReadTimeout)

    result = await services.webhooks.publish_event("order.created", {"id": 7}, "shop-a")

    assert result.errors == 0
    by_subscription = {a.subscription_id: a for a in result.attempts}
    assert by_subscription[ok_a.id].success
    assert by_subscription[ok_c.id].success
    timed_out = by_subscription[slow.id]
    assert timed_out.status == DeliveryStatus.TIMEOUT
    assert timed_out.error_code == "timeout"
    assert timed_out.http_status is None
    assert timed_out.next_retry_at is not None


@pytest.mark.asyncio
async def test_fan_out_skips_inactive_and_other_tenants(services, endpoint):
    await _subscribe(services, "a.example.com")
    await _subscribe(services, "off.example.com", is_active=False)
    await services.webhooks.create_subscription(
        "shop-b", {"url": "https://b.example.com/hooks", "events": ["order.created"]}
    )
    await _subscribe(services, "refunds.example.com", events=["order.refunded"])

    result = await services.webhooks.publish_event("order.created", {}, "shop-a")

    assert [r.url.host for r in endpoint.requests] == ["a.example.com"]
    assert len(result.attempts) == 1


@pytest.mark.asyncio
async def test_connection_errors_are_recorded(services, endpoint):
    await _subscribe(services, "gone.example.com", retry_enabled=False)
    endpoint.fail_always("gone.example.com", httpx.ConnectError)

    result = await services.webhooks.publish_event("order.created", {}, "shop-a")

    attempt = result.attempts[0]
    assert attempt.error_code == "connection_error"
    assert attempt.exhausted
    assert attempt.next_retry_at is None


@pytest.mark.asyncio
async def test_replay_is_one_attempt_outside_the_budget(services, endpoint, clock):
    subscription = await _subscribe(services, "down.example.com", max_retries=2)
    endpoint.fail_always("down.example.com", 500)
    await services.webhooks.publish_event("order.created", {"id": 1}, "shop-a")
    await _drain_retries(services, clock)
    [failure] = await services.webhooks.get_failed_deliveries(subscription.id, "shop-a")

    endpoint.always.clear()
    attempt = await services.webhooks.replay_failed_event(subscription.id, failure.id, "shop-a")

    assert attempt.success and attempt.replay
    assert attempt.attempt_number == 3
    await _drain_retries(services, clock)
    assert len(await services.repository.list_attempts(subscription.id)) == 3
    assert await services.webhooks.get_failed_deliveries(subscription.id) == []

    with pytest.raises(ConcurrencyConflict):
        await services.webhooks.replay_failed_event(subscription.id, failure.id)


@pytest.mark.asyncio
async def test_failed_replay_is_not_retried(services, endpoint, clock):
    subscription = await _subscribe(services, "down.example.com", max_retries=1)
    endpoint.fail_always("down.example.com", 502)
    await services.webhooks.publish_event("order.created", {}, "shop-a")
    [failure] = await services.webhooks.get_failed_deliveries(subscription.id)

    attempt = await services.webhooks.replay_failed_event(subscription.id, failure.id)
    await _drain_retries(services, clock)

    assert not attempt.success and attempt.next_retry_at is None
    assert len(await services.repository.list_attempts(subscription.id)) == 2
    [new_failure] = await services.webhooks.get_failed_deliveries(subscription.id)
    assert new_failure.id != failure.id
    assert new_failure.attempt_number == 2


@pytest.mark.asyncio
async def test_replay_of_unknown_failure(services):
    subscription = await _subscribe(services, "a.example.com")
    with pytest.raises(NotFound):
        await services.webhooks.replay_failed_event(subscription.id, "nope")


@pytest.mark.asyncio
async def test_ip_allowlist_blocks_without_sending(services, endpoint):
    blocked = await _subscribe(services, "a.example.com", ip_allowlist=["10.0.0.0/8"])
    allowed = await _subscribe(services, "b.example.com", ip_allowlist=["203.0.113.0/24"])

    result = await services.webhooks.publish_event("order.created", {}, "shop-a")

    by_subscription = {a.subscription_id: a for a in result.attempts}
    assert by_subscription[blocked.id].error_code == "blocked"
    assert by_subscription[allowed.id].success
    assert [r.url.host for r in endpoint.requests] == ["b.example.com"]


def test_ip_allowed_matches_addresses_and_networks():
    assert ip_allowed("10.1.2.3", ["10.0.0.0/8"])
    assert ip_allowed("192.0.2.7", ["192.0.2.7"])
    assert not ip_allowed("192.0.2.8", ["192.0.2.7", "not-an-ip"])
    assert not ip_allowed("localhost", ["127.0.0.0/8"])


@pytest.mark.parametrize(
    "status, code",
    [(401, "authentication_error"), (403, "authentication_error"), (404, "client_error"),
     (429, "rate_limited"), (500, "server_error"), (302, "unknown_error")],
)
def test_error_codes(status, code):
    assert error_code_for_status(status) == code


@pytest.mark.asyncio
async def test_test_event_is_not_retried(services, endpoint, clock):
    subscription = await _subscribe(services, "down.example.com")
    endpoint.fail_always("down.example.com", 500)

    attempt = await services.webhooks.send_test_event(subscription.id, "shop-a")
    await _drain_retries(services, clock)

    assert not attempt.success
    assert attempt.next_retry_at is None and not attempt.exhausted
    assert json.loads(endpoint.requests[0].content)["event"] == "webhook.test"
    assert len(await services.repository.list_attempts(subscription.id)) == 1
    assert await services.repository.list_failures(subscription.id) == []


@pytest.mark.asyncio
async def test_deliver_to_missing_subscription(services):
    with pytest.raises(NotFound):
        await services.delivery.deliver("missing", WebhookEvent(event_type="order.created"))
