"""Outbound webhook delivery with signing, retry scheduling and replay."""

from __future__ import annotations

import asyncio
import ipaddress
import json
import logging
import socket
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional
from urllib.parse import urlsplit

import httpx
from pydantic import BaseModel

from ..config import DeliveryConfig
from ..exceptions import ConcurrencyConflict, DeliveryError, InvalidRequest, NotFound
from ..persistence import Repository
from ..persistence.models import (
    DeliveryAttempt,
    DeliveryFailure,
    DeliveryStatus,
    WebhookEvent,
    WebhookSubscription,
)
from ..utils.retry import next_retry_at
from ..utils.time import Clock, to_iso, utcnow
from .signing import sign_payload

logger = logging.getLogger(__name__)

Resolver = Callable[[str], Awaitable[List[str]]]

TEST_EVENT_TYPE = "webhook.test"


async def resolve_host(host: str) -> List[str]:
    """Resolve ``host`` to its IP addresses using the event loop's resolver."""
    loop = asyncio.get_running_loop()
    infos = await loop.getaddrinfo(host, None, type=socket.SOCK_STREAM)
    return sorted({info[4][0] for info in infos})


def ip_allowed(address: str, allowlist: List[str]) -> bool:
    """Return whether ``address`` matches an entry (single IP or CIDR network)."""
    try:
        ip = ipaddress.ip_address(address)
    except ValueError:
        return False
    for entry in allowlist:
        try:
            if ip in ipaddress.ip_network(entry.strip(), strict=False):
                return True
        except ValueError:
            logger.warning(f"Ignoring malformed allowlist entry {entry!r}")
    return False


def error_code_for_status(http_status: int) -> str:
    if http_status in (401, 403):
        return "authentication_error"
    if http_status == 429:
        return "rate_limited"
    if 400 <= http_status < 500:
        return "client_error"
    if http_status >= 500:
        return "server_error"
    return "unknown_error"


def build_payload(event: WebhookEvent) -> Dict[str, Any]:
    return {
        "id": event.id,
        "event": event.event_type,
        "created_at": to_iso(event.created_at),
        "data": event.payload,
    }


class _Result(BaseModel):
    status: DeliveryStatus
    http_status: Optional[int] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    response_body: Optional[str] = None
    duration_ms: int = 0

    @property
    def success(self) -> bool:
        return self.status is DeliveryStatus.SUCCESS


class RetrySummary(BaseModel):
    """Counts reported by one pass over the retry queue."""

    due: int = 0
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0


class WebhookDeliveryService:
    """Deliver events to subscriber endpoints and track every attempt.

    Each call to :meth:`deliver` makes exactly one HTTP request and records
    exactly one :class:`DeliveryAttempt`. Retries are not held in memory: a
    failed attempt within budget carries ``next_retry_at`` and is picked up
    by :meth:`process_retry_queue` on a later tick.
    """

    def __init__(
        self,
        repository: Repository,
        config: DeliveryConfig | None = None,
        client: httpx.AsyncClient | None = None,
        clock: Clock = utcnow,
        resolver: Resolver = resolve_host,
    ) -> None:
        self._repository = repository
        self._config = config or DeliveryConfig()
        self._client = client
        self._clock = clock
        self._resolver = resolver

    async def deliver(
        self,
        subscription_id: str,
        event: WebhookEvent,
        *,
        replay: bool = False,
        allow_retry: bool = True,
    ) -> DeliveryAttempt:
        """Push ``event`` to one subscription and record the attempt.

        ``replay`` marks a manual re-delivery: it never schedules automatic
        retries. ``allow_retry=False`` (test events) records the attempt
        without retries or a dead-letter row.

        Raises:
            NotFound: If the subscription does not exist.
        """
        subscription = await self._repository.get_subscription(subscription_id)
        if subscription is None:
            raise NotFound(f"Webhook {subscription_id} not found")

        attempt_number = (
            await self._repository.count_attempts(subscription.id, event.id) + 1
        )
        result = await self._send(subscription, event)
        now = self._clock()

        attempt = DeliveryAttempt(
            subscription_id=subscription.id,
            event_id=event.id,
            attempt_number=attempt_number,
            status=result.status,
            success=result.success,
            http_status=result.http_status,
            error_code=result.error_code,
            error_message=result.error_message,
            response_body=result.response_body,
            duration_ms=result.duration_ms,
            replay=replay,
            created_at=now,
        )

        failure: DeliveryFailure | None = None
        if not result.success and allow_retry:
            within_budget = (
                not replay
                and subscription.retry_enabled
                and attempt_number < subscription.max_retries
            )
            if within_budget:
                attempt.next_retry_at = next_retry_at(
                    now,
                    attempt_number,
                    base=self._config.initial_delay_seconds,
                    multiplier=self._config.backoff_multiplier,
                    max_delay=self._config.max_delay_seconds,
                )
            else:
                attempt.exhausted = True
                failure = DeliveryFailure(
                    subscription_id=subscription.id,
                    event_id=event.id,
                    attempt_id=attempt.id,
                    attempt_number=attempt_number,
                    reason=f"{result.error_code}: {result.error_message}",
                    http_status=result.http_status,
                    created_at=now,
                )

        await self._repository.record_attempt(attempt)
        if failure is not None:
            await self._repository.record_failure(failure)
        await self._repository.touch_subscription(subscription.id, now)

        if result.success:
            logger.info(
                f"Delivered {event.event_type} {event.id} to webhook {subscription.id} "
                f"(attempt {attempt_number})"
            )
        elif failure is not None:
            logger.error(
                f"Delivery of {event.id} to webhook {subscription.id} exhausted after "
                f"attempt {attempt_number}: {failure.reason}"
            )
        else:
            logger.warning(
                f"Delivery of {event.id} to webhook {subscription.id} failed "
                f"(attempt {attempt_number}, {result.error_code}); "
                f"next retry at {attempt.next_retry_at}"
            )
        return attempt

    async def process_retry_queue(self) -> RetrySummary:
        """Deliver every attempt whose ``next_retry_at`` has passed.

        Each due attempt is claimed by clearing its ``next_retry_at``
        conditionally, so overlapping ticks never retry it twice.
        """
        summary = RetrySummary()
        due = await self._repository.list_due_retries(
            self._clock(), self._config.retry_batch_size
        )
        summary.due = len(due)
        for previous in due:
            if not await self._repository.claim_retry(previous.id):
                logger.debug(f"Retry of attempt {previous.id} already claimed")
                summary.skipped += 1
                continue
            subscription = await self._repository.get_subscription(previous.subscription_id)
            event = await self._repository.get_event(previous.event_id)
            if subscription is None or event is None or not subscription.is_active:
                logger.info(
                    f"Dropping retry of attempt {previous.id}: webhook inactive or event gone"
                )
                summary.skipped += 1
                continue
            try:
                attempt = await self.deliver(subscription.id, event)
            except Exception:
                logger.exception(f"Retry of attempt {previous.id} failed to run")
                summary.failed += 1
                continue
            summary.processed += 1
            if attempt.success:
                summary.succeeded += 1
            else:
                summary.failed += 1
        if summary.due:
            logger.info(
                f"Processed {summary.processed} of {summary.due} due webhook retries"
            )
        return summary

    async def replay_failed_event(
        self, failure_id: str, tenant_id: Optional[str] = None
    ) -> DeliveryAttempt:
        """Re-deliver an exhausted delivery once, outside the retry budget.

        Raises:
            NotFound: If the failure, its webhook or its event is missing.
            InvalidRequest: If the failure is not replayable.
            ConcurrencyConflict: If the failure was already replayed.
        """
        failure = await self._repository.get_failure(failure_id)
        if failure is None:
            raise NotFound(f"Failure {failure_id} not found")
        subscription = await self._repository.get_subscription(
            failure.subscription_id, tenant_id
        )
        if subscription is None:
            raise NotFound(f"Failure {failure_id} not found")
        if not failure.can_replay:
            raise InvalidRequest(f"Failure {failure_id} cannot be replayed")
        event = await self._repository.get_event(failure.event_id)
        if event is None:
            raise NotFound(f"Event {failure.event_id} no longer exists")
        if not await self._repository.mark_failure_replayed(failure_id, self._clock()):
            raise ConcurrencyConflict(f"Failure {failure_id} was already replayed")

        logger.info(f"Replaying event {event.id} to webhook {subscription.id}")
        return await self.deliver(subscription.id, event, replay=True)

    async def _send(
        self, subscription: WebhookSubscription, event: WebhookEvent
    ) -> _Result:
        body = json.dumps(build_payload(event), separators=(",", ":"))
        headers = {
            "Content-Type": "application/json",
            "X-Webhook-Signature": sign_payload(body, subscription.secret),
            "X-Webhook-Timestamp": str(int(self._clock().timestamp())),
            "X-Webhook-ID": subscription.id,
            "X-Webhook-Event": event.event_type,
            "User-Agent": self._config.user_agent,
        }
        if subscription.api_key:
            headers["Authorization"] = f"Bearer {subscription.api_key}"
        headers.update(subscription.headers)

        started = time.monotonic()
        try:
            if subscription.ip_allowlist:
                await self._check_allowlist(subscription)
            response = await self._post(
                subscription.url, body, headers, subscription.timeout_seconds
            )
        except DeliveryError as exc:
            return _Result(
                status=DeliveryStatus.TIMEOUT
                if exc.code == "timeout"
                else DeliveryStatus.FAILED,
                http_status=exc.http_status,
                error_code=exc.code,
                error_message=str(exc),
                duration_ms=int((time.monotonic() - started) * 1000),
            )

        duration_ms = int((time.monotonic() - started) * 1000)
        text = response.text[: self._config.max_response_body_chars]
        if response.is_success:
            return _Result(
                status=DeliveryStatus.SUCCESS,
                http_status=response.status_code,
                response_body=text,
                duration_ms=duration_ms,
            )
        return _Result(
            status=DeliveryStatus.FAILED,
            http_status=response.status_code,
            error_code=error_code_for_status(response.status_code),
            error_message=f"HTTP {response.status_code}",
            response_body=text,
            duration_ms=duration_ms,
        )

    async def _check_allowlist(self, subscription: WebhookSubscription) -> None:
        host = urlsplit(subscription.url).hostname or ""
        try:
            addresses = [str(ipaddress.ip_address(host))]
        except ValueError:
            try:
                addresses = await self._resolver(host)
            except OSError as exc:
                raise DeliveryError(
                    f"Could not resolve {host}: {exc}", "connection_error"
                ) from exc
        allowlist = subscription.ip_allowlist or []
        if not addresses or not all(ip_allowed(a, allowlist) for a in addresses):
            raise DeliveryError(
                f"Target {host} resolves outside the IP allowlist", "blocked"
            )

    async def _post(
        self, url: str, body: str, headers: Dict[str, str], timeout: float
    ) -> httpx.Response:
        try:
            if self._client is not None:
                return await self._client.post(
                    url, content=body, headers=headers, timeout=timeout
                )
            async with httpx.AsyncClient() as client:
                return await client.post(url, content=body, headers=headers, timeout=timeout)
        except httpx.TimeoutException as exc:
            raise DeliveryError(f"Request timed out after {timeout}s", "timeout") from exc
        except httpx.NetworkError as exc:
            raise DeliveryError(f"Connection failed: {exc}", "connection_error") from exc
        except httpx.HTTPError as exc:
            raise DeliveryError(f"Request failed: {exc}", "unknown_error") from exc
