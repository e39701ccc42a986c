"""Webhook subscription management, event fan-out and observability."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional
from urllib.parse import urlsplit

from pydantic import BaseModel, Field, ValidationError, field_validator

from ..config import DeliveryConfig
from ..exceptions import InvalidRequest, NotFound
from ..persistence import Repository
from ..persistence.models import (
    DeliveryAttempt,
    DeliveryFailure,
    WebhookEvent,
    WebhookSubscription,
)
from ..utils.time import Clock, utcnow
from .delivery import TEST_EVENT_TYPE, WebhookDeliveryService
from .signing import generate_secret

logger = logging.getLogger(__name__)

STATS_WINDOW = timedelta(days=30)


def _check_url(value: str) -> str:
    parts = urlsplit(value)
    if parts.scheme not in ("http", "https") or not parts.hostname:
        raise ValueError("url must be an absolute http(s) URL")
    return value


def _check_events(value: List[str]) -> List[str]:
    cleaned = [e.strip() for e in value if isinstance(e, str) and e.strip()]
    if not cleaned:
        raise ValueError("events must be a non-empty list of event types")
    return list(dict.fromkeys(cleaned))


class SubscriptionCreate(BaseModel):
    """Fields accepted when creating a webhook subscription."""

    name: str = ""
    description: Optional[str] = None
    url: str
    events: List[str]
    secret: Optional[str] = None
    is_active: bool = True
    retry_enabled: bool = True
    max_retries: Optional[int] = Field(default=None, ge=1, le=20)
    timeout_seconds: Optional[float] = Field(default=None, gt=0, le=120)
    api_key: Optional[str] = None
    ip_allowlist: Optional[List[str]] = None
    headers: Dict[str, str] = Field(default_factory=dict)

    @field_validator("url")
    @classmethod
    def check_url(cls, value: str) -> str:
        return _check_url(value)

    @field_validator("events")
    @classmethod
    def check_events(cls, value: List[str]) -> List[str]:
        return _check_events(value)


class SubscriptionUpdate(BaseModel):
    """Partial update; only fields that are set are applied."""

    name: Optional[str] = None
    description: Optional[str] = None
    url: Optional[str] = None
    events: Optional[List[str]] = None
    is_active: Optional[bool] = None
    retry_enabled: Optional[bool] = None
    max_retries: Optional[int] = Field(default=None, ge=1, le=20)
    timeout_seconds: Optional[float] = Field(default=None, gt=0, le=120)
    api_key: Optional[str] = None
    ip_allowlist: Optional[List[str]] = None
    headers: Optional[Dict[str, str]] = None

    @field_validator("url")
    @classmethod
    def check_url(cls, value: Optional[str]) -> Optional[str]:
        return None if value is None else _check_url(value)

    @field_validator("events")
    @classmethod
    def check_events(cls, value: Optional[List[str]]) -> Optional[List[str]]:
        return None if value is None else _check_events(value)


class WebhookStats(BaseModel):
    subscription_id: str
    since: datetime
    until: datetime
    total_events: int = 0
    total_attempts: int = 0
    successful: int = 0
    failed: int = 0
    exhausted: int = 0
    average_duration_ms: Optional[float] = None
    success_rate: float = 0.0


class DeliverySummary(BaseModel):
    """All-time delivery health of one subscription."""

    subscription_id: str
    name: str = ""
    url: str
    is_active: bool = True
    total_attempts: int = 0
    successful: int = 0
    failed: int = 0
    pending_retries: int = 0
    failures_pending_replay: int = 0
    last_triggered_at: Optional[datetime] = None
    success_rate: float = 0.0


class PublishResult(BaseModel):
    """What happened when an event was fanned out to its subscribers."""

    event: Optional[WebhookEvent] = None
    attempts: List[DeliveryAttempt] = Field(default_factory=list)
    errors: int = 0


def _parse(model: type[BaseModel], data: Any) -> Any:
    if isinstance(data, model):
        return data
    try:
        return model.model_validate(data)
    except ValidationError as exc:
        raise InvalidRequest(str(exc)) from exc


class WebhookManager:
    """Tenant-scoped CRUD over subscriptions plus fan-out and observability."""

    def __init__(
        self,
        repository: Repository,
        delivery: WebhookDeliveryService,
        config: DeliveryConfig | None = None,
        clock: Clock = utcnow,
    ) -> None:
        self._repository = repository
        self._delivery = delivery
        self._config = config or DeliveryConfig()
        self._clock = clock

    @property
    def delivery(self) -> WebhookDeliveryService:
        return self._delivery

    # ------------------------------------------------------------------
    # CRUD
    async def create_subscription(
        self, tenant_id: Optional[str], data: SubscriptionCreate | Dict[str, Any]
    ) -> WebhookSubscription:
        request = _parse(SubscriptionCreate, data)
        now = self._clock()
        subscription = WebhookSubscription(
            tenant_id=tenant_id,
            name=request.name,
            description=request.description,
            url=request.url,
            events=request.events,
            secret=request.secret or generate_secret(),
            is_active=request.is_active,
            retry_enabled=request.retry_enabled,
            max_retries=request.max_retries or self._config.default_max_retries,
            timeout_seconds=request.timeout_seconds
            or self._config.default_timeout_seconds,
            api_key=request.api_key,
            ip_allowlist=request.ip_allowlist,
            headers=request.headers,
            created_at=now,
            updated_at=now,
        )
        await self._repository.create_subscription(subscription)
        logger.info(f"Created webhook {subscription.id} for {subscription.url}")
        return subscription

    async def get_subscription(
        self, subscription_id: str, tenant_id: Optional[str] = None
    ) -> WebhookSubscription:
        subscription = await self._repository.get_subscription(subscription_id, tenant_id)
        if subscription is None:
            raise NotFound(f"Webhook {subscription_id} not found")
        return subscription

    async def list_subscriptions(
        self, tenant_id: Optional[str] = None
    ) -> List[WebhookSubscription]:
        return await self._repository.list_subscriptions(tenant_id)

    async def update_subscription(
        self,
        subscription_id: str,
        tenant_id: Optional[str],
        data: SubscriptionUpdate | Dict[str, Any],
    ) -> WebhookSubscription:
        request = _parse(SubscriptionUpdate, data)
        subscription = await self.get_subscription(subscription_id, tenant_id)
        changes = request.model_dump(exclude_unset=True)
        for required in (
            "url",
            "events",
            "name",
            "is_active",
            "retry_enabled",
            "max_retries",
            "timeout_seconds",
            "headers",
        ):
            if required in changes and changes[required] is None:
                raise InvalidRequest(f"{required} cannot be null")
        updated = subscription.model_copy(update={**changes, "updated_at": self._clock()})
        await self._repository.update_subscription(updated)
        return updated

    async def delete_subscription(
        self, subscription_id: str, tenant_id: Optional[str] = None
    ) -> None:
        if not await self._repository.delete_subscription(subscription_id, tenant_id):
            raise NotFound(f"Webhook {subscription_id} not found")
        logger.info(f"Deleted webhook {subscription_id}")

    # ------------------------------------------------------------------
    # Fan-out
    async def publish_event(
        self,
        event_type: str,
        payload: Optional[Dict[str, Any]] = None,
        tenant_id: Optional[str] = None,
        resource_id: Optional[str] = None,
        resource_type: Optional[str] = None,
    ) -> PublishResult:
        """Store an event and deliver it to every matching subscription.

        Never raises: deliveries run concurrently and one subscriber's
        failure is isolated from the others.
        """
        result = PublishResult()
        try:
            event = WebhookEvent(
                tenant_id=tenant_id,
                event_type=event_type,
                payload=payload or {},
                resource_id=resource_id,
                resource_type=resource_type,
                created_at=self._clock(),
            )
            await self._repository.create_event(event)
            subscriptions = await self._repository.list_subscriptions_for_event(
                event_type, tenant_id
            )
        except Exception:
            logger.exception(f"Could not publish {event_type} event")
            result.errors += 1
            return result

        result.event = event
        outcomes = await asyncio.gather(
            *(self._delivery.deliver(s.id, event) for s in subscriptions),
            return_exceptions=True,
        )
        for subscription, outcome in zip(subscriptions, outcomes):
            if isinstance(outcome, BaseException):
                logger.error(
                    f"Delivery of {event.id} to webhook {subscription.id} raised: {outcome!r}"
                )
                result.errors += 1
            else:
                result.attempts.append(outcome)
        return result

    async def send_test_event(
        self, subscription_id: str, tenant_id: Optional[str] = None
    ) -> DeliveryAttempt:
        subscription = await self.get_subscription(subscription_id, tenant_id)
        event = WebhookEvent(
            tenant_id=subscription.tenant_id,
            event_type=TEST_EVENT_TYPE,
            payload={
                "message": "This is a test webhook event",
                "webhook_id": subscription.id,
            },
            created_at=self._clock(),
        )
        await self._repository.create_event(event)
        return await self._delivery.deliver(subscription.id, event, allow_retry=False)

    # ------------------------------------------------------------------
    # Observability
    async def get_webhook_delivery_logs(
        self,
        subscription_id: str,
        tenant_id: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[DeliveryAttempt]:
        await self.get_subscription(subscription_id, tenant_id)
        return await self._repository.list_attempts(
            subscription_id, limit=limit, offset=offset
        )

    async def get_failed_deliveries(
        self, subscription_id: str, tenant_id: Optional[str] = None
    ) -> List[DeliveryFailure]:
        """Replay candidates: exhausted deliveries not yet replayed, newest first."""
        await self.get_subscription(subscription_id, tenant_id)
        return await self._repository.list_failures(subscription_id, replayable_only=True)

    async def get_webhook_stats(
        self,
        subscription_id: str,
        tenant_id: Optional[str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> WebhookStats:
        await self.get_subscription(subscription_id, tenant_id)
        until = until or self._clock()
        since = since or until - STATS_WINDOW
        attempts = await self._repository.list_attempts(
            subscription_id, since=since, until=until
        )
        stats = WebhookStats(subscription_id=subscription_id, since=since, until=until)
        stats.total_attempts = len(attempts)
        stats.total_events = len({a.event_id for a in attempts})
        stats.successful = sum(1 for a in attempts if a.success)
        stats.failed = stats.total_attempts - stats.successful
        stats.exhausted = sum(1 for a in attempts if a.exhausted)
        durations = [a.duration_ms for a in attempts if a.duration_ms is not None]
        if durations:
            stats.average_duration_ms = round(sum(durations) / len(durations), 2)
        if attempts:
            stats.success_rate = round(stats.successful / stats.total_attempts * 100, 2)
        return stats

    async def get_delivery_summary(
        self, tenant_id: Optional[str] = None
    ) -> List[DeliverySummary]:
        """One delivery summary per subscription of the tenant."""
        summaries = []
        for subscription in await self._repository.list_subscriptions(tenant_id):
            attempts = await self._repository.list_attempts(subscription.id)
            failures = await self._repository.list_failures(subscription.id)
            summary = DeliverySummary(
                subscription_id=subscription.id,
                name=subscription.name,
                url=subscription.url,
                is_active=subscription.is_active,
                total_attempts=len(attempts),
                successful=sum(1 for a in attempts if a.success),
                pending_retries=sum(1 for a in attempts if a.next_retry_at is not None),
                failures_pending_replay=len(failures),
                last_triggered_at=subscription.last_triggered_at,
            )
            summary.failed = summary.total_attempts - summary.successful
            if attempts:
                summary.success_rate = round(
                    summary.successful / summary.total_attempts * 100, 2
                )
            summaries.append(summary)
        return summaries

    async def get_webhook_events(
        self,
        tenant_id: Optional[str] = None,
        event_type: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[WebhookEvent]:
        return await self._repository.list_events(
            event_type=event_type, tenant_id=tenant_id, limit=limit, offset=offset
        )

    async def replay_failed_event(
        self, subscription_id: str, failure_id: str, tenant_id: Optional[str] = None
    ) -> DeliveryAttempt:
        await self.get_subscription(subscription_id, tenant_id)
        failure = await self._repository.get_failure(failure_id)
        if failure is None or failure.subscription_id != subscription_id:
            raise NotFound(f"Failure {failure_id} not found for webhook {subscription_id}")
        return await self._delivery.replay_failed_event(failure_id, tenant_id)

    async def cleanup_old_events(self, days: Optional[int] = None) -> int:
        """Delete events (and their attempts) older than the retention window."""
        days = self._config.event_retention_days if days is None else days
        cutoff = self._clock() - timedelta(days=days)
        removed = await self._repository.delete_events_before(cutoff)
        logger.info(f"Removed {removed} webhook events older than {days} days")
        return removed
