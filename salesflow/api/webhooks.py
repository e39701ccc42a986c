"""Webhook subscription CRUD, observability and replay routes."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from ..services import Services
from .deps import get_services, require_tenant
from .responses import ok

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


class ReplayRequest(BaseModel):
    failure_id: str


@router.get("")
async def list_webhooks(
    tenant_id: str = Depends(require_tenant),
    services: Services = Depends(get_services),
) -> JSONResponse:
    return ok(await services.webhooks.list_subscriptions(tenant_id))


@router.post("")
async def create_webhook(
    body: Dict[str, Any] = Body(...),
    tenant_id: str = Depends(require_tenant),
    services: Services = Depends(get_services),
) -> JSONResponse:
    subscription = await services.webhooks.create_subscription(tenant_id, body)
    return ok(subscription, status_code=201)


# declared before /{subscription_id} so "events" and "summary" are not taken for ids
@router.get("/events")
async def list_events(
    event_type: Optional[str] = None,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    tenant_id: str = Depends(require_tenant),
    services: Services = Depends(get_services),
) -> JSONResponse:
    events = await services.webhooks.get_webhook_events(
        tenant_id, event_type=event_type, limit=limit, offset=offset
    )
    return ok({"events": events, "limit": limit, "offset": offset})


@router.get("/summary")
async def delivery_summary(
    tenant_id: str = Depends(require_tenant),
    services: Services = Depends(get_services),
) -> JSONResponse:
    return ok(await services.webhooks.get_delivery_summary(tenant_id))


@router.get("/{subscription_id}")
async def get_webhook(
    subscription_id: str,
    tenant_id: str = Depends(require_tenant),
    services: Services = Depends(get_services),
) -> JSONResponse:
    return ok(await services.webhooks.get_subscription(subscription_id, tenant_id))


@router.put("/{subscription_id}")
async def update_webhook(
    subscription_id: str,
    body: Dict[str, Any] = Body(...),
    tenant_id: str = Depends(require_tenant),
    services: Services = Depends(get_services),
) -> JSONResponse:
    return ok(
        await services.webhooks.update_subscription(subscription_id, tenant_id, body)
    )


@router.delete("/{subscription_id}")
async def delete_webhook(
    subscription_id: str,
    tenant_id: str = Depends(require_tenant),
    services: Services = Depends(get_services),
) -> JSONResponse:
    await services.webhooks.delete_subscription(subscription_id, tenant_id)
    return ok({"id": subscription_id, "deleted": True})


@router.get("/{subscription_id}/logs")
async def webhook_logs(
    subscription_id: str,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    tenant_id: str = Depends(require_tenant),
    services: Services = Depends(get_services),
) -> JSONResponse:
    logs = await services.webhooks.get_webhook_delivery_logs(
        subscription_id, tenant_id, limit=limit, offset=offset
    )
    return ok({"logs": logs, "limit": limit, "offset": offset})


@router.get("/{subscription_id}/stats")
async def webhook_stats(
    subscription_id: str,
    since: Optional[datetime] = None,
    until: Optional[datetime] = None,
    tenant_id: str = Depends(require_tenant),
    services: Services = Depends(get_services),
) -> JSONResponse:
    return ok(
        await services.webhooks.get_webhook_stats(
            subscription_id, tenant_id, since=since, until=until
        )
    )


@router.get("/{subscription_id}/replay")
async def replay_candidates(
    subscription_id: str,
    tenant_id: str = Depends(require_tenant),
    services: Services = Depends(get_services),
) -> JSONResponse:
    return ok(await services.webhooks.get_failed_deliveries(subscription_id, tenant_id))


@router.post("/{subscription_id}/replay")
async def replay_failure(
    subscription_id: str,
    request: ReplayRequest,
    tenant_id: str = Depends(require_tenant),
    services: Services = Depends(get_services),
) -> JSONResponse:
    attempt = await services.webhooks.replay_failed_event(
        subscription_id, request.failure_id, tenant_id
    )
    return ok(attempt)


@router.post("/{subscription_id}/test")
async def send_test(
    subscription_id: str,
    tenant_id: str = Depends(require_tenant),
    services: Services = Depends(get_services),
) -> JSONResponse:
    return ok(await services.webhooks.send_test_event(subscription_id, tenant_id))
