"""Cron ingress: periodic scheduler, resumer and webhook retry passes."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from ..services import Services
from ..utils.time import to_iso
from .deps import get_services, verify_cron_secret
from .responses import error, ok

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/cron", tags=["cron"], dependencies=[Depends(verify_cron_secret)])


@router.post("/workflows")
async def run_workflow_cron(services: Services = Depends(get_services)) -> JSONResponse:
    started = services.clock()
    try:
        scheduled, resumed = await services.run_workflow_cron()
    except Exception as exc:
        logger.exception("Workflow cron failed")
        return error(str(exc), 500, timestamp=to_iso(started))
    return ok(
        {
            "message": "Workflow cron completed",
            "scheduled": scheduled,
            "resumed": resumed,
            "timestamp": to_iso(started),
        }
    )


@router.post("/webhooks")
async def run_webhook_cron(services: Services = Depends(get_services)) -> JSONResponse:
    started = services.clock()
    try:
        retries = await services.run_webhook_cron()
        removed = await services.run_retention()
    except Exception as exc:
        logger.exception("Webhook retry cron failed")
        return error(str(exc), 500, timestamp=to_iso(started))
    return ok(
        {
            "message": "Webhook retry queue processed",
            "retries": retries,
            "events_removed": removed,
            "timestamp": to_iso(started),
        }
    )
