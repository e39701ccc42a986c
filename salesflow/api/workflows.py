"""Workflow registration, direct triggers, executions and business events."""

from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, ValidationError

from ..contracts import ExecutionStatus, WorkflowDefinition
from ..exceptions import InvalidRequest
from ..services import Services
from .deps import get_services, require_tenant
from .responses import ok

router = APIRouter(tags=["workflows"])


class EventRequest(BaseModel):
    event_type: str = Field(min_length=1)
    payload: Dict[str, Any] = Field(default_factory=dict)
    resource_id: Optional[str] = None
    resource_type: Optional[str] = None


@router.post("/workflows")
async def register_workflow(
    body: Dict[str, Any] = Body(...),
    tenant_id: str = Depends(require_tenant),
    services: Services = Depends(get_services),
) -> JSONResponse:
    try:
        definition = WorkflowDefinition.model_validate({**body, "tenant_id": tenant_id})
    except ValidationError as exc:
        raise InvalidRequest(str(exc)) from exc
    return ok(await services.dispatcher.register(definition), status_code=201)


@router.get("/workflows")
async def list_workflows(
    tenant_id: str = Depends(require_tenant),
    services: Services = Depends(get_services),
) -> JSONResponse:
    return ok(await services.repository.list_definitions(tenant_id=tenant_id))


@router.get("/workflows/{workflow_id}")
async def get_workflow(
    workflow_id: str,
    tenant_id: str = Depends(require_tenant),
    services: Services = Depends(get_services),
) -> JSONResponse:
    return ok(await services.dispatcher.get_definition(workflow_id, tenant_id))


@router.get("/workflows/{workflow_id}/executions")
async def list_workflow_executions(
    workflow_id: str,
    status: Optional[ExecutionStatus] = None,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    tenant_id: str = Depends(require_tenant),
    services: Services = Depends(get_services),
) -> JSONResponse:
    executions = await services.dispatcher.list_workflow_executions(
        workflow_id, tenant_id, status=status, limit=limit, offset=offset
    )
    return ok({"executions": executions, "limit": limit, "offset": offset})


@router.get("/workflows/{workflow_id}/stats")
async def workflow_stats(
    workflow_id: str,
    tenant_id: str = Depends(require_tenant),
    services: Services = Depends(get_services),
) -> JSONResponse:
    return ok(await services.dispatcher.get_workflow_stats(workflow_id, tenant_id))


@router.post("/workflows/{workflow_id}/trigger")
async def trigger_workflow(
    workflow_id: str,
    payload: Optional[Dict[str, Any]] = Body(default=None),
    tenant_id: str = Depends(require_tenant),
    services: Services = Depends(get_services),
) -> JSONResponse:
    execution = await services.dispatcher.trigger_workflow(workflow_id, payload, tenant_id)
    return ok(execution, status_code=201)


@router.get("/executions/{execution_id}")
async def get_execution(
    execution_id: str,
    tenant_id: str = Depends(require_tenant),
    services: Services = Depends(get_services),
) -> JSONResponse:
    execution = await services.dispatcher.get_execution(execution_id, tenant_id)
    steps = await services.repository.list_step_records(execution_id)
    return ok({"execution": execution, "steps": steps})


@router.post("/executions/{execution_id}/cancel")
async def cancel_execution(
    execution_id: str,
    tenant_id: str = Depends(require_tenant),
    services: Services = Depends(get_services),
) -> JSONResponse:
    return ok(await services.dispatcher.cancel_execution(execution_id, tenant_id))


@router.post("/executions/{execution_id}/signal")
async def signal_execution(
    execution_id: str,
    data: Dict[str, Any] = Body(...),
    tenant_id: str = Depends(require_tenant),
    services: Services = Depends(get_services),
) -> JSONResponse:
    """Merge fresh data into a waiting execution and resume it if it can go on."""
    execution = await services.dispatcher.signal_execution(execution_id, data, tenant_id)
    resumed = await services.resumer.resume_execution(execution.id)
    return ok(resumed or execution)


@router.post("/events")
async def publish_event(
    request: EventRequest,
    tenant_id: str = Depends(require_tenant),
    services: Services = Depends(get_services),
) -> JSONResponse:
    summary = await services.events.publish(
        request.event_type,
        request.payload,
        tenant_id=tenant_id,
        resource_id=request.resource_id,
        resource_type=request.resource_type,
    )
    return ok(summary, status_code=202)
