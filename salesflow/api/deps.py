"""Request dependencies shared by the routers."""

from __future__ import annotations

import hmac
from typing import Optional

from fastapi import Header, HTTPException, Request

from ..exceptions import InvalidRequest
from ..services import Services


def get_services(request: Request) -> Services:
    return request.app.state.services


def require_tenant(x_tenant_id: Optional[str] = Header(default=None)) -> str:
    if not x_tenant_id or not x_tenant_id.strip():
        raise InvalidRequest("X-Tenant-ID header is required")
    return x_tenant_id.strip()


def verify_cron_secret(
    request: Request, authorization: Optional[str] = Header(default=None)
) -> None:
    """Check ``Authorization: Bearer <secret>`` when a cron secret is configured."""
    secret = get_services(request).config.cron_secret
    if not secret:
        return
    supplied = (authorization or "").removeprefix("Bearer ").strip()
    if not hmac.compare_digest(supplied.encode(), secret.encode()):
        raise HTTPException(status_code=401, detail="Unauthorized")
