"""FastAPI application factory."""

from __future__ import annotations

import logging
from typing import Optional

import httpx
from fastapi import FastAPI

from .. import __version__
from ..actions import ActionRegistry
from ..config import SalesflowConfig, load_config
from ..persistence import Repository, get_repository
from ..services import Services, build_services
from ..utils.time import Clock, utcnow
from . import cron, webhooks, workflows
from .responses import install_error_handlers

logger = logging.getLogger(__name__)


def create_app(
    repository: Optional[Repository] = None,
    config: Optional[SalesflowConfig] = None,
    actions: Optional[ActionRegistry] = None,
    http_client: Optional[httpx.AsyncClient] = None,
    clock: Clock = utcnow,
    services: Optional[Services] = None,
) -> FastAPI:
    """Build the HTTP application.

    Services are created once per app and stored on ``app.state.services``.
    When ``repository`` is omitted the store comes from :func:`get_repository`.
    """
    if services is None:
        config = config or load_config()
        repository = repository or get_repository(config=config)
        services = build_services(
            repository, config=config, actions=actions, http_client=http_client, clock=clock
        )

    app = FastAPI(title="salesflow", version=__version__)
    app.state.services = services
    install_error_handlers(app)
    app.include_router(cron.router)
    app.include_router(webhooks.router)
    app.include_router(workflows.router)

    @app.get("/health")
    async def health() -> dict:
        return {"success": True, "data": {"status": "ok"}}

    logger.debug("Application created")
    return app
