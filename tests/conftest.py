"""Shared fixtures: a controllable clock, the in-memory store and a fake webhook target."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List

import httpx
import pytest

from salesflow.actions import InMemoryRecordSink, default_registry
from salesflow.config import SalesflowConfig
from salesflow.persistence import InMemoryRepository
from salesflow.services import build_services


class FakeClock:
    """Clock whose time only moves when a test advances it."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class FakeEndpoint:
    """``httpx.MockTransport`` handler recording requests.

    Outcomes are planned per host: an int is returned as the status code,
    an exception class is raised. Unplanned requests get ``default``.
    """

    def __init__(self) -> None:
        self.requests: List[httpx.Request] = []
        self.plans: Dict[str, List[Any]] = {}
        self.always: Dict[str, Any] = {}
        self.default = 200

    def plan(self, host: str, *outcomes: Any) -> None:
        self.plans.setdefault(host, []).extend(outcomes)

    def fail_always(self, host: str, outcome: Any) -> None:
        self.always[host] = outcome

    def to(self, host: str) -> List[httpx.Request]:
        return [r for r in self.requests if r.url.host == host]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        host = request.url.host
        queue = self.plans.get(host)
        if queue:
            outcome = queue.pop(0)
        else:
            outcome = self.always.get(host, self.default)
        if isinstance(outcome, type) and issubclass(outcome, Exception):
            raise outcome("simulated failure", request=request)
        return httpx.Response(outcome, json={"received": outcome < 400})


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2025, 1, 6, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def repo() -> InMemoryRepository:
    return InMemoryRepository()


@pytest.fixture
def sink() -> InMemoryRecordSink:
    return InMemoryRecordSink()


@pytest.fixture
def endpoint() -> FakeEndpoint:
    return FakeEndpoint()


@pytest.fixture
def http_client(endpoint: FakeEndpoint) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(endpoint))


@pytest.fixture
def resolver():
    async def resolve(host: str) -> List[str]:
        return ["203.0.113.10"]

    return resolve


@pytest.fixture
def config() -> SalesflowConfig:
    return SalesflowConfig()


@pytest.fixture
def services(repo, config, sink, http_client, clock, resolver):
    return build_services(
        repo,
        config=config,
        actions=default_registry(sink=sink, http_client=http_client),
        http_client=http_client,
        clock=clock,
        resolver=resolver,
    )
