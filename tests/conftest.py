"""Shared test fixtures: an in-memory transport, a fake clock, and a canned server."""

from __future__ import annotations

import json
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any
from urllib.parse import parse_qs, urlsplit

import pytest

from octopus_client.caching import ROOT_DOCUMENT_CACHE, SingleFlightCache
from octopus_client.client import OctopusClient
from octopus_client.config import ClientConfiguration
from octopus_client.models import RequestDetails, ResponseDetails

SERVER_URL = "https://octopus.example.com"
API_KEY = "API-TESTKEY0123456789"

ROOT_LINKS = {
    "Self": "/api",
    "Spaces": "/api/spaces{/id}{?skip,take,ids,partialName}",
    "Users": "/api/users{/id}{?skip,take,ids}",
    "CurrentUser": "/api/users/me",
    "Tasks": "/api/tasks{/id}{?skip,take,ids}",
}

SPACE_LINKS = {
    "Self": "/api/Spaces-1",
    "Projects": "/api/Spaces-1/projects{/id}{?name,skip,take,ids,partialName}",
    "ProjectGroups": "/api/Spaces-1/projectgroups{/id}{?skip,take,ids,partialName}",
    "Environments": "/api/Spaces-1/environments{/id}{?name,skip,take,ids,partialName}",
    "Tenants": "/api/Spaces-1/tenants{/id}{?skip,take,ids,projectId,name,tags,partialName}",
    "TagSets": "/api/Spaces-1/tagsets{/id}{?skip,take,ids,partialName}",
    "Channels": "/api/Spaces-1/channels{/id}{?skip,take,partialName}",
    "Releases": "/api/Spaces-1/releases{/id}{?skip,take,ids}",
    "Deployments": "/api/Spaces-1/deployments{/id}{?skip,take,ids}",
    "Tasks": "/api/Spaces-1/tasks{/id}{?skip,take,ids}",
    "Feeds": "/api/Spaces-1/feeds{/id}{?skip,take,ids,partialName}",
    "DeploymentProcesses": "/api/Spaces-1/deploymentprocesses{/id}{?skip,take,ids}",
    "Variables": "/api/Spaces-1/variables{/id}{?ids}",
    "Lifecycles": "/api/Spaces-1/lifecycles{/id}{?skip,take,ids,partialName}",
    "Machines": "/api/Spaces-1/machines{/id}{?skip,take,name,ids,partialName}",
    "PackageUpload": "/api/Spaces-1/packages/raw{?overwriteMode}",
}

Responder = Any


def json_response(payload: Any, status_code: int = 200) -> ResponseDetails:
    body = b"" if payload is None else json.dumps(payload).encode()
    return ResponseDetails(status_code=status_code, headers={"content-type": "application/json"}, body=body)


def error_response(status_code: int, message: str, errors: list[str] | None = None) -> ResponseDetails:
    return json_response({"ErrorMessage": message, "Errors": errors or []}, status_code=status_code)


class FakeTransport:
    """Routes ``(method, path)`` to canned responses and records every request.

    A route may hold a JSON payload, a ResponseDetails, an exception to raise, or a
    callable taking the RequestDetails. Registering several responses for one route
    replays them in order and then repeats the last one. A route key that includes a
    query string only matches that exact query. Unknown routes answer 404.
    """

    def __init__(self) -> None:
        self.routes: dict[tuple[str, str], list[Responder]] = {}
        self.calls: list[RequestDetails] = []
        self.closed = False

    def add(self, method: str, path: str, *responses: Responder) -> FakeTransport:
        self.routes[(method, path)] = list(responses)
        return self

    async def send(self, request: RequestDetails) -> ResponseDetails:
        self.calls.append(request)
        parts = urlsplit(request.url)
        full = f"{parts.path}?{parts.query}" if parts.query else parts.path
        queue = self.routes.get((request.method, full)) or self.routes.get((request.method, parts.path))
        if not queue:
            return error_response(404, f"No route for {request.method} {full}")
        responder = queue.pop(0) if len(queue) > 1 else queue[0]
        if callable(responder) and not isinstance(responder, ResponseDetails):
            responder = responder(request)
            if hasattr(responder, "__await__"):
                responder = await responder
        if isinstance(responder, BaseException):
            raise responder
        if isinstance(responder, ResponseDetails):
            return responder
        return json_response(responder)

    async def aclose(self) -> None:
        self.closed = True

    def calls_to(self, method: str, path: str) -> list[RequestDetails]:
        return [c for c in self.calls if c.method == method and urlsplit(c.url).path == path]

    @staticmethod
    def query_of(request: RequestDetails) -> dict[str, list[str]]:
        return parse_qs(urlsplit(request.url).query)


class FakeClock:
    """Deterministic clock: ``sleep`` advances ``now`` instead of waiting."""

    def __init__(self, start: datetime | None = None) -> None:
        self.current = start or datetime(2026, 1, 5, 9, 0, tzinfo=UTC)
        self.sleeps: list[float] = []
        self.on_sleep: Callable[[float], None] | None = None

    def now(self) -> datetime:
        return self.current

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.current += timedelta(seconds=seconds)
        if self.on_sleep is not None:
            self.on_sleep(seconds)


def _make_space(space_id: str = "Spaces-1", name: str = "Default", is_default: bool = True) -> dict[str, Any]:
    return {
        "Id": space_id,
        "Name": name,
        "IsDefault": is_default,
        "TaskQueueStopped": False,
        "Links": {"Self": f"/api/spaces/{space_id}", "SpaceHome": f"/api/{space_id}"},
    }


def _make_page(items: list[dict[str, Any]], next_page: str | None = None) -> dict[str, Any]:
    links = {"Page.Next": next_page} if next_page else {}
    return {"Items": items, "ItemsPerPage": 30, "TotalResults": len(items), "Links": links}


@pytest.fixture(autouse=True)
def _clear_root_cache() -> Any:
    ROOT_DOCUMENT_CACHE.clear()
    yield
    ROOT_DOCUMENT_CACHE.clear()


@pytest.fixture
def config() -> ClientConfiguration:
    return ClientConfiguration(
        server_url=SERVER_URL,
        api_key=API_KEY,
        request_timeout_seconds=5,
        retry_attempts=3,
        retry_backoff_seconds=0,
        retry_backoff_max_seconds=0,
        poll_interval_seconds=10,
        poll_timeout_seconds=600,
    )


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def cache() -> SingleFlightCache:
    return SingleFlightCache()


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def server(transport: FakeTransport) -> FakeTransport:
    """A transport pre-loaded with the root document, one default space, and its space root."""
    transport.add("GET", "/api", {"Version": "2024.1.0", "Application": "Octopus Deploy", "Links": ROOT_LINKS})
    transport.add("GET", "/api/spaces", _make_page([_make_space()]))
    transport.add("GET", "/api/spaces/Spaces-1", _make_space())
    transport.add("GET", "/api/Spaces-1", {"Links": SPACE_LINKS})
    return transport


@pytest.fixture
def client(config: ClientConfiguration, server: FakeTransport, cache: SingleFlightCache) -> OctopusClient:
    return OctopusClient(config, server, cache=cache)
