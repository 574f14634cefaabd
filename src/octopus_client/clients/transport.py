"""Transport boundary: send one request, get one response."""

from __future__ import annotations

from typing import Protocol

import httpx
import structlog

from octopus_client.errors import RequestTimeoutError, TransportError, UnreachableServerError
from octopus_client.models import RequestDetails, ResponseDetails

log = structlog.get_logger()


class Transport(Protocol):
    """Anything that can carry a RequestDetails to the server."""

    async def send(self, request: RequestDetails) -> ResponseDetails: ...

    async def aclose(self) -> None: ...


class HttpxTransport:
    """Transport over a shared ``httpx.AsyncClient`` connection pool."""

    def __init__(self, client: httpx.AsyncClient) -> None:
        self._client = client

    async def send(self, request: RequestDetails) -> ResponseDetails:
        kwargs: dict[str, object] = {"params": request.query or None, "headers": request.headers}
        if request.files:
            kwargs["files"] = {name: (file_name, content) for name, (file_name, content) in request.files.items()}
            # httpx sets the multipart boundary itself
            kwargs["headers"] = {k: v for k, v in request.headers.items() if k.lower() != "content-type"}
        elif request.body is not None:
            kwargs["json"] = request.body

        try:
            response = await self._client.request(request.method, request.url, **kwargs)  # type: ignore[arg-type]
        except httpx.TimeoutException as exc:
            msg = f"Request to {request.url} timed out"
            raise RequestTimeoutError(msg) from exc
        except httpx.ConnectError as exc:
            msg = f"Could not connect to {request.url}: {exc}"
            raise UnreachableServerError(msg) from exc
        except httpx.TransportError as exc:
            msg = f"Transport failure for {request.url}: {exc}"
            raise TransportError(msg) from exc

        return ResponseDetails(
            status_code=response.status_code,
            headers=dict(response.headers),
            body=response.content,
        )

    async def aclose(self) -> None:
        await self._client.aclose()
