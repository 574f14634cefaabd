"""JSON API client: headers, per-call timeout, read retries, and error translation."""

from __future__ import annotations

import asyncio
import json
from collections.abc import Callable, Mapping
from typing import Any

import structlog
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception_type, stop_after_attempt, wait_exponential

from octopus_client.clients.transport import Transport
from octopus_client.config import ClientConfiguration
from octopus_client.errors import (
    AuthenticationError,
    RequestTimeoutError,
    TransportError,
    UnexpectedResponseError,
    error_from_response,
)
from octopus_client.links import resolve_href
from octopus_client.models import RequestDetails, ResponseDetails

log = structlog.get_logger()

API_KEY_HEADER = "X-Octopus-ApiKey"


def _log_retry(retry_state: RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    log.warning(
        "request_retry_scheduled",
        attempt=retry_state.attempt_number,
        wait_seconds=retry_state.next_action.sleep if retry_state.next_action else 0.0,
        error=str(exc),
    )


class ApiClient:
    """Sends JSON requests to one server on behalf of the repositories.

    Only GET is retried, and only on transport-level failures; mutating calls are
    sent exactly once.
    """

    def __init__(
        self,
        config: ClientConfiguration,
        transport: Transport,
        on_auth_failure: Callable[[], None] | None = None,
    ) -> None:
        self._config = config
        self._transport = transport
        self._on_auth_failure = on_auth_failure

    @property
    def config(self) -> ClientConfiguration:
        return self._config

    def _headers(self, *, has_body: bool) -> dict[str, str]:
        headers = {
            API_KEY_HEADER: self._config.api_key,
            "Accept": "application/json",
            "User-Agent": self._config.user_agent,
        }
        if has_body:
            headers["Content-Type"] = "application/json"
        return headers

    async def get(self, href: str, params: Mapping[str, Any] | None = None) -> Any:
        query = {k: str(v) for k, v in (params or {}).items() if v is not None}
        retrying = AsyncRetrying(
            retry=retry_if_exception_type(TransportError),
            stop=stop_after_attempt(self._config.retry_attempts),
            wait=wait_exponential(
                multiplier=self._config.retry_backoff_seconds,
                max=self._config.retry_backoff_max_seconds,
            ),
            before_sleep=_log_retry,
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                return await self._send("GET", href, query=query)
        return None  # pragma: no cover

    async def post(self, href: str, body: Any = None) -> Any:
        return await self._send("POST", href, body=body)

    async def put(self, href: str, body: Any) -> Any:
        return await self._send("PUT", href, body=body)

    async def delete(self, href: str) -> None:
        await self._send("DELETE", href)

    async def upload(self, href: str, file_name: str, content: bytes) -> Any:
        """POST a file as multipart form data."""
        return await self._send("POST", href, files={"file": (file_name, content)})

    async def _send(
        self,
        method: str,
        href: str,
        *,
        query: dict[str, str] | None = None,
        body: Any = None,
        files: dict[str, tuple[str, bytes]] | None = None,
    ) -> Any:
        url = resolve_href(self._config.server_url, href)
        request = RequestDetails(
            method=method,  # type: ignore[arg-type]
            url=url,
            query=query or {},
            headers=self._headers(has_body=body is not None),
            body=body,
            files=files,
        )
        try:
            async with asyncio.timeout(self._config.request_timeout_seconds):
                response = await self._transport.send(request)
        except TimeoutError as exc:
            log.warning("request_timed_out", method=method, url=url, timeout=self._config.request_timeout_seconds)
            msg = f"{method} {url} timed out after {self._config.request_timeout_seconds}s"
            raise RequestTimeoutError(msg) from exc
        except TransportError:
            log.warning("request_transport_failed", method=method, url=url)
            raise

        if not response.ok:
            error = error_from_response(response.status_code, response.body, url=url)
            log.warning("request_failed", method=method, url=url, status=response.status_code, error=error.message)
            if isinstance(error, AuthenticationError) and self._on_auth_failure is not None:
                self._on_auth_failure()
            raise error

        log.debug("request_completed", method=method, url=url, status=response.status_code)
        return _parse_body(response, url)


def _parse_body(response: ResponseDetails, url: str) -> Any:
    if not response.body:
        return None
    try:
        return json.loads(response.body)
    except ValueError as exc:
        msg = f"Response from {url} is not valid JSON"
        raise UnexpectedResponseError(msg, status_code=response.status_code) from exc
