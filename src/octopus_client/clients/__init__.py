"""HTTP transport and API client for the deployment server."""

from __future__ import annotations

import httpx

from octopus_client.clients.transport import HttpxTransport
from octopus_client.config import ClientConfiguration


def build_transport(config: ClientConfiguration) -> HttpxTransport:
    """Create an httpx-backed transport with its own connection pool for one configuration.

    The per-call timeout is enforced by the API client; the httpx timeout is a
    slightly looser backstop for the socket itself.
    """
    client = httpx.AsyncClient(
        timeout=httpx.Timeout(config.request_timeout_seconds + 5),
        follow_redirects=True,
    )
    return HttpxTransport(client)
