"""Hypermedia link handling: URI template expansion, href resolution, root document fetch."""

from __future__ import annotations

import re
from collections.abc import Mapping
from typing import TYPE_CHECKING, Any
from urllib.parse import quote, urlsplit

import structlog
from pydantic import ValidationError as PydanticValidationError

from octopus_client.caching import SingleFlightCache
from octopus_client.errors import MissingParameterError, UnexpectedResponseError
from octopus_client.models import ServerInformation

if TYPE_CHECKING:
    from octopus_client.clients.api_client import ApiClient

log = structlog.get_logger()

ROOT_PATH = "~/api"

# {name}, {/a,b}, {?a,b}, {&a,b}
_EXPRESSION_RE = re.compile(r"\{([/?&]?)([^}]+)\}")


def _render_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, list | tuple | set | frozenset):
        return ",".join(_render_value(v) for v in value)
    return str(value)


def template_variables(template: str) -> set[str]:
    """Names of every placeholder in a link template."""
    names: set[str] = set()
    for _, body in _EXPRESSION_RE.findall(template):
        names.update(name.strip() for name in body.split(","))
    return names


def expand(template: str, params: Mapping[str, Any] | None = None) -> str:
    """Expand a link template with named values.

    Simple ``{name}`` placeholders are required; path (``{/a}``) and query
    (``{?a,b}``, ``{&a}``) placeholders are optional and expand to nothing when no
    value is given. Values for names the template does not declare are ignored.

    Raises:
        MissingParameterError: If a required placeholder has no value.
    """
    params = params or {}

    def substitute(match: re.Match[str]) -> str:
        operator, body = match.group(1), match.group(2)
        names = [name.strip() for name in body.split(",")]
        supplied = [(name, params[name]) for name in names if params.get(name) is not None]

        if operator == "":
            if not supplied:
                msg = f"Link template {template!r} requires a value for {{{names[0]}}}."
                raise MissingParameterError(msg)
            return ",".join(quote(_render_value(value), safe="") for _, value in supplied)
        if operator == "/":
            return "".join("/" + quote(_render_value(value), safe="") for _, value in supplied)

        if not supplied:
            return ""
        pairs = "&".join(f"{name}={quote(_render_value(value), safe=',')}" for name, value in supplied)
        if operator == "?":
            return "?" + pairs
        return "&" + pairs

    expanded = _EXPRESSION_RE.sub(substitute, template)
    # "{?a}" may have expanded to nothing while a later "{&b}" still produced a value
    if "?" not in expanded and "&" in expanded:
        expanded = expanded.replace("&", "?", 1)
    return expanded


def resolve_href(server_url: str, href: str) -> str:
    """Turn a server-advertised href into an absolute URL.

    ``~/`` hrefs are relative to the configured server URL (including any virtual
    directory); ``/`` hrefs are relative to the host unless they lack the virtual
    directory prefix.
    """
    if href.startswith(("http://", "https://")):
        return href
    base = server_url.rstrip("/")
    if href.startswith("~/"):
        return f"{base}/{href[2:]}"
    if not href.startswith("/"):
        return f"{base}/{href}"

    parts = urlsplit(base)
    prefix = parts.path.rstrip("/")
    if prefix and not (href == prefix or href.startswith(prefix + "/")):
        return f"{base}{href}"
    return f"{parts.scheme}://{parts.netloc}{href}"


def require_link(links: Mapping[str, str], name: str, owner: str) -> str:
    """Look up a named link, failing when the server does not advertise it."""
    href = links.get(name)
    if not href:
        available = ", ".join(sorted(links)) or "none"
        msg = f"{owner} does not advertise a {name!r} link (available: {available})."
        raise UnexpectedResponseError(msg)
    return href


class LinkResolver:
    """Fetches and caches the server root document."""

    def __init__(self, api: ApiClient, cache: SingleFlightCache, server_identity: str) -> None:
        self._api = api
        self._cache = cache
        self._server_identity = server_identity

    @property
    def root_key(self) -> tuple[str, None]:
        return (self._server_identity, None)

    async def resolve_root(self) -> ServerInformation:
        """Return the server root document, fetching it at most once per server."""
        return await self._cache.get_or_resolve(self.root_key, self._fetch_root)

    async def _fetch_root(self) -> ServerInformation:
        payload = await self._api.get(ROOT_PATH)
        if not isinstance(payload, dict) or not isinstance(payload.get("Links"), dict):
            msg = "Server root document has no Links mapping; is the server URL correct?"
            raise UnexpectedResponseError(msg)
        try:
            info = ServerInformation.model_validate(payload)
        except PydanticValidationError as exc:
            msg = f"Server root document could not be parsed: {exc.error_count()} validation errors."
            raise UnexpectedResponseError(msg) from exc
        log.info("server_root_resolved", server=self._server_identity, version=info.version, links=len(info.links))
        return info

    def invalidate(self) -> None:
        self._cache.invalidate(self.root_key)
