"""Top-level client: wires configuration, transport, cache, and resolvers together."""

from __future__ import annotations

from types import TracebackType

import structlog

from octopus_client.caching import ROOT_DOCUMENT_CACHE, SingleFlightCache
from octopus_client.clients import build_transport
from octopus_client.clients.api_client import ApiClient
from octopus_client.clients.transport import Transport
from octopus_client.config import ClientConfiguration, validate_configuration
from octopus_client.links import LinkResolver
from octopus_client.models import ServerInformation, Space, SpaceRootDocument
from octopus_client.repositories import SpaceRepository, SystemRepository
from octopus_client.spaces import SpaceResolver

log = structlog.get_logger()


class OctopusClient:
    """Entry point for one client session against one server.

    Usage::

        async with OctopusClient(load_configuration()) as client:
            space = await client.for_space("Default")
            project = await space.resolver.resolve("Projects", "Web")
    """

    def __init__(
        self,
        config: ClientConfiguration,
        transport: Transport | None = None,
        *,
        cache: SingleFlightCache | None = None,
    ) -> None:
        validate_configuration(config)
        self._config = config
        self._owns_transport = transport is None
        self._transport: Transport = transport if transport is not None else build_transport(config)
        self._cache = cache if cache is not None else ROOT_DOCUMENT_CACHE
        self._api = ApiClient(config, self._transport, on_auth_failure=self.reset_cache)
        self._links = LinkResolver(self._api, self._cache, config.server_identity)
        self._spaces = SpaceResolver(self._api, self._links, self._cache, config.server_identity)

    @property
    def config(self) -> ClientConfiguration:
        return self._config

    @property
    def api(self) -> ApiClient:
        return self._api

    async def __aenter__(self) -> OctopusClient:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_transport:
            await self._transport.aclose()

    async def server_information(self) -> ServerInformation:
        return await self._links.resolve_root()

    async def system(self) -> SystemRepository:
        root = await self._links.resolve_root()
        return SystemRepository(self._api, root.links)

    async def space_root(self, name_or_id: str | None = None) -> SpaceRootDocument:
        """Root document of the named space, the configured space, or the server's default space."""
        reference = name_or_id or self._config.space
        if reference:
            return await self._spaces.resolve_space(reference)
        default = await self._spaces.find_default_space()
        return await self._spaces.root_for(default)

    async def for_space(self, space: str | Space | None = None) -> SpaceRepository:
        if isinstance(space, Space):
            root = await self._spaces.root_for(space)
        else:
            root = await self.space_root(space)
        return SpaceRepository(self._api, root)

    def reset_cache(self) -> None:
        """Evict this server's cached root documents."""
        log.info("root_cache_reset", server=self._config.server_identity)
        self._cache.invalidate_server(self._config.server_identity)
