"""Resolve a space name or id to its space-scoped root document."""

from __future__ import annotations

from contextlib import aclosing

import structlog
from pydantic import ValidationError as PydanticValidationError

from octopus_client.caching import SingleFlightCache
from octopus_client.clients.api_client import ApiClient
from octopus_client.errors import AmbiguousSpaceError, SpaceNotFoundError, UnexpectedResponseError
from octopus_client.links import LinkResolver, require_link
from octopus_client.models import Space, SpaceRootDocument
from octopus_client.repository import ResourceRepository
from octopus_client.utils import same_name

log = structlog.get_logger()


class SpaceResolver:
    """Finds spaces and caches their root documents per (server, space id)."""

    def __init__(
        self,
        api: ApiClient,
        link_resolver: LinkResolver,
        cache: SingleFlightCache,
        server_identity: str,
    ) -> None:
        self._api = api
        self._link_resolver = link_resolver
        self._cache = cache
        self._server_identity = server_identity

    async def spaces(self) -> ResourceRepository[Space]:
        root = await self._link_resolver.resolve_root()
        return ResourceRepository(self._api, root.links, "Spaces", Space, owner="server root")

    async def find_space(self, name_or_id: str) -> Space:
        """Match by exact id first, else by case-insensitive name.

        Raises:
            SpaceNotFoundError: If no space matches.
            AmbiguousSpaceError: If more than one space has the name.
        """
        repository = await self.spaces()
        name_matches: list[Space] = []
        async with aclosing(repository.list_all()) as spaces:
            async for space in spaces:
                if space.id == name_or_id:
                    return space
                if same_name(space.name, name_or_id):
                    name_matches.append(space)

        if not name_matches:
            msg = f"Space {name_or_id!r} was not found."
            raise SpaceNotFoundError(msg, status_code=404)
        if len(name_matches) > 1:
            ids = ", ".join(str(s.id) for s in name_matches)
            msg = f"Space name {name_or_id!r} is ambiguous: {ids}."
            raise AmbiguousSpaceError(msg)
        return name_matches[0]

    async def find_default_space(self) -> Space:
        repository = await self.spaces()
        async with aclosing(repository.list_all()) as spaces:
            async for space in spaces:
                if space.is_default:
                    return space
        msg = "The server has no default space; name one explicitly."
        raise SpaceNotFoundError(msg)

    async def resolve_space(self, name_or_id: str) -> SpaceRootDocument:
        """Return the space root document for a space name or id.

        Repeat lookups of the same reference are served from the cache; lookups by
        different references to the same space share one root-document fetch.
        """
        reference_key = (self._server_identity, "space-ref", name_or_id)
        return await self._cache.get_or_resolve(reference_key, lambda: self._resolve_reference(name_or_id))

    async def root_for(self, space: Space) -> SpaceRootDocument:
        if not space.id:
            msg = "Space resource has no Id."
            raise UnexpectedResponseError(msg)
        return await self._cache.get_or_resolve((self._server_identity, space.id), lambda: self._fetch_root(space))

    async def _resolve_reference(self, name_or_id: str) -> SpaceRootDocument:
        space = await self.find_space(name_or_id)
        return await self.root_for(space)

    async def _fetch_root(self, space: Space) -> SpaceRootDocument:
        href = require_link(space.links, "SpaceHome", f"Space {space.id}")
        payload = await self._api.get(href)
        if not isinstance(payload, dict):
            msg = f"Space root document for {space.id} is not an object."
            raise UnexpectedResponseError(msg)
        try:
            document = SpaceRootDocument.model_validate(payload)
        except PydanticValidationError as exc:
            msg = f"Space root document for {space.id} could not be parsed."
            raise UnexpectedResponseError(msg) from exc
        document.space_id = str(space.id)
        log.info("space_resolved", server=self._server_identity, space_id=space.id, space=space.name)
        return document

    def invalidate(self, space_id: str) -> None:
        """Drop the cached root document of one space, including lookups by name."""
        self._cache.invalidate_matching(
            lambda key, value: key[0] == self._server_identity
            and (key == (self._server_identity, space_id) or getattr(value, "space_id", None) == space_id)
        )
