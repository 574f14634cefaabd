"""Resolve a human-supplied name or id to a concrete resource."""

from __future__ import annotations

from collections.abc import Mapping
from typing import TypeVar

import structlog

from octopus_client.clients.api_client import ApiClient
from octopus_client.errors import AmbiguousNameError, NotFoundError
from octopus_client.models import NamedResource
from octopus_client.repository import ResourceRepository
from octopus_client.utils import same_name

log = structlog.get_logger()

N = TypeVar("N", bound=NamedResource)


async def resolve_in(repository: ResourceRepository[N], name_or_id: str) -> N:
    """Look ``name_or_id`` up as an id first, then fall back to one filtered name search.

    Raises:
        NotFoundError: If neither the id lookup nor the name search matches.
        AmbiguousNameError: If the name search matches more than one resource.
    """
    try:
        return await repository.get(name_or_id)
    except NotFoundError:
        log.debug("lookup_by_id_missed", collection=repository.collection_link, value=name_or_id)

    page = await repository.list(name=name_or_id, partialName=name_or_id)
    matches = [item for item in page.items if same_name(item.name, name_or_id)]
    if not matches:
        msg = f"No {repository.collection_link} resource has the id or name {name_or_id!r}."
        raise NotFoundError(msg, status_code=404)
    if len(matches) > 1:
        ids = ", ".join(str(m.id) for m in matches)
        msg = f"The name {name_or_id!r} matches {len(matches)} {repository.collection_link} resources: {ids}."
        raise AmbiguousNameError(msg)
    return matches[0]


class NamedEntityResolver:
    """Name/id resolution against the collections advertised by one link mapping."""

    def __init__(self, api: ApiClient, links: Mapping[str, str], owner: str = "server") -> None:
        self._api = api
        self._links = links
        self._owner = owner

    async def resolve(
        self,
        collection_link: str,
        name_or_id: str,
        model: type[N] = NamedResource,  # type: ignore[assignment]
    ) -> N:
        repository = ResourceRepository(self._api, self._links, collection_link, model, owner=self._owner)
        return await resolve_in(repository, name_or_id)
