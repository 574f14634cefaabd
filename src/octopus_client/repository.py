"""Generic resource repository: CRUD and paging over a server collection link."""

from __future__ import annotations

from collections.abc import AsyncIterator, Mapping
from typing import Any, Generic, TypeVar
from urllib.parse import quote

import structlog
from pydantic import ValidationError as PydanticValidationError

from octopus_client.clients.api_client import ApiClient
from octopus_client.errors import InvalidOperationError, UnexpectedResponseError
from octopus_client.links import expand, require_link, template_variables
from octopus_client.models import Resource, ResourceCollection

log = structlog.get_logger()

T = TypeVar("T", bound=Resource)

_HREF_PREFIXES = ("/", "~/", "http://", "https://")


class ResourceRepository(Generic[T]):
    """CRUD and listing for one collection, addressed by its symbolic link name.

    ``links`` is the link mapping that advertises the collection: the server root,
    a space root, or a parent resource such as a project.
    """

    def __init__(
        self,
        api: ApiClient,
        links: Mapping[str, str],
        collection_link: str,
        model: type[T],
        owner: str = "server",
    ) -> None:
        self._api = api
        self._links = links
        self._collection_link = collection_link
        self._model = model
        self._owner = owner

    @property
    def collection_link(self) -> str:
        return self._collection_link

    @property
    def template(self) -> str:
        return require_link(self._links, self._collection_link, self._owner)

    def _parse(self, payload: Any) -> T:
        try:
            return self._model.model_validate(payload)
        except PydanticValidationError as exc:
            msg = f"Unexpected {self._model.__name__} document from {self._collection_link}: {exc.error_count()} errors"
            raise UnexpectedResponseError(msg) from exc

    def _parse_page(self, payload: Any) -> ResourceCollection[T]:
        try:
            return ResourceCollection[self._model].model_validate(payload)  # type: ignore[name-defined]
        except PydanticValidationError as exc:
            msg = f"Unexpected {self._collection_link} collection page: {exc.error_count()} errors"
            raise UnexpectedResponseError(msg) from exc

    def href_for(self, resource_id: str) -> str:
        template = self.template
        if "id" in template_variables(template):
            return expand(template, {"id": resource_id})
        return f"{expand(template).rstrip('/')}/{quote(resource_id, safe='')}"

    async def get(self, id_or_href: str) -> T:
        """Fetch one resource by id, or by an href taken from a Links mapping."""
        href = id_or_href if id_or_href.startswith(_HREF_PREFIXES) else self.href_for(id_or_href)
        return self._parse(await self._api.get(href))

    async def list(
        self,
        skip: int | None = None,
        take: int | None = None,
        **filter_params: Any,
    ) -> ResourceCollection[T]:
        """Fetch a single page; later pages are not followed."""
        href = expand(self.template, {"skip": skip, "take": take, **filter_params})
        return self._parse_page(await self._api.get(href))

    async def list_all(self, **filter_params: Any) -> AsyncIterator[T]:
        """Yield every item across pages in server order, following ``Page.Next``.

        Each call starts a fresh pass. Pages are fetched one at a time; an error on
        any page propagates after the items already yielded.
        """
        href: str | None = expand(self.template, filter_params)
        seen_ids: set[str] = set()
        visited: set[str] = set()
        pages = 0
        while href:
            if href in visited:
                log.warning("pagination_loop_detected", collection=self._collection_link, href=href)
                return
            visited.add(href)
            page = self._parse_page(await self._api.get(href))
            pages += 1
            for item in page.items:
                if item.id is not None:
                    if item.id in seen_ids:
                        log.warning("duplicate_item_skipped", collection=self._collection_link, id=item.id)
                        continue
                    seen_ids.add(item.id)
                yield item
            href = page.next_page
        log.debug("pagination_complete", collection=self._collection_link, pages=pages, items=len(seen_ids))

    async def create(self, body: T | Mapping[str, Any]) -> T:
        payload = body.to_wire() if isinstance(body, Resource) else dict(body)
        return self._parse(await self._api.post(expand(self.template), payload))

    async def modify(self, resource: T) -> T:
        """PUT the resource back to its own Self link."""
        href = _self_link(resource, "modify")
        return self._parse(await self._api.put(href, resource.to_wire()))

    async def delete(self, resource: T) -> None:
        await self._api.delete(_self_link(resource, "delete"))


def _self_link(resource: Resource, operation: str) -> str:
    href = resource.links.get("Self")
    if not href:
        msg = (
            f"Cannot {operation} {type(resource).__name__} {resource.id or '<new>'}: it carries no Self link. "
            "Fetch it from the server first."
        )
        raise InvalidOperationError(msg)
    return href
