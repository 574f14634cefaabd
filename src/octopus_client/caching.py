"""Single-flight cache for root link documents."""

from __future__ import annotations

import asyncio
import enum
from collections.abc import Awaitable, Callable, Hashable
from dataclasses import dataclass, field
from typing import Any

import structlog

log = structlog.get_logger()

CacheKey = tuple[Hashable, ...]


class EntryState(enum.Enum):
    PENDING = "pending"
    RESOLVED = "resolved"
    FAILED = "failed"


@dataclass
class CacheEntry:
    """One cache slot; a pending entry holds the shared in-flight resolution."""

    key: CacheKey
    future: asyncio.Future[Any]
    state: EntryState = EntryState.PENDING
    value: Any = None
    task: asyncio.Task[None] | None = field(default=None, repr=False)


class SingleFlightCache:
    """Memoises resolved documents and collapses concurrent fetches of the same key.

    Keys are tuples whose first element is the server identity, so entries for one
    server can be evicted together. A failed resolution evicts its entry so the next
    caller starts from scratch.
    """

    def __init__(self) -> None:
        self._entries: dict[CacheKey, CacheEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def state_of(self, key: CacheKey) -> EntryState | None:
        entry = self._entries.get(key)
        return entry.state if entry else None

    async def get_or_resolve(self, key: CacheKey, resolver: Callable[[], Awaitable[Any]]) -> Any:
        """Return the cached value for ``key``, joining or starting its resolution."""
        entry = self._entries.get(key)
        if entry is not None and entry.state is EntryState.RESOLVED:
            return entry.value
        if entry is not None and entry.state is EntryState.PENDING:
            log.debug("cache_join_pending", key=key)
            return await asyncio.shield(entry.future)

        loop = asyncio.get_running_loop()
        entry = CacheEntry(key=key, future=loop.create_future())
        self._entries[key] = entry
        # The fetch runs as its own task so one caller's cancellation does not fail the others.
        entry.task = asyncio.ensure_future(self._resolve(entry, resolver))
        return await asyncio.shield(entry.future)

    async def _resolve(self, entry: CacheEntry, resolver: Callable[[], Awaitable[Any]]) -> None:
        try:
            value = await resolver()
        except asyncio.CancelledError:
            self._evict(entry)
            entry.state = EntryState.FAILED
            entry.future.cancel()
            raise
        except Exception as exc:
            self._evict(entry)
            entry.state = EntryState.FAILED
            log.warning("cache_resolution_failed", key=entry.key, error=str(exc))
            entry.future.set_exception(exc)
            # Joined callers still see the exception; this only silences the unretrieved warning.
            entry.future.exception()
            return

        entry.value = value
        entry.state = EntryState.RESOLVED
        entry.future.set_result(value)

    def _evict(self, entry: CacheEntry) -> None:
        if self._entries.get(entry.key) is entry:
            del self._entries[entry.key]

    def invalidate(self, key: CacheKey) -> None:
        """Evict ``key`` regardless of state; callers already joined still get the in-flight result."""
        if self._entries.pop(key, None) is not None:
            log.debug("cache_invalidated", key=key)

    def invalidate_matching(self, predicate: Callable[[CacheKey, Any], bool]) -> int:
        """Evict every entry for which ``predicate(key, resolved_value_or_None)`` holds."""
        stale = [key for key, entry in self._entries.items() if predicate(key, entry.value)]
        for key in stale:
            del self._entries[key]
        return len(stale)

    def invalidate_server(self, server_identity: str) -> None:
        """Evict every entry belonging to one server."""
        evicted = self.invalidate_matching(lambda key, _: bool(key) and key[0] == server_identity)
        if evicted:
            log.info("cache_server_invalidated", server=server_identity, entries=evicted)

    def clear(self) -> None:
        self._entries.clear()


# Shared by every client in the process unless one is given its own cache.
ROOT_DOCUMENT_CACHE = SingleFlightCache()
