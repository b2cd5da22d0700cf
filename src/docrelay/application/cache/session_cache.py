"""Workflow session cache.

Hey future me - this cache is NEVER authoritative! The engine only uses it for read-only
lookups (GetById). Every write path re-reads the session from the repository inside a unit
of work. Cache failures are logged and swallowed: a broken cache degrades to "always miss",
it must never fail a request.

Read-through fills race with invalidate-on-write: a reader can load a session, a writer
commits and invalidates, and only THEN the reader stores its (now stale) copy. So every
invalidate bumps a per-session generation. A reader grabs generation() BEFORE it reads the
repository and hands it to set(), which refuses to store (or drops what it just stored)
when the generation moved in the meantime.
"""

import copy
import logging
from typing import Any

from docrelay.application.cache.base_cache import BaseCache, InMemoryCache
from docrelay.domain.entities import WorkflowSession
from docrelay.domain.value_objects import SessionId

logger = logging.getLogger(__name__)

# Past this many tracked sessions the generation table is reset and the epoch bumped, which
# voids every fill in flight at that moment
MAX_TRACKED_GENERATIONS = 10_000

Generation = tuple[int, int]


class SessionCache:
    """Read-through / invalidate-on-write cache keyed by session id."""

    DEFAULT_TTL = 3600  # 1 hour

    def __init__(
        self,
        backend: BaseCache[str, Any] | None = None,
        ttl_seconds: int = DEFAULT_TTL,
    ) -> None:
        self._cache: BaseCache[str, Any] = backend if backend is not None else InMemoryCache()
        self._ttl = ttl_seconds
        self._epoch = 0
        self._generations: dict[SessionId, int] = {}

    # "workflow:" prefix so the backend can be shared with other caches later
    def _make_key(self, session_id: SessionId) -> str:
        return f"workflow:{session_id}"

    def generation(self, session_id: SessionId) -> Generation:
        """Invalidation marker to capture before a read-through repository load."""
        return (self._epoch, self._generations.get(session_id, 0))

    def _bump(self, session_id: SessionId) -> None:
        if (
            session_id not in self._generations
            and len(self._generations) >= MAX_TRACKED_GENERATIONS
        ):
            self._generations.clear()
            self._epoch += 1
        self._generations[session_id] = self._generations.get(session_id, 0) + 1

    # Yo, entities are mutable dataclasses, so we store and hand out deep copies. Otherwise a
    # caller mutating its session would silently rewrite the cached one.
    async def get(self, session_id: SessionId) -> WorkflowSession | None:
        """Get a cached session, or None on miss/error."""
        try:
            cached = await self._cache.get(self._make_key(session_id))
        except Exception as e:
            logger.warning("Session cache read failed for %s: %s", session_id, e)
            return None
        return copy.deepcopy(cached) if cached is not None else None

    async def set(
        self, session: WorkflowSession, generation: Generation | None = None
    ) -> bool:
        """Cache a session snapshot.

        Args:
            session: Session to store
            generation: Value of generation() taken before the session was loaded. When
                given, the snapshot is only kept if no invalidation happened since.

        Returns:
            True if the snapshot is in the cache
        """
        if generation is not None and self.generation(session.id) != generation:
            logger.debug("Skipping stale cache fill for %s", session.id)
            return False

        key = self._make_key(session.id)
        try:
            await self._cache.set(key, copy.deepcopy(session), self._ttl)
        except Exception as e:
            logger.warning("Session cache write failed for %s: %s", session.id, e)
            return False

        # An invalidation landed while the backend write was in flight
        if generation is not None and self.generation(session.id) != generation:
            logger.debug("Dropping stale cache fill for %s", session.id)
            await self._delete(session.id)
            return False
        return True

    async def invalidate(self, session_id: SessionId) -> bool:
        """Drop a session from the cache.

        Returns:
            True if an entry was removed
        """
        self._bump(session_id)
        return await self._delete(session_id)

    async def _delete(self, session_id: SessionId) -> bool:
        try:
            return await self._cache.delete(self._make_key(session_id))
        except Exception as e:
            logger.warning("Session cache invalidation failed for %s: %s", session_id, e)
            return False
