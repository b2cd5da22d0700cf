"""Tests for the TTL cache and the workflow session cache."""

import asyncio
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

from docrelay.application.cache import InMemoryCache, SessionCache
from docrelay.application.cache.session_cache import MAX_TRACKED_GENERATIONS
from docrelay.domain.entities import Recipient, RecipientType, WorkflowSession
from docrelay.domain.value_objects import AccessToken, RecipientId, SessionId


class GatedCache(InMemoryCache):
    """Backend whose writes wait until `release` is set."""

    def __init__(self) -> None:
        super().__init__()
        self.release = asyncio.Event()
        self.writing = asyncio.Event()

    async def set(self, key, value, ttl_seconds: int = 3600) -> None:
        self.writing.set()
        await self.release.wait()
        await super().set(key, value, ttl_seconds)


class FakeTimer:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def _session() -> WorkflowSession:
    session_id = SessionId.generate()
    return WorkflowSession(
        id=session_id,
        document_ref="/documents/form.pdf",
        expires_at=datetime(2025, 1, 17, tzinfo=UTC),
        recipients=[
            Recipient(
                id=RecipientId.generate(),
                session_id=session_id,
                order_index=0,
                type=RecipientType.PRESCRIBER,
                access_token=AccessToken("abcdefghijklmnop"),
                email="doc@example.com",
            )
        ],
    )


class TestInMemoryCache:
    """TTL behaviour of the generic cache."""

    async def test_set_get_delete(self) -> None:
        cache: InMemoryCache[str, int] = InMemoryCache()
        await cache.set("a", 1)
        assert await cache.get("a") == 1
        assert await cache.delete("a") is True
        assert await cache.delete("a") is False
        assert await cache.get("a") is None

    async def test_entry_expires_after_ttl(self) -> None:
        timer = FakeTimer()
        cache: InMemoryCache[str, str] = InMemoryCache(timer=timer)
        await cache.set("k", "v", ttl_seconds=60)

        timer.now += 59
        assert await cache.get("k") == "v"
        timer.now += 1
        assert await cache.get("k") is None

    async def test_cleanup_expired(self) -> None:
        timer = FakeTimer()
        cache: InMemoryCache[str, str] = InMemoryCache(timer=timer)
        await cache.set("short", "x", ttl_seconds=10)
        await cache.set("long", "y", ttl_seconds=1000)
        timer.now += 100

        assert await cache.cleanup_expired() == 1
        stats = cache.get_stats()
        assert stats["total_entries"] == 1
        assert stats["active_entries"] == 1


class TestSessionCache:
    """Session cache: copies in and out, never raises."""

    async def test_miss_then_hit(self) -> None:
        cache = SessionCache()
        session = _session()

        assert await cache.get(session.id) is None
        await cache.set(session)
        cached = await cache.get(session.id)
        assert cached is not None
        assert cached.id == session.id

    async def test_returns_copies(self) -> None:
        """Mutating a returned session must not change the cached one."""
        cache = SessionCache()
        session = _session()
        await cache.set(session)

        first = await cache.get(session.id)
        first.metadata["touched"] = True
        second = await cache.get(session.id)

        assert "touched" not in second.metadata

    async def test_invalidate(self) -> None:
        cache = SessionCache()
        session = _session()
        await cache.set(session)

        assert await cache.invalidate(session.id) is True
        assert await cache.get(session.id) is None
        assert await cache.invalidate(session.id) is False

    async def test_broken_backend_degrades_to_miss(self) -> None:
        backend = MagicMock()
        backend.get = AsyncMock(side_effect=RuntimeError("boom"))
        backend.set = AsyncMock(side_effect=RuntimeError("boom"))
        backend.delete = AsyncMock(side_effect=RuntimeError("boom"))
        cache = SessionCache(backend=backend)
        session = _session()

        await cache.set(session)
        assert await cache.get(session.id) is None
        assert await cache.invalidate(session.id) is False

    async def test_ttl_is_applied(self) -> None:
        timer = FakeTimer()
        cache = SessionCache(backend=InMemoryCache(timer=timer), ttl_seconds=30)
        session = _session()
        await cache.set(session)

        timer.now += timedelta(seconds=31).total_seconds()
        assert await cache.get(session.id) is None


class TestReadThroughFill:
    """Fills guarded by the invalidation generation."""

    async def test_fill_after_invalidation_is_skipped(self) -> None:
        cache = SessionCache()
        session = _session()
        generation = cache.generation(session.id)

        await cache.invalidate(session.id)

        assert await cache.set(session, generation) is False
        assert await cache.get(session.id) is None

    async def test_invalidation_during_backend_write_drops_the_fill(self) -> None:
        backend = GatedCache()
        cache = SessionCache(backend=backend)
        session = _session()

        fill = asyncio.create_task(cache.set(session, cache.generation(session.id)))
        await backend.writing.wait()
        await cache.invalidate(session.id)
        backend.release.set()

        assert await fill is False
        assert await cache.get(session.id) is None

    async def test_untouched_generation_fills(self) -> None:
        cache = SessionCache()
        session = _session()

        assert await cache.set(session, cache.generation(session.id)) is True
        assert await cache.get(session.id) is not None

    async def test_generation_table_is_bounded(self) -> None:
        cache = SessionCache()
        session = _session()
        generation = cache.generation(session.id)

        for _ in range(MAX_TRACKED_GENERATIONS + 1):
            await cache.invalidate(SessionId.generate())

        # The reset bumps the epoch, so fills started before it are void
        assert cache.generation(session.id) != generation
        assert await cache.set(session, generation) is False
