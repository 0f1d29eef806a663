"""Tests for the bounded-capacity artifact store."""

import asyncio

import pytest

from research_desk.entities import ArtifactKind
from research_desk.errors import PersistenceError
from research_desk.store import BoundedCapacityStore, coerce_kind


SYMBOLS = [f"T{i:02d}" for i in range(25)]


class FailingIds:
    def __call__(self):
        raise RuntimeError("id generator down")


@pytest.fixture
def store(database, clock):
    return BoundedCapacityStore(database, capacity=20, retention_days=30, clock=clock)


async def fill(store, clock, owner, count, kind=ArtifactKind.REPORT):
    ids = []
    for symbol in SYMBOLS[:count]:
        ids.append(await store.save(owner, kind, symbol, {"symbol": symbol}))
        clock.advance(minutes=1)
    return ids


class TestCoerceKind:
    """Test artifact kind parsing."""

    def test_accepts_enum_and_string(self):
        assert coerce_kind(ArtifactKind.REPORT) is ArtifactKind.REPORT
        assert coerce_kind("Prediction") is ArtifactKind.PREDICTION

    def test_unknown_kind(self):
        with pytest.raises(ValueError):
            coerce_kind("memo")


class TestSave:
    """Test upserts and capacity enforcement."""

    @pytest.mark.asyncio
    async def test_save_and_get(self, store):
        artifact_id = await store.save("u1", "report", " aapl ", {"summary": "ok"}, company_name="Apple Inc.")

        artifact = await store.get(artifact_id)
        assert artifact.symbol == "AAPL"
        assert artifact.kind is ArtifactKind.REPORT
        assert artifact.payload == {"summary": "ok"}
        assert artifact.company_name == "Apple Inc."
        assert (artifact.expires_at - artifact.created_at).days == 30

    @pytest.mark.asyncio
    async def test_capacity_evicts_oldest(self, store, clock):
        ids = await fill(store, clock, "u1", 20)
        assert await store.count("u1", "report") == 20

        newest = await store.save("u1", "report", "NEW", {"symbol": "NEW"})

        assert await store.count("u1", "report") == 20
        assert await store.get(ids[0]) is None
        assert await store.get(ids[1]) is not None
        assert await store.get(newest) is not None

    @pytest.mark.asyncio
    async def test_upsert_keeps_count_and_id(self, store, clock):
        ids = await fill(store, clock, "u1", 20)

        refreshed = await store.save("u1", "report", SYMBOLS[0], {"version": 2})

        assert refreshed == ids[0]
        assert await store.count("u1", "report") == 20
        artifact = await store.get(ids[0])
        assert artifact.payload == {"version": 2}
        assert artifact.created_at == clock.now

    @pytest.mark.asyncio
    async def test_refreshed_artifact_is_no_longer_oldest(self, store, clock):
        ids = await fill(store, clock, "u1", 20)
        await store.save("u1", "report", SYMBOLS[0], {"version": 2})
        clock.advance(minutes=1)

        await store.save("u1", "report", "NEW", {})

        assert await store.get(ids[0]) is not None
        assert await store.get(ids[1]) is None

    @pytest.mark.asyncio
    async def test_upsert_without_company_name_keeps_previous(self, store):
        artifact_id = await store.save("u1", "report", "AAPL", {}, company_name="Apple Inc.")
        await store.save("u1", "report", "AAPL", {"v": 2})

        assert (await store.get(artifact_id)).company_name == "Apple Inc."

    @pytest.mark.asyncio
    async def test_failed_insert_leaves_no_partial_eviction(self, database, store, clock):
        ids = await fill(store, clock, "u1", 20)
        broken = BoundedCapacityStore(database, capacity=20, clock=clock, id_factory=FailingIds())

        with pytest.raises(PersistenceError) as exc_info:
            await broken.save("u1", "report", "NEW", {})

        assert exc_info.value.operation == "save"
        assert await store.count("u1", "report") == 20
        assert await store.get(ids[0]) is not None

    @pytest.mark.asyncio
    async def test_owners_and_kinds_are_isolated(self, database, clock):
        store = BoundedCapacityStore(database, capacity=2, clock=clock)
        await fill(store, clock, "u1", 2)
        await fill(store, clock, "u1", 2, kind=ArtifactKind.PREDICTION)
        await fill(store, clock, "u2", 3)

        assert await store.count("u1", "report") == 2
        assert await store.count("u1", "prediction") == 2
        assert await store.count("u2", "report") == 2

    @pytest.mark.asyncio
    async def test_concurrent_saves_respect_capacity(self, database, clock):
        store = BoundedCapacityStore(database, capacity=3, clock=clock)

        await asyncio.gather(*(store.save("u1", "report", s, {}) for s in SYMBOLS[:6]))

        assert await store.count("u1", "report") == 3

    @pytest.mark.asyncio
    async def test_owner_locks_released_after_save(self, store):
        await asyncio.gather(*(store.save(f"user-{i}", "report", "AAPL", {}) for i in range(5)))

        assert len(store._locks) == 0

    @pytest.mark.asyncio
    async def test_invalid_arguments(self, store):
        with pytest.raises(ValueError):
            await store.save("", "report", "AAPL", {})
        with pytest.raises(ValueError):
            await store.save("u1", "report", "  ", {})
        with pytest.raises(ValueError):
            await store.save("u1", "report", "AAPL", ["not", "a", "dict"])
        with pytest.raises(ValueError):
            await store.save("u1", "memo", "AAPL", {})

    def test_invalid_capacity(self, database):
        with pytest.raises(ValueError):
            BoundedCapacityStore(database, capacity=0)


class TestQueries:
    """Test delete, list and expiry handling."""

    @pytest.mark.asyncio
    async def test_delete(self, store):
        artifact_id = await store.save("u1", "report", "AAPL", {})

        assert await store.delete(artifact_id) is True
        assert await store.delete(artifact_id) is False
        assert await store.count("u1", "report") == 0

    @pytest.mark.asyncio
    async def test_list_newest_first(self, store, clock):
        await fill(store, clock, "u1", 3)

        listed = await store.list("u1", "report")

        assert [a.symbol for a in listed] == ["T02", "T01", "T00"]

    @pytest.mark.asyncio
    async def test_list_excludes_expired(self, store, clock):
        await store.save("u1", "report", "OLD", {})
        clock.advance(days=20)
        await store.save("u1", "report", "NEW", {})
        clock.advance(days=11)

        assert [a.symbol for a in await store.list("u1", "report")] == ["NEW"]
        assert await store.count("u1", "report") == 2

    @pytest.mark.asyncio
    async def test_purge_expired(self, store, clock):
        await store.save("u1", "report", "OLD", {})
        await store.save("u2", "prediction", "OLD", {})
        clock.advance(days=31)
        await store.save("u1", "report", "NEW", {})

        assert await store.purge_expired() == 2
        assert await store.count("u1", "report") == 1
        assert await store.purge_expired() == 0
