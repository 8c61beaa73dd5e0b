"""Tests for the JSON hardcopy mirror decorator."""

import json

import pytest

from hardcopy_store import HardcopyMemoryStore
from models import SearchFilters, StoreRequest, UpdateRequest


@pytest.fixture
async def mirrored(store, tmp_path):
    hardcopy = HardcopyMemoryStore(store, tmp_path / "hardcopy")
    await hardcopy.initialize()
    return hardcopy


def hardcopy_files(mirrored) -> list[str]:
    return sorted(p.name for p in mirrored.hardcopy_path.glob("*.json"))


def read_hardcopy(mirrored, memory_id: str) -> dict:
    return json.loads((mirrored.hardcopy_path / f"{memory_id}.json").read_text())


class TestMutationsMirrored:
    async def test_store_writes_file(self, mirrored):
        memory = await mirrored.store(StoreRequest("Test memory", "learning", ["test"]))

        assert hardcopy_files(mirrored) == [f"{memory.id}.json"]
        assert read_hardcopy(mirrored, memory.id) == memory.to_dict()
        assert (mirrored.hardcopy_path / f"{memory.id}.json").read_text().endswith("}\n")

    async def test_store_delegates(self, mirrored, store):
        await mirrored.store(StoreRequest("Test", "learning"))
        assert (await store.stats()).total_memories == 1

    async def test_store_batch_writes_each(self, mirrored):
        memories = await mirrored.store_batch(
            [
                StoreRequest("Alpha", "learning", ["a"]),
                StoreRequest("Beta", "architecture", ["b"]),
                StoreRequest("Gamma", "other", ["c"]),
            ]
        )
        assert len(hardcopy_files(mirrored)) == 3
        for m in memories:
            assert read_hardcopy(mirrored, m.id)["content"] == m.content

    async def test_update_rewrites_file(self, mirrored):
        memory = await mirrored.store(StoreRequest("Before", "learning"))
        await mirrored.update(memory.id, UpdateRequest(content="After", tags=["edited"]))

        hardcopy = read_hardcopy(mirrored, memory.id)
        assert hardcopy["content"] == "After"
        assert hardcopy["tags"] == ["edited"]
        assert hardcopy["created_at"] == memory.created_at

    async def test_delete_removes_file(self, mirrored):
        keep = await mirrored.store(StoreRequest("Keep", "learning"))
        drop = await mirrored.store(StoreRequest("Drop", "learning"))
        await mirrored.delete(drop.id)
        assert hardcopy_files(mirrored) == [f"{keep.id}.json"]


class TestReadsPassThrough:
    async def test_reads(self, mirrored, store):
        memory = await mirrored.store(StoreRequest("Readable memory", "learning"))

        assert await mirrored.get(memory.id) == memory
        assert await mirrored.resolve_id(memory.id[:8]) == memory.id
        assert [m.id for m in await mirrored.list_recent(5)] == [memory.id]
        assert (await mirrored.stats()).total_memories == 1
        results = await mirrored.search("readable", "semantic", SearchFilters(limit=5))
        assert [r.memory.id for r in results] == [memory.id]
        # Decay is recomputed against the clock on every call
        outcome = await mirrored.search_with_status("readable", "semantic")
        assert [r.memory for r in outcome.results] == [r.memory for r in results]
        assert [r.score for r in outcome.results] == pytest.approx([r.score for r in results])
        assert await mirrored.find_related(memory.id, 5) == []


class TestMirrorFailuresContained:
    async def test_write_failure_does_not_propagate(self, mirrored, tmp_path, capsys):
        blocker = tmp_path / "not-a-directory"
        blocker.write_text("")
        mirrored.hardcopy_path = blocker

        memory = await mirrored.store(StoreRequest("Still stored", "learning"))

        assert await mirrored.get(memory.id) == memory
        assert "Hardcopy write failed" in capsys.readouterr().err

    async def test_delete_without_file_is_quiet(self, mirrored, store, capsys):
        memory = await store.store(StoreRequest("Stored before mirroring", "learning"))
        await mirrored.delete(memory.id)

        assert await store.get(memory.id) is None
        assert "Hardcopy" not in capsys.readouterr().err

    async def test_inner_errors_still_propagate(self, mirrored):
        from models import MemoryNotFoundError

        with pytest.raises(MemoryNotFoundError):
            await mirrored.update("0" * 32, UpdateRequest(content="nope"))
        assert hardcopy_files(mirrored) == []
