"""Tests for the JSON-backed local embedding store."""
import datetime
import json

import pytest

from znote_related.exceptions import ErrorCode, StorageError
from znote_related.models.schema import StoredEmbedding
from znote_related.storage.local_embedding_store import (
    LocalEmbeddingStore,
    estimate_storage_size,
)


def stored(note_id, vector, content_hash="h1", path=None):
    return StoredEmbedding(
        note_id=note_id,
        note_path=path or f"{note_id}.md",
        vector=vector,
        model="fake-embedding-model",
        provider="fake",
        created_at=datetime.datetime(2024, 1, 1, tzinfo=datetime.timezone.utc),
        content_hash=content_hash,
    )


@pytest.mark.anyio
class TestLocalEmbeddingStore:
    async def test_save_then_get_returns_identical_record(self, local_store):
        record = stored("201001010000", [0.125, -0.5, 0.75], content_hash="abc")
        await local_store.save(record)
        fetched = await local_store.get("201001010000")
        assert fetched.vector == [0.125, -0.5, 0.75]
        assert fetched.content_hash == "abc"
        assert await local_store.exists("201001010000")
        assert await local_store.get("201001019999") is None

    async def test_staleness(self, local_store):
        assert await local_store.is_stale("201001010000", "h1")
        await local_store.save(stored("201001010000", [1.0, 0.0], content_hash="h1"))
        assert not await local_store.is_stale("201001010000", "h1")
        assert await local_store.is_stale("201001010000", "h2")

    async def test_flush_and_reload(self, local_store, tmp_path):
        await local_store.save_batch(
            [stored("201001010000", [1.0, 0.0]), stored("201001010001", [0.0, 1.0])]
        )
        assert local_store.is_dirty
        await local_store.flush()
        assert not local_store.is_dirty

        document = json.loads(local_store.path.read_text(encoding="utf-8"))
        assert document["metadata"]["version"] == 1
        assert document["metadata"]["lastUpdated"] is not None
        assert document["embeddings"]["201001010000"]["embedding"] == [1.0, 0.0]
        assert document["embeddings"]["201001010000"]["noteId"] == "201001010000"

        reloaded = LocalEmbeddingStore(local_store.path)
        await reloaded.initialize()
        assert await reloaded.get("201001010001") == await local_store.get("201001010001")
        stats = await reloaded.get_stats()
        assert stats.total_embeddings == 2
        assert stats.last_updated is not None

    async def test_flush_without_changes_writes_nothing(self, local_store):
        await local_store.flush()
        assert not local_store.path.exists()

    async def test_missing_file_starts_empty(self, local_store):
        await local_store.initialize()
        assert await local_store.get_all() == []

    async def test_corrupt_file_starts_empty(self, local_store):
        local_store.path.parent.mkdir(parents=True)
        local_store.path.write_text("{not json", encoding="utf-8")
        await local_store.initialize()
        assert (await local_store.get_stats()).total_embeddings == 0

    async def test_malformed_record_skipped(self, local_store):
        local_store.path.parent.mkdir(parents=True)
        good = stored("201001010000", [1.0]).to_record()
        local_store.path.write_text(
            json.dumps({"embeddings": {"201001010000": good, "bad": {"notePath": "x"}}}),
            encoding="utf-8",
        )
        await local_store.initialize()
        assert [e.note_id for e in await local_store.get_all()] == ["201001010000"]

    async def test_find_similar(self, local_store):
        await local_store.save_batch(
            [
                stored("201001010000", [1.0, 0.0]),
                stored("201001010001", [0.9, 0.1]),
                stored("201001010002", [0.0, 1.0]),
                stored("201001010003", [0.7, 0.7]),
            ]
        )
        results = await local_store.find_similar(
            [1.0, 0.0], limit=10, threshold=0.5, exclude_ids=["201001010000"]
        )
        assert [r.note_id for r in results] == ["201001010001", "201001010003"]
        assert results[0].similarity > results[1].similarity

        limited = await local_store.find_similar([1.0, 0.0], limit=1, threshold=0.0)
        assert [r.note_id for r in limited] == ["201001010000"]

    async def test_delete_and_clear(self, local_store):
        await local_store.save(stored("201001010000", [1.0]))
        await local_store.save(stored("201001010001", [1.0]))
        await local_store.delete("201001010000")
        assert not await local_store.exists("201001010000")

        await local_store.clear()
        stats = await local_store.get_stats()
        assert stats.total_embeddings == 0
        assert stats.last_updated is None
        assert local_store.is_dirty

    async def test_delete_updates_last_updated(self, local_store, monkeypatch):
        clock = "znote_related.storage.local_embedding_store.utc_now"
        saved_at = datetime.datetime(2024, 5, 1, 12, 0, tzinfo=datetime.timezone.utc)
        deleted_at = saved_at + datetime.timedelta(hours=1)

        monkeypatch.setattr(clock, lambda: saved_at)
        await local_store.save(stored("201001010000", [1.0]))
        monkeypatch.setattr(clock, lambda: deleted_at)
        await local_store.delete("201001010000")
        assert (await local_store.get_stats()).last_updated == deleted_at

        monkeypatch.setattr(clock, lambda: deleted_at + datetime.timedelta(hours=1))
        await local_store.delete("201001010000")
        assert (await local_store.get_stats()).last_updated == deleted_at

    async def test_flush_failure_raises_storage_error(self, tmp_path):
        target = tmp_path / "occupied"
        target.mkdir()
        (target / "child").write_text("x", encoding="utf-8")
        store = LocalEmbeddingStore(target)
        await store.save(stored("201001010000", [1.0]))
        with pytest.raises(StorageError) as exc_info:
            await store.flush()
        assert exc_info.value.code == ErrorCode.STORAGE_WRITE_FAILED


def test_estimate_storage_size():
    record = stored("201001010000", [1.0, 2.0], path="a.md")
    assert estimate_storage_size([record]) == 12 * 2 + 4 * 2 + 2 * 8 + 200
