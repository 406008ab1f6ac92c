"""Tests for the read-only reader of externally generated embeddings."""
import datetime

import pytest

from tests.fakes import write_vault_index
from znote_related.models.schema import StoredEmbedding
from znote_related.storage.vault_embeddings_reader import (
    SOURCE_PROVIDER,
    VaultEmbeddingsReader,
    safe_file_id,
)


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


@pytest.fixture
def storage(tmp_path):
    path = tmp_path / "09_Embedded"
    write_vault_index(
        path,
        {
            "201001010000": ("201001010000 Ethics.md", [1.0, 0.0]),
            "201001010001": ("201001010001 Stoicism.md", [0.8, 0.6]),
            "201001010002": ("201001010002 Cooking.md", [0.0, 1.0]),
        },
    )
    return path


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def reader(storage, clock):
    return VaultEmbeddingsReader(storage, cache_ttl=60, clock=clock)


def test_safe_file_id():
    assert safe_file_id("201001010000") == "201001010000"
    assert safe_file_id("a/b c.md") == "a_b_c_md"


@pytest.mark.anyio
class TestVaultEmbeddingsReader:
    async def test_unavailable_without_index(self, tmp_path):
        reader = VaultEmbeddingsReader(tmp_path / "missing")
        assert not reader.is_available()
        assert await reader.get("201001010000") is None
        assert reader.get_source_info() is None
        assert (await reader.get_stats()).total_embeddings == 0

    async def test_reads_embeddings(self, reader):
        assert reader.is_available()
        stored = await reader.get("201001010001")
        assert stored.vector == [0.8, 0.6]
        assert stored.provider == "external"
        assert stored.content_hash == "hash-201001010001"
        assert stored.created_at == datetime.datetime(
            2024, 5, 1, 12, 0, tzinfo=datetime.timezone.utc
        )
        assert await reader.exists("201001010002")

    async def test_get_by_path(self, reader):
        stored = await reader.get_by_path("201001010002 Cooking.md")
        assert stored.note_id == "201001010002"
        assert await reader.get_by_path("nope.md") is None

    async def test_is_stale(self, reader):
        assert not await reader.is_stale("201001010000", "hash-201001010000")
        assert await reader.is_stale("201001010000", "other")
        assert await reader.is_stale("201001019999", "anything")

    async def test_find_similar(self, reader):
        results = await reader.find_similar(
            [1.0, 0.0], limit=5, threshold=0.5, exclude_ids=["201001010000"]
        )
        assert [r.note_id for r in results] == ["201001010001"]
        assert results[0].similarity == pytest.approx(0.8)

    async def test_stats_and_source_info(self, reader):
        stats = await reader.get_stats()
        assert stats.total_embeddings == 3
        assert stats.last_updated == datetime.datetime(
            2024, 5, 1, 12, 0, tzinfo=datetime.timezone.utc
        )
        assert reader.get_source_info() == {
            "model": "external-model",
            "dimensions": 2,
            "provider": SOURCE_PROVIDER,
        }

    async def test_cache_respects_ttl(self, reader, storage, clock):
        await reader.initialize()
        write_vault_index(
            storage,
            {
                "201001010000": ("201001010000 Ethics.md", [1.0, 0.0]),
                "201001010001": ("201001010001 Stoicism.md", [0.8, 0.6]),
                "201001010002": ("201001010002 Cooking.md", [0.0, 1.0]),
                "201001010003": ("201001010003 Virtue.md", [0.6, 0.8]),
            },
        )
        clock.now += 30
        assert await reader.get("201001010003") is None

        clock.now += 31
        assert (await reader.get("201001010003")).vector == [0.6, 0.8]

    async def test_forced_refresh_ignores_ttl(self, reader, storage):
        await reader.initialize()
        (storage / "embeddings" / "201001010002.json").unlink()
        await reader.refresh_cache(force=True)
        assert await reader.get("201001010002") is None

    async def test_malformed_embedding_skipped(self, reader, storage):
        (storage / "embeddings" / "201001010001.json").write_text("{oops", encoding="utf-8")
        await reader.refresh_cache(force=True)
        assert await reader.get("201001010001") is None
        assert (await reader.get_stats()).total_embeddings == 2

    async def test_writes_are_ignored(self, reader, caplog):
        extra = StoredEmbedding(
            note_id="201001010009",
            note_path="x.md",
            vector=[1.0, 1.0],
            model="m",
            provider="p",
            content_hash="h",
        )
        await reader.save(extra)
        await reader.save_batch([extra])
        await reader.delete("201001010000")
        await reader.clear()
        await reader.flush()
        assert not await reader.exists("201001010009")
        assert await reader.exists("201001010000")
        assert "read-only" in caplog.text
