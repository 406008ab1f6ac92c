"""Common test fixtures for the related-notes engine."""

from typing import List

import pytest

from tests.fakes import FakeProvider, RecordingSleep, make_note
from znote_related.config import RelatedNotesConfig
from znote_related.models.schema import Note
from znote_related.services.retry_service import RetryOptions
from znote_related.storage.local_embedding_store import LocalEmbeddingStore
from znote_related.storage.note_repository import InMemoryNoteRepository


@pytest.fixture(params=["asyncio"])
def anyio_backend(request):
    """Restrict anyio tests to asyncio only (trio is not installed)."""
    return request.param


@pytest.fixture
def fake_provider():
    return FakeProvider()


@pytest.fixture
def recording_sleep():
    return RecordingSleep()


@pytest.fixture
def fast_retry():
    """Retry options with jitter disabled."""
    return RetryOptions(max_retries=2, base_delay_ms=100, max_delay_ms=1000, jitter_factor=0.0)


@pytest.fixture
def sample_notes() -> List[Note]:
    return [
        make_note("201001010000", "Ethics", ["philosophy", "ethics"]),
        make_note("201001010001", "Stoicism", ["philosophy"]),
        make_note("201001010002", "Virtue", ["ethics", "virtue"]),
        make_note("201001010003", "Cooking", ["food"]),
    ]


@pytest.fixture
def note_repository(sample_notes):
    return InMemoryNoteRepository(sample_notes)


@pytest.fixture
def local_store(tmp_path):
    return LocalEmbeddingStore(tmp_path / "data" / "embeddings.json")


@pytest.fixture
def test_config(tmp_path):
    """Config rooted in a temporary directory with an empty vault."""
    vault = tmp_path / "vault"
    vault.mkdir()
    return RelatedNotesConfig(
        base_dir=tmp_path,
        vault_dir=vault,
        embeddings_path=tmp_path / "data" / "embeddings.json",
        embedding_source="local",
        vault_embeddings_dir=tmp_path / "external",
        graph_source="none",
        connection_reasons_path=tmp_path / "data" / "connection_reasons.json",
        embedding_batch_delay_ms=0,
        use_graph_connections=False,
        use_semantic_similarity=False,
        min_score=0.0,
        max_recommendations=10,
        retry_max_retries=0,
    )
