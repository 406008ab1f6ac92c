"""Storage contracts consumed by the services.

Structural protocols (PEP 544): implementations and test fakes satisfy
them without inheriting. All methods are coroutines so stores and
repositories can do real I/O without blocking the event loop.
"""
from __future__ import annotations

from typing import (
    Any,
    Dict,
    Iterable,
    List,
    Optional,
    Protocol,
    Sequence,
    runtime_checkable,
)

from znote_related.models.schema import (
    EmbeddingStats,
    GraphEdge,
    GraphNode,
    GraphStats,
    Note,
    SimilarityResult,
    StoredEmbedding,
)

DEFAULT_SIMILAR_LIMIT = 10
DEFAULT_SIMILAR_THRESHOLD = 0.5


@runtime_checkable
class EmbeddingStore(Protocol):
    """Contract for persisting note vectors and scanning them by similarity."""

    async def save(self, embedding: StoredEmbedding) -> None:
        """Upsert by note id. Saving the same id twice replaces the record."""
        ...

    async def save_batch(self, embeddings: Sequence[StoredEmbedding]) -> None:
        ...

    async def get(self, note_id: str) -> Optional[StoredEmbedding]:
        """Return the stored record, or None when missing."""
        ...

    async def exists(self, note_id: str) -> bool:
        ...

    async def is_stale(self, note_id: str, current_hash: str) -> bool:
        """True when no record exists or its content hash differs."""
        ...

    async def delete(self, note_id: str) -> None:
        ...

    async def get_all(self) -> List[StoredEmbedding]:
        ...

    async def find_similar(
        self,
        query: Sequence[float],
        limit: int = DEFAULT_SIMILAR_LIMIT,
        threshold: float = DEFAULT_SIMILAR_THRESHOLD,
        exclude_ids: Optional[Iterable[str]] = None,
    ) -> List[SimilarityResult]:
        """Linear cosine scan.

        Keeps hits with similarity >= threshold that are not excluded,
        sorted by similarity descending (ties keep store order), truncated
        to ``limit``.
        """
        ...

    async def get_stats(self) -> EmbeddingStats:
        ...

    async def clear(self) -> None:
        ...

    async def flush(self) -> None:
        """Persist buffered writes. Data is durable only after this returns."""
        ...


@runtime_checkable
class RefreshableEmbeddingStore(EmbeddingStore, Protocol):
    """A store backed by an external source that is re-read on demand."""

    async def refresh_cache(self, force: bool = False) -> None:
        """Re-read the source if the cache TTL expired or ``force`` is set."""
        ...

    def is_available(self) -> bool:
        ...

    def get_source_info(self) -> Optional[Dict[str, Any]]:
        """Model, dimensions and provider of the source, once loaded."""
        ...

    async def get_by_path(self, note_path: str) -> Optional[StoredEmbedding]:
        ...


@runtime_checkable
class NoteRepository(Protocol):
    """Read access to the vault's notes."""

    async def find_by_id(self, note_id: str) -> Optional[Note]:
        ...

    async def find_by_path(self, file_path: str) -> Optional[Note]:
        ...

    async def find_by_tags(self, tags: Iterable[str]) -> List[Note]:
        """Notes carrying any of ``tags`` (normalized before matching)."""
        ...

    async def find_all(self) -> List[Note]:
        ...


@runtime_checkable
class GraphRepository(Protocol):
    """Lookup access to the knowledge graph."""

    async def find_connected_nodes(self, note_id: str) -> List[GraphNode]:
        """Nodes directly linked to ``note_id`` in either direction."""
        ...

    async def find_node_by_id(self, node_id: str) -> Optional[GraphNode]:
        ...

    async def get_all_nodes(self) -> List[GraphNode]:
        ...

    async def get_all_edges(self) -> List[GraphEdge]:
        ...

    async def get_stats(self) -> GraphStats:
        ...


@runtime_checkable
class Initializable(Protocol):
    """A collaborator that loads its backing data once before first use."""

    async def initialize(self) -> None:
        ...


@runtime_checkable
class Reloadable(Protocol):
    """A collaborator that can re-read its source on demand."""

    async def reload(self) -> Any:
        ...
