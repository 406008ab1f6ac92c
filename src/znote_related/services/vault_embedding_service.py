"""Read-only semantic search over externally generated embeddings."""
import logging
from typing import Any, Dict, List, Optional

from znote_related.models.schema import SimilarityResult
from znote_related.storage.interfaces import RefreshableEmbeddingStore
from znote_related.storage.vault_embeddings_reader import SOURCE_PROVIDER

logger = logging.getLogger(__name__)


class VaultEmbeddingService:
    """Similarity lookups against a refreshable, read-only store.

    Used instead of EmbeddingService when embeddings are produced by an
    external indexer; it never calls a provider.
    """

    def __init__(
        self,
        store: RefreshableEmbeddingStore,
        similarity_threshold: float = 0.5,
        max_recommendations: int = 10,
    ):
        self.store = store
        self.similarity_threshold = similarity_threshold
        self.max_recommendations = max_recommendations

    def is_ready(self) -> bool:
        """True when the external index exists."""
        return self.store.is_available()

    async def find_similar_notes(
        self,
        note_id: str,
        limit: Optional[int] = None,
        threshold: Optional[float] = None,
    ) -> List[SimilarityResult]:
        stored = await self.store.get(note_id)
        if stored is None:
            return []
        return await self._scan(stored.vector, stored.note_id, limit, threshold)

    async def find_similar_notes_by_path(
        self,
        file_path: str,
        limit: Optional[int] = None,
        threshold: Optional[float] = None,
    ) -> List[SimilarityResult]:
        """Lookup by path, for indexers whose ids differ from ours."""
        stored = await self.store.get_by_path(file_path)
        if stored is None:
            return []
        return await self._scan(stored.vector, stored.note_id, limit, threshold)

    async def _scan(self, vector, exclude_id, limit, threshold) -> List[SimilarityResult]:
        return await self.store.find_similar(
            vector,
            limit=limit if limit is not None else self.max_recommendations,
            threshold=threshold if threshold is not None else self.similarity_threshold,
            exclude_ids=[exclude_id],
        )

    async def get_stats(self) -> Dict[str, Any]:
        stats = await self.store.get_stats()
        source = self.store.get_source_info() or {}
        return {
            "total_embeddings": stats.total_embeddings,
            "last_updated": stats.last_updated,
            "storage_size": stats.storage_size,
            "provider": source.get("provider", SOURCE_PROVIDER),
            "model": source.get("model", "unknown"),
        }

    async def refresh(self) -> None:
        """Force a re-read of the external index."""
        await self.store.refresh_cache(force=True)
