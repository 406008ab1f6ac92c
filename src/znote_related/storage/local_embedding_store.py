"""Self-managed embedding store backed by a single JSON document.

Layout on disk::

    {
      "embeddings": {"<note id>": {noteId, notePath, embedding, model,
                                   provider, createdAt, contentHash}},
      "metadata": {"lastUpdated": "<iso>" | null, "version": 1}
    }

Mutations only touch the in-memory map and mark the store dirty;
``flush()`` writes the document atomically (temp file + rename).
"""
import asyncio
import datetime
import json
import logging
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Union

from znote_related.exceptions import ErrorCode, StorageError
from znote_related.models.embedding import cosine_similarity
from znote_related.models.schema import (
    EmbeddingStats,
    SimilarityResult,
    StoredEmbedding,
    ensure_timezone_aware,
    utc_now,
)
from znote_related.storage.interfaces import (
    DEFAULT_SIMILAR_LIMIT,
    DEFAULT_SIMILAR_THRESHOLD,
)

logger = logging.getLogger(__name__)

STORE_VERSION = 1


def estimate_storage_size(embeddings: Iterable[StoredEmbedding]) -> int:
    """Rough byte estimate: ids and paths as UTF-16, vectors as float64."""
    size = 0
    for embedding in embeddings:
        size += len(embedding.note_id) * 2
        size += len(embedding.note_path) * 2
        size += len(embedding.vector) * 8
        size += 200  # metadata overhead
    return size


def rank_similar(
    embeddings: Iterable[StoredEmbedding],
    query: Sequence[float],
    limit: int,
    threshold: float,
    exclude_ids: Optional[Iterable[str]],
) -> List[SimilarityResult]:
    """Cosine scan shared by every store implementation."""
    excluded = set(exclude_ids or ())
    results = []
    for stored in embeddings:
        if stored.note_id in excluded:
            continue
        similarity = cosine_similarity(query, stored.vector)
        if similarity >= threshold:
            results.append(
                SimilarityResult(
                    note_id=stored.note_id,
                    note_path=stored.note_path,
                    similarity=similarity,
                )
            )
    # sorted() is stable: equal scores keep store order
    results = sorted(results, key=lambda r: r.similarity, reverse=True)
    return results[:limit]


class LocalEmbeddingStore:
    """Embedding store persisted as one JSON file."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        self._cache: Dict[str, StoredEmbedding] = {}
        self._dirty = False
        self._last_updated: Optional[datetime.datetime] = None

    @property
    def is_dirty(self) -> bool:
        return self._dirty

    async def initialize(self) -> None:
        """Load the document from disk.

        A missing file starts an empty store; a corrupt one is logged and
        treated as empty (the next flush overwrites it).
        """
        data = await asyncio.to_thread(self._read_document)
        if data is None:
            return

        loaded = 0
        for note_id, record in (data.get("embeddings") or {}).items():
            try:
                self._cache[note_id] = StoredEmbedding.from_record(record)
                loaded += 1
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping malformed embedding record {note_id}: {e}")

        last_updated = (data.get("metadata") or {}).get("lastUpdated")
        if last_updated:
            try:
                self._last_updated = ensure_timezone_aware(
                    datetime.datetime.fromisoformat(last_updated)
                )
            except ValueError:
                self._last_updated = None
        logger.info(f"Loaded {loaded} embeddings from {self.path}")

    def _read_document(self) -> Optional[Dict[str, Any]]:
        if not self.path.exists():
            return None
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Failed to load embeddings from {self.path}: {e}")
            return None
        if not isinstance(data, dict):
            logger.error(f"Unexpected embeddings document in {self.path}")
            return None
        return data

    def _touch(self) -> None:
        self._dirty = True
        self._last_updated = utc_now()

    async def save(self, embedding: StoredEmbedding) -> None:
        self._cache[embedding.note_id] = embedding
        self._touch()

    async def save_batch(self, embeddings: Sequence[StoredEmbedding]) -> None:
        for embedding in embeddings:
            self._cache[embedding.note_id] = embedding
        if embeddings:
            self._touch()

    async def get(self, note_id: str) -> Optional[StoredEmbedding]:
        return self._cache.get(note_id)

    async def exists(self, note_id: str) -> bool:
        return note_id in self._cache

    async def is_stale(self, note_id: str, current_hash: str) -> bool:
        stored = self._cache.get(note_id)
        if stored is None:
            return True
        return stored.content_hash != current_hash

    async def delete(self, note_id: str) -> None:
        if self._cache.pop(note_id, None) is not None:
            self._touch()

    async def get_all(self) -> List[StoredEmbedding]:
        return list(self._cache.values())

    async def find_similar(
        self,
        query: Sequence[float],
        limit: int = DEFAULT_SIMILAR_LIMIT,
        threshold: float = DEFAULT_SIMILAR_THRESHOLD,
        exclude_ids: Optional[Iterable[str]] = None,
    ) -> List[SimilarityResult]:
        return rank_similar(self._cache.values(), query, limit, threshold, exclude_ids)

    async def get_stats(self) -> EmbeddingStats:
        return EmbeddingStats(
            total_embeddings=len(self._cache),
            last_updated=self._last_updated,
            storage_size=estimate_storage_size(self._cache.values()),
        )

    async def clear(self) -> None:
        self._cache.clear()
        self._dirty = True
        self._last_updated = None

    async def flush(self) -> None:
        """Write the document if anything changed since the last flush.

        Raises:
            StorageError: If the document cannot be written.
        """
        if not self._dirty:
            return
        document = {
            "embeddings": {
                note_id: stored.to_record() for note_id, stored in self._cache.items()
            },
            "metadata": {
                "lastUpdated": (
                    self._last_updated.isoformat() if self._last_updated else None
                ),
                "version": STORE_VERSION,
            },
        }
        await asyncio.to_thread(self._write_document, document)
        self._dirty = False
        logger.debug(f"Flushed {len(self._cache)} embeddings to {self.path}")

    def _write_document(self, document: Dict[str, Any]) -> None:
        temp_file = self.path.with_suffix(self.path.suffix + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(temp_file, "w", encoding="utf-8") as f:
                json.dump(document, f)
            temp_file.replace(self.path)
        except OSError as e:
            raise StorageError(
                "Failed to save embeddings",
                operation="flush",
                path=str(self.path),
                code=ErrorCode.STORAGE_WRITE_FAILED,
                original_error=e,
            ) from e
