"""Read-only embedding store over externally generated embeddings.

Consumes the shared embeddings folder produced by a separate indexer::

    <storage_path>/index.json
        {version, totalNotes, lastUpdated, model, dimensions,
         notes: {"<note id>": {path, contentHash, updatedAt}}}
    <storage_path>/embeddings/<safe id>.json
        {noteId, notePath, title, contentHash, vector, model, provider,
         dimensions, createdAt, updatedAt}

All write operations are no-ops that log a warning. Reads go through a
cache that is re-read from disk once ``cache_ttl`` seconds have passed.
"""
import asyncio
import datetime
import json
import logging
import re
import time
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Union

from znote_related.models.schema import (
    EmbeddingStats,
    SimilarityResult,
    StoredEmbedding,
    ensure_timezone_aware,
)
from znote_related.storage.interfaces import (
    DEFAULT_SIMILAR_LIMIT,
    DEFAULT_SIMILAR_THRESHOLD,
)
from znote_related.storage.local_embedding_store import (
    estimate_storage_size,
    rank_similar,
)

logger = logging.getLogger(__name__)

DEFAULT_CACHE_TTL = 60.0
DEFAULT_EMBEDDINGS_FOLDER = "embeddings"
SOURCE_PROVIDER = "vault-embeddings"

_UNSAFE_ID_CHARS = re.compile(r"[^a-zA-Z0-9\-_]")


def safe_file_id(note_id: str) -> str:
    """File stem used for a note's embedding document."""
    return _UNSAFE_ID_CHARS.sub("_", note_id)


def _parse_datetime(value: Any) -> Optional[datetime.datetime]:
    if not value:
        return None
    try:
        return ensure_timezone_aware(
            datetime.datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        )
    except ValueError:
        return None


class VaultEmbeddingsReader:
    """Read-only view of the shared embeddings folder."""

    def __init__(
        self,
        storage_path: Union[str, Path],
        embeddings_folder: str = DEFAULT_EMBEDDINGS_FOLDER,
        cache_ttl: float = DEFAULT_CACHE_TTL,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.storage_path = Path(storage_path)
        self.embeddings_folder = embeddings_folder
        self.cache_ttl = cache_ttl
        self._clock = clock
        self._cache: Dict[str, StoredEmbedding] = {}
        self._index: Optional[Dict[str, Any]] = None
        self._last_refresh: Optional[float] = None

    @property
    def index_path(self) -> Path:
        return self.storage_path / "index.json"

    def embedding_path(self, note_id: str) -> Path:
        return self.storage_path / self.embeddings_folder / f"{safe_file_id(note_id)}.json"

    async def initialize(self) -> None:
        await self.refresh_cache(force=True)

    async def refresh_cache(self, force: bool = False) -> None:
        """Re-read index and embedding files when the TTL has expired."""
        now = self._clock()
        if (
            not force
            and self._last_refresh is not None
            and now - self._last_refresh < self.cache_ttl
        ):
            return

        index, cache = await asyncio.to_thread(self._load_all)
        self._index = index
        self._cache = cache
        self._last_refresh = now
        if index is None:
            logger.warning(
                f"No index.json found in {self.storage_path}. "
                "Has the external indexer generated embeddings?"
            )
        else:
            logger.info(f"Loaded {len(cache)} embeddings from {self.storage_path}")

    def _load_all(self):
        index = self._load_index()
        cache: Dict[str, StoredEmbedding] = {}
        if index is None:
            return None, cache
        for note_id in (index.get("notes") or {}):
            stored = self._load_embedding(note_id)
            if stored is not None:
                cache[note_id] = stored
        return index, cache

    def _load_index(self) -> Optional[Dict[str, Any]]:
        if not self.index_path.is_file():
            return None
        try:
            with open(self.index_path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Failed to parse {self.index_path}: {e}")
            return None
        return data if isinstance(data, dict) else None

    def _load_embedding(self, note_id: str) -> Optional[StoredEmbedding]:
        path = self.embedding_path(note_id)
        if not path.is_file():
            return None
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
            created_at = _parse_datetime(data.get("createdAt"))
            return StoredEmbedding(
                note_id=data["noteId"],
                note_path=data.get("notePath", ""),
                vector=data["vector"],
                model=data.get("model", "unknown"),
                provider=data.get("provider", SOURCE_PROVIDER),
                content_hash=data.get("contentHash", ""),
                **({"created_at": created_at} if created_at else {}),
            )
        except (OSError, json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            logger.error(f"Failed to parse embedding {note_id}: {e}")
            return None

    # =========================================================================
    # Read operations
    # =========================================================================

    async def get(self, note_id: str) -> Optional[StoredEmbedding]:
        await self.refresh_cache()
        return self._cache.get(note_id)

    async def get_by_path(self, note_path: str) -> Optional[StoredEmbedding]:
        await self.refresh_cache()
        for stored in self._cache.values():
            if stored.note_path == note_path:
                return stored
        return None

    async def exists(self, note_id: str) -> bool:
        await self.refresh_cache()
        return note_id in self._cache

    async def is_stale(self, note_id: str, current_hash: str) -> bool:
        await self.refresh_cache()
        stored = self._cache.get(note_id)
        if stored is None:
            return True
        return stored.content_hash != current_hash

    async def get_all(self) -> List[StoredEmbedding]:
        await self.refresh_cache()
        return list(self._cache.values())

    async def find_similar(
        self,
        query: Sequence[float],
        limit: int = DEFAULT_SIMILAR_LIMIT,
        threshold: float = DEFAULT_SIMILAR_THRESHOLD,
        exclude_ids: Optional[Iterable[str]] = None,
    ) -> List[SimilarityResult]:
        await self.refresh_cache()
        return rank_similar(self._cache.values(), query, limit, threshold, exclude_ids)

    async def get_stats(self) -> EmbeddingStats:
        await self.refresh_cache()
        last_updated = _parse_datetime((self._index or {}).get("lastUpdated"))
        return EmbeddingStats(
            total_embeddings=len(self._cache),
            last_updated=last_updated,
            storage_size=estimate_storage_size(self._cache.values()),
        )

    def is_available(self) -> bool:
        return self.index_path.is_file()

    def get_source_info(self) -> Optional[Dict[str, Any]]:
        if self._index is None:
            return None
        return {
            "model": self._index.get("model", "unknown"),
            "dimensions": self._index.get("dimensions", 0),
            "provider": SOURCE_PROVIDER,
        }

    # =========================================================================
    # Write operations (no-op)
    # =========================================================================

    def _read_only(self, operation: str) -> None:
        logger.warning(
            f"{operation}() ignored: vault embeddings are read-only. "
            "Use the external indexer to manage them."
        )

    async def save(self, embedding: StoredEmbedding) -> None:
        self._read_only("save")

    async def save_batch(self, embeddings: Sequence[StoredEmbedding]) -> None:
        self._read_only("save_batch")

    async def delete(self, note_id: str) -> None:
        self._read_only("delete")

    async def clear(self) -> None:
        self._read_only("clear")

    async def flush(self) -> None:
        pass
