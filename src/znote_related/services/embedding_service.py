"""Service bridging the embedding provider and the embedding store.

Content hashes decide what needs (re)embedding, so unchanged notes never
cost a provider call.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from znote_related.exceptions import EmbeddingError, ErrorCode, ProviderNotConfiguredError
from znote_related.models.schema import (
    EmbedAllResult,
    SimilarityResult,
    StoredEmbedding,
    utc_now,
)
from znote_related.observability import atimed
from znote_related.services.embedding_types import EmbeddingProvider
from znote_related.services.retry_service import (
    RetryOptions,
    SleepFn,
    process_batches,
)
from znote_related.services.text_preparation import (
    hash_content,
    prepare_text_for_embedding,
)
from znote_related.storage.interfaces import EmbeddingStore, NoteRepository

logger = logging.getLogger(__name__)

# (current, total, message)
ProgressCallback = Callable[[int, int, str], None]


@dataclass
class EmbeddingServiceConfig:
    batch_size: int = 20
    batch_delay_ms: int = 1000
    similarity_threshold: float = 0.5
    max_recommendations: int = 10


@dataclass
class _PendingNote:
    note_id: str
    note_path: str
    content: str
    content_hash: str


class EmbeddingService:
    """Generates, stores and queries note embeddings."""

    def __init__(
        self,
        provider: EmbeddingProvider,
        store: EmbeddingStore,
        notes: NoteRepository,
        service_config: Optional[EmbeddingServiceConfig] = None,
        retry_options: Optional[RetryOptions] = None,
        sleep: SleepFn = asyncio.sleep,
    ):
        self.provider = provider
        self.store = store
        self.notes = notes
        self.config = service_config or EmbeddingServiceConfig()
        self.retry_options = retry_options or RetryOptions()
        self._sleep = sleep

    def set_provider(self, provider: EmbeddingProvider) -> None:
        self.provider = provider

    def is_ready(self) -> bool:
        """True when the provider has credentials to generate embeddings."""
        return self.provider.is_configured()

    def _require_provider(self, operation: str) -> None:
        if not self.provider.is_configured():
            raise ProviderNotConfiguredError(operation)

    @atimed("embed_note")
    async def embed_note(self, note_id: str, content: str, note_path: str) -> bool:
        """Embed one note unless its stored vector is still fresh.

        Returns:
            True if a new vector was generated, False if it was up to date.

        Raises:
            ProviderNotConfiguredError: If the provider has no credentials.
            ProviderError: If the provider call fails.
        """
        self._require_provider("embed_note")

        content_hash = hash_content(content)
        if not await self.store.is_stale(note_id, content_hash):
            logger.debug(f"Embedding for {note_id} is up to date")
            return False

        response = await self.provider.generate_embedding(
            prepare_text_for_embedding(content)
        )
        await self.store.save(
            StoredEmbedding(
                note_id=note_id,
                note_path=note_path,
                vector=list(response.embedding),
                model=response.model,
                provider=self.provider.provider_name,
                created_at=utc_now(),
                content_hash=content_hash,
            )
        )
        await self.store.flush()
        logger.info(f"Embedded note {note_id} ({len(response.embedding)} dims)")
        return True

    @atimed("embed_all_notes")
    async def embed_all_notes(
        self,
        on_progress: Optional[ProgressCallback] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> EmbedAllResult:
        """Embed every note whose vector is missing or stale.

        Stale notes go to the provider in batches of ``batch_size``. A batch
        that still fails after retries counts all of its notes as errors and
        the run continues. Cancellation is honoured between batches.

        Raises:
            ProviderNotConfiguredError: If the provider has no credentials.
        """
        self._require_provider("embed_all_notes")

        notes = await self.notes.find_all()
        total = len(notes)
        skipped = 0
        pending: List[_PendingNote] = []

        for note in notes:
            if not note.content:
                skipped += 1
                continue
            content_hash = hash_content(note.content)
            if await self.store.is_stale(note.id, content_hash):
                pending.append(
                    _PendingNote(note.id, note.file_path, note.content, content_hash)
                )
            else:
                skipped += 1

        if not pending:
            logger.info(f"All {total} notes are up to date")
            return EmbedAllResult(total=total, skipped=skipped)

        async def embed_batch(batch: List[_PendingNote]) -> List[StoredEmbedding]:
            response = await self.provider.generate_embeddings(
                [prepare_text_for_embedding(item.content) for item in batch]
            )
            if len(response.embeddings) != len(batch):
                raise EmbeddingError(
                    f"Provider returned {len(response.embeddings)} vectors "
                    f"for {len(batch)} texts",
                    code=ErrorCode.EMBEDDING_BATCH_FAILED,
                    operation="embed_all_notes",
                )
            created_at = utc_now()
            stored = [
                StoredEmbedding(
                    note_id=item.note_id,
                    note_path=item.note_path,
                    vector=list(vector),
                    model=response.model,
                    provider=self.provider.provider_name,
                    created_at=created_at,
                    content_hash=item.content_hash,
                )
                for item, vector in zip(batch, response.embeddings)
            ]
            await self.store.save_batch(stored)
            return stored

        def report(processed: int, pending_total: int) -> None:
            if on_progress:
                on_progress(
                    skipped + processed,
                    total,
                    f"Embedded {processed} of {pending_total} notes...",
                )

        result = await process_batches(
            pending,
            embed_batch,
            batch_size=self.config.batch_size,
            batch_delay_ms=self.config.batch_delay_ms,
            retry_options=self.retry_options,
            on_progress=report,
            cancel_event=cancel_event,
            sleep=self._sleep,
        )
        await self.store.flush()

        for batch_index, error in result.errors:
            logger.error(f"Failed to embed batch [{batch_index}]: {error}")

        embedded = sum(len(batch) for batch in result.results)
        return EmbedAllResult(
            total=total,
            embedded=embedded,
            skipped=skipped,
            errors=result.failure_count,
            cancelled=result.cancelled,
        )

    async def find_similar_notes(
        self,
        note_id: str,
        limit: Optional[int] = None,
        threshold: Optional[float] = None,
    ) -> List[SimilarityResult]:
        """Notes whose vectors are closest to ``note_id``'s stored vector.

        A note without a stored vector has no neighbours: returns [].
        """
        stored = await self.store.get(note_id)
        if stored is None:
            return []
        return await self.store.find_similar(
            stored.vector,
            limit=limit if limit is not None else self.config.max_recommendations,
            threshold=(
                threshold if threshold is not None else self.config.similarity_threshold
            ),
            exclude_ids=[note_id],
        )

    async def find_similar_to_content(
        self,
        content: str,
        limit: Optional[int] = None,
        threshold: Optional[float] = None,
        exclude_ids: Optional[List[str]] = None,
    ) -> List[SimilarityResult]:
        """Embed ad-hoc text (without storing it) and scan the store."""
        self._require_provider("find_similar_to_content")
        response = await self.provider.generate_embedding(
            prepare_text_for_embedding(content)
        )
        return await self.store.find_similar(
            response.embedding,
            limit=limit if limit is not None else self.config.max_recommendations,
            threshold=(
                threshold if threshold is not None else self.config.similarity_threshold
            ),
            exclude_ids=exclude_ids,
        )

    async def delete_embedding(self, note_id: str) -> None:
        await self.store.delete(note_id)
        await self.store.flush()

    async def clear_all_embeddings(self) -> None:
        await self.store.clear()
        await self.store.flush()
        logger.info("Cleared all embeddings")

    async def get_stats(self) -> Dict[str, Any]:
        """Store statistics plus the active provider and model."""
        stats = await self.store.get_stats()
        return {
            "total_embeddings": stats.total_embeddings,
            "last_updated": stats.last_updated,
            "storage_size": stats.storage_size,
            "provider": self.provider.provider_name,
            "model": self.provider.get_default_model(),
        }
