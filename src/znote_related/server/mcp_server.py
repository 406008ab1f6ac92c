"""MCP server exposing related-note recommendations."""

import atexit
import datetime
import logging
import uuid
from typing import Any, Dict, List, Optional, Union

from mcp.server.fastmcp import FastMCP

from znote_related.config import RelatedNotesConfig, config
from znote_related.exceptions import ErrorCode, RelatedNotesError
from znote_related.models.schema import Note, RecommendationItem, RecommendNotesRequest
from znote_related.observability import timed_operation
from znote_related.providers.litellm_provider import LiteLLMProvider
from znote_related.services.connection_reason_service import ConnectionReasonService
from znote_related.services.embedding_service import (
    EmbeddingService,
    EmbeddingServiceConfig,
)
from znote_related.services.embedding_types import EmbeddingProvider
from znote_related.services.recommendation_service import RecommendationService
from znote_related.services.vault_embedding_service import VaultEmbeddingService
from znote_related.storage.graph_repository import (
    NullGraphRepository,
    WikiLinkGraphRepository,
)
from znote_related.storage.interfaces import (
    EmbeddingStore,
    GraphRepository,
    Initializable,
    NoteRepository,
    Reloadable,
)
from znote_related.storage.local_embedding_store import LocalEmbeddingStore
from znote_related.storage.markdown_parser import MarkdownParser
from znote_related.storage.note_repository import VaultNoteRepository
from znote_related.storage.vault_embeddings_reader import VaultEmbeddingsReader

logger = logging.getLogger(__name__)

MAX_IDENTIFIER_LENGTH = 1000


def _validate_identifier(identifier: str) -> str:
    """Validate a note id or path at the MCP boundary."""
    identifier = (identifier or "").strip()
    if not identifier:
        raise ValueError("A note id or path is required")
    if len(identifier) > MAX_IDENTIFIER_LENGTH:
        raise ValueError(
            f"Identifier exceeds maximum length of {MAX_IDENTIFIER_LENGTH} characters"
        )
    return identifier


def _format_timestamp(value: Optional[datetime.datetime]) -> str:
    return value.isoformat(timespec="seconds") if value else "never"


class RelatedNotesMcpServer:
    """MCP server for related-note recommendations.

    Collaborators default to the ones selected by ``settings``; tests and
    embedders can pass their own.
    """

    def __init__(
        self,
        settings: Optional[RelatedNotesConfig] = None,
        notes: Optional[NoteRepository] = None,
        provider: Optional[EmbeddingProvider] = None,
        store: Optional[EmbeddingStore] = None,
        graph: Optional[GraphRepository] = None,
    ):
        self.settings = settings or config
        self.mcp = FastMCP(self.settings.server_name, version=self.settings.server_version)

        parser = MarkdownParser()
        self.notes = notes or VaultNoteRepository(
            self.settings.get_absolute_path(self.settings.vault_dir), parser
        )
        self.provider = provider or LiteLLMProvider(
            embedding_model=self.settings.embedding_model,
            completion_model=self.settings.completion_model,
        )
        self.graph = graph or self._create_graph_repository(parser)
        retry_options = self.settings.retry_options()

        # Exactly one of the two embedding services is active
        self.embedding_service: Optional[EmbeddingService] = None
        self.vault_embedding_service: Optional[VaultEmbeddingService] = None
        if self.settings.embedding_source == "vault":
            self.store = store or VaultEmbeddingsReader(
                self.settings.get_absolute_path(self.settings.vault_embeddings_dir),
                cache_ttl=self.settings.vault_embeddings_cache_ttl,
            )
            self.vault_embedding_service = VaultEmbeddingService(
                self.store,
                similarity_threshold=self.settings.similarity_threshold,
                max_recommendations=self.settings.max_recommendations,
            )
        else:
            self.store = store or LocalEmbeddingStore(
                self.settings.get_absolute_path(self.settings.embeddings_path)
            )
            self.embedding_service = EmbeddingService(
                self.provider,
                self.store,
                self.notes,
                EmbeddingServiceConfig(
                    batch_size=self.settings.embedding_batch_size,
                    batch_delay_ms=self.settings.embedding_batch_delay_ms,
                    similarity_threshold=self.settings.similarity_threshold,
                    max_recommendations=self.settings.max_recommendations,
                ),
                retry_options=retry_options,
            )

        self.recommendation_service = RecommendationService(
            self.notes,
            graph=self.graph,
            embeddings=self.embedding_service or self.vault_embedding_service,
        )
        self.connection_reasons = ConnectionReasonService(
            provider=self.provider,
            ttl=datetime.timedelta(days=self.settings.connection_reason_ttl_days),
            retry_options=retry_options,
        )
        self._initialized = False
        self.initialize()
        # Register shutdown hook for resource cleanup
        atexit.register(self._shutdown)
        self._register_tools()

    def _create_graph_repository(self, parser: MarkdownParser) -> GraphRepository:
        if self.settings.graph_source == "wikilinks":
            return WikiLinkGraphRepository(self.notes, parser)
        return NullGraphRepository()

    def initialize(self) -> None:
        """Restore the persisted connection-reason cache."""
        loaded = self.connection_reasons.load_cache(self._reasons_path())
        logger.info(
            f"Related-notes MCP server initialized "
            f"(embeddings={self.settings.embedding_source}, "
            f"graph={self.settings.graph_source}, cached reasons={loaded})"
        )

    def _reasons_path(self):
        return self.settings.get_absolute_path(self.settings.connection_reasons_path)

    async def _ensure_store_loaded(self) -> None:
        if self._initialized:
            return
        if isinstance(self.store, Initializable):
            await self.store.initialize()
        self._initialized = True

    def _shutdown(self) -> None:
        """Persist the connection-reason cache on exit."""
        try:
            self.connection_reasons.save_cache(self._reasons_path())
        except OSError as e:
            logger.warning(f"Failed to save connection reasons on shutdown: {e}")

    def format_error_response(self, error: Exception) -> str:
        """Format an error response in a consistent way.

        Args:
            error: The exception that occurred

        Returns:
            Formatted error message with appropriate level of detail
        """
        # Unique id ties the user-facing message to the log entry
        error_id = str(uuid.uuid4())[:8]

        if isinstance(error, RelatedNotesError):
            logger.error(
                f"[{error.code.name}] [{error_id}]: {error.message}",
                extra={"error_details": error.details},
            )
            return f"Error: {error.message}"
        elif isinstance(error, ValueError):
            logger.error(f"Validation error [{error_id}]: {str(error)}")
            return f"Error: Invalid input (ref: {error_id})"
        elif isinstance(error, OSError):
            logger.error(f"File system error [{error_id}]: {str(error)}", exc_info=True)
            return f"Error: A file system error occurred (ref: {error_id})"
        else:
            logger.error(f"Unexpected error [{error_id}]: {str(error)}", exc_info=True)
            return f"Error: An unexpected error occurred (ref: {error_id})"

    async def _resolve_note(self, identifier: str) -> Optional[Note]:
        """Look a note up by id first, then by vault-relative path."""
        note = await self.notes.find_by_id(identifier)
        if note is None:
            note = await self.notes.find_by_path(identifier)
        return note

    def _recommend_options(
        self,
        max_results: Optional[int],
        use_graph_connections: Optional[bool],
        use_semantic_similarity: Optional[bool],
        min_score: Optional[float],
    ) -> Dict[str, Any]:
        return {
            "max_results": max_results or self.settings.max_recommendations,
            "use_graph_connections": (
                self.settings.use_graph_connections
                if use_graph_connections is None
                else use_graph_connections
            ),
            "use_semantic_similarity": (
                self.settings.use_semantic_similarity
                if use_semantic_similarity is None
                else use_semantic_similarity
            ),
            "semantic_threshold": self.settings.similarity_threshold,
            "min_score": self.settings.min_score if min_score is None else min_score,
        }

    async def _show_recommendations(
        self, identifier: str, options: Dict[str, Any], explain: bool
    ) -> str:
        await self._ensure_store_loaded()
        source = await self._resolve_note(identifier)
        if source is None:
            return f"Note not found: {identifier}"

        response = await self.recommendation_service.recommend(
            RecommendNotesRequest(note_id=source.id, **options)
        )
        if not response.success:
            return f"Error: {response.error} ({response.error_code})"
        if not response.recommendations:
            return f"No related notes found for {source.title}"

        lines = [f"# Related notes for {source.title} ({source.id})", ""]
        for i, item in enumerate(response.recommendations, 1):
            lines.append(f"{i}. {item.title} ({item.note_id}) score {item.score:.2f}")
            lines.extend(f"   - {reason}" for reason in item.reasons)
            if explain and self.connection_reasons.is_ready():
                lines.append(f"   {await self._explain(source, item)}")
        return "\n".join(lines)

    async def _explain(self, source: Note, item: Union[RecommendationItem, Note]) -> str:
        target_id = item.note_id if isinstance(item, RecommendationItem) else item.id
        target = await self.notes.find_by_id(target_id)
        classification = await self.connection_reasons.generate_connection_reason(
            source.id,
            source.title,
            source.content or "",
            target_id,
            target.title if target else item.title,
            (target.content or "") if target else "",
        )
        return classification.to_markdown()

    def _register_tools(self) -> None:
        """Register MCP tools."""

        @self.mcp.tool(name="show_recommendations")
        async def show_recommendations(
            note: str,
            max_results: Optional[int] = None,
            use_graph_connections: Optional[bool] = None,
            use_semantic_similarity: Optional[bool] = None,
            min_score: Optional[float] = None,
            explain: bool = False,
        ) -> str:
            """Show notes related to a note.
            Args:
                note: Note id (YYYYMMDDHHMM) or vault-relative path of the current note
                max_results: Maximum number of recommendations (defaults to config)
                use_graph_connections: Include notes linked in the knowledge graph
                use_semantic_similarity: Include semantically similar notes
                min_score: Drop recommendations scoring below this value (0-1)
                explain: Add an LLM-generated connection label and reason per item
            """
            with timed_operation("show_recommendations", note=note[:30]) as op:
                try:
                    identifier = _validate_identifier(note)
                    options = self._recommend_options(
                        max_results, use_graph_connections, use_semantic_similarity, min_score
                    )
                    result = await self._show_recommendations(identifier, options, explain)
                    op["explain"] = explain
                    return result
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="refresh_recommendations")
        async def refresh_recommendations(note: str) -> str:
            """Re-read the vault, graph and embeddings, then show recommendations.
            Args:
                note: Note id (YYYYMMDDHHMM) or vault-relative path of the current note
            """
            with timed_operation("refresh_recommendations", note=note[:30]):
                try:
                    identifier = _validate_identifier(note)
                    if isinstance(self.notes, Reloadable):
                        await self.notes.reload()
                    if isinstance(self.graph, Reloadable):
                        await self.graph.reload()
                    if self.vault_embedding_service is not None:
                        await self.vault_embedding_service.refresh()
                    options = self._recommend_options(None, None, None, None)
                    return await self._show_recommendations(identifier, options, False)
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="generate_embeddings_for_all_notes")
        async def generate_embeddings_for_all_notes() -> str:
            """Generate embeddings for every note whose embedding is missing or outdated."""
            with timed_operation("generate_embeddings_for_all_notes") as op:
                try:
                    if self.embedding_service is None:
                        return (
                            "Embeddings are read from the vault index; "
                            "generate them with the external indexer."
                        )
                    await self._ensure_store_loaded()

                    def log_progress(current: int, total: int, message: str) -> None:
                        logger.info(f"[{current}/{total}] {message}")

                    result = await self.embedding_service.embed_all_notes(
                        on_progress=log_progress
                    )
                    op.update(result.to_dict())
                    summary = (
                        f"Embedded {result.embedded} of {result.total} notes "
                        f"({result.skipped} up to date or empty"
                    )
                    if result.errors:
                        summary += f", {result.errors} failed"
                    return summary + ")"
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="generate_embedding_for_current_note")
        async def generate_embedding_for_current_note(note: str) -> str:
            """Generate (or refresh) the embedding of one note.
            Args:
                note: Note id (YYYYMMDDHHMM) or vault-relative path of the current note
            """
            with timed_operation("generate_embedding_for_current_note", note=note[:30]) as op:
                try:
                    identifier = _validate_identifier(note)
                    if self.embedding_service is None:
                        return (
                            "Embeddings are read from the vault index; "
                            "generate them with the external indexer."
                        )
                    await self._ensure_store_loaded()
                    source = await self._resolve_note(identifier)
                    if source is None:
                        return f"Note not found: {identifier}"
                    if not source.content:
                        return f"Note {source.id} has no content to embed"
                    generated = await self.embedding_service.embed_note(
                        source.id, source.content, source.file_path
                    )
                    op["generated"] = generated
                    if generated:
                        return f"Embedding generated for {source.title} ({source.id})"
                    return f"Embedding for {source.title} ({source.id}) is already up to date"
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="clear_all_embeddings")
        async def clear_all_embeddings() -> str:
            """Delete every locally stored embedding."""
            with timed_operation("clear_all_embeddings"):
                try:
                    if self.embedding_service is None:
                        return "The vault embedding index is read-only; nothing was cleared."
                    await self._ensure_store_loaded()
                    await self.embedding_service.clear_all_embeddings()
                    return "All embeddings cleared"
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="show_embedding_statistics")
        async def show_embedding_statistics() -> str:
            """Show how many embeddings exist and where they come from."""
            with timed_operation("show_embedding_statistics"):
                try:
                    await self._ensure_store_loaded()
                    service = self.embedding_service or self.vault_embedding_service
                    stats = await service.get_stats()
                    lines: List[str] = [
                        "# Embedding statistics",
                        f"Source: {self.settings.embedding_source}",
                        f"Provider: {stats['provider']}",
                        f"Model: {stats['model']}",
                        f"Embeddings: {stats['total_embeddings']}",
                        f"Last updated: {_format_timestamp(stats['last_updated'])}",
                        f"Storage size: {stats['storage_size'] / 1024:.1f} KB",
                    ]
                    reasons = self.connection_reasons.get_cache_stats()
                    lines.append(f"Cached connection reasons: {reasons['size']}")
                    return "\n".join(lines)
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="explain_connection")
        async def explain_connection(source_note: str, target_note: str) -> str:
            """Classify how a target note relates to a source note.
            Args:
                source_note: Id or path of the note being worked on
                target_note: Id or path of the recommended note
            """
            with timed_operation("explain_connection") as op:
                try:
                    source_id = _validate_identifier(source_note)
                    target_id = _validate_identifier(target_note)
                    source = await self._resolve_note(source_id)
                    if source is None:
                        return f"Note not found: {source_id}"
                    target = await self._resolve_note(target_id)
                    if target is None:
                        return f"Note not found: {target_id}"
                    if source.id == target.id:
                        raise RelatedNotesError(
                            "Cannot explain a note's connection to itself",
                            code=ErrorCode.VALIDATION_FAILED,
                        )
                    op["cached"] = (
                        self.connection_reasons.get_cached_reason(source.id, target.id)
                        is not None
                    )
                    markdown = await self._explain(source, target)
                    return f"[[{target.id} {target.title}]] {markdown}"
                except Exception as e:
                    return self.format_error_response(e)

    def run(self) -> None:
        """Run the MCP server over stdio."""
        self.mcp.run()
