"""Type protocols for embedding and completion providers.

Defines the structural contract that both the LiteLLM adapter and test
fakes must satisfy. Uses Protocol (PEP 544) for structural subtyping,
so implementations don't need to inherit from it.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, List, Optional, Protocol, Sequence, runtime_checkable

if TYPE_CHECKING:
    from znote_related.models.schema import SimilarityResult


@dataclass(frozen=True)
class EmbeddingResponse:
    embedding: List[float]
    model: str
    token_count: int = 0


@dataclass(frozen=True)
class BatchEmbeddingResponse:
    """Vectors in the same order as the input texts."""

    embeddings: List[List[float]] = field(default_factory=list)
    model: str = ""
    total_tokens: int = 0


@dataclass(frozen=True)
class CompletionResponse:
    text: str
    model: str
    token_count: int = 0


@runtime_checkable
class EmbeddingProvider(Protocol):
    """Contract for turning text into vectors and prompts into completions."""

    @property
    def provider_name(self) -> str:
        """Short provider identifier recorded with stored embeddings."""
        ...

    def is_configured(self) -> bool:
        """Whether credentials are present. Does not touch the network."""
        ...

    def get_default_model(self) -> str:
        ...

    async def validate_api_key(self) -> bool:
        """Live round-trip check of the configured credentials."""
        ...

    async def generate_embedding(self, text: str) -> EmbeddingResponse:
        """Embed a single text.

        Raises:
            ProviderError: Normalized transport or API failure.
        """
        ...

    async def generate_embeddings(self, texts: Sequence[str]) -> BatchEmbeddingResponse:
        """Embed several texts in one call, preserving input order.

        Raises:
            ProviderError: Normalized transport or API failure.
        """
        ...

    async def generate_completion(
        self, prompt: str, max_tokens: int = 200, temperature: float = 0.3
    ) -> CompletionResponse:
        """Complete a prompt.

        Raises:
            ProviderError: Normalized transport or API failure.
        """
        ...


@runtime_checkable
class SimilarNotesFinder(Protocol):
    """Semantic lookup consumed by the recommendation engine.

    Satisfied by both EmbeddingService and VaultEmbeddingService.
    """

    def is_ready(self) -> bool:
        ...

    async def find_similar_notes(
        self,
        note_id: str,
        limit: Optional[int] = None,
        threshold: Optional[float] = None,
    ) -> List["SimilarityResult"]:
        ...
