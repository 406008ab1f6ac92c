"""Configuration module for related-note recommendations."""

import logging
import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, model_validator

from znote_related import __version__

# Load environment variables from the project root .env file.
# Anchored to __file__ so it works regardless of the process CWD.
_PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
load_dotenv(_PROJECT_ROOT / ".env")

# User-level config: survives reinstalls, lives alongside the caches
_USER_ENV = Path.home() / ".znote-related" / ".env"
load_dotenv(_USER_ENV)


logger = logging.getLogger(__name__)

EMBEDDING_SOURCES = ("local", "vault")
GRAPH_SOURCES = ("none", "wikilinks")


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


class RelatedNotesConfig(BaseModel):
    """Configuration for the related-notes engine and its host server."""

    # Base directory for relative paths
    base_dir: Path = Field(
        default_factory=lambda: Path(os.getenv("ZNOTE_RELATED_BASE_DIR", "."))
    )
    # Vault of markdown notes (file names start with a YYYYMMDDHHMM id)
    vault_dir: Path = Field(
        default_factory=lambda: Path(os.getenv("ZNOTE_RELATED_VAULT_DIR", "vault"))
    )
    # Local self-managed embedding store (single JSON document)
    embeddings_path: Path = Field(
        default_factory=lambda: Path(
            os.getenv("ZNOTE_RELATED_EMBEDDINGS_PATH", "data/embeddings.json")
        )
    )
    # "local" generates embeddings itself, "vault" reads externally generated ones
    embedding_source: str = Field(
        default_factory=lambda: os.getenv("ZNOTE_RELATED_EMBEDDING_SOURCE", "local")
    )
    vault_embeddings_dir: Path = Field(
        default_factory=lambda: Path(
            os.getenv("ZNOTE_RELATED_VAULT_EMBEDDINGS_DIR", "vault/09_Embedded")
        )
    )
    vault_embeddings_cache_ttl: float = Field(
        default_factory=lambda: float(
            os.getenv("ZNOTE_RELATED_VAULT_EMBEDDINGS_CACHE_TTL", "60")
        )
    )
    # "none" selects the null graph, "wikilinks" builds edges from [[links]]
    graph_source: str = Field(
        default_factory=lambda: os.getenv("ZNOTE_RELATED_GRAPH_SOURCE", "none")
    )
    # Provider models (LiteLLM "provider/model" strings)
    embedding_model: str = Field(
        default_factory=lambda: os.getenv(
            "ZNOTE_RELATED_EMBEDDING_MODEL", "openai/text-embedding-3-small"
        )
    )
    completion_model: str = Field(
        default_factory=lambda: os.getenv(
            "ZNOTE_RELATED_COMPLETION_MODEL", "openai/gpt-4o-mini"
        )
    )
    embedding_batch_size: int = Field(
        default_factory=lambda: int(os.getenv("ZNOTE_RELATED_EMBEDDING_BATCH_SIZE", "20"))
    )
    embedding_batch_delay_ms: int = Field(
        default_factory=lambda: int(
            os.getenv("ZNOTE_RELATED_EMBEDDING_BATCH_DELAY_MS", "1000")
        )
    )
    # Recommendation defaults
    similarity_threshold: float = Field(
        default_factory=lambda: float(
            os.getenv("ZNOTE_RELATED_SIMILARITY_THRESHOLD", "0.5")
        )
    )
    max_recommendations: int = Field(
        default_factory=lambda: int(os.getenv("ZNOTE_RELATED_MAX_RECOMMENDATIONS", "10"))
    )
    min_score: float = Field(
        default_factory=lambda: float(os.getenv("ZNOTE_RELATED_MIN_SCORE", "0.0"))
    )
    use_graph_connections: bool = Field(
        default_factory=lambda: _env_bool("ZNOTE_RELATED_USE_GRAPH", "false")
    )
    use_semantic_similarity: bool = Field(
        default_factory=lambda: _env_bool("ZNOTE_RELATED_USE_SEMANTIC", "false")
    )
    # Connection reasons
    connection_reason_ttl_days: int = Field(
        default_factory=lambda: int(
            os.getenv("ZNOTE_RELATED_CONNECTION_REASON_TTL_DAYS", "7")
        )
    )
    connection_reasons_path: Path = Field(
        default_factory=lambda: Path(
            os.getenv(
                "ZNOTE_RELATED_CONNECTION_REASONS_PATH", "data/connection_reasons.json"
            )
        )
    )
    # Retry / backoff
    retry_max_retries: int = Field(
        default_factory=lambda: int(os.getenv("ZNOTE_RELATED_RETRY_MAX_RETRIES", "3"))
    )
    retry_base_delay_ms: int = Field(
        default_factory=lambda: int(
            os.getenv("ZNOTE_RELATED_RETRY_BASE_DELAY_MS", "1000")
        )
    )
    retry_max_delay_ms: int = Field(
        default_factory=lambda: int(
            os.getenv("ZNOTE_RELATED_RETRY_MAX_DELAY_MS", "30000")
        )
    )
    retry_jitter_factor: float = Field(
        default_factory=lambda: float(
            os.getenv("ZNOTE_RELATED_RETRY_JITTER_FACTOR", "0.2")
        )
    )
    # Server configuration
    server_name: str = Field(
        default=os.getenv("ZNOTE_RELATED_SERVER_NAME", "znote-related")
    )
    server_version: str = Field(default=__version__)

    @model_validator(mode="after")
    def _validate_settings(self) -> "RelatedNotesConfig":
        """Reject settings the services cannot run with."""
        if self.embedding_batch_size < 1:
            raise ValueError("embedding_batch_size must be >= 1")
        if self.embedding_batch_delay_ms < 0:
            raise ValueError("embedding_batch_delay_ms must be >= 0")
        if not 0.0 <= self.similarity_threshold <= 1.0:
            raise ValueError("similarity_threshold must be between 0 and 1")
        if not 0.0 <= self.min_score <= 1.0:
            raise ValueError("min_score must be between 0 and 1")
        if self.max_recommendations < 1:
            raise ValueError("max_recommendations must be >= 1")
        if self.retry_max_retries < 0:
            raise ValueError("retry_max_retries must be >= 0")
        if not 0.0 <= self.retry_jitter_factor <= 1.0:
            raise ValueError("retry_jitter_factor must be between 0 and 1")
        if self.embedding_source not in EMBEDDING_SOURCES:
            raise ValueError(
                f"embedding_source must be one of {', '.join(EMBEDDING_SOURCES)}"
            )
        if self.graph_source not in GRAPH_SOURCES:
            raise ValueError(
                f"graph_source must be one of {', '.join(GRAPH_SOURCES)}"
            )
        if self.vault_embeddings_cache_ttl < 0:
            logger.warning(
                "Negative vault_embeddings_cache_ttl (%s) disables caching",
                self.vault_embeddings_cache_ttl,
            )
        return self

    def get_absolute_path(self, path: Path) -> Path:
        """Convert a relative path to an absolute path based on base_dir."""
        if path.is_absolute():
            return path
        return self.base_dir / path

    def retry_options(self) -> "RetryOptions":
        """Build retry options from the retry_* settings."""
        from znote_related.services.retry_service import RetryOptions

        return RetryOptions(
            max_retries=self.retry_max_retries,
            base_delay_ms=self.retry_base_delay_ms,
            max_delay_ms=self.retry_max_delay_ms,
            jitter_factor=self.retry_jitter_factor,
        )

    def get_vault_dir(self) -> Optional[Path]:
        """Get the absolute vault directory, or None if it does not exist."""
        vault = self.get_absolute_path(self.vault_dir)
        return vault if vault.is_dir() else None


# Create a global config instance
config = RelatedNotesConfig()
