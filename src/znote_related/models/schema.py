"""Data models for related-note recommendations."""

import datetime
import re
from dataclasses import dataclass
from datetime import timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from pydantic import BaseModel, Field, field_validator

from znote_related.models.embedding import Embedding

# Canonical note identifier: YYYYMMDDHHMM
NOTE_ID_PATTERN = re.compile(r"^(\d{4})(\d{2})(\d{2})(\d{2})(\d{2})$")
# Leading identifier in a vault file name ("201001010000 Ethics.md")
NOTE_ID_PREFIX_PATTERN = re.compile(r"^(\d{12})(?!\d)")

MAX_REASON_LENGTH = 300


def utc_now() -> datetime.datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.datetime.now(timezone.utc)


def ensure_timezone_aware(dt_value: datetime.datetime) -> datetime.datetime:
    """Treat naive datetimes as UTC."""
    if dt_value.tzinfo is None:
        return dt_value.replace(tzinfo=timezone.utc)
    return dt_value


def validate_note_id(value: str) -> str:
    """Validate a 12-digit YYYYMMDDHHMM note identifier.

    Args:
        value: The candidate identifier

    Returns:
        The identifier (unchanged)

    Raises:
        ValueError: If the value is not 12 digits or a field is out of range
    """
    if not value:
        raise ValueError("Note ID cannot be empty")
    match = NOTE_ID_PATTERN.match(value)
    if not match:
        raise ValueError(f"Note ID must be 12 digits (YYYYMMDDHHMM), got '{value}'")

    year, month, day, hour, minute = (int(part) for part in match.groups())
    if not 1900 <= year <= 2100:
        raise ValueError(f"Note ID year out of range: {year}")
    if not 1 <= month <= 12:
        raise ValueError(f"Note ID month out of range: {month}")
    if not 1 <= day <= 31:
        raise ValueError(f"Note ID day out of range: {day}")
    if not 0 <= hour <= 23:
        raise ValueError(f"Note ID hour out of range: {hour}")
    if not 0 <= minute <= 59:
        raise ValueError(f"Note ID minute out of range: {minute}")
    return value


def is_valid_note_id(value: str) -> bool:
    try:
        validate_note_id(value)
    except ValueError:
        return False
    return True


def note_id_from_filename(filename: str) -> Optional[str]:
    """Derive the note id from the leading 12 digits of a file name.

    Returns None when the name carries no valid identifier prefix.
    """
    match = NOTE_ID_PREFIX_PATTERN.match(filename)
    if not match or not is_valid_note_id(match.group(1)):
        return None
    return match.group(1)


def normalize_tag(tag: str) -> str:
    return tag.strip().lstrip("#").strip().lower()


def normalize_tags(tags: Iterable[str]) -> List[str]:
    """Trim, lower-case and strip leading '#', dropping empties and duplicates.

    Order of first occurrence is preserved, so the function is idempotent.
    """
    seen = set()
    result = []
    for tag in tags:
        normalized = normalize_tag(tag)
        if normalized and normalized not in seen:
            seen.add(normalized)
            result.append(normalized)
    return result


class Note(BaseModel):
    """A vault note, projected on demand from the host's file index."""

    id: str = Field(..., description="12-digit YYYYMMDDHHMM identifier")
    title: str = Field(..., description="Title of the note")
    file_path: str = Field(..., description="Vault-relative path of the note file")
    content: Optional[str] = Field(default=None, description="Raw markdown content")
    tags: List[str] = Field(default_factory=list, description="Normalized tags")
    created_at: Optional[datetime.datetime] = Field(default=None)
    updated_at: Optional[datetime.datetime] = Field(default=None)

    model_config = {"extra": "forbid", "frozen": True}

    @field_validator("id")
    @classmethod
    def validate_id(cls, v: str) -> str:
        return validate_note_id(v)

    @field_validator("title", "file_path")
    @classmethod
    def validate_not_empty(cls, v: str, info) -> str:
        if not v.strip():
            raise ValueError(f"{info.field_name} cannot be empty")
        return v

    @field_validator("tags", mode="before")
    @classmethod
    def validate_tags(cls, v: Any) -> List[str]:
        if v is None:
            return []
        return normalize_tags(v)

    def has_tag(self, tag: str) -> bool:
        return normalize_tag(tag) in self.tags

    def matched_tags(self, other_tags: Iterable[str]) -> List[str]:
        """Tags of this note that also appear in ``other_tags`` (in this note's order)."""
        other = set(normalize_tags(other_tags))
        return [tag for tag in self.tags if tag in other]


class StoredEmbedding(BaseModel):
    """Persisted form of a note's vector, keyed by note id.

    Replaced wholesale when the note changes; ``content_hash`` records the
    exact content the vector was generated from.
    """

    note_id: str
    note_path: str
    vector: List[float]
    model: str
    provider: str
    created_at: datetime.datetime = Field(default_factory=utc_now)
    content_hash: str

    model_config = {"frozen": True}

    @field_validator("vector")
    @classmethod
    def validate_vector(cls, v: List[float]) -> List[float]:
        if not v:
            raise ValueError("Stored vector cannot be empty")
        return v

    @property
    def embedding(self) -> Embedding:
        return Embedding(self.vector)

    @property
    def dimensions(self) -> int:
        return len(self.vector)

    def to_record(self) -> Dict[str, Any]:
        """JSON-ready record in the on-disk (camelCase) layout."""
        return {
            "noteId": self.note_id,
            "notePath": self.note_path,
            "embedding": list(self.vector),
            "model": self.model,
            "provider": self.provider,
            "createdAt": self.created_at.isoformat(),
            "contentHash": self.content_hash,
        }

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "StoredEmbedding":
        created_at = record.get("createdAt")
        return cls(
            note_id=record["noteId"],
            note_path=record.get("notePath", ""),
            vector=record.get("embedding") or record.get("vector") or [],
            model=record.get("model", "unknown"),
            provider=record.get("provider", "unknown"),
            created_at=(
                ensure_timezone_aware(datetime.datetime.fromisoformat(created_at))
                if created_at
                else utc_now()
            ),
            content_hash=record.get("contentHash", ""),
        )


class SimilarityResult(BaseModel):
    """One hit of a similarity scan."""

    note_id: str
    note_path: str
    similarity: float

    model_config = {"frozen": True}


class RecommendationItem(BaseModel):
    """A candidate note in one recommendation request.

    Scores are validated on every assignment; reasons only ever grow.
    """

    note_id: str
    title: str
    file_path: str
    score: float = Field(..., ge=0.0, le=1.0)
    reasons: List[str] = Field(default_factory=list)
    matched_tags: Optional[List[str]] = None

    model_config = {"validate_assignment": True}

    def has_reason(self, prefix: str) -> bool:
        return any(reason.startswith(prefix) for reason in self.reasons)

    def add_reason(self, reason: str, prefix: Optional[str] = None) -> None:
        """Append ``reason`` unless one of the same kind is already present."""
        if not self.has_reason(prefix or reason):
            self.reasons.append(reason)


class RecommendNotesRequest(BaseModel):
    """Input of one recommendation request."""

    note_id: str
    max_results: int = Field(default=10, ge=1)
    use_graph_connections: bool = False
    use_semantic_similarity: bool = False
    semantic_threshold: float = Field(default=0.5, ge=0.0, le=1.0)
    min_score: float = Field(default=0.0, ge=0.0, le=1.0)


class RecommendNotesResponse(BaseModel):
    """Typed outcome of a recommendation request.

    A missing source note is a failed response, not an exception.
    """

    success: bool
    recommendations: List[RecommendationItem] = Field(default_factory=list)
    source_note_id: str
    error: Optional[str] = None
    error_code: Optional[str] = None

    @classmethod
    def ok(
        cls, source_note_id: str, recommendations: List[RecommendationItem]
    ) -> "RecommendNotesResponse":
        return cls(
            success=True,
            recommendations=recommendations,
            source_note_id=source_note_id,
        )

    @classmethod
    def failure(
        cls, source_note_id: str, error: str, error_code: str
    ) -> "RecommendNotesResponse":
        return cls(
            success=False,
            source_note_id=source_note_id,
            error=error,
            error_code=error_code,
        )


class ConnectionLabel(str, Enum):
    """How a target note relates to a source note."""

    BROADER_CONTEXT = "broader_context"  # Target provides the larger framework
    SUPPLEMENTARY = "supplementary"  # Target supplements or extends the source
    APPLICATION = "application"  # Target shows a practical application
    CRITICAL_VIEW = "critical_view"  # Target argues against the source
    INTUITIVE_LINK = "intuitive_link"  # Deep structural similarity

    @property
    def display_name(self) -> str:
        return self.value.replace("_", " ").capitalize()

    @classmethod
    def parse(cls, value: Any) -> Optional["ConnectionLabel"]:
        """Map free-form label text ("Broader context") onto a label, or None."""
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            key = re.sub(r"[\s\-]+", "_", value.strip().lower())
            for label in cls:
                if label.value == key:
                    return label
        return None

    @classmethod
    def coerce(cls, value: Any) -> "ConnectionLabel":
        """Like parse(), falling back to the default label."""
        return cls.parse(value) or DEFAULT_CONNECTION_LABEL


DEFAULT_CONNECTION_LABEL = ConnectionLabel.INTUITIVE_LINK
DEFAULT_CONNECTION_REASON = "Connected through a related topic"


class ConnectionClassification(BaseModel):
    """Label plus a short reason explaining a recommended connection."""

    label: ConnectionLabel
    reason: str

    model_config = {"frozen": True}

    @field_validator("reason")
    @classmethod
    def validate_reason(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Reason is required and cannot be empty")
        if len(v) > MAX_REASON_LENGTH:
            raise ValueError(f"Reason must be {MAX_REASON_LENGTH} characters or less")
        return v

    @classmethod
    def default(cls, reason: Optional[str] = None) -> "ConnectionClassification":
        reason = (reason or "").strip()
        return cls(label=DEFAULT_CONNECTION_LABEL, reason=reason or DEFAULT_CONNECTION_REASON)

    def to_markdown(self) -> str:
        return f"• {self.label.display_name}: {self.reason}"

    def to_connection_line(self, note_id: str, title: str) -> str:
        """Render as a bullet line linking to the target note."""
        return f"- [[{note_id} {title}]] {self.to_markdown()}"


class GraphNode(BaseModel):
    """A node of the knowledge graph."""

    id: str
    label: str
    title: Optional[str] = None
    note_path: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    degree: int = 0

    model_config = {"frozen": True}


class GraphEdge(BaseModel):
    """A directed edge between two graph nodes."""

    source: str
    target: str
    weight: Optional[float] = None

    model_config = {"frozen": True}


class GraphStats(BaseModel):
    node_count: int = 0
    edge_count: int = 0
    average_degree: float = 0.0
    max_degree: int = 0
    generated_at: datetime.datetime = Field(default_factory=utc_now)


class EmbeddingStats(BaseModel):
    """Summary of an embedding store."""

    total_embeddings: int
    last_updated: Optional[datetime.datetime] = None
    storage_size: int = Field(default=0, description="Estimated size in bytes")


@dataclass
class EmbedAllResult:
    """Counts from one embed-all-notes run.

    Attributes:
        total: Notes considered.
        embedded: Notes whose vector was (re)generated.
        skipped: Notes already fresh or without content.
        errors: Notes in batches that failed after retries.
        cancelled: Whether the run stopped at a batch boundary.
    """

    total: int = 0
    embedded: int = 0
    skipped: int = 0
    errors: int = 0
    cancelled: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "embedded": self.embedded,
            "skipped": self.skipped,
            "errors": self.errors,
            "cancelled": self.cancelled,
        }
