"""Custom exceptions for related-note recommendations.

Provides a structured exception hierarchy with error codes and
machine-readable error information, plus the provider error taxonomy
used by the retry engine to decide whether a failed call is worth
repeating.
"""
import re
from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(Enum):
    """Error codes for machine-readable error identification."""

    # Note errors (1xxx)
    NOTE_NOT_FOUND = 1001

    # Storage errors (4xxx)
    STORAGE_READ_FAILED = 4001
    STORAGE_WRITE_FAILED = 4002

    # Validation errors (7xxx)
    VALIDATION_FAILED = 7001
    DIMENSION_MISMATCH = 7002

    # Embedding errors (8xxx)
    EMBEDDING_FAILED = 8002
    EMBEDDING_BATCH_FAILED = 8003

    # Provider errors (9xxx)
    PROVIDER_NOT_CONFIGURED = 9001
    PROVIDER_RATE_LIMIT = 9002
    PROVIDER_AUTH_FAILED = 9003
    PROVIDER_TIMEOUT = 9004
    PROVIDER_UNAVAILABLE = 9005
    PROVIDER_INVALID_REQUEST = 9006
    PROVIDER_UNKNOWN = 9007


class RelatedNotesError(Exception):
    """Base exception for all related-notes errors.

    Attributes:
        message: Human-readable error message
        code: Machine-readable error code
        details: Additional context about the error
    """

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.VALIDATION_FAILED,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to a dictionary for serialization."""
        return {
            "error": self.__class__.__name__,
            "code": self.code.value,
            "code_name": self.code.name,
            "message": self.message,
            "details": self.details,
        }

    def __str__(self) -> str:
        if self.details:
            detail_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"[{self.code.name}] {self.message} ({detail_str})"
        return f"[{self.code.name}] {self.message}"


class DimensionMismatchError(RelatedNotesError):
    """Raised when two vectors of different length are compared."""

    def __init__(self, left: int, right: int):
        super().__init__(
            f"Vector dimensions must match: {left} vs {right}",
            code=ErrorCode.DIMENSION_MISMATCH,
            details={"left": left, "right": right},
        )
        self.left = left
        self.right = right


class StorageError(RelatedNotesError):
    """Raised for storage/persistence errors."""

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        path: Optional[str] = None,
        code: ErrorCode = ErrorCode.STORAGE_READ_FAILED,
        original_error: Optional[Exception] = None,
    ):
        details = {}
        if operation:
            details["operation"] = operation
        if path:
            # Don't expose full paths in error messages
            details["path_hint"] = path.split("/")[-1] if "/" in path else path
        if original_error:
            details["original_error"] = str(original_error)[:200]

        super().__init__(message, code=code, details=details)
        self.operation = operation
        self.path = path
        self.original_error = original_error


class EmbeddingError(RelatedNotesError):
    """Raised when embedding generation or lookup fails."""

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.EMBEDDING_FAILED,
        operation: Optional[str] = None,
        note_id: Optional[str] = None,
        original_error: Optional[Exception] = None,
    ):
        details = {}
        if operation:
            details["operation"] = operation
        if note_id:
            details["note_id"] = note_id
        if original_error:
            details["original_error"] = str(original_error)[:200]

        super().__init__(message, code=code, details=details)
        self.operation = operation
        self.note_id = note_id
        self.original_error = original_error


class ProviderNotConfiguredError(EmbeddingError):
    """Raised when an operation needs a provider and none is configured."""

    def __init__(self, operation: Optional[str] = None):
        super().__init__(
            "LLM provider is not configured. Set an API key for the provider.",
            code=ErrorCode.PROVIDER_NOT_CONFIGURED,
            operation=operation,
        )


# =============================================================================
# Provider error taxonomy
# =============================================================================


class ProviderError(RelatedNotesError):
    """Normalized failure of an embedding / completion provider call.

    Attributes:
        retryable: Whether repeating the same call may succeed.
        status_code: HTTP status reported by the transport, if any.
    """

    default_message = "Provider request failed"
    default_code = ErrorCode.PROVIDER_UNKNOWN
    retryable_by_default = False

    def __init__(
        self,
        message: Optional[str] = None,
        code: Optional[ErrorCode] = None,
        retryable: Optional[bool] = None,
        status_code: Optional[int] = None,
    ):
        details: Dict[str, Any] = {}
        if status_code is not None:
            details["status_code"] = status_code
        super().__init__(
            message or self.default_message,
            code=code or self.default_code,
            details=details,
        )
        self.retryable = (
            self.retryable_by_default if retryable is None else retryable
        )
        self.status_code = status_code


class RateLimitError(ProviderError):
    """Rate limit exceeded. Retry with backoff, honouring retry-after."""

    default_message = "Rate limit exceeded"
    default_code = ErrorCode.PROVIDER_RATE_LIMIT
    retryable_by_default = True

    def __init__(
        self,
        message: Optional[str] = None,
        retry_after_ms: Optional[int] = None,
        status_code: Optional[int] = 429,
    ):
        super().__init__(message, status_code=status_code)
        self.retry_after_ms = retry_after_ms
        if retry_after_ms is not None:
            self.details["retry_after_ms"] = retry_after_ms


class AuthenticationError(ProviderError):
    """Invalid API key or unauthorized access. Never retried."""

    default_message = "Invalid API key or unauthorized access"
    default_code = ErrorCode.PROVIDER_AUTH_FAILED


class ProviderTimeoutError(ProviderError):
    """Request timed out."""

    default_message = "Request timed out"
    default_code = ErrorCode.PROVIDER_TIMEOUT
    retryable_by_default = True


class ServiceUnavailableError(ProviderError):
    """Service temporarily unavailable (5xx)."""

    default_message = "Service temporarily unavailable"
    default_code = ErrorCode.PROVIDER_UNAVAILABLE
    retryable_by_default = True


class InvalidRequestError(ProviderError):
    """Malformed request. Never retried."""

    default_message = "Invalid request"
    default_code = ErrorCode.PROVIDER_INVALID_REQUEST


_RETRY_AFTER_PATTERN = re.compile(r"retry.?after[:\s]+(\d+)", re.IGNORECASE)


def normalize_error(
    error: BaseException, status_code: Optional[int] = None
) -> ProviderError:
    """Map a raw transport exception onto the provider error taxonomy.

    The status code wins when given; otherwise the message is inspected.
    Retry-after hints in the message ("retry after 20") are read as seconds.

    Args:
        error: The exception raised by the transport or SDK.
        status_code: HTTP status code, when the caller knows it.

    Returns:
        A ProviderError subclass carrying the ``retryable`` flag.
    """
    if isinstance(error, ProviderError):
        return error

    message = str(error) or error.__class__.__name__
    lower = message.lower()

    if status_code is not None:
        if status_code == 429:
            match = _RETRY_AFTER_PATTERN.search(message)
            retry_after_ms = int(match.group(1)) * 1000 if match else None
            return RateLimitError(message, retry_after_ms=retry_after_ms)
        if status_code in (401, 403):
            return AuthenticationError(message, status_code=status_code)
        if 500 <= status_code < 600:
            return ServiceUnavailableError(message, status_code=status_code)
        if status_code == 400:
            return InvalidRequestError(message, status_code=status_code)

    if "rate" in lower or "429" in lower or "too many" in lower:
        match = _RETRY_AFTER_PATTERN.search(message)
        retry_after_ms = int(match.group(1)) * 1000 if match else None
        return RateLimitError(message, retry_after_ms=retry_after_ms)
    if (
        "401" in lower
        or "403" in lower
        or "unauthorized" in lower
        or "invalid api key" in lower
    ):
        return AuthenticationError(message)
    if "timeout" in lower or "etimedout" in lower or "timed out" in lower:
        return ProviderTimeoutError(message)
    if "503" in lower or "unavailable" in lower:
        return ServiceUnavailableError(message)

    return ProviderError(message, status_code=status_code)
