"""Tests for the error hierarchy and provider error normalization."""
import pytest

from znote_related.exceptions import (
    AuthenticationError,
    ErrorCode,
    InvalidRequestError,
    ProviderError,
    ProviderNotConfiguredError,
    ProviderTimeoutError,
    RateLimitError,
    RelatedNotesError,
    ServiceUnavailableError,
    StorageError,
    normalize_error,
)


class TestRelatedNotesError:
    def test_string_form_with_details(self):
        error = RelatedNotesError("Broken", details={"note_id": "201001010000"})
        assert str(error) == "[VALIDATION_FAILED] Broken (note_id=201001010000)"

    def test_string_form_without_details(self):
        assert str(RelatedNotesError("Broken")) == "[VALIDATION_FAILED] Broken"

    def test_to_dict(self):
        error = ProviderNotConfiguredError("embed_note")
        data = error.to_dict()
        assert data["error"] == "ProviderNotConfiguredError"
        assert data["code"] == ErrorCode.PROVIDER_NOT_CONFIGURED.value
        assert data["code_name"] == "PROVIDER_NOT_CONFIGURED"
        assert data["details"] == {"operation": "embed_note"}

    def test_storage_error_hides_full_path(self):
        error = StorageError("Failed", operation="flush", path="/home/user/data/embeddings.json")
        assert error.details["path_hint"] == "embeddings.json"
        assert error.path == "/home/user/data/embeddings.json"


class TestNormalizeError:
    def test_rate_limit_with_retry_after(self):
        error = normalize_error(Exception("Too many requests, retry after 2"), 429)
        assert isinstance(error, RateLimitError)
        assert error.retryable
        assert error.retry_after_ms == 2000
        assert error.status_code == 429

    def test_rate_limit_from_message(self):
        error = normalize_error(Exception("rate limit exceeded"))
        assert isinstance(error, RateLimitError)
        assert error.retry_after_ms is None

    @pytest.mark.parametrize("status", [401, 403])
    def test_auth_is_not_retryable(self, status):
        error = normalize_error(Exception("denied"), status)
        assert isinstance(error, AuthenticationError)
        assert not error.retryable

    @pytest.mark.parametrize("status", [500, 502, 503])
    def test_server_errors_are_retryable(self, status):
        error = normalize_error(Exception("upstream failed"), status)
        assert isinstance(error, ServiceUnavailableError)
        assert error.retryable

    def test_bad_request(self):
        error = normalize_error(Exception("bad input"), 400)
        assert isinstance(error, InvalidRequestError)
        assert not error.retryable

    def test_timeout_from_message(self):
        error = normalize_error(Exception("Request timed out after 60s"))
        assert isinstance(error, ProviderTimeoutError)
        assert error.retryable

    def test_unauthorized_from_message(self):
        assert isinstance(normalize_error(Exception("Invalid API key")), AuthenticationError)

    def test_unknown_is_generic_and_not_retryable(self):
        error = normalize_error(ValueError("something odd"))
        assert type(error) is ProviderError
        assert not error.retryable
        assert error.code == ErrorCode.PROVIDER_UNKNOWN

    def test_provider_errors_pass_through(self):
        original = ProviderTimeoutError()
        assert normalize_error(original) is original
