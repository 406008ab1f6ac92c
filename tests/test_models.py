"""Tests for the data models."""
import datetime

import pytest
from pydantic import ValidationError

from tests.fakes import make_note
from znote_related.models.schema import (
    MAX_REASON_LENGTH,
    ConnectionClassification,
    ConnectionLabel,
    DEFAULT_CONNECTION_REASON,
    EmbedAllResult,
    Note,
    RecommendationItem,
    RecommendNotesRequest,
    RecommendNotesResponse,
    StoredEmbedding,
    is_valid_note_id,
    normalize_tags,
    note_id_from_filename,
    validate_note_id,
)


class TestNoteIds:
    def test_valid_id(self):
        assert validate_note_id("201001010000") == "201001010000"

    @pytest.mark.parametrize(
        "value",
        ["", "2010", "20100101000a", "201013010000", "201001320000", "201001012400", "201001010060"],
    )
    def test_invalid_ids(self, value):
        with pytest.raises(ValueError):
            validate_note_id(value)
        assert not is_valid_note_id(value)

    def test_id_from_filename(self):
        assert note_id_from_filename("201001010000 Ethics.md") == "201001010000"
        assert note_id_from_filename("201001010000.md") == "201001010000"
        assert note_id_from_filename("2010010100001 Too long.md") is None
        assert note_id_from_filename("Ethics.md") is None


class TestTagNormalization:
    def test_normalizes_and_dedupes(self):
        assert normalize_tags(["#Foo ", "foo", " Bar", "", "#"]) == ["foo", "bar"]

    def test_idempotent(self):
        once = normalize_tags(["#Philosophy", "ETHICS", " ethics "])
        assert normalize_tags(once) == once


class TestNote:
    def test_tags_are_normalized(self):
        note = make_note("201001010000", "Ethics", ["#Ethics", "Philosophy", "ethics"])
        assert note.tags == ["ethics", "philosophy"]
        assert note.has_tag("#ETHICS")

    def test_matched_tags_keep_note_order(self):
        note = make_note("201001010000", "Ethics", ["philosophy", "ethics", "virtue"])
        assert note.matched_tags(["Virtue", "philosophy"]) == ["philosophy", "virtue"]

    def test_invalid_id_rejected(self):
        with pytest.raises(ValidationError):
            Note(id="abc", title="X", file_path="abc.md")

    def test_empty_title_rejected(self):
        with pytest.raises(ValidationError):
            Note(id="201001010000", title="  ", file_path="201001010000.md")

    def test_frozen(self):
        note = make_note("201001010000", "Ethics")
        with pytest.raises(ValidationError):
            note.title = "Other"


class TestStoredEmbedding:
    def _stored(self, **overrides):
        values = dict(
            note_id="201001010000",
            note_path="201001010000 Ethics.md",
            vector=[0.1, 0.2, 0.3],
            model="m",
            provider="p",
            created_at=datetime.datetime(2024, 1, 2, 3, 4, tzinfo=datetime.timezone.utc),
            content_hash="abc",
        )
        values.update(overrides)
        return StoredEmbedding(**values)

    def test_record_round_trip(self):
        stored = self._stored()
        record = stored.to_record()
        assert record["noteId"] == "201001010000"
        assert record["embedding"] == [0.1, 0.2, 0.3]
        assert record["contentHash"] == "abc"
        assert StoredEmbedding.from_record(record) == stored

    def test_from_record_accepts_vector_key(self):
        record = self._stored().to_record()
        record["vector"] = record.pop("embedding")
        assert StoredEmbedding.from_record(record).vector == [0.1, 0.2, 0.3]

    def test_empty_vector_rejected(self):
        with pytest.raises(ValidationError):
            self._stored(vector=[])

    def test_embedding_property(self):
        stored = self._stored()
        assert stored.dimensions == 3
        assert stored.embedding.to_list() == [0.1, 0.2, 0.3]


class TestRecommendationItem:
    def test_score_bounds_checked_on_assignment(self):
        item = RecommendationItem(
            note_id="201001010001", title="T", file_path="f.md", score=0.5
        )
        with pytest.raises(ValidationError):
            item.score = 1.5
        with pytest.raises(ValidationError):
            RecommendationItem(note_id="x", title="T", file_path="f.md", score=-0.1)

    def test_add_reason_once_per_prefix(self):
        item = RecommendationItem(
            note_id="201001010001",
            title="T",
            file_path="f.md",
            score=0.5,
            reasons=["Shared tags: a"],
        )
        item.add_reason("Shared tags: a, b", prefix="Shared tags")
        item.add_reason("Direct link in knowledge graph")
        item.add_reason("Direct link in knowledge graph")
        assert item.reasons == ["Shared tags: a", "Direct link in knowledge graph"]


class TestRequestResponse:
    def test_request_defaults(self):
        request = RecommendNotesRequest(note_id="201001010000")
        assert request.max_results == 10
        assert request.semantic_threshold == 0.5
        assert request.min_score == 0.0
        assert not request.use_graph_connections
        assert not request.use_semantic_similarity

    def test_request_rejects_bad_values(self):
        with pytest.raises(ValidationError):
            RecommendNotesRequest(note_id="201001010000", max_results=0)
        with pytest.raises(ValidationError):
            RecommendNotesRequest(note_id="201001010000", min_score=2)

    def test_failure_response(self):
        response = RecommendNotesResponse.failure("201001010000", "missing", "NOTE_NOT_FOUND")
        assert not response.success
        assert response.recommendations == []
        assert response.error_code == "NOTE_NOT_FOUND"


class TestConnectionLabel:
    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("broader_context", ConnectionLabel.BROADER_CONTEXT),
            ("Broader context", ConnectionLabel.BROADER_CONTEXT),
            (" CRITICAL-VIEW ", ConnectionLabel.CRITICAL_VIEW),
            (ConnectionLabel.APPLICATION, ConnectionLabel.APPLICATION),
        ],
    )
    def test_parse(self, raw, expected):
        assert ConnectionLabel.parse(raw) is expected

    def test_parse_unknown(self):
        assert ConnectionLabel.parse("nonsense") is None
        assert ConnectionLabel.parse(None) is None
        assert ConnectionLabel.coerce("nonsense") is ConnectionLabel.INTUITIVE_LINK

    def test_display_name(self):
        assert ConnectionLabel.CRITICAL_VIEW.display_name == "Critical view"


class TestConnectionClassification:
    def test_reason_is_stripped(self):
        result = ConnectionClassification(label="application", reason="  Uses it.  ")
        assert result.label is ConnectionLabel.APPLICATION
        assert result.reason == "Uses it."

    def test_reason_required(self):
        with pytest.raises(ValidationError):
            ConnectionClassification(label="application", reason="   ")

    def test_reason_length_limit(self):
        ConnectionClassification(label="application", reason="x" * MAX_REASON_LENGTH)
        with pytest.raises(ValidationError):
            ConnectionClassification(label="application", reason="x" * (MAX_REASON_LENGTH + 1))

    def test_unknown_label_rejected(self):
        with pytest.raises(ValidationError):
            ConnectionClassification(label="nonsense", reason="Some reason")

    def test_default(self):
        result = ConnectionClassification.default()
        assert result.label is ConnectionLabel.INTUITIVE_LINK
        assert result.reason == DEFAULT_CONNECTION_REASON
        assert ConnectionClassification.default("Custom").reason == "Custom"

    def test_rendering(self):
        result = ConnectionClassification(label="supplementary", reason="Extends it.")
        assert result.to_markdown() == "• Supplementary: Extends it."
        assert (
            result.to_connection_line("201001010001", "Stoicism")
            == "- [[201001010001 Stoicism]] • Supplementary: Extends it."
        )


def test_embed_all_result_to_dict():
    result = EmbedAllResult(total=5, embedded=3, skipped=1, errors=1)
    assert result.to_dict() == {
        "total": 5,
        "embedded": 3,
        "skipped": 1,
        "errors": 1,
        "cancelled": False,
    }
