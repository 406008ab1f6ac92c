"""Recommendation engine: fuses tag, graph and semantic signals.

Strategies run in a fixed order (tags, graph, semantic) because each one
merges into the candidate map built by the previous ones. Only a missing
source note fails the request; graph and semantic failures are logged
and the remaining signals still produce a result.
"""
import logging
from typing import Dict, Optional

from znote_related.exceptions import ErrorCode
from znote_related.models.schema import (
    Note,
    RecommendationItem,
    RecommendNotesRequest,
    RecommendNotesResponse,
)
from znote_related.observability import timed_operation
from znote_related.services.embedding_types import SimilarNotesFinder
from znote_related.storage.graph_repository import NullGraphRepository
from znote_related.storage.interfaces import GraphRepository, NoteRepository

logger = logging.getLogger(__name__)

# A direct link counts as strong evidence regardless of edge weight
GRAPH_CONNECTION_SCORE = 0.8
# Share of the semantic similarity added on top of existing evidence
SEMANTIC_BOOST_WEIGHT = 0.3

SHARED_TAGS_REASON = "Shared tags"
DIRECT_LINK_REASON = "Direct link in knowledge graph"
SEMANTIC_REASON = "Semantic similarity"

CandidateMap = Dict[str, RecommendationItem]


def _clamp(score: float) -> float:
    return min(1.0, max(0.0, score))


class RecommendationService:
    """Ranks notes related to a source note."""

    def __init__(
        self,
        notes: NoteRepository,
        graph: Optional[GraphRepository] = None,
        embeddings: Optional[SimilarNotesFinder] = None,
        graph_connection_score: float = GRAPH_CONNECTION_SCORE,
        semantic_boost_weight: float = SEMANTIC_BOOST_WEIGHT,
    ):
        self.notes = notes
        self.graph = graph or NullGraphRepository()
        self.embeddings = embeddings
        self.graph_connection_score = graph_connection_score
        self.semantic_boost_weight = semantic_boost_weight

    def set_embedding_service(self, embeddings: Optional[SimilarNotesFinder]) -> None:
        self.embeddings = embeddings

    async def recommend(self, request: RecommendNotesRequest) -> RecommendNotesResponse:
        """Compute ranked recommendations for ``request.note_id``.

        Returns:
            A successful response with at most ``max_results`` items scored
            ``>= min_score`` (highest first, ties in discovery order), or a
            failed response with error code NOTE_NOT_FOUND.
        """
        with timed_operation("recommend", note_id=request.note_id) as op:
            source = await self.notes.find_by_id(request.note_id)
            if source is None:
                logger.info(f"Recommendation requested for unknown note {request.note_id}")
                op["found"] = False
                return RecommendNotesResponse.failure(
                    request.note_id,
                    "Source note not found",
                    ErrorCode.NOTE_NOT_FOUND.name,
                )

            candidates: CandidateMap = {}
            await self._add_tag_recommendations(source, candidates)

            if request.use_graph_connections:
                await self._add_graph_recommendations(source, candidates)

            if (
                request.use_semantic_similarity
                and self.embeddings is not None
                and self.embeddings.is_ready()
            ):
                await self._add_semantic_recommendations(
                    source, candidates, request.semantic_threshold, request.max_results
                )

            ranked = sorted(
                (
                    item
                    for item in candidates.values()
                    if item.note_id != source.id and item.score >= request.min_score
                ),
                key=lambda item: item.score,
                reverse=True,
            )[: request.max_results]
            op["result_count"] = len(ranked)
            return RecommendNotesResponse.ok(source.id, ranked)

    async def _add_tag_recommendations(self, source: Note, candidates: CandidateMap) -> None:
        if not source.tags:
            return

        for note in await self.notes.find_by_tags(source.tags):
            if note.id == source.id:
                continue
            matched = [tag for tag in note.tags if tag in source.tags]
            if not matched:
                continue
            score = len(matched) / max(len(source.tags), 1)
            reason = f"{SHARED_TAGS_REASON}: {', '.join(matched)}"

            existing = candidates.get(note.id)
            if existing is not None:
                existing.score = max(existing.score, score)
                existing.matched_tags = matched
                existing.add_reason(reason, prefix=SHARED_TAGS_REASON)
            else:
                candidates[note.id] = RecommendationItem(
                    note_id=note.id,
                    title=note.title,
                    file_path=note.file_path,
                    score=score,
                    reasons=[reason],
                    matched_tags=matched,
                )

    async def _add_graph_recommendations(self, source: Note, candidates: CandidateMap) -> None:
        try:
            connected = await self.graph.find_connected_nodes(source.id)
            for node in connected:
                note = await self.notes.find_by_id(node.id)
                if note is None or note.id == source.id:
                    continue
                self._merge(candidates, note, self.graph_connection_score, DIRECT_LINK_REASON)
        except Exception as e:
            logger.warning(f"Graph recommendations failed for {source.id}: {e}")

    async def _add_semantic_recommendations(
        self, source: Note, candidates: CandidateMap, threshold: float, limit: int
    ) -> None:
        try:
            similar = await self.embeddings.find_similar_notes(
                source.id, limit=limit, threshold=threshold
            )
            for result in similar:
                if result.note_id == source.id:
                    continue
                note = await self.notes.find_by_id(result.note_id)
                if note is None:
                    continue

                similarity = _clamp(result.similarity)
                reason = f"{SEMANTIC_REASON}: {int(similarity * 100 + 0.5)}%"
                existing = candidates.get(note.id)
                if existing is not None:
                    boosted = min(
                        1.0, existing.score + similarity * self.semantic_boost_weight
                    )
                    existing.score = max(existing.score, boosted)
                    existing.add_reason(reason, prefix=SEMANTIC_REASON)
                else:
                    candidates[note.id] = RecommendationItem(
                        note_id=note.id,
                        title=note.title,
                        file_path=note.file_path,
                        score=similarity,
                        reasons=[reason],
                    )
        except Exception as e:
            logger.warning(f"Semantic recommendations failed for {source.id}: {e}")

    @staticmethod
    def _merge(candidates: CandidateMap, note: Note, score: float, reason: str) -> None:
        existing = candidates.get(note.id)
        if existing is not None:
            existing.score = max(existing.score, score)
            existing.add_reason(reason)
        else:
            candidates[note.id] = RecommendationItem(
                note_id=note.id,
                title=note.title,
                file_path=note.file_path,
                score=score,
                reasons=[reason],
            )

    async def recommend_for_path(
        self, file_path: str, **options
    ) -> RecommendNotesResponse:
        """Resolve a vault path to its note and recommend for it."""
        note = await self.notes.find_by_path(file_path)
        if note is None:
            return RecommendNotesResponse.failure(
                file_path, "Source note not found", ErrorCode.NOTE_NOT_FOUND.name
            )
        return await self.recommend(RecommendNotesRequest(note_id=note.id, **options))

