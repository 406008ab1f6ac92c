"""Graph repositories.

``NullGraphRepository`` is the default: every lookup is empty, so the
graph strategy contributes nothing. ``WikiLinkGraphRepository`` derives
an undirected adjacency from the ``[[wikilinks]]`` in the vault's notes.
"""
import logging
from pathlib import PurePosixPath
from typing import Dict, List, Optional, Set, Tuple

from znote_related.models.schema import (
    GraphEdge,
    GraphNode,
    GraphStats,
    Note,
    note_id_from_filename,
)
from znote_related.storage.interfaces import NoteRepository
from znote_related.storage.markdown_parser import MarkdownParser

logger = logging.getLogger(__name__)


class NullGraphRepository:
    """Graph repository with no nodes and no edges."""

    async def find_connected_nodes(self, note_id: str) -> List[GraphNode]:
        return []

    async def find_node_by_id(self, node_id: str) -> Optional[GraphNode]:
        return None

    async def get_all_nodes(self) -> List[GraphNode]:
        return []

    async def get_all_edges(self) -> List[GraphEdge]:
        return []

    async def get_stats(self) -> GraphStats:
        return GraphStats()


class WikiLinkGraphRepository:
    """Knowledge graph built from wikilinks between vault notes.

    A link target resolves to a note when it starts with the note's id,
    or when it matches the note's title or file stem (case-insensitive).
    Unresolved targets and self-links are ignored. The graph is built on
    first use and rebuilt by ``reload()``.
    """

    def __init__(self, notes: NoteRepository, parser: Optional[MarkdownParser] = None):
        self.notes = notes
        self.parser = parser or MarkdownParser()
        self._nodes: Dict[str, GraphNode] = {}
        self._edges: List[GraphEdge] = []
        self._adjacency: Dict[str, List[str]] = {}
        self._built = False

    async def reload(self) -> None:
        notes = await self.notes.find_all()
        self._build(notes)

    async def _ensure_built(self) -> None:
        if not self._built:
            await self.reload()

    def _build(self, notes: List[Note]) -> None:
        by_id = {note.id: note for note in notes}
        by_name: Dict[str, str] = {}
        for note in notes:
            by_name.setdefault(note.title.strip().lower(), note.id)
            by_name.setdefault(PurePosixPath(note.file_path).stem.lower(), note.id)

        edges: List[GraphEdge] = []
        seen_edges: Set[Tuple[str, str]] = set()
        adjacency: Dict[str, List[str]] = {note.id: [] for note in notes}

        for note in notes:
            for target in self.parser.extract_wikilinks(note.content or ""):
                target_id = self._resolve(target, by_id, by_name)
                if target_id is None or target_id == note.id:
                    continue
                if (note.id, target_id) in seen_edges:
                    continue
                seen_edges.add((note.id, target_id))
                edges.append(GraphEdge(source=note.id, target=target_id, weight=1.0))
                if target_id not in adjacency[note.id]:
                    adjacency[note.id].append(target_id)
                if note.id not in adjacency[target_id]:
                    adjacency[target_id].append(note.id)

        self._nodes = {
            note.id: GraphNode(
                id=note.id,
                label=note.title,
                title=note.title,
                note_path=note.file_path,
                tags=list(note.tags),
                degree=len(adjacency[note.id]),
            )
            for note in notes
        }
        self._edges = edges
        self._adjacency = adjacency
        self._built = True
        logger.debug(f"Built link graph: {len(self._nodes)} nodes, {len(edges)} edges")

    @staticmethod
    def _resolve(
        target: str, by_id: Dict[str, Note], by_name: Dict[str, str]
    ) -> Optional[str]:
        note_id = note_id_from_filename(target)
        if note_id is not None and note_id in by_id:
            return note_id
        name = PurePosixPath(target).name
        if name.lower().endswith(".md"):
            name = name[:-3]
        return by_name.get(name.strip().lower())

    async def find_connected_nodes(self, note_id: str) -> List[GraphNode]:
        await self._ensure_built()
        return [self._nodes[other] for other in self._adjacency.get(note_id, [])]

    async def find_node_by_id(self, node_id: str) -> Optional[GraphNode]:
        await self._ensure_built()
        return self._nodes.get(node_id)

    async def get_all_nodes(self) -> List[GraphNode]:
        await self._ensure_built()
        return list(self._nodes.values())

    async def get_all_edges(self) -> List[GraphEdge]:
        await self._ensure_built()
        return list(self._edges)

    async def get_stats(self) -> GraphStats:
        await self._ensure_built()
        degrees = [node.degree for node in self._nodes.values()]
        return GraphStats(
            node_count=len(self._nodes),
            edge_count=len(self._edges),
            average_degree=sum(degrees) / len(degrees) if degrees else 0.0,
            max_degree=max(degrees, default=0),
        )
