"""Note repositories: an in-memory one and one scanning a markdown vault."""
import asyncio
import logging
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Union

import yaml

from znote_related.exceptions import ErrorCode, StorageError
from znote_related.models.schema import Note, normalize_tags
from znote_related.storage.markdown_parser import MarkdownParser

logger = logging.getLogger(__name__)


class InMemoryNoteRepository:
    """Note repository over a dict, in insertion order."""

    def __init__(self, notes: Optional[Iterable[Note]] = None):
        self._notes: Dict[str, Note] = {}
        for note in notes or ():
            self.add(note)

    def add(self, note: Note) -> None:
        self._notes[note.id] = note

    def remove(self, note_id: str) -> bool:
        return self._notes.pop(note_id, None) is not None

    async def find_by_id(self, note_id: str) -> Optional[Note]:
        return self._notes.get(note_id)

    async def find_by_path(self, file_path: str) -> Optional[Note]:
        for note in self._notes.values():
            if note.file_path == file_path:
                return note
        return None

    async def find_by_tags(self, tags: Iterable[str]) -> List[Note]:
        wanted = set(normalize_tags(tags))
        if not wanted:
            return []
        return [n for n in self._notes.values() if wanted.intersection(n.tags)]

    async def find_all(self) -> List[Note]:
        return list(self._notes.values())


class VaultNoteRepository(InMemoryNoteRepository):
    """Note repository over a directory of markdown files.

    The vault is scanned lazily on first access and again on ``reload()``.
    Files whose names do not start with a note id are skipped.
    """

    def __init__(self, vault_dir: Union[str, Path], parser: Optional[MarkdownParser] = None):
        super().__init__()
        self.vault_dir = Path(vault_dir)
        self.parser = parser or MarkdownParser()
        self._loaded = False

    async def reload(self) -> int:
        """Rescan the vault. Returns the number of notes found."""
        notes = await asyncio.to_thread(self._scan)
        self._notes = {note.id: note for note in notes}
        self._loaded = True
        logger.info(f"Indexed {len(self._notes)} notes from {self.vault_dir}")
        return len(self._notes)

    async def _ensure_loaded(self) -> None:
        if not self._loaded:
            await self.reload()

    def _scan(self) -> List[Note]:
        if not self.vault_dir.is_dir():
            raise StorageError(
                "Vault directory does not exist",
                operation="scan",
                path=str(self.vault_dir),
                code=ErrorCode.STORAGE_READ_FAILED,
            )
        notes: List[Note] = []
        seen: Dict[str, str] = {}
        for path in sorted(self.vault_dir.rglob("*.md")):
            if any(part.startswith(".") for part in path.relative_to(self.vault_dir).parts):
                continue
            relative = path.relative_to(self.vault_dir).as_posix()
            try:
                content = path.read_text(encoding="utf-8")
                note = self.parser.parse_note(content, relative)
            except (OSError, UnicodeDecodeError, ValueError, yaml.YAMLError) as e:
                logger.warning(f"Skipping unreadable note {relative}: {e}")
                continue
            if note is None:
                continue
            if note.id in seen:
                logger.warning(
                    f"Duplicate note id {note.id} in {relative}; keeping {seen[note.id]}"
                )
                continue
            seen[note.id] = relative
            notes.append(note)
        return notes

    async def find_by_id(self, note_id: str) -> Optional[Note]:
        await self._ensure_loaded()
        return await super().find_by_id(note_id)

    async def find_by_path(self, file_path: str) -> Optional[Note]:
        await self._ensure_loaded()
        return await super().find_by_path(file_path)

    async def find_by_tags(self, tags: Iterable[str]) -> List[Note]:
        await self._ensure_loaded()
        return await super().find_by_tags(tags)

    async def find_all(self) -> List[Note]:
        await self._ensure_loaded()
        return await super().find_all()
