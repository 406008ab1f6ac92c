"""Markdown parsing for vault notes.

Turns a markdown file with optional YAML frontmatter into a Note and
extracts the ``[[wikilinks]]`` the graph repository builds edges from.
"""
import datetime
import logging
import re
from pathlib import PurePosixPath
from typing import Any, List, Optional

import frontmatter

from znote_related.models.schema import (
    Note,
    ensure_timezone_aware,
    normalize_tags,
    note_id_from_filename,
)

logger = logging.getLogger(__name__)

# [[target]], [[target|alias]], [[target#heading]]
WIKILINK_PATTERN = re.compile(r"\[\[([^\]\|#]+)(?:#[^\]\|]*)?(?:\|[^\]]*)?\]\]")
# Inline #tags, not inside words and not markdown headings
INLINE_TAG_PATTERN = re.compile(r"(?:^|(?<=\s))#(\w[\w/\-]*)", re.MULTILINE)
CODE_FENCE_PATTERN = re.compile(r"```.*?```", re.DOTALL)


def _parse_timestamp(value: Any) -> Optional[datetime.datetime]:
    if value is None:
        return None
    if isinstance(value, datetime.datetime):
        return ensure_timezone_aware(value)
    if isinstance(value, datetime.date):
        return datetime.datetime(value.year, value.month, value.day,
                                 tzinfo=datetime.timezone.utc)
    try:
        return ensure_timezone_aware(datetime.datetime.fromisoformat(str(value)))
    except ValueError:
        return None


class MarkdownParser:
    """Parses vault markdown files into Note objects."""

    def parse_note(self, content: str, file_path: str) -> Optional[Note]:
        """Parse a note from raw markdown.

        Args:
            content: Raw file content, frontmatter included.
            file_path: Vault-relative path; the id comes from the file name.

        Returns:
            The Note, or None when the file name has no id prefix.
        """
        path = PurePosixPath(file_path)
        note_id = note_id_from_filename(path.name)
        if note_id is None:
            logger.debug(f"Skipping {file_path}: no YYYYMMDDHHMM prefix")
            return None

        post = frontmatter.loads(content)
        metadata = post.metadata

        title = metadata.get("title")
        if not title:
            title = self._title_from_filename(path.stem, note_id)
        if not title:
            for line in post.content.strip().split("\n"):
                if line.startswith("# "):
                    title = line[2:].strip()
                    break
        if not title:
            title = note_id

        tags = normalize_tags(
            self._frontmatter_tags(metadata.get("tags"))
            + self.extract_inline_tags(post.content)
        )

        return Note(
            id=note_id,
            title=str(title),
            file_path=file_path,
            content=content,
            tags=tags,
            created_at=_parse_timestamp(metadata.get("created")),
            updated_at=_parse_timestamp(metadata.get("updated")),
        )

    @staticmethod
    def extract_wikilinks(body: str) -> List[str]:
        """Return wikilink targets in order of first appearance."""
        seen = set()
        targets = []
        for match in WIKILINK_PATTERN.finditer(body):
            target = match.group(1).strip()
            if target and target not in seen:
                seen.add(target)
                targets.append(target)
        return targets

    @staticmethod
    def extract_inline_tags(body: str) -> List[str]:
        body = CODE_FENCE_PATTERN.sub("", body)
        return [m.group(1) for m in INLINE_TAG_PATTERN.finditer(body)]

    @staticmethod
    def _frontmatter_tags(raw: Any) -> List[str]:
        if isinstance(raw, str):
            return [t.strip() for t in raw.split(",") if t.strip()]
        if isinstance(raw, list):
            return [str(t).strip() for t in raw if str(t).strip()]
        return []

    @staticmethod
    def _title_from_filename(stem: str, note_id: str) -> str:
        return stem[len(note_id):].strip(" -_")
