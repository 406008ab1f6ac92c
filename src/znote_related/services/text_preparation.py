"""Text cleanup before embedding or prompting, and content hashing."""
import hashlib
import re

# Character budget for one embedding request (~4k tokens)
MAX_EMBEDDING_CHARS = 15000
# Character budget per note inside a classification prompt
MAX_PROMPT_CHARS = 800
TRUNCATION_MARKER = "..."

_FRONTMATTER = re.compile(r"^---\s*\n.*?\n---\s*(?:\n|$)", re.DOTALL)
_FENCED_CODE = re.compile(r"```.*?```", re.DOTALL)
_INLINE_CODE = re.compile(r"`[^`\n]*`")
_IMAGE = re.compile(r"!\[[^\]]*\]\([^)]*\)")
_EMBED = re.compile(r"!\[\[[^\]]*\]\]")
_LINK = re.compile(r"\[([^\]]+)\]\([^)]+\)")
_WIKILINK = re.compile(r"\[\[([^\]|]+)(?:\|([^\]]+))?\]\]")
_HEADING_MARKER = re.compile(r"^#{1,6}\s+", re.MULTILINE)
_HEADING_LINE = re.compile(r"^#{1,6}\s+.*$", re.MULTILINE)
_EMPHASIS = re.compile(r"(\*{1,3}|_{1,3})([^*_\n]+)\1")
_BLOCKQUOTE = re.compile(r"^\s*>\s?", re.MULTILINE)
_LIST_MARKER = re.compile(r"^\s*(?:[-*+]|\d+\.)\s+", re.MULTILINE)
_FORMAT_CHARS = re.compile(r"[*_~`]")
_BLANK_RUNS = re.compile(r"\n{3,}")


def hash_content(content: str) -> str:
    """MD5 hex digest of the raw content, used only for change detection."""
    return hashlib.md5(content.encode("utf-8")).hexdigest()


def strip_frontmatter(content: str) -> str:
    return _FRONTMATTER.sub("", content, count=1)


def truncate(text: str, max_chars: int) -> str:
    if len(text) <= max_chars:
        return text
    return text[:max_chars] + TRUNCATION_MARKER


def _wikilink_text(match: "re.Match[str]") -> str:
    return match.group(2) or match.group(1)


def prepare_text_for_embedding(content: str, max_chars: int = MAX_EMBEDDING_CHARS) -> str:
    """Strip markdown syntax but keep the prose, then cap the length.

    Removes the frontmatter block, images, code, heading, emphasis,
    blockquote and list markers; links are replaced by their text.
    """
    text = strip_frontmatter(content)
    text = _FENCED_CODE.sub("", text)
    text = _INLINE_CODE.sub("", text)
    text = _EMBED.sub("", text)
    text = _IMAGE.sub("", text)
    text = _LINK.sub(r"\1", text)
    text = _WIKILINK.sub(_wikilink_text, text)
    text = _HEADING_MARKER.sub("", text)
    text = _EMPHASIS.sub(r"\2", text)
    text = _BLOCKQUOTE.sub("", text)
    text = _LIST_MARKER.sub("", text)
    text = _BLANK_RUNS.sub("\n\n", text).strip()
    return truncate(text, max_chars)


def prepare_text_for_prompt(content: str, max_chars: int = MAX_PROMPT_CHARS) -> str:
    """Condensed note body for an LLM prompt: headings dropped, links as text."""
    text = strip_frontmatter(content)
    text = _HEADING_LINE.sub("", text)
    text = _WIKILINK.sub(_wikilink_text, text)
    text = _LINK.sub(r"\1", text)
    text = _FORMAT_CHARS.sub("", text)
    text = _BLANK_RUNS.sub("\n\n", text).strip()
    return truncate(text, max_chars)
