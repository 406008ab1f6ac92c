"""LLM-generated explanations of why two notes are connected.

Results are cached per ordered (source, target) pair for a fixed TTL,
and concurrent requests for the same pair share one in-flight task.
Any provider or parsing failure degrades to the default classification.
"""
import asyncio
import datetime
import json
import logging
import re
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from pydantic import ValidationError

from znote_related.models.schema import (
    ConnectionClassification,
    ConnectionLabel,
    DEFAULT_CONNECTION_LABEL,
    DEFAULT_CONNECTION_REASON,
    ensure_timezone_aware,
    utc_now,
)
from znote_related.services.embedding_types import EmbeddingProvider
from znote_related.services.retry_service import (
    RetryOptions,
    SleepFn,
    execute_with_retry,
)
from znote_related.services.text_preparation import prepare_text_for_prompt

logger = logging.getLogger(__name__)

DEFAULT_TTL = datetime.timedelta(days=7)
PROMPT_MAX_TOKENS = 200
PROMPT_TEMPERATURE = 0.3
MAX_GENERATED_REASON = 200
MIN_GENERATED_REASON = 5

_JSON_OBJECT = re.compile(r"\{.*?\}", re.DOTALL)

CLASSIFICATION_PROMPT = """You classify connections between notes in a Zettelkasten knowledge base.

Analyse how the target note relates to the source note and pick exactly one label:
- broader_context: the target provides the larger framework or background of the source
- supplementary: the target supplements or extends a specific aspect of the source
- application: the target is a practical application of the source's idea
- critical_view: the target offers a counterargument or opposing perspective
- intuitive_link: little surface overlap, but a deep structural similarity or intuitive link

Reply with JSON only:
{{"classification": "<label>", "reason": "<one or two sentences explaining the connection>"}}

Source note (the note being worked on):
Title: {source_title}
Content: {source_content}

Target note (the recommended note):
Title: {target_title}
Content: {target_content}"""


def cache_key(source_id: str, target_id: str) -> str:
    return f"{source_id}:{target_id}"


def parse_classification(text: str) -> ConnectionClassification:
    """Parse the model's reply, falling back to the default on any problem.

    An unknown label keeps the model's reason; a missing or too-short
    reason gets the default reason; long reasons are shortened.
    """
    match = _JSON_OBJECT.search(text or "")
    if not match:
        logger.warning(f"No JSON found in completion: {text!r:.200}")
        return ConnectionClassification.default()

    try:
        parsed = json.loads(match.group(0))
    except json.JSONDecodeError as e:
        logger.warning(f"Unparseable completion JSON: {e}")
        return ConnectionClassification.default()
    if not isinstance(parsed, dict):
        return ConnectionClassification.default()

    raw_reason = parsed.get("reason")
    reason = raw_reason.strip() if isinstance(raw_reason, str) else ""
    label = ConnectionLabel.parse(parsed.get("classification"))
    if label is None:
        logger.warning(f"Invalid classification in completion: {parsed.get('classification')!r}")
        label = DEFAULT_CONNECTION_LABEL

    if len(reason) < MIN_GENERATED_REASON:
        return ConnectionClassification(label=label, reason=DEFAULT_CONNECTION_REASON)
    if len(reason) > MAX_GENERATED_REASON:
        reason = reason[: MAX_GENERATED_REASON - 3] + "..."
    return ConnectionClassification(label=label, reason=reason)


class ConnectionReasonService:
    """Classifies note connections through a completion provider.

    The cache and the in-flight map belong to this instance; use
    ``load_cache``/``save_cache`` (or the snapshot methods) to carry the
    cache across restarts.
    """

    def __init__(
        self,
        provider: Optional[EmbeddingProvider] = None,
        ttl: datetime.timedelta = DEFAULT_TTL,
        clock: Callable[[], datetime.datetime] = utc_now,
        retry_options: Optional[RetryOptions] = None,
        sleep: SleepFn = asyncio.sleep,
    ):
        self.provider = provider
        self.ttl = ttl
        self._clock = clock
        self.retry_options = retry_options or RetryOptions()
        self._sleep = sleep
        self._cache: Dict[str, Dict[str, Any]] = {}
        self._pending: Dict[str, "asyncio.Task[ConnectionClassification]"] = {}

    def set_provider(self, provider: Optional[EmbeddingProvider]) -> None:
        self.provider = provider

    def is_ready(self) -> bool:
        return self.provider is not None and self.provider.is_configured()

    def _is_expired(self, created_at: datetime.datetime) -> bool:
        return self._clock() - created_at >= self.ttl

    def get_cached_reason(
        self, source_id: str, target_id: str
    ) -> Optional[ConnectionClassification]:
        """Cached classification for the pair; expired entries are evicted."""
        key = cache_key(source_id, target_id)
        entry = self._cache.get(key)
        if entry is None:
            return None
        if self._is_expired(entry["created_at"]):
            del self._cache[key]
            return None
        return entry["result"]

    async def generate_connection_reason(
        self,
        source_id: str,
        source_title: str,
        source_content: str,
        target_id: str,
        target_title: str,
        target_content: str,
    ) -> ConnectionClassification:
        """Classify how the target note relates to the source note.

        Never raises for provider or parsing failures; those return the
        default classification (and are not cached).
        """
        if self.provider is None:
            return ConnectionClassification.default()

        cached = self.get_cached_reason(source_id, target_id)
        if cached is not None:
            return cached

        key = cache_key(source_id, target_id)
        task = self._pending.get(key)
        if task is None:
            task = asyncio.ensure_future(
                self._generate_and_cache(
                    key,
                    source_id,
                    target_id,
                    self._build_prompt(
                        source_title, source_content, target_title, target_content
                    ),
                )
            )
            self._pending[key] = task
        # A cancelled waiter must not cancel the shared task
        return await asyncio.shield(task)

    def _build_prompt(
        self, source_title: str, source_content: str, target_title: str, target_content: str
    ) -> str:
        return CLASSIFICATION_PROMPT.format(
            source_title=source_title,
            source_content=prepare_text_for_prompt(source_content or ""),
            target_title=target_title,
            target_content=prepare_text_for_prompt(target_content or ""),
        )

    async def _generate_and_cache(
        self, key: str, source_id: str, target_id: str, prompt: str
    ) -> ConnectionClassification:
        try:
            response = await execute_with_retry(
                lambda: self.provider.generate_completion(
                    prompt, max_tokens=PROMPT_MAX_TOKENS, temperature=PROMPT_TEMPERATURE
                ),
                self.retry_options,
                self._sleep,
            )
            result = parse_classification(response.text)
            self._cache[key] = {
                "source_id": source_id,
                "target_id": target_id,
                "result": result,
                "created_at": self._clock(),
            }
            return result
        except Exception as e:
            logger.error(f"Failed to generate connection reason for {key}: {e}")
            return ConnectionClassification.default()
        finally:
            self._pending.pop(key, None)

    # =========================================================================
    # Cache lifecycle
    # =========================================================================

    def snapshot(self) -> List[Dict[str, Any]]:
        """JSON-ready list of the unexpired cache entries."""
        return [
            {
                "sourceNoteId": entry["source_id"],
                "targetNoteId": entry["target_id"],
                "result": {
                    "classification": entry["result"].label.value,
                    "reason": entry["result"].reason,
                },
                "createdAt": entry["created_at"].isoformat(),
            }
            for entry in self._cache.values()
            if not self._is_expired(entry["created_at"])
        ]

    def load_snapshot(self, entries: Iterable[Any]) -> int:
        """Restore entries produced by ``snapshot()``.

        Malformed and expired entries are skipped. Returns the number loaded.
        """
        loaded = 0
        for item in entries:
            try:
                source_id = item["sourceNoteId"]
                target_id = item["targetNoteId"]
                created_at = ensure_timezone_aware(
                    datetime.datetime.fromisoformat(item["createdAt"])
                )
                result = ConnectionClassification(
                    label=ConnectionLabel.coerce(item["result"]["classification"]),
                    reason=item["result"]["reason"],
                )
            except (KeyError, TypeError, ValueError, ValidationError) as e:
                logger.debug(f"Skipping malformed cache entry: {e}")
                continue
            if not source_id or not target_id or self._is_expired(created_at):
                continue
            self._cache[cache_key(source_id, target_id)] = {
                "source_id": source_id,
                "target_id": target_id,
                "result": result,
                "created_at": created_at,
            }
            loaded += 1
        return loaded

    def save_cache(self, path: Union[str, Path]) -> None:
        """Write the snapshot to ``path`` as JSON (atomic replace)."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        temp_file = path.with_suffix(path.suffix + ".tmp")
        with open(temp_file, "w", encoding="utf-8") as f:
            json.dump(self.snapshot(), f, ensure_ascii=False, indent=2)
        temp_file.replace(path)
        logger.debug(f"Saved {len(self._cache)} connection reasons to {path}")

    def load_cache(self, path: Union[str, Path]) -> int:
        """Load a snapshot written by ``save_cache``. A missing or corrupt file loads nothing."""
        path = Path(path)
        if not path.exists():
            return 0
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Failed to load connection reasons from {path}: {e}")
            return 0
        if not isinstance(data, list):
            return 0
        return self.load_snapshot(data)

    def clear_cache(self) -> None:
        self._cache.clear()
        self._pending.clear()

    def get_cache_stats(self) -> Dict[str, int]:
        return {"size": len(self._cache), "pending_count": len(self._pending)}
