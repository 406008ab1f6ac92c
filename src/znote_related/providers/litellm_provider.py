"""Embedding and completion provider on LiteLLM.

Model strings use LiteLLM's ``provider/model`` format. Retries are left
to the retry service, so LiteLLM's own retries are disabled and raw
exceptions are normalized into the provider error taxonomy.
"""
import logging
import os
from typing import Any, Dict, List, Optional, Sequence

import litellm

from znote_related.exceptions import InvalidRequestError, normalize_error
from znote_related.services.embedding_types import (
    BatchEmbeddingResponse,
    CompletionResponse,
    EmbeddingResponse,
)

logger = logging.getLogger(__name__)

litellm.suppress_debug_info = True

# Provider prefix -> env var holding its API key (None: no key needed)
PROVIDER_ENV: Dict[str, Optional[str]] = {
    "openai": "OPENAI_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
    "gemini": "GEMINI_API_KEY",
    "azure": "AZURE_API_KEY",
    "cohere": "COHERE_API_KEY",
    "mistral": "MISTRAL_API_KEY",
    "voyage": "VOYAGE_API_KEY",
    "ollama": None,
}


def provider_of(model: str) -> str:
    return model.split("/", 1)[0].lower() if "/" in model else "openai"


def _field(item: Any, name: str, default: Any = None) -> Any:
    if isinstance(item, dict):
        return item.get(name, default)
    return getattr(item, name, default)


class LiteLLMProvider:
    """EmbeddingProvider backed by ``litellm.aembedding``/``litellm.acompletion``."""

    def __init__(
        self,
        embedding_model: str,
        completion_model: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: float = 60.0,
    ):
        self.embedding_model = embedding_model
        self.completion_model = completion_model or embedding_model
        self.api_key = api_key
        self.timeout = timeout

    @property
    def provider_name(self) -> str:
        return provider_of(self.embedding_model)

    def get_default_model(self) -> str:
        return self.embedding_model

    def is_configured(self) -> bool:
        if self.api_key:
            return True
        provider = self.provider_name
        if provider not in PROVIDER_ENV:
            # Unknown provider: let LiteLLM resolve credentials itself
            return True
        env_var = PROVIDER_ENV[provider]
        return env_var is None or bool(os.getenv(env_var))

    def _credentials(self) -> Dict[str, Any]:
        return {"api_key": self.api_key} if self.api_key else {}

    async def validate_api_key(self) -> bool:
        """Round-trip a tiny embedding request."""
        if not self.is_configured():
            return False
        try:
            await self.generate_embedding("ping")
            return True
        except Exception as e:
            logger.warning(f"API key validation failed for {self.provider_name}: {e}")
            return False

    async def generate_embedding(self, text: str) -> EmbeddingResponse:
        batch = await self.generate_embeddings([text])
        return EmbeddingResponse(
            embedding=batch.embeddings[0],
            model=batch.model,
            token_count=batch.total_tokens,
        )

    async def generate_embeddings(self, texts: Sequence[str]) -> BatchEmbeddingResponse:
        if not texts:
            return BatchEmbeddingResponse(embeddings=[], model=self.embedding_model)
        try:
            response = await litellm.aembedding(
                model=self.embedding_model,
                input=list(texts),
                timeout=self.timeout,
                num_retries=0,
                **self._credentials(),
            )
        except Exception as e:
            raise normalize_error(e, getattr(e, "status_code", None)) from e

        data = list(_field(response, "data", []) or [])
        if len(data) != len(texts):
            raise InvalidRequestError(
                f"Expected {len(texts)} embeddings, received {len(data)}"
            )
        # Results carry explicit indices; positions are not trusted
        data.sort(key=lambda item: _field(item, "index", 0))
        vectors: List[List[float]] = [
            [float(x) for x in _field(item, "embedding")] for item in data
        ]
        usage = _field(response, "usage")
        return BatchEmbeddingResponse(
            embeddings=vectors,
            model=_field(response, "model") or self.embedding_model,
            total_tokens=int(_field(usage, "total_tokens", 0) or 0) if usage else 0,
        )

    async def generate_completion(
        self, prompt: str, max_tokens: int = 200, temperature: float = 0.3
    ) -> CompletionResponse:
        try:
            response = await litellm.acompletion(
                model=self.completion_model,
                messages=[{"role": "user", "content": prompt}],
                max_tokens=max_tokens,
                temperature=temperature,
                timeout=self.timeout,
                num_retries=0,
                **self._credentials(),
            )
        except Exception as e:
            raise normalize_error(e, getattr(e, "status_code", None)) from e

        text = response.choices[0].message.content or ""
        usage = _field(response, "usage")
        return CompletionResponse(
            text=text,
            model=_field(response, "model") or self.completion_model,
            token_count=int(_field(usage, "total_tokens", 0) or 0) if usage else 0,
        )
