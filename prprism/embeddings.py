"""
Embedding providers for Prism.

Hosted backends (OpenAI, Kimi, Jina, VoyageAI) go through LiteLLM, which
normalizes request and response shapes across providers. Ollama runs locally
and is called directly over HTTP.

Providers are selected by tag from PROVIDER_FACTORIES. Every provider exposes
the same small surface: ``model``, ``dimensions``, ``embed(text)`` and
``embed_batch(texts)``.
"""

from __future__ import annotations

import logging
import os
import re
import time
from typing import Any, Callable, Protocol, Sequence

import requests

from .config import ConfigError, EnvConfig
from .store import DimensionMismatch, PRItem


logger = logging.getLogger(__name__)

CONTROL_CHARS = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F\x7F]")
MAX_BODY_CHARS = 2000

RETRY_ATTEMPTS = 3
RATE_LIMIT_WAIT = 60.0
ERROR_WAIT = 5.0

OLLAMA_DEFAULT_HOST = "http://localhost:11434"
OLLAMA_DEFAULT_MODEL = "qwen3-embedding:0.6b"
KIMI_API_BASE = "https://api.moonshot.cn/v1"


class EmbeddingError(Exception):
    """Provider failed to return embeddings."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class EmbeddingProvider(Protocol):
    model: str
    dimensions: int

    def embed(self, text: str) -> list[float]: ...

    def embed_batch(self, texts: Sequence[str]) -> list[list[float]]: ...


def sanitize_text(text: str | None) -> str:
    """Strip control characters; providers reject empty input so fall back to a space."""
    if not text or not isinstance(text, str):
        return " "
    return CONTROL_CHARS.sub("", text).strip() or " "


def prepare_embedding_text(item: PRItem) -> str:
    """Build the text that represents an item in embedding space."""
    prefix = "Pull Request" if item.type == "pr" else "Issue"
    title = (item.title or "Untitled").strip()
    body = (item.body or "").strip()[:MAX_BODY_CHARS]
    if body:
        return f"{prefix}: {title}\n\n{body}"
    return f"{prefix}: {title}"


class LiteLLMEmbeddings:
    """Hosted embedding models called through LiteLLM."""

    def __init__(
        self,
        model: str,
        dimensions: int,
        litellm_model: str | None = None,
        api_key: str | None = None,
        api_base: str | None = None,
    ):
        self.model = model
        self.dimensions = dimensions
        self.litellm_model = litellm_model or model
        self.api_key = api_key
        self.api_base = api_base
        self._litellm = None

    def _get_litellm(self):
        """Lazy import LiteLLM."""
        if self._litellm is None:
            import litellm
            self._litellm = litellm
        return self._litellm

    def embed(self, text: str) -> list[float]:
        return self.embed_batch([text])[0]

    def embed_batch(self, texts: Sequence[str]) -> list[list[float]]:
        litellm = self._get_litellm()
        kwargs: dict[str, Any] = {
            "model": self.litellm_model,
            "input": [sanitize_text(t) for t in texts],
        }
        if self.api_key:
            kwargs["api_key"] = self.api_key
        if self.api_base:
            kwargs["api_base"] = self.api_base

        try:
            response = litellm.embedding(**kwargs)
        except Exception as e:
            raise EmbeddingError(
                f"Embedding API error ({self.model}): {e}",
                getattr(e, "status_code", None),
            ) from e

        return [list(d["embedding"]) for d in response.data]


class OllamaEmbeddings:
    """Local embeddings from an Ollama server (/api/embed)."""

    def __init__(self, model: str | None = None, base_url: str | None = None, timeout: float = 120.0):
        self.model = model or OLLAMA_DEFAULT_MODEL
        self.base_url = (base_url or os.environ.get("OLLAMA_HOST") or OLLAMA_DEFAULT_HOST).rstrip("/")
        self.timeout = timeout
        self.dimensions = 0
        self.session = requests.Session()

    def detect_dimensions(self) -> int:
        """Discover the model's width with a single request."""
        if not self.dimensions:
            self.dimensions = len(self.embed("dimension check"))
            logger.debug("Ollama model %s has %d dimensions", self.model, self.dimensions)
        return self.dimensions

    def embed(self, text: str) -> list[float]:
        return self.embed_batch([text])[0]

    def embed_batch(self, texts: Sequence[str]) -> list[list[float]]:
        try:
            response = self.session.post(
                f"{self.base_url}/api/embed",
                json={"model": self.model, "input": [sanitize_text(t) for t in texts]},
                timeout=self.timeout,
            )
        except requests.ConnectionError as e:
            raise EmbeddingError("Ollama not running - start it with: ollama serve") from e
        except requests.RequestException as e:
            raise EmbeddingError(f"Ollama request failed: {e}") from e

        if response.status_code >= 400:
            raise EmbeddingError(
                f"Ollama error ({response.status_code}): {response.text}",
                response.status_code,
            )

        embeddings = response.json().get("embeddings") or []
        if embeddings and not self.dimensions:
            self.dimensions = len(embeddings[0])
        return embeddings


class TruncatedEmbeddings:
    """Matryoshka truncation: keep the first ``target`` components of each vector."""

    def __init__(self, inner: EmbeddingProvider, target: int):
        if target <= 0 or target > inner.dimensions:
            raise DimensionMismatch(
                inner.dimensions,
                target,
                message=f"Cannot truncate {inner.model} ({inner.dimensions} dims) to {target} dims",
            )
        self.inner = inner
        self.model = inner.model
        self.dimensions = target

    def embed(self, text: str) -> list[float]:
        return list(self.inner.embed(text))[: self.dimensions]

    def embed_batch(self, texts: Sequence[str]) -> list[list[float]]:
        return [list(v)[: self.dimensions] for v in self.inner.embed_batch(texts)]


# =============================================================================
# Provider registry
# =============================================================================


def _require_key(env: EnvConfig, name: str) -> str:
    if not env.embedding_api_key:
        raise ConfigError(f"EMBEDDING_API_KEY required for {name}")
    return env.embedding_api_key


def _openai(env: EnvConfig) -> EmbeddingProvider:
    model = env.embedding_model or "text-embedding-3-small"
    dimensions = 3072 if "3-large" in model else 1536
    return LiteLLMEmbeddings(model, dimensions, api_key=_require_key(env, "OpenAI"))


def _kimi(env: EnvConfig) -> EmbeddingProvider:
    model = env.embedding_model or "moonshot-v1-embedding"
    return LiteLLMEmbeddings(
        model,
        1024,
        litellm_model=f"openai/{model}",
        api_key=_require_key(env, "Kimi"),
        api_base=KIMI_API_BASE,
    )


def _jina(env: EnvConfig) -> EmbeddingProvider:
    model = env.embedding_model or "jina-embeddings-v3"
    return LiteLLMEmbeddings(model, 1024, litellm_model=f"jina_ai/{model}", api_key=_require_key(env, "Jina"))


def _voyageai(env: EnvConfig) -> EmbeddingProvider:
    model = env.embedding_model or "voyage-2"
    return LiteLLMEmbeddings(model, 1024, litellm_model=f"voyage/{model}", api_key=_require_key(env, "VoyageAI"))


def _ollama(env: EnvConfig) -> EmbeddingProvider:
    provider = OllamaEmbeddings(model=env.embedding_model or None)
    provider.detect_dimensions()
    return provider


PROVIDER_FACTORIES: dict[str, Callable[[EnvConfig], EmbeddingProvider]] = {
    "openai": _openai,
    "kimi": _kimi,
    "jina": _jina,
    "voyageai": _voyageai,
    "ollama": _ollama,
}


def create_embedding_provider(env: EnvConfig) -> EmbeddingProvider:
    """Build the configured provider, wrapped for truncation when requested."""
    factory = PROVIDER_FACTORIES.get(env.embedding_provider)
    if factory is None:
        raise ConfigError(f"Unknown embedding provider: {env.embedding_provider}")

    provider = factory(env)
    if env.embedding_dimensions and env.embedding_dimensions != provider.dimensions:
        provider = TruncatedEmbeddings(provider, env.embedding_dimensions)
    return provider


def embedding_batch_size(provider_tag: str) -> int:
    """Local models take bigger batches than hosted APIs."""
    return 50 if provider_tag == "ollama" else 10


# =============================================================================
# Retry + fallback
# =============================================================================


def _is_rate_limited(error: Exception) -> bool:
    if getattr(error, "status_code", None) == 429:
        return True
    return "429" in str(error)


def embed_with_retry(
    embedder: EmbeddingProvider,
    texts: Sequence[str],
    attempts: int = RETRY_ATTEMPTS,
) -> list[list[float]]:
    """Call embed_batch, backing off on rate limits and transient errors."""
    last_error: Exception | None = None
    for attempt in range(attempts):
        try:
            return embedder.embed_batch(texts)
        except Exception as e:
            last_error = e
            if attempt == attempts - 1:
                raise
            if _is_rate_limited(e):
                wait = RATE_LIMIT_WAIT * (attempt + 1)
                logger.warning("Rate limited, waiting %.0fs (attempt %d/%d)", wait, attempt + 1, attempts)
                time.sleep(wait)
            else:
                logger.warning("Embedding error (%s), retry %d/%d", str(e)[:60], attempt + 1, attempts)
                time.sleep(ERROR_WAIT)

    raise EmbeddingError(f"Embedding failed after {attempts} attempts: {last_error}")


def embed_texts(embedder: EmbeddingProvider, texts: Sequence[str]) -> list[list[float]]:
    """Embed a batch; on failure fall back to one at a time and zero-fill poison items.

    A zero vector marks an item whose embedding failed. Downstream similarity
    steps skip such vectors.
    """
    if not texts:
        return []
    try:
        return embed_with_retry(embedder, texts)
    except Exception as e:
        logger.warning("Batch of %d failed (%s), embedding individually", len(texts), e)

    results: list[list[float]] = []
    for text in texts:
        try:
            results.append(embed_with_retry(embedder, [text])[0])
        except Exception as e:
            logger.warning("Embedding failed, storing zero vector: %s", e)
            results.append([0.0] * embedder.dimensions)
    return results
