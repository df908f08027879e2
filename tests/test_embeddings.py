from __future__ import annotations

from unittest.mock import Mock, patch

import pytest
import requests

from prprism.config import ConfigError, EnvConfig
from prprism.embeddings import (
    EmbeddingError,
    LiteLLMEmbeddings,
    OllamaEmbeddings,
    TruncatedEmbeddings,
    create_embedding_provider,
    embed_texts,
    embed_with_retry,
    embedding_batch_size,
    prepare_embedding_text,
    sanitize_text,
)
from prprism.store import DimensionMismatch, PRItem


class FlakyEmbedder:
    """Fails batches larger than one; fails any single text containing "poison"."""

    model = "fake"
    dimensions = 3

    def __init__(self):
        self.calls: list[list[str]] = []

    def embed(self, text):
        return self.embed_batch([text])[0]

    def embed_batch(self, texts):
        self.calls.append(list(texts))
        if len(texts) > 1:
            raise EmbeddingError("batch too large", 400)
        if "poison" in texts[0]:
            raise EmbeddingError("bad input", 400)
        return [[1.0, 2.0, 3.0]]


def env(**overrides) -> EnvConfig:
    values = dict(github_token="t", embedding_provider="openai", embedding_api_key="k")
    values.update(overrides)
    return EnvConfig(**values)


def test_sanitize_text():
    assert sanitize_text("a\x00b\x07c\n") == "abc"
    assert sanitize_text("") == " "
    assert sanitize_text(None) == " "
    assert sanitize_text("\x01\x02") == " "


def test_prepare_embedding_text():
    pr = PRItem(number=1, type="pr", repo="o/r", title="Fix auth", body="Details " * 400)
    issue = PRItem(number=2, type="issue", repo="o/r", title="", body="")

    text = prepare_embedding_text(pr)
    assert text.startswith("Pull Request: Fix auth\n\n")
    assert len(text) == len("Pull Request: Fix auth\n\n") + 2000
    assert prepare_embedding_text(issue) == "Issue: Untitled"


def test_openai_dimensions_by_model():
    assert create_embedding_provider(env()).dimensions == 1536
    assert create_embedding_provider(env(embedding_model="text-embedding-3-large")).dimensions == 3072


def test_hosted_provider_requires_key():
    with pytest.raises(ConfigError, match="EMBEDDING_API_KEY"):
        create_embedding_provider(env(embedding_api_key=None))


def test_provider_routing():
    kimi = create_embedding_provider(env(embedding_provider="kimi", embedding_model="moonshot-v1-embedding"))
    assert kimi.litellm_model == "openai/moonshot-v1-embedding"
    assert kimi.api_base == "https://api.moonshot.cn/v1"
    assert kimi.dimensions == 1024

    jina = create_embedding_provider(env(embedding_provider="jina", embedding_model=""))
    assert jina.litellm_model == "jina_ai/jina-embeddings-v3"

    voyage = create_embedding_provider(env(embedding_provider="voyageai", embedding_model="voyage-2"))
    assert voyage.litellm_model == "voyage/voyage-2"


def test_embedding_dimensions_wraps_provider():
    provider = create_embedding_provider(env(embedding_dimensions=256))
    assert isinstance(provider, TruncatedEmbeddings)
    assert provider.dimensions == 256


def test_litellm_embed_batch():
    provider = LiteLLMEmbeddings("text-embedding-3-small", 2, api_key="k")
    response = Mock(data=[{"embedding": [0.1, 0.2]}, {"embedding": [0.3, 0.4]}])

    with patch("litellm.embedding", return_value=response) as embedding:
        vectors = provider.embed_batch(["a\x00", ""])

    assert vectors == [[0.1, 0.2], [0.3, 0.4]]
    kwargs = embedding.call_args.kwargs
    assert kwargs["input"] == ["a", " "]
    assert kwargs["api_key"] == "k"


def test_litellm_errors_become_embedding_errors():
    provider = LiteLLMEmbeddings("text-embedding-3-small", 2)
    failure = RuntimeError("boom")
    failure.status_code = 429

    with patch("litellm.embedding", side_effect=failure):
        with pytest.raises(EmbeddingError) as exc:
            provider.embed_batch(["a"])
    assert exc.value.status_code == 429


def test_ollama_not_running():
    provider = OllamaEmbeddings()
    with patch.object(provider.session, "post", side_effect=requests.ConnectionError("refused")):
        with pytest.raises(EmbeddingError, match="ollama serve"):
            provider.embed("hello")


def test_ollama_detects_dimensions():
    provider = OllamaEmbeddings(model="nomic-embed-text")
    response = Mock(status_code=200)
    response.json.return_value = {"embeddings": [[0.0] * 768]}

    with patch.object(provider.session, "post", return_value=response) as post:
        assert provider.detect_dimensions() == 768

    assert post.call_args.kwargs["json"]["model"] == "nomic-embed-text"
    assert embedding_batch_size("ollama") == 50
    assert embedding_batch_size("openai") == 10


def test_truncated_embeddings():
    inner = Mock(model="m", dimensions=4)
    inner.embed_batch.return_value = [[1, 2, 3, 4], [5, 6, 7, 8]]

    wrapper = TruncatedEmbeddings(inner, 2)

    assert wrapper.embed_batch(["a", "b"]) == [[1, 2], [5, 6]]
    with pytest.raises(DimensionMismatch):
        TruncatedEmbeddings(inner, 5)


def test_retry_waits_on_rate_limit():
    embedder = Mock(dimensions=2)
    embedder.embed_batch.side_effect = [EmbeddingError("slow down", 429), [[1.0, 0.0]]]

    with patch("prprism.embeddings.time.sleep") as sleep:
        assert embed_with_retry(embedder, ["a"]) == [[1.0, 0.0]]

    sleep.assert_called_once_with(60.0)


def test_retry_gives_up_after_attempts():
    embedder = Mock(dimensions=2)
    embedder.embed_batch.side_effect = EmbeddingError("server error", 500)

    with patch("prprism.embeddings.time.sleep") as sleep:
        with pytest.raises(EmbeddingError):
            embed_with_retry(embedder, ["a"])

    assert embedder.embed_batch.call_count == 3
    assert [c.args[0] for c in sleep.call_args_list] == [5.0, 5.0]


def test_retry_does_not_wait_after_final_rate_limit():
    embedder = Mock(dimensions=2)
    embedder.embed_batch.side_effect = EmbeddingError("slow down", 429)

    with patch("prprism.embeddings.time.sleep") as sleep:
        with pytest.raises(EmbeddingError):
            embed_with_retry(embedder, ["a"])

    assert embedder.embed_batch.call_count == 3
    assert [c.args[0] for c in sleep.call_args_list] == [60.0, 120.0]


def test_embed_texts_isolates_poison_items():
    embedder = FlakyEmbedder()

    with patch("prprism.embeddings.time.sleep"):
        vectors = embed_texts(embedder, ["good one", "poison pill", "good two"])

    assert vectors == [[1.0, 2.0, 3.0], [0.0, 0.0, 0.0], [1.0, 2.0, 3.0]]


def test_embed_texts_empty():
    assert embed_texts(FlakyEmbedder(), []) == []
