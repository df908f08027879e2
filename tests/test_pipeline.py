from __future__ import annotations

from datetime import datetime, timezone
from unittest.mock import Mock, patch

import numpy as np
import pytest

from prprism.config import EnvConfig, PrismConfig
from prprism.github import RateLimitInfo
from prprism.pipeline import (
    PipelineContext,
    embedding_model_identity,
    parse_duration,
    resolve_vision_document,
    run_dupes,
    run_rank,
    run_reembed,
    run_report,
    run_scan,
    run_vision,
)
from prprism.store import PRItem, VectorStore


REPO = "acme/widgets"


class KeywordEmbedder:
    """Maps texts onto axes by keyword so duplicates land on the same vector."""

    model = "keyword-v1"

    def __init__(self, dimensions: int = 3):
        self.dimensions = dimensions
        self.calls = 0

    def _vector(self, text: str) -> list[float]:
        vector = [0.0] * self.dimensions
        if "cache" in text.lower():
            vector[0] = 1.0
        elif "login" in text.lower():
            vector[1] = 1.0
        else:
            vector[self.dimensions - 1] = 1.0
        return vector

    def embed(self, text):
        return self._vector(text)

    def embed_batch(self, texts):
        self.calls += 1
        return [self._vector(t) for t in texts]


def make_pr(number: int, title: str, updated_at: str = "2024-03-01T00:00:00Z", **kwargs) -> PRItem:
    return PRItem(
        number=number,
        type="pr",
        repo=REPO,
        title=title,
        body=kwargs.pop("body", f"{title} details " * 10),
        author=kwargs.pop("author", "alice"),
        created_at="2024-02-01T00:00:00Z",
        updated_at=updated_at,
        **kwargs,
    )


def make_github(prs: list[PRItem], issues: list[PRItem] | None = None) -> Mock:
    github = Mock()
    github.fetch_prs_graphql.return_value = prs
    github.fetch_issues_graphql.return_value = issues or []
    github.fetch_prs.return_value = prs
    github.fetch_issues.return_value = issues or []
    github.get_rate_limit.return_value = RateLimitInfo()
    github.format_rate_limit_warning.return_value = None
    github.estimate_api_calls_needed.return_value = 10
    github.get_author_merge_count.return_value = 4
    github.fetch_file_content.return_value = None
    return github


@pytest.fixture
def ctx(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    prs = [
        make_pr(1, "Add widget cache"),
        make_pr(2, "Widget cache layer", has_tests=True, ci_status="success"),
        make_pr(3, "Fix login redirect"),
    ]
    issues = [PRItem(number=4, type="issue", repo=REPO, title="Login broken",
                     updated_at="2024-03-01T00:00:00Z")]
    embedder = KeywordEmbedder()
    store = VectorStore(tmp_path / "prism.db", dimensions=3, embedding_model="openai:keyword-v1")
    return PipelineContext(
        config=PrismConfig(repo=REPO),
        env=EnvConfig(github_token="t"),
        owner="acme",
        repo="widgets",
        github=make_github(prs, issues),
        store=store,
        embedder=embedder,
    )


def test_parse_duration():
    now = datetime(2024, 3, 31, tzinfo=timezone.utc)
    assert parse_duration("7d", now) == "2024-03-24T00:00:00Z"
    assert parse_duration("2w", now) == "2024-03-17T00:00:00Z"
    assert parse_duration("1m", now) == "2024-03-01T00:00:00Z"
    for bad in ["", "7", "d7", "7y", "1.5d"]:
        with pytest.raises(ValueError, match="Invalid duration"):
            parse_duration(bad, now)


def test_embedding_model_identity():
    assert embedding_model_identity(EnvConfig(github_token="t", embedding_provider="jina"), KeywordEmbedder()) \
        == "jina:keyword-v1"


def test_scan_stores_items_and_skips_unchanged(ctx):
    result = run_scan(ctx)

    assert result.fetched == 4
    assert result.embedded == 4
    assert result.stats == {"total_items": 4, "prs": 3, "issues": 1, "diffs": 0}
    ctx.github.fetch_prs_graphql.assert_called_once_with(since=None, state="open", max_items=5000)

    again = run_scan(ctx)
    assert again.embedded == 0
    assert again.skipped == 4


def test_scan_reembeds_updated_items(ctx):
    run_scan(ctx)
    ctx.github.fetch_prs_graphql.return_value = [make_pr(1, "Add widget cache", updated_at="2024-03-05T00:00:00Z")]
    ctx.github.fetch_issues_graphql.return_value = []

    result = run_scan(ctx)

    assert result.embedded == 1
    assert ctx.store.get_by_number(REPO, 1, "pr").updated_at == "2024-03-05T00:00:00Z"


def test_scan_rest_with_multiple_states(ctx):
    run_scan(ctx, since="7d", state="open,closed", use_rest=True)

    assert ctx.github.fetch_prs.call_count == 2
    states = [c.kwargs["state"] for c in ctx.github.fetch_prs.call_args_list]
    assert states == ["open", "closed"]
    assert ctx.github.fetch_prs.call_args.kwargs["since"].endswith("Z")


def test_dupes_dry_run(ctx):
    run_scan(ctx)

    result = run_dupes(ctx, dry_run=True)

    assert len(result.clusters) == 2
    labels = [(a.number, a.label) for a in result.actions]
    assert (1, "prism:duplicate") in labels
    assert (2, "prism:duplicate") in labels
    assert sum(1 for _, label in labels if label == "prism:top-pick") == 2
    ctx.github.apply_label.assert_not_called()
    ctx.github.ensure_label.assert_not_called()


def test_dupes_without_label_flags_returns_no_actions(ctx):
    run_scan(ctx)
    assert run_dupes(ctx).actions == []


def test_dupes_apply_labels(ctx):
    run_scan(ctx)
    with patch("prprism.labels.time.sleep"):
        result = run_dupes(ctx, apply_labels=True)

    assert ctx.github.ensure_label.call_count == 5
    assert ctx.github.apply_label.call_count == len(result.actions)


def test_rank(ctx):
    run_scan(ctx)
    with patch("prprism.scoring.time.sleep"):
        ranked = run_rank(ctx)

    assert len(ranked) == 4
    assert ranked[0].number == 2
    ctx.github.get_author_merge_count.assert_called_once_with("alice")


def test_resolve_vision_prefers_local_doc(ctx, tmp_path):
    doc = tmp_path / "VISION.md"
    doc.write_text("# Goals\nBuild a fast widget cache for everyone.\n")

    assert resolve_vision_document(ctx, str(doc)) == doc
    ctx.github.fetch_file_content.assert_not_called()


def test_resolve_vision_falls_back_to_readme(ctx, tmp_path):
    ctx.github.fetch_file_content.side_effect = lambda name: "# Widgets\nReadme text" if name == "README.md" else None

    path = resolve_vision_document(ctx)

    assert path.name == "README.md"
    assert path.parent.name == "data"
    assert path.read_text() == "# Widgets\nReadme text"


def test_vision_without_document(ctx):
    assert run_vision(ctx) is None


def test_vision_classifies_items(ctx, tmp_path):
    run_scan(ctx)
    doc = tmp_path / "VISION.md"
    doc.write_text("# Caching\nWidgets should cache aggressively and stay fast.\n")

    result = run_vision(ctx, doc=str(doc), dry_run=True)

    assert {s.number for s in result.by_class("aligned")} == {1, 2}
    assert {s.number for s in result.by_class("off-vision")} == {3, 4}
    assert any(a.label == "prism:off-vision" for a in result.actions)


def test_reembed_changes_width(ctx):
    run_scan(ctx)
    ctx.embedder = KeywordEmbedder(dimensions=5)
    ctx.env = EnvConfig(github_token="t", embedding_provider="ollama")

    count = run_reembed(ctx)

    assert count == 4
    assert ctx.store.dimensions == 5
    assert ctx.store.get_meta("embedding_model") == "ollama:keyword-v1"
    vector = ctx.store.get_embedding(ctx.store.get_by_number(REPO, 1, "pr").key)
    assert np.allclose(vector, [1.0, 0.0, 0.0, 0.0, 0.0])


def test_report_written(ctx, tmp_path):
    run_scan(ctx)
    output = tmp_path / "prism-report.md"

    with patch("prprism.scoring.time.sleep"):
        assert run_report(ctx, output) == output

    text = output.read_text()
    assert REPO in text
    assert "Add widget cache" in text or "Widget cache layer" in text


def test_report_skipped_when_store_empty(ctx, tmp_path):
    assert run_report(ctx, tmp_path / "r.md") is None
