from __future__ import annotations

from datetime import datetime, timezone
from unittest.mock import Mock, patch

import pytest

from prprism.config import ScoringWeights
from prprism.scoring import (
    ScorerContext,
    build_scorer_context,
    normalize_author_history,
    normalize_description_quality,
    normalize_diff_size,
    rank_prs,
    recency_factor,
    score_pr,
)
from prprism.store import PRItem


NOW = datetime(2024, 3, 1, tzinfo=timezone.utc)


def make_pr(number: int = 1, **kwargs) -> PRItem:
    defaults = dict(
        number=number,
        type="pr",
        repo="acme/widgets",
        title=f"PR {number}",
        body="",
        author="alice",
        created_at="2024-03-01T00:00:00Z",
        updated_at="2024-03-01T00:00:00Z",
    )
    defaults.update(kwargs)
    return PRItem(**defaults)


def test_description_quality_bands():
    assert normalize_description_quality("") == 0.0
    assert normalize_description_quality("x" * 49) == 0.1
    assert normalize_description_quality("x" * 50) == pytest.approx(0.3)
    assert normalize_description_quality("x" * 200) == pytest.approx(0.6)
    assert normalize_description_quality("x" * 1000) == pytest.approx(0.9)
    assert normalize_description_quality("x" * 100_000) == pytest.approx(1.0)


def test_diff_size_steps():
    assert normalize_diff_size(25, 25) == 1.0
    assert normalize_diff_size(100, 100) == 0.8
    assert normalize_diff_size(300, 200) == 0.6
    assert normalize_diff_size(1000, 0) == 0.4
    assert normalize_diff_size(4000, 1000) == 0.2
    assert normalize_diff_size(5000, 1) == 0.1


def test_author_history_curve():
    assert normalize_author_history(0) == 0.1
    assert normalize_author_history(5) == pytest.approx(0.4)
    assert normalize_author_history(20) == pytest.approx(0.7)
    assert normalize_author_history(1000) == 1.0


def test_recency_half_life():
    assert recency_factor("2024-03-01T00:00:00Z", NOW) == pytest.approx(1.0)
    assert recency_factor("2024-01-31T00:00:00Z", NOW) == pytest.approx(0.5)
    assert recency_factor("not a date", NOW) == 0.0


def test_score_with_diff_stats():
    pr = make_pr(has_tests=True, ci_status="success", additions=10, deletions=10, review_count=3)
    scored = score_pr(pr, ScoringWeights(), ScorerContext(), NOW)

    # 0.25 + 0.20 + 0.15 + 0.1 * 0.15 + 0 + 0.10 + 0.05 recency bonus
    assert scored.score == pytest.approx(0.765)
    assert scored.signals.diff_size == 1.0


def test_missing_diff_stats_redistributes_weight():
    pr = make_pr(has_tests=True, ci_status="success", review_count=3)
    scored = score_pr(pr, ScoringWeights(), ScorerContext(), NOW)

    assert scored.signals.diff_size == -1.0
    assert scored.score == pytest.approx((0.25 + 0.20 + 0.015 + 0.10) / 0.85 + 0.05)


def test_unknown_signals_are_neutral():
    scored = score_pr(make_pr(), ScoringWeights(), ScorerContext(), NOW)
    assert scored.signals.has_tests == 0.5
    assert scored.signals.ci_passing == 0.5

    failing = score_pr(make_pr(has_tests=False, ci_status="failure"), ScoringWeights(), ScorerContext(), NOW)
    assert failing.signals.has_tests == 0.0
    assert failing.signals.ci_passing == 0.0
    assert failing.score < scored.score


def test_smaller_diff_scores_higher():
    small = score_pr(make_pr(additions=10, deletions=10), ScoringWeights(), ScorerContext(), NOW)
    large = score_pr(make_pr(additions=600, deletions=400), ScoringWeights(), ScorerContext(), NOW)
    assert small.score > large.score


def test_recent_update_scores_higher():
    recent = score_pr(make_pr(updated_at="2024-03-01T00:00:00Z"), ScoringWeights(), ScorerContext(), NOW)
    stale = score_pr(make_pr(updated_at="2024-01-01T00:00:00Z"), ScoringWeights(), ScorerContext(), NOW)
    assert recent.score > stale.score


def test_missing_diff_stats_close_to_average_diff():
    missing = score_pr(make_pr(), ScoringWeights(), ScorerContext(), NOW)
    average = score_pr(make_pr(additions=600, deletions=400), ScoringWeights(), ScorerContext(), NOW)

    assert average.signals.diff_size == 0.4
    assert abs(missing.score - average.score) < 0.05


def test_has_tests_alone_raises_score():
    with_tests = score_pr(make_pr(has_tests=True, ci_status="success"), ScoringWeights(), ScorerContext(), NOW)
    without = score_pr(make_pr(has_tests=False, ci_status="success"), ScoringWeights(), ScorerContext(), NOW)
    assert with_tests.score - without.score == pytest.approx(0.25)


def test_author_history_uses_context():
    context = ScorerContext(author_merge_counts={"alice": 20})
    scored = score_pr(make_pr(), ScoringWeights(), context, NOW)
    assert scored.signals.author_history == pytest.approx(0.7)


def test_rank_orders_by_score_then_number():
    items = [
        make_pr(9, body="x" * 1000),
        make_pr(5),
        make_pr(2),
    ]
    ranked = rank_prs(items, ScoringWeights(), ScorerContext(), NOW)
    assert [r.number for r in ranked] == [9, 2, 5]


def test_rank_is_deterministic():
    items = [make_pr(n, body="x" * (n * 37)) for n in range(1, 20)]
    first = rank_prs(items, ScoringWeights(), ScorerContext(), NOW)
    second = rank_prs(list(reversed(items)), ScoringWeights(), ScorerContext(), NOW)
    assert [r.number for r in first] == [r.number for r in second]


def test_build_scorer_context_queries_top_authors():
    items = [make_pr(1, author="alice"), make_pr(2, author="alice"), make_pr(3, author="bob"),
             make_pr(4, author="unknown")]
    github = Mock()
    github.get_author_merge_count.side_effect = lambda author: {"alice": 12, "bob": 3}[author]

    with patch("prprism.scoring.time.sleep") as sleep:
        context = build_scorer_context(items, github, top_authors=1)

    assert context.author_merge_counts == {"alice": 12}
    github.get_author_merge_count.assert_called_once_with("alice")
    sleep.assert_called_once_with(0.3)
