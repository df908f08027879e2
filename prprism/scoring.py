"""
PR quality scoring for Prism.

Each item gets a set of normalized signals in [0, 1]:
- has_tests / ci_passing: 1 for yes, 0 for no, 0.5 when unknown
- diff_size: smaller changes score higher (-1 when diff stats are missing)
- author_history: merged PR count in the repo, with diminishing returns
- description_quality: longer descriptions score higher, capped
- review_approvals: review count against a target of 3
- recency: exponential decay with a 30 day half-life

The score is the weighted sum plus a small recency bonus. When diff stats are
missing the diff_size weight is spread proportionally over the other signals.
"""

from __future__ import annotations

import logging
import time
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Protocol

from .config import ScoringWeights
from .store import PRItem


logger = logging.getLogger(__name__)

HALF_LIFE_DAYS = 30.0
RECENCY_BONUS = 0.05
REVIEW_TARGET = 3
TOP_AUTHORS = 50
AUTHOR_LOOKUP_DELAY = 0.3  # search API secondary limit is ~30 req/min


class MergeCountSource(Protocol):
    def get_author_merge_count(self, author: str) -> int: ...


@dataclass
class ScoreSignals:
    """Normalized quality signals for one item."""
    has_tests: float = 0.0
    ci_passing: float = 0.0
    diff_size: float = 0.0
    author_history: float = 0.0
    description_quality: float = 0.0
    review_approvals: float = 0.0
    recency: float = 0.0


@dataclass
class ScoredPR:
    """An item with its score and the signals behind it."""
    item: PRItem
    score: float
    signals: ScoreSignals

    @property
    def number(self) -> int:
        return self.item.number

    @property
    def type(self) -> str:
        return self.item.type

    @property
    def title(self) -> str:
        return self.item.title

    @property
    def author(self) -> str:
        return self.item.author

    @property
    def updated_at(self) -> str:
        return self.item.updated_at


@dataclass
class ScorerContext:
    """Repository-level facts shared by every score computation."""
    author_merge_counts: dict[str, int] = field(default_factory=dict)


def parse_timestamp(value: str | None) -> datetime | None:
    """Parse an ISO-8601 timestamp (GitHub style "Z" suffix allowed) as UTC."""
    if not value:
        return None
    try:
        dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def recency_factor(updated_at: str | None, now: datetime | None = None) -> float:
    """0.5 ** (age_days / 30). Unparseable timestamps count as infinitely old."""
    updated = parse_timestamp(updated_at)
    if updated is None:
        return 0.0
    now = now or datetime.now(timezone.utc)
    age_days = max(0.0, (now - updated).total_seconds() / 86400.0)
    return 0.5 ** (age_days / HALF_LIFE_DAYS)


def normalize_description_quality(body: str | None) -> float:
    if not body:
        return 0.0
    length = len(body)
    if length < 50:
        return 0.1
    if length < 200:
        return 0.3 + (length - 50) / 150 * 0.3
    if length < 1000:
        return 0.6 + (length - 200) / 800 * 0.3
    return 0.9 + min(0.1, (length - 1000) / 5000 * 0.1)


def normalize_diff_size(additions: int, deletions: int) -> float:
    total = additions + deletions
    if total <= 50:
        return 1.0
    if total <= 200:
        return 0.8
    if total <= 500:
        return 0.6
    if total <= 1000:
        return 0.4
    if total <= 5000:
        return 0.2
    return 0.1


def normalize_author_history(merge_count: int) -> float:
    if merge_count <= 0:
        return 0.1
    if merge_count <= 5:
        return 0.2 + merge_count * 0.04
    if merge_count <= 20:
        return 0.4 + (merge_count - 5) * 0.02
    return min(1.0, 0.7 + (merge_count - 20) * 0.005)


def _tri_state(value: Any, yes: Any, no: Any) -> float:
    if value == yes:
        return 1.0
    if value == no:
        return 0.0
    return 0.5


def build_scorer_context(
    items: list[PRItem],
    github: MergeCountSource,
    top_authors: int = TOP_AUTHORS,
    delay: float = AUTHOR_LOOKUP_DELAY,
) -> ScorerContext:
    """Look up merge counts for the most frequent authors.

    Authors outside the top ``top_authors`` by item count default to 0 merges.
    """
    frequency = Counter(
        item.author for item in items if item.author and item.author != "unknown"
    )

    context = ScorerContext()
    for author, _ in frequency.most_common(top_authors):
        context.author_merge_counts[author] = github.get_author_merge_count(author)
        if delay:
            time.sleep(delay)

    logger.debug("Resolved merge counts for %d authors", len(context.author_merge_counts))
    return context


def compute_signals(
    item: PRItem,
    context: ScorerContext,
    now: datetime | None = None,
) -> ScoreSignals:
    has_diff_stats = item.additions is not None and item.deletions is not None
    return ScoreSignals(
        has_tests=_tri_state(item.has_tests, True, False),
        ci_passing=_tri_state(item.ci_status, "success", "failure"),
        diff_size=normalize_diff_size(item.additions, item.deletions) if has_diff_stats else -1.0,
        author_history=normalize_author_history(context.author_merge_counts.get(item.author, 0)),
        description_quality=normalize_description_quality(item.body),
        review_approvals=min(1.0, (item.review_count or 0) / REVIEW_TARGET),
        recency=recency_factor(item.updated_at, now),
    )


def score_pr(
    item: PRItem,
    weights: ScoringWeights,
    context: ScorerContext,
    now: datetime | None = None,
) -> ScoredPR:
    """Score a single item."""
    signals = compute_signals(item, context, now)

    has_tests_w = weights.has_tests
    ci_w = weights.ci_passing
    diff_w = weights.diff_size_penalty
    author_w = weights.author_history
    desc_w = weights.description_quality
    review_w = weights.review_approvals

    if signals.diff_size < 0:
        # No diff stats: spread the diff weight over the remaining signals
        other_total = 1.0 - weights.diff_size_penalty
        has_tests_w /= other_total
        ci_w /= other_total
        author_w /= other_total
        desc_w /= other_total
        review_w /= other_total
        diff_w = 0.0

    score = (
        signals.has_tests * has_tests_w
        + signals.ci_passing * ci_w
        + max(signals.diff_size, 0.0) * diff_w
        + signals.author_history * author_w
        + signals.description_quality * desc_w
        + signals.review_approvals * review_w
        + signals.recency * RECENCY_BONUS
    )

    return ScoredPR(item=item, score=score, signals=signals)


def rank_prs(
    items: list[PRItem],
    weights: ScoringWeights,
    context: ScorerContext,
    now: datetime | None = None,
) -> list[ScoredPR]:
    """Score every item, best first. Equal scores order by number, then type."""
    now = now or datetime.now(timezone.utc)
    scored = [score_pr(item, weights, context, now) for item in items]
    scored.sort(key=lambda s: (-s.score, s.number, s.type))
    return scored
