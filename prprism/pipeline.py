"""
Pipeline steps for Prism: scan -> dupes -> rank -> vision -> report.

Each step reads what the previous ones stored; the CLI runs them one at a
time or all together (``prism triage``).
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable

from .cluster import Cluster, find_duplicate_clusters
from .config import EnvConfig, PrismConfig, ensure_data_dir, parse_repo
from .embeddings import (
    EmbeddingProvider,
    create_embedding_provider,
    embed_texts,
    embedding_batch_size,
    prepare_embedding_text,
)
from .github import GitHubClient
from .labels import LabelAction, apply_label_actions, ensure_labels_exist
from .report import VisionSummary, build_report
from .scoring import ScoredPR, build_scorer_context, rank_prs
from .store import (
    DB_FILENAME,
    META_EMBEDDING_MODEL,
    META_TARGET_DIMENSIONS,
    PRItem,
    StoreItem,
    VectorStore,
)
from .vision import VisionScore, check_vision_alignment


logger = logging.getLogger(__name__)

VISION_CANDIDATES = ("VISION.md", "README.md")
DURATION_PATTERN = re.compile(r"^(\d+)(d|w|m)$")

ProgressCallback = Callable[[str, int, int], None]


@dataclass
class PipelineContext:
    config: PrismConfig
    env: EnvConfig
    owner: str
    repo: str
    github: GitHubClient
    store: VectorStore
    embedder: EmbeddingProvider

    @property
    def repo_full(self) -> str:
        return f"{self.owner}/{self.repo}"


@dataclass
class ScanResult:
    fetched: int = 0
    embedded: int = 0
    skipped: int = 0
    stats: dict[str, int] = field(default_factory=dict)


@dataclass
class DupesResult:
    clusters: list[Cluster]
    actions: list[LabelAction] = field(default_factory=list)


@dataclass
class VisionResult:
    document: Path
    scores: list[VisionScore]
    actions: list[LabelAction] = field(default_factory=list)

    def by_class(self, classification: str) -> list[VisionScore]:
        return [s for s in self.scores if s.classification == classification]


def parse_duration(value: str, now: datetime | None = None) -> str:
    """Turn "7d", "2w" or "1m" (30 days) into an ISO timestamp that far in the past."""
    match = DURATION_PATTERN.match(value or "")
    if not match:
        raise ValueError(f"Invalid duration: {value}. Use format like 7d, 2w, 1m")
    amount, unit = int(match.group(1)), match.group(2)
    days = amount * {"d": 1, "w": 7, "m": 30}[unit]
    now = now or datetime.now(timezone.utc)
    return (now - timedelta(days=days)).isoformat().replace("+00:00", "Z")


def embedding_model_identity(env: EnvConfig, embedder: EmbeddingProvider) -> str:
    """Provider and model recorded in the store to detect model switches."""
    return f"{env.embedding_provider}:{embedder.model}"


def create_pipeline_context(
    repo_override: str | None = None,
    config: PrismConfig | None = None,
    env: EnvConfig | None = None,
    db_path: Path | None = None,
    strict: bool = True,
) -> PipelineContext:
    """Load configuration and open the GitHub client, embedder and store."""
    config = config or PrismConfig.load()
    env = env or EnvConfig.from_env()
    owner, repo = parse_repo(repo_override or config.repo)

    github = GitHubClient(env.github_token, owner, repo)
    embedder = create_embedding_provider(env)
    if db_path is None:
        db_path = ensure_data_dir() / DB_FILENAME
    store = VectorStore(
        db_path,
        dimensions=embedder.dimensions,
        embedding_model=embedding_model_identity(env, embedder) if strict else None,
        target_dimensions=env.embedding_dimensions if strict else None,
        strict=strict,
    )
    return PipelineContext(config, env, owner, repo, github, store, embedder)


# =============================================================================
# scan
# =============================================================================


def _fetch_items(ctx: PipelineContext, since: str | None, states: list[str], use_rest: bool) -> list[PRItem]:
    github = ctx.github
    max_items = ctx.config.max_prs
    items: list[PRItem] = []

    if use_rest:
        warning = github.format_rate_limit_warning(github.estimate_api_calls_needed(max_items))
        if warning:
            logger.warning(warning)

    for state in states:
        if use_rest:
            prs = github.fetch_prs(since=since, state=state, max_items=max_items, batch_size=ctx.config.batch_size)
            issues = github.fetch_issues(since=since, state=state, max_items=max_items, batch_size=ctx.config.batch_size)
        else:
            prs = github.fetch_prs_graphql(since=since, state=state, max_items=max_items)
            issues = github.fetch_issues_graphql(since=since, state=state, max_items=max_items)
        logger.info("Fetched %d %s PRs and %d %s issues", len(prs), state, len(issues), state)
        items.extend(prs)
        items.extend(issues)

    rate = github.get_rate_limit()
    logger.info("API budget: %d/%d remaining", rate.remaining, rate.limit)
    return items


def run_scan(
    ctx: PipelineContext,
    since: str | None = None,
    state: str = "open",
    use_rest: bool = False,
    progress: ProgressCallback | None = None,
) -> ScanResult:
    """Fetch items, embed the new or changed ones and store them."""
    since_iso = parse_duration(since) if since else None
    states = [s.strip() for s in state.split(",") if s.strip()]
    repo_full = ctx.repo_full

    items = _fetch_items(ctx, since_iso, states, use_rest)

    pending: list[PRItem] = []
    skipped = 0
    for item in items:
        existing = ctx.store.get_by_number(repo_full, item.number, item.type)
        if existing and existing.updated_at == item.updated_at:
            skipped += 1
        else:
            pending.append(item)
    if skipped:
        logger.info("Skipping %d unchanged items, embedding %d new/updated", skipped, len(pending))

    batch_size = embedding_batch_size(ctx.env.embedding_provider)
    embedded = 0
    for start in range(0, len(pending), batch_size):
        batch = pending[start:start + batch_size]
        vectors = embed_texts(ctx.embedder, [prepare_embedding_text(item) for item in batch])
        for item, vector in zip(batch, vectors):
            ctx.store.upsert(StoreItem.from_item(item, vector))
        embedded += len(batch)
        if progress:
            progress("embed", embedded, len(pending))

    return ScanResult(
        fetched=len(items),
        embedded=embedded,
        skipped=skipped,
        stats=ctx.store.get_stats(repo_full),
    )


# =============================================================================
# dupes / rank / vision
# =============================================================================


def _apply_labels(ctx: PipelineContext, actions: list[LabelAction], apply: bool, dry_run: bool) -> list[LabelAction]:
    if not (apply or dry_run):
        return []
    if apply and not dry_run:
        ensure_labels_exist(ctx.github, ctx.config.labels)
    return apply_label_actions(ctx.github, actions, dry_run=dry_run)


def find_clusters(ctx: PipelineContext, threshold: float | None = None) -> list[Cluster]:
    config = ctx.config
    return find_duplicate_clusters(
        ctx.store,
        ctx.store.get_all_items(ctx.repo_full),
        ctx.repo_full,
        threshold=threshold if threshold is not None else config.thresholds.duplicate_similarity,
        ann_cutoff=config.ann_cutoff,
        ann_neighbors=config.ann_neighbors,
        zero_vector_policy=config.zero_vectors,
    )


def run_dupes(
    ctx: PipelineContext,
    threshold: float | None = None,
    apply_labels: bool = False,
    dry_run: bool = False,
) -> DupesResult:
    clusters = find_clusters(ctx, threshold)
    labels = ctx.config.labels

    actions: list[LabelAction] = []
    for cluster in clusters:
        for member in cluster.items:
            actions.append(LabelAction(
                number=member.number,
                action="add",
                label=labels.duplicate,
                reason=f"Cluster #{cluster.id} ({len(cluster.items)} items)",
            ))
        actions.append(LabelAction(
            number=cluster.best_pick.number,
            action="add",
            label=labels.top_pick,
            reason=f"Best pick in cluster #{cluster.id}",
        ))

    return DupesResult(clusters=clusters, actions=_apply_labels(ctx, actions, apply_labels, dry_run))


def run_rank(ctx: PipelineContext) -> list[ScoredPR]:
    items = ctx.store.get_all_items(ctx.repo_full)
    context = build_scorer_context(items, ctx.github)
    return rank_prs(items, ctx.config.weights, context)


def resolve_vision_document(ctx: PipelineContext, doc: str | None = None) -> Path | None:
    """Local --doc / vision_doc first, then VISION.md or README.md from the repository."""
    candidate = doc or ctx.config.vision_doc
    if candidate and Path(candidate).exists():
        return Path(candidate)

    for name in VISION_CANDIDATES:
        content = ctx.github.fetch_file_content(name)
        if content:
            local_path = ensure_data_dir() / name
            local_path.write_text(content, encoding="utf-8")
            logger.info("Using %s from %s as vision document", name, ctx.repo_full)
            return local_path

    return None


def run_vision(
    ctx: PipelineContext,
    doc: str | None = None,
    apply_labels: bool = False,
    dry_run: bool = False,
) -> VisionResult | None:
    path = resolve_vision_document(ctx, doc)
    if path is None:
        logger.warning("No vision document found locally or in repo (tried %s)", ", ".join(VISION_CANDIDATES))
        return None

    scores = check_vision_alignment(
        ctx.store,
        ctx.embedder,
        path.read_text(encoding="utf-8"),
        ctx.repo_full,
        ctx.config.thresholds,
        ctx.config.zero_vectors,
    )

    actions = [
        LabelAction(
            number=score.number,
            action="add",
            label=ctx.config.labels.for_classification(score.classification),
            reason=f"Vision score: {score.score:.2f} -> {score.classification}",
        )
        for score in scores
    ]
    return VisionResult(
        document=path,
        scores=scores,
        actions=_apply_labels(ctx, actions, apply_labels, dry_run),
    )


# =============================================================================
# reembed / report
# =============================================================================


def run_reembed(ctx: PipelineContext, progress: ProgressCallback | None = None) -> int:
    """Re-embed every stored item with the configured provider.

    The context must be opened with ``strict=False``. New vectors are computed
    before the vector table is rebuilt at the new width.
    """
    store = ctx.store
    items = [item for repo in store.get_repos() for item in store.get_all_items(repo)]
    batch_size = embedding_batch_size(ctx.env.embedding_provider)

    vectors: list[list[float]] = []
    for start in range(0, len(items), batch_size):
        batch = items[start:start + batch_size]
        vectors.extend(embed_texts(ctx.embedder, [prepare_embedding_text(item) for item in batch]))
        if progress:
            progress("embed", len(vectors), len(items))

    store.reset_vectors(ctx.embedder.dimensions)
    for item, vector in zip(items, vectors):
        store.upsert_embedding_only(item.key, vector)

    store.set_meta(META_EMBEDDING_MODEL, embedding_model_identity(ctx.env, ctx.embedder))
    if ctx.env.embedding_dimensions:
        store.set_meta(META_TARGET_DIMENSIONS, str(ctx.env.embedding_dimensions))

    logger.info("Re-embedded %d items at %d dimensions", len(items), ctx.embedder.dimensions)
    return len(items)


def run_report(ctx: PipelineContext, output: Path, top: int = 20, cluster_limit: int = 25) -> Path | None:
    """Write the markdown triage report. Returns None when nothing is stored."""
    stats = ctx.store.get_stats(ctx.repo_full)
    if not stats["total_items"]:
        return None

    clusters = find_clusters(ctx)
    ranked = run_rank(ctx)

    summary = None
    vision = run_vision(ctx)
    if vision is not None:
        summary = VisionSummary.from_scores(vision.scores)

    output.write_text(
        build_report(ctx.repo_full, stats, clusters, ranked, summary, top=top, cluster_limit=cluster_limit),
        encoding="utf-8",
    )
    return output
