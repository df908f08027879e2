"""
Prism CLI - de-duplicate, rank and vision-check GitHub PRs and issues.

Commands:
    init      - Write sample prism.yml and .env files
    scan      - Ingest PRs and issues into the local database
    dupes     - Find duplicate clusters
    rank      - Score and rank PRs by quality signals
    vision    - Check items against the vision document
    review    - LLM review of a single PR
    triage    - scan -> dupes -> rank -> vision
    reembed   - Re-embed stored items after switching embedding models
    reset     - Delete the local database
    status    - Database stats and API budget
    report    - Markdown triage report
"""

from __future__ import annotations

import functools
from pathlib import Path
from typing import Any, Callable

import click
from dotenv import load_dotenv

# Load .env file from current directory
load_dotenv()
load_dotenv(Path.cwd() / ".env")

from . import __version__
from .config import CONFIG_FILENAME, ConfigError, EnvConfig, PrismConfig, get_data_dir, parse_repo
from .embeddings import EmbeddingError
from .github import GitHubAPIError, GitHubClient
from .logs import setup_logging
from .pipeline import (
    PipelineContext,
    create_pipeline_context,
    find_clusters,
    run_dupes,
    run_rank,
    run_reembed,
    run_report,
    run_scan,
    run_vision,
)
from .reviewer import LLMConfig, ReviewError, review_pr
from .store import DB_FILENAME, StoreError, VectorStore
from .vision import ALIGNED, DRIFTING, OFF_VISION


SAMPLE_CONFIG = """\
# Prism Configuration

# Repository to triage
repo: owner/repo

# Vision document (local path). When missing, VISION.md then README.md
# are fetched from the repository.
# vision_doc: ./VISION.md

thresholds:
  duplicate_similarity: 0.85  # cosine similarity to link two items
  aligned: 0.65               # vision score >= aligned -> aligned
  drifting: 0.40              # vision score >= drifting -> drifting, else off-vision

scoring:
  weights:
    has_tests: 0.25
    ci_passing: 0.20
    diff_size_penalty: 0.15
    author_history: 0.15
    description_quality: 0.15
    review_approvals: 0.10

labels:
  duplicate: "prism:duplicate"
  aligned: "prism:aligned"
  drifting: "prism:drifting"
  off_vision: "prism:off-vision"
  top_pick: "prism:top-pick"

batch_size: 50       # REST page size
max_prs: 5000        # Maximum PRs/issues fetched per state
zero_vectors: warn   # warn or ignore items whose embedding failed
ann_cutoff: 5000     # switch to approximate neighbour search at this many items
ann_neighbors: 50    # neighbours checked per item in approximate mode
"""

SAMPLE_ENV = """\
# GitHub personal access token (repo scope)
GITHUB_TOKEN=

# Embeddings: openai, kimi, ollama, voyageai, jina
EMBEDDING_PROVIDER=openai
EMBEDDING_API_KEY=
EMBEDDING_MODEL=text-embedding-3-small
# Optional matryoshka truncation (e.g. 512)
# EMBEDDING_DIMENSIONS=

# Review LLM: openai, kimi, anthropic, ollama, opencode
LLM_PROVIDER=openai
LLM_API_KEY=
LLM_MODEL=gpt-4o-mini
"""

HANDLED_ERRORS = (ConfigError, StoreError, GitHubAPIError, EmbeddingError, ReviewError, ValueError)


def handle_errors(func: Callable[..., Any]) -> Callable[..., Any]:
    """Report known failures as a one-line message and a non-zero exit."""
    @functools.wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        try:
            return func(*args, **kwargs)
        except HANDLED_ERRORS as e:
            raise click.ClickException(str(e)) from e
    return wrapper


def _db_path() -> Path:
    return get_data_dir() / DB_FILENAME


def _truncate(text: str, width: int) -> str:
    return text if len(text) <= width else text[: width - 1] + "…"


def _progress(stage: str, current: int, total: int) -> None:
    click.echo(f"\r  Embedding... {current}/{total}", nl=False)
    if current == total:
        click.echo()


@click.group()
@click.version_option(version=__version__)
@click.option("-v", "--verbose", is_flag=True, help="Debug logging on stderr")
def main(verbose: bool):
    """Prism - triage GitHub PRs and issues: duplicates, ranking, vision alignment."""
    setup_logging(verbose)


@main.command()
@click.option("--force", is_flag=True, help="Overwrite existing files")
def init(force: bool):
    """Write sample prism.yml and .env files in the current directory."""
    cwd = Path.cwd()
    for path, content in (
        (cwd / CONFIG_FILENAME, SAMPLE_CONFIG),
        (cwd / ".env.example", SAMPLE_ENV),
        (cwd / ".env", SAMPLE_ENV),
    ):
        if not path.exists() or force:
            path.write_text(content)
            click.echo(f"  Created: {path}")
        else:
            click.echo(f"  Skipped: {path} (already exists)")

    click.echo("\nNext steps:")
    click.echo("  1. Edit .env with your GitHub token and AI provider keys")
    click.echo(f"  2. Edit {CONFIG_FILENAME} with your repo and preferences")
    click.echo("  3. Run: prism scan")


@main.command()
@click.option("-r", "--repo", help="Repository to scan (owner/repo)")
@click.option("-s", "--since", help="Only fetch items updated within duration (7d, 2w, 1m)")
@click.option("--state", default="open", show_default=True, help="States to fetch (open,closed)")
@click.option("--rest", is_flag=True, help="Use REST instead of GraphQL (no CI/review/test signals)")
@handle_errors
def scan(repo: str | None, since: str | None, state: str, rest: bool):
    """Ingest PRs and issues into the local database."""
    ctx = create_pipeline_context(repo)
    _scan(ctx, since=since, state=state, rest=rest)


def _scan(ctx: PipelineContext, since: str | None = None, state: str = "open", rest: bool = False) -> None:
    mode = "REST" if rest else "GraphQL"
    click.echo(f"Scanning {ctx.repo_full} ({mode})...")
    result = run_scan(ctx, since=since, state=state, use_rest=rest, progress=_progress)
    click.echo(
        f"Embedded {result.embedded} new items ({result.skipped} unchanged, {result.fetched} fetched)"
    )
    stats = result.stats
    click.echo(f"Database: {stats['prs']} PRs, {stats['issues']} issues, {stats['diffs']} cached diffs")


def _echo_label_summary(actions: list, dry_run: bool) -> None:
    verb = "Would apply" if dry_run else "Applied"
    click.echo(f"\n{verb} {len(actions)} labels")
    if dry_run:
        for action in actions[:50]:
            click.echo(f"  #{action.number} +{action.label}  ({action.reason})")


@main.command()
@click.option("-r", "--repo", help="Repository (owner/repo)")
@click.option("-t", "--threshold", type=float, default=None, help="Similarity threshold (default from config)")
@click.option("--cluster", "cluster_id", type=int, default=None, help="Show one cluster in detail")
@click.option("--apply-labels", is_flag=True, help="Apply labels on GitHub")
@click.option("--dry-run", is_flag=True, help="Show labels without applying them")
@handle_errors
def dupes(repo: str | None, threshold: float | None, cluster_id: int | None, apply_labels: bool, dry_run: bool):
    """Find duplicate PR/issue clusters."""
    ctx = create_pipeline_context(repo)

    if cluster_id is not None:
        clusters = find_clusters(ctx, threshold)
        cluster = next((c for c in clusters if c.id == cluster_id), None)
        if cluster is None:
            raise click.ClickException(f"Cluster #{cluster_id} not found")
        click.echo(f'\nCluster #{cluster.id}: "{cluster.theme}"')
        click.echo(f"Items: {len(cluster.items)} | Avg similarity: {cluster.avg_similarity * 100:.1f}%\n")
        for member in cluster.items:
            marker = "★" if member is cluster.best_pick else " "
            click.echo(f"{marker} #{member.number} {member.title}")
            click.echo(f"  Author: {member.author} | Updated: {member.updated_at[:10]} | Score: {member.score:.2f}")
        return

    _dupes(ctx, threshold=threshold, apply_labels=apply_labels, dry_run=dry_run)


def _dupes(ctx: PipelineContext, threshold: float | None = None, apply_labels: bool = False, dry_run: bool = False) -> None:
    result = run_dupes(ctx, threshold=threshold, apply_labels=apply_labels, dry_run=dry_run)
    clusters = result.clusters
    click.echo(f"Found {len(clusters)} duplicate clusters\n")
    click.echo(f"{'#':>4}  {'Size':>4}  {'Avg Sim':>7}  {'Best':>7}  Theme")
    for cluster in clusters:
        click.echo(
            f"{cluster.id:>4}  {len(cluster.items):>4}  {cluster.avg_similarity * 100:>6.1f}%  "
            f"{'#' + str(cluster.best_pick.number):>7}  {_truncate(cluster.theme, 50)}"
        )
    total = sum(len(c.items) for c in clusters)
    click.echo(f"\nTotal: {total} items across {len(clusters)} clusters")

    if apply_labels or dry_run:
        _echo_label_summary(result.actions, dry_run)


@main.command()
@click.option("-r", "--repo", help="Repository (owner/repo)")
@click.option("-n", "--top", default=20, show_default=True, help="Show top N results")
@handle_errors
def rank(repo: str | None, top: int):
    """Score and rank PRs by quality signals."""
    ctx = create_pipeline_context(repo)
    _rank(ctx, top)


def _rank(ctx: PipelineContext, top: int = 20) -> None:
    click.echo("Building scorer context (author history)...")
    ranked = run_rank(ctx)
    click.echo(f"\n{'Rank':>4}  {'#':>6}  {'Score':>5}  {'Author':<16}  Title")
    for position, pr in enumerate(ranked[:top], start=1):
        click.echo(
            f"{position:>4}  {pr.number:>6}  {pr.score:>5.2f}  "
            f"{_truncate(pr.author or 'unknown', 16):<16}  {_truncate(pr.title, 50)}"
        )


@main.command()
@click.option("-r", "--repo", help="Repository (owner/repo)")
@click.option("-d", "--doc", help="Path to vision document")
@click.option("--apply-labels", is_flag=True, help="Apply alignment labels")
@click.option("--dry-run", is_flag=True, help="Show labels without applying them")
@handle_errors
def vision(repo: str | None, doc: str | None, apply_labels: bool, dry_run: bool):
    """Check items against the vision document for alignment."""
    ctx = create_pipeline_context(repo)
    _vision(ctx, doc=doc, apply_labels=apply_labels, dry_run=dry_run)


def _vision(ctx: PipelineContext, doc: str | None = None, apply_labels: bool = False, dry_run: bool = False) -> None:
    result = run_vision(ctx, doc=doc, apply_labels=apply_labels, dry_run=dry_run)
    if result is None:
        click.echo("No vision document found locally or in repo (tried VISION.md, README.md)")
        return

    off_vision = result.by_class(OFF_VISION)
    click.echo(f"Vision document: {result.document}")
    click.echo(f"  Aligned:    {len(result.by_class(ALIGNED))}")
    click.echo(f"  Drifting:   {len(result.by_class(DRIFTING))}")
    click.echo(f"  Off-vision: {len(off_vision)}")

    if off_vision:
        click.echo("\nOff-vision items:")
        click.echo(f"{'#':>6}  {'Score':>5}  Matched Section")
        for score in off_vision[:20]:
            click.echo(f"{score.number:>6}  {score.score:>5.2f}  {_truncate(score.matched_section, 50)}")

    if apply_labels or dry_run:
        _echo_label_summary(result.actions, dry_run)


@main.command()
@click.argument("pr_number", type=int)
@click.option("-r", "--repo", help="Repository (owner/repo)")
@click.option("-m", "--model", help="Override LLM model")
@handle_errors
def review(pr_number: int, repo: str | None, model: str | None):
    """Deep LLM review of a specific PR."""
    ctx = create_pipeline_context(repo)
    env = ctx.env

    click.echo(f"Fetching PR #{pr_number}...")
    pr = ctx.github.get_pr(pr_number)
    diff = ctx.github.fetch_diff(pr_number, ctx.store)

    llm_model = model or env.llm_model
    click.echo(f"Reviewing with {llm_model}...")
    result = review_pr(pr.title, pr.body, diff, LLMConfig(
        provider=env.llm_provider,
        model=llm_model,
        api_key=env.llm_api_key,
    ))

    additions = "?" if pr.additions is None else pr.additions
    deletions = "?" if pr.deletions is None else pr.deletions
    click.echo(f"\n  PR #{pr_number}: {pr.title}")
    click.echo(f"  Author: {pr.author} | +{additions}/-{deletions}\n")
    click.echo(f"  Summary: {result.summary}")
    if result.concerns:
        click.echo("\n  Concerns:")
        for concern in result.concerns:
            click.echo(f"    • {concern}")
    colors = {"merge": "green", "revise": "yellow", "close": "red"}
    click.echo("\n  Recommendation: " + click.style(result.recommendation.upper(), fg=colors[result.recommendation]))
    click.echo(f"  Confidence: {result.confidence * 100:.0f}%")


@main.command()
@click.option("-r", "--repo", help="Repository (owner/repo)")
@click.option("--apply-labels", is_flag=True, help="Apply all labels")
@click.option("--dry-run", is_flag=True, help="Show what would happen without applying")
@click.option("--rest", is_flag=True, help="Use REST instead of GraphQL")
@handle_errors
def triage(repo: str | None, apply_labels: bool, dry_run: bool, rest: bool):
    """Full pipeline: scan -> dupes -> rank -> vision."""
    click.echo("Running: scan -> dupes -> rank -> vision\n")
    ctx = create_pipeline_context(repo)

    _scan(ctx, rest=rest)
    click.echo()
    _dupes(ctx, apply_labels=apply_labels, dry_run=dry_run)
    click.echo()
    _rank(ctx, 20)
    click.echo()
    _vision(ctx, apply_labels=apply_labels, dry_run=dry_run)

    click.echo("\n✓ Triage complete")


@main.command()
@click.option("-r", "--repo", help="Repository (owner/repo)")
@handle_errors
def reembed(repo: str | None):
    """Re-embed stored items with the configured embedding provider."""
    if not _db_path().exists():
        raise click.ClickException("No database found. Run `prism scan` first.")
    ctx = create_pipeline_context(repo, strict=False)
    count = run_reembed(ctx, progress=_progress)
    click.echo(f"Re-embedded {count} items at {ctx.embedder.dimensions} dimensions")


@main.command()
@click.option("-y", "--yes", is_flag=True, help="Skip confirmation prompt")
def reset(yes: bool):
    """Delete the local database and start fresh."""
    db_path = _db_path()
    if not db_path.exists():
        click.echo(f"No database found at {db_path}")
        return

    if not yes and not click.confirm("Delete database and all cached data?", default=False):
        click.echo("Cancelled.")
        return

    db_path.unlink()
    for suffix in ("-wal", "-shm"):
        sidecar = db_path.with_name(db_path.name + suffix)
        if sidecar.exists():
            sidecar.unlink()
    click.echo("✓ Database deleted. Run `prism scan` to rebuild.")


@main.command()
@click.option("-r", "--repo", help="Repository (owner/repo)")
@handle_errors
def status(repo: str | None):
    """Show database stats and rate limit info."""
    config = PrismConfig.load()
    env = EnvConfig.from_env()
    owner, name = parse_repo(repo or config.repo)
    repo_full = f"{owner}/{name}"

    click.echo("Prism status\n")
    click.echo(f"  Repo:     {repo_full}")

    db_path = _db_path()
    if db_path.exists():
        store = VectorStore(db_path, strict=False)
        stats = store.get_stats(repo_full)
        click.echo(f"  PRs:      {stats['prs']}")
        click.echo(f"  Issues:   {stats['issues']}")
        click.echo(f"  Diffs:    {stats['diffs']} cached")
        click.echo(f"  Total:    {stats['total_items']} items")
        dims = store.get_meta("dimensions") or "?"
        model = store.get_meta("embedding_model") or "unknown model"
        click.echo(f"  Vectors:  {dims} dims ({model})\n")
    else:
        click.echo("  Database: not created yet (run `prism scan`)\n")

    github = GitHubClient(env.github_token, owner, name)
    try:
        rate = github.check_rate_limit()
        click.echo(
            f"  API:      {rate.remaining}/{rate.limit} calls remaining "
            f"(resets in {github.minutes_until_reset()}min)"
        )
    except GitHubAPIError:
        click.echo("  API:      Could not check rate limit")

    click.echo(f"  Provider: {env.embedding_provider} ({env.embedding_model or 'default model'})")
    click.echo(f"  LLM:      {env.llm_provider} ({env.llm_model})")


@main.command()
@click.option("-r", "--repo", help="Repository (owner/repo)")
@click.option("-o", "--output", default="prism-report.md", show_default=True, type=click.Path(path_type=Path))
@click.option("--top", default=20, show_default=True, help="Top N ranked PRs to include")
@click.option("--clusters", "cluster_limit", default=25, show_default=True, help="Top N duplicate clusters to include")
@handle_errors
def report(repo: str | None, output: Path, top: int, cluster_limit: int):
    """Generate a markdown triage report."""
    ctx = create_pipeline_context(repo)
    click.echo("Generating report...")
    path = run_report(ctx, output, top=top, cluster_limit=cluster_limit)
    if path is None:
        raise click.ClickException("No data found. Run `prism scan` first.")
    click.echo(f"Report saved to {path}")


if __name__ == "__main__":
    main()
