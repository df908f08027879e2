"""Markdown triage report."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone

from .cluster import Cluster
from .scoring import ScoredPR
from .vision import ALIGNED, DRIFTING, OFF_VISION, VisionScore


LARGE_CLUSTER_SIZE = 10
MAX_LARGE_CLUSTERS = 10
MAX_LISTED_MEMBERS = 15


@dataclass
class VisionSummary:
    aligned: int = 0
    drifting: int = 0
    off_vision: int = 0

    @classmethod
    def from_scores(cls, scores: list[VisionScore]) -> "VisionSummary":
        return cls(
            aligned=sum(1 for s in scores if s.classification == ALIGNED),
            drifting=sum(1 for s in scores if s.classification == DRIFTING),
            off_vision=sum(1 for s in scores if s.classification == OFF_VISION),
        )


def _cell(text: str, width: int = 60) -> str:
    return (text or "").replace("|", "\\|")[:width]


def _link(repo: str, number: int, item_type: str = "pr") -> str:
    path = "pull" if item_type == "pr" else "issues"
    return f"[#{number}](https://github.com/{repo}/{path}/{number})"


def build_report(
    repo: str,
    stats: dict[str, int],
    clusters: list[Cluster],
    ranked: list[ScoredPR],
    vision: VisionSummary | None = None,
    top: int = 20,
    cluster_limit: int = 25,
    date: str | None = None,
) -> str:
    """Render the triage report as markdown."""
    date = date or datetime.now(timezone.utc).strftime("%Y-%m-%d")
    total = stats.get("total_items", 0)
    dupe_items = sum(len(c.items) for c in clusters)
    dupe_share = f"{dupe_items / total * 100:.0f}%" if total else "0%"

    lines = [
        "# pr-prism triage report",
        "",
        f"**repo:** {repo}  ",
        f"**date:** {date}  ",
        f"**items scanned:** {total} ({stats.get('prs', 0)} PRs, {stats.get('issues', 0)} issues)",
        "",
        "## overview",
        "",
        "| metric | count |",
        "|--------|-------|",
        f"| PRs scanned | {stats.get('prs', 0)} |",
        f"| issues scanned | {stats.get('issues', 0)} |",
        f"| duplicate clusters | {len(clusters)} |",
        f"| items in duplicate clusters | {dupe_items} ({dupe_share} of total) |",
    ]
    if vision:
        lines += [
            f"| vision-aligned | {vision.aligned} |",
            f"| vision-drifting | {vision.drifting} |",
            f"| vision off-track | {vision.off_vision} |",
        ]
    lines.append("")

    lines += [
        f"## duplicate clusters (top {cluster_limit})",
        "",
        'these PRs/issues are similar enough to likely be duplicates. the "best pick" is the '
        "highest-quality item in each group.",
        "",
        "| # | size | avg similarity | best pick | theme |",
        "|---|------|---------------|-----------|-------|",
    ]
    for cluster in clusters[:cluster_limit]:
        best = cluster.best_pick
        lines.append(
            f"| {cluster.id} | {len(cluster.items)} | {cluster.avg_similarity * 100:.1f}% "
            f"| {_link(repo, best.number, best.type)} | {_cell(cluster.theme)} |"
        )
    lines.append("")

    large = [c for c in clusters if len(c.items) >= LARGE_CLUSTER_SIZE][:MAX_LARGE_CLUSTERS]
    if large:
        lines += ["## largest duplicate groups", ""]
        for cluster in large:
            lines += [
                f"### cluster #{cluster.id}: {cluster.theme[:80]} ({len(cluster.items)} items)",
                "",
                "| # | author | title | updated |",
                "|---|--------|-------|---------|",
            ]
            for member in cluster.items[:MAX_LISTED_MEMBERS]:
                lines.append(
                    f"| {_link(repo, member.number, member.type)} | {member.author or '?'} "
                    f"| {_cell(member.title)} | {member.updated_at[:10]} |"
                )
            if len(cluster.items) > MAX_LISTED_MEMBERS:
                lines.append(f"| ... | | +{len(cluster.items) - MAX_LISTED_MEMBERS} more | |")
            lines.append("")

    lines += [
        f"## top {top} ranked PRs",
        "",
        "ranked by quality signals: tests, CI status, diff size, author track record, "
        "description quality, review approvals, recency.",
        "",
        "| rank | # | score | author | title |",
        "|------|---|-------|--------|-------|",
    ]
    for rank, pr in enumerate(ranked[:top], start=1):
        lines.append(
            f"| {rank} | {_link(repo, pr.number, pr.type)} | {pr.score:.2f} "
            f"| {pr.author or '?'} | {_cell(pr.title)} |"
        )
    lines.append("")

    if vision:
        lines += [
            "## vision alignment",
            "",
            "checked against the project's vision document for alignment with stated goals.",
            "",
            f"- **aligned:** {vision.aligned} items match the project vision",
            f"- **drifting:** {vision.drifting} items are loosely related",
            f"- **off-vision:** {vision.off_vision} items don't match the project direction",
            "",
        ]

    lines += ["---", "*generated by pr-prism*", ""]
    return "\n".join(lines)
