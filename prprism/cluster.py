"""
Duplicate clustering for Prism.

Items whose embeddings are at least ``threshold`` cosine-similar are linked;
connected components of that graph with two or more members are clusters.
Linking is transitive, so a cluster may contain pairs below the threshold
when a chain of qualifying pairs connects them.

Below ``ann_cutoff`` live vectors every pair is compared exactly. At or above
it, candidate edges come from the store's approximate nearest-neighbour
search (top ``ann_neighbors`` per item within the repo) and each candidate is
re-checked with exact cosine before it is admitted. In that mode a qualifying
pair can be missed when neither item appears in the other's approximate
top-K; no false edges are ever added.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from itertools import combinations

import numpy as np

from .scoring import ScoredPR, ScoreSignals, recency_factor
from .similarity import cosine_similarity, is_zero_vector
from .store import PRItem, VectorStore, item_key


logger = logging.getLogger(__name__)

BODY_TARGET_CHARS = 500


@dataclass
class Cluster:
    """A group of near-duplicate items."""
    id: int
    items: list[ScoredPR]
    best_pick: ScoredPR
    avg_similarity: float
    theme: str


def report_zero_vectors(count: int, policy: str, context: str) -> None:
    """Log how many failed (all-zero) embeddings were excluded."""
    if not count:
        return
    message = "%s: excluded %d items with zero-vector embeddings (failed to embed)"
    if policy == "warn":
        logger.warning(message, context, count)
    else:
        logger.debug(message, context, count)


def _exact_edges(ids: list[str], vectors: dict[str, np.ndarray], threshold: float) -> dict[str, set[str]]:
    adjacency: dict[str, set[str]] = {}
    for a, b in combinations(ids, 2):
        if cosine_similarity(vectors[a], vectors[b]) >= threshold:
            adjacency.setdefault(a, set()).add(b)
            adjacency.setdefault(b, set()).add(a)
    return adjacency


def _ann_edges(
    store: VectorStore,
    repo: str,
    ids: list[str],
    vectors: dict[str, np.ndarray],
    threshold: float,
    neighbors: int,
) -> dict[str, set[str]]:
    adjacency: dict[str, set[str]] = {}
    for a in ids:
        for b, _ in store.search(vectors[a], limit=neighbors + 1, threshold=threshold, repo=repo):
            if b == a or b not in vectors:
                continue
            if cosine_similarity(vectors[a], vectors[b]) >= threshold:
                adjacency.setdefault(a, set()).add(b)
                adjacency.setdefault(b, set()).add(a)
    return adjacency


def _components(ids: list[str], adjacency: dict[str, set[str]]) -> list[list[str]]:
    """Connected components in first-seen order (iterative BFS)."""
    visited: set[str] = set()
    components: list[list[str]] = []
    for start in ids:
        if start in visited or start not in adjacency:
            continue
        component: list[str] = []
        queue = deque([start])
        visited.add(start)
        while queue:
            current = queue.popleft()
            component.append(current)
            for neighbor in sorted(adjacency.get(current, ())):
                if neighbor not in visited:
                    visited.add(neighbor)
                    queue.append(neighbor)
        components.append(component)
    return components


def _member_score(item: PRItem, now: datetime) -> ScoredPR:
    recency = recency_factor(item.updated_at, now)
    body_factor = min(1.0, len(item.body or "") / BODY_TARGET_CHARS)
    signals = ScoreSignals(description_quality=body_factor, recency=recency)
    return ScoredPR(item=item, score=recency * body_factor, signals=signals)


def _average_similarity(ids: list[str], vectors: dict[str, np.ndarray]) -> float:
    pairs = list(combinations(ids, 2))
    if not pairs:
        return 0.0
    return sum(cosine_similarity(vectors[a], vectors[b]) for a, b in pairs) / len(pairs)


def find_duplicate_clusters(
    store: VectorStore,
    items: list[PRItem],
    repo: str,
    threshold: float = 0.85,
    ann_cutoff: int = 5000,
    ann_neighbors: int = 50,
    zero_vector_policy: str = "warn",
    now: datetime | None = None,
) -> list[Cluster]:
    """Group near-duplicate items of one repository.

    Returns clusters ordered by size (largest first) with ids 1..n.
    """
    now = now or datetime.now(timezone.utc)
    embeddings = store.get_all_embeddings(repo)

    vectors: dict[str, np.ndarray] = {}
    zero_count = 0
    for item_id, vector in embeddings.items():
        if is_zero_vector(vector):
            zero_count += 1
            continue
        vectors[item_id] = vector
    report_zero_vectors(zero_count, zero_vector_policy, "dupes")

    ids = list(vectors)
    if len(ids) < 2:
        return []

    if len(ids) >= ann_cutoff:
        logger.info("Using approximate neighbour search for %d items (top %d each)", len(ids), ann_neighbors)
        adjacency = _ann_edges(store, repo, ids, vectors, threshold, ann_neighbors)
    else:
        adjacency = _exact_edges(ids, vectors, threshold)

    item_map = {item_key(repo, item.type, item.number): item for item in items}

    clusters: list[Cluster] = []
    for component in _components(ids, adjacency):
        member_ids = [cid for cid in component if cid in item_map]
        if len(member_ids) < 2:
            continue

        members = [_member_score(item_map[cid], now) for cid in member_ids]
        members.sort(key=lambda m: m.score, reverse=True)

        clusters.append(Cluster(
            id=0,
            items=members,
            best_pick=members[0],
            avg_similarity=_average_similarity(member_ids, vectors),
            theme=members[0].title,
        ))

    clusters.sort(key=lambda c: len(c.items), reverse=True)
    for index, cluster in enumerate(clusters, start=1):
        cluster.id = index

    logger.debug("Found %d clusters from %d live vectors", len(clusters), len(ids))
    return clusters
