"""
Vision alignment for Prism.

A vision document (usually VISION.md or README.md) is split into sections
by markdown headings and each section is embedded. Items are classified by
their best cosine match against those sections:

    score >= aligned             -> aligned
    drifting <= score < aligned  -> drifting
    score < drifting             -> off-vision
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Sequence

import numpy as np

from .cluster import report_zero_vectors
from .config import ThresholdsConfig
from .embeddings import EmbeddingProvider
from .similarity import cosine_similarity, is_zero_vector
from .store import VectorStore


logger = logging.getLogger(__name__)

HEADING_PATTERN = re.compile(r"^#{1,3}\s+(.+)")
OVERVIEW_HEADING = "Document Overview"
FULL_DOCUMENT_HEADING = "Full Document"
MIN_SECTION_CHARS = 20
MAX_SECTION_CHARS = 6000
FULL_DOCUMENT_MAX_CHARS = 8000
EMBED_BATCH_SIZE = 5

ALIGNED = "aligned"
DRIFTING = "drifting"
OFF_VISION = "off-vision"


@dataclass
class VisionChunk:
    heading: str
    text: str
    embedding: Sequence[float]


@dataclass
class VisionScore:
    number: int
    score: float
    classification: str  # aligned, drifting, off-vision
    matched_section: str
    type: str = "pr"


def split_by_headings(doc: str) -> list[tuple[str, str]]:
    """Split markdown into (heading, text) sections.

    Text before the first heading belongs to "Document Overview". Sections with
    20 or fewer characters of text are dropped.
    """
    sections: list[tuple[str, str]] = []
    heading = OVERVIEW_HEADING
    lines: list[str] = []

    for line in doc.split("\n"):
        match = HEADING_PATTERN.match(line)
        if match:
            if lines:
                sections.append((heading, "\n".join(lines).strip()))
            heading = match.group(1).strip()
            lines = []
        else:
            lines.append(line)

    if lines:
        sections.append((heading, "\n".join(lines).strip()))

    return [(h, text) for h, text in sections if len(text) > MIN_SECTION_CHARS]


def embed_vision_document(content: str, embedder: EmbeddingProvider) -> list[VisionChunk]:
    """Embed each section (and the whole document when it is short)."""
    sections = split_by_headings(content)
    texts = [f"{heading}\n\n{text[:MAX_SECTION_CHARS]}" for heading, text in sections]

    if len(content) < FULL_DOCUMENT_MAX_CHARS:
        sections.insert(0, (FULL_DOCUMENT_HEADING, content))
        texts.insert(0, content)

    embeddings: list[list[float]] = []
    for start in range(0, len(texts), EMBED_BATCH_SIZE):
        embeddings.extend(embedder.embed_batch(texts[start:start + EMBED_BATCH_SIZE]))

    logger.debug("Embedded %d vision chunks", len(sections))
    return [
        VisionChunk(heading=heading, text=text, embedding=embedding)
        for (heading, text), embedding in zip(sections, embeddings)
    ]


def classify(score: float, aligned: float = 0.65, drifting: float = 0.40) -> str:
    if score >= aligned:
        return ALIGNED
    if score >= drifting:
        return DRIFTING
    return OFF_VISION


def score_vision_alignment(
    embedding: Sequence[float],
    chunks: list[VisionChunk],
    aligned: float = 0.65,
    drifting: float = 0.40,
) -> VisionScore:
    """Best match across chunks. The caller fills in the item number."""
    best = 0.0
    matched = ""
    for index, chunk in enumerate(chunks):
        similarity = cosine_similarity(embedding, chunk.embedding)
        if index == 0 or similarity > best:
            best = similarity
            matched = chunk.heading

    return VisionScore(
        number=0,
        score=best,
        classification=classify(best, aligned, drifting),
        matched_section=matched,
    )


def check_vision_alignment(
    store: VectorStore,
    embedder: EmbeddingProvider,
    content: str,
    repo: str,
    thresholds: ThresholdsConfig | None = None,
    zero_vector_policy: str = "warn",
) -> list[VisionScore]:
    """Classify every embedded item of a repo, highest score first."""
    thresholds = thresholds or ThresholdsConfig()
    chunks = embed_vision_document(content, embedder)
    items = store.get_all_items(repo)
    embeddings = store.get_all_embeddings(repo)

    results: list[VisionScore] = []
    zero_count = 0
    for item in items:
        vector: np.ndarray | None = embeddings.get(item.key)
        if vector is None:
            continue
        if is_zero_vector(vector):
            zero_count += 1
            continue
        score = score_vision_alignment(vector, chunks, thresholds.aligned, thresholds.drifting)
        score.number = item.number
        score.type = item.type
        results.append(score)

    report_zero_vectors(zero_count, zero_vector_policy, "vision")
    results.sort(key=lambda s: s.score, reverse=True)
    return results
