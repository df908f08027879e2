from __future__ import annotations

import pytest

from prprism.config import ThresholdsConfig
from prprism.store import PRItem, StoreItem, VectorStore
from prprism.vision import (
    check_vision_alignment,
    classify,
    embed_vision_document,
    score_vision_alignment,
    split_by_headings,
    VisionChunk,
)


REPO = "acme/widgets"

VISION_DOC = """Widgets is a toolkit for building small, composable widgets.

# Goals
Keep the widget API small and stable across releases.

## Non-goals
We do not ship a layout engine or a theming system.

### Tiny
short
"""


class FixedEmbedder:
    """Returns the same vector for every text and records batch sizes."""

    model = "fake"

    def __init__(self, vector: list[float]):
        self.vector = vector
        self.dimensions = len(vector)
        self.batches: list[list[str]] = []

    def embed(self, text: str) -> list[float]:
        return self.embed_batch([text])[0]

    def embed_batch(self, texts):
        self.batches.append(list(texts))
        return [list(self.vector) for _ in texts]


def test_split_by_headings():
    sections = split_by_headings(VISION_DOC)
    assert [heading for heading, _ in sections] == ["Document Overview", "Goals", "Non-goals"]
    assert sections[1][1] == "Keep the widget API small and stable across releases."


def test_split_ignores_deeper_headings():
    doc = "# Top\n" + "a" * 30 + "\n#### Deep heading\n" + "b" * 30
    sections = split_by_headings(doc)
    assert len(sections) == 1
    assert "#### Deep heading" in sections[0][1]


def test_embed_short_document_adds_full_document_chunk():
    embedder = FixedEmbedder([1.0, 0.0, 0.0])
    chunks = embed_vision_document(VISION_DOC, embedder)

    assert chunks[0].heading == "Full Document"
    assert chunks[0].text == VISION_DOC
    assert [c.heading for c in chunks[1:]] == ["Document Overview", "Goals", "Non-goals"]
    assert embedder.batches[0][1].startswith("Document Overview\n\n")


def test_embed_long_document_is_batched_and_truncated():
    sections = "\n".join(f"# Section {i}\n" + "w" * 7000 for i in range(7))
    embedder = FixedEmbedder([0.0, 1.0])

    chunks = embed_vision_document(sections, embedder)

    assert len(chunks) == 7
    assert all(c.heading != "Full Document" for c in chunks)
    assert [len(b) for b in embedder.batches] == [5, 2]
    assert all(len(text) <= len("Section 0\n\n") + 6000 for batch in embedder.batches for text in batch)


def test_tier_boundaries():
    assert classify(0.65) == "aligned"
    assert classify(0.6499) == "drifting"
    assert classify(0.40) == "drifting"
    assert classify(0.3999) == "off-vision"


def test_axis_vs_diagonal_is_drifting():
    chunks = [VisionChunk("Goals", "text", [1.0, 1.0, 1.0])]
    score = score_vision_alignment([1.0, 0.0, 0.0], chunks)
    assert score.score == pytest.approx(0.577, abs=1e-3)
    assert score.classification == "drifting"
    assert score.matched_section == "Goals"


def test_matched_section_is_best_chunk_first_on_ties():
    chunks = [
        VisionChunk("A", "", [0.0, 1.0]),
        VisionChunk("B", "", [1.0, 0.0]),
        VisionChunk("C", "", [1.0, 0.0]),
    ]
    score = score_vision_alignment([1.0, 0.0], chunks)
    assert score.matched_section == "B"
    assert score.classification == "aligned"


def test_check_vision_alignment_skips_zero_vectors(tmp_path):
    store = VectorStore(tmp_path / "prism.db", dimensions=3)
    entries = [
        (1, [1.0, 0.0, 0.0]),
        (2, [1.0, 1.0, 1.0]),
        (3, [0.0, 0.0, 1.0]),
        (4, [0.0, 0.0, 0.0]),
    ]
    for number, vector in entries:
        item = PRItem(number=number, type="pr", repo=REPO, title=f"PR {number}",
                      created_at="2024-01-01T00:00:00Z", updated_at="2024-01-01T00:00:00Z")
        store.upsert(StoreItem.from_item(item, vector))

    scores = check_vision_alignment(
        store, FixedEmbedder([1.0, 0.0, 0.0]), VISION_DOC, REPO, ThresholdsConfig(), "ignore",
    )

    assert [s.number for s in scores] == [1, 2, 3]
    assert [s.classification for s in scores] == ["aligned", "drifting", "off-vision"]
