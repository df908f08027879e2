"""
SQLite vector storage for Prism.

Schema:
- items: PR/issue metadata keyed by "repo:type:number"
- diffs: Cached PR diff text
- meta: Key/value settings recorded for consistency checks across runs
- vec_items: sqlite-vec vec0 table holding one embedding per item,
  partitioned by repo so nearest-neighbour queries stay within one repo

The vec0 table is declared with a fixed width. Opening a store whose table
has a different width, or whose recorded embedding model differs from the
configured one, fails before anything is written.
"""

from __future__ import annotations

import json
import logging
import re
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Generator, Sequence

import numpy as np
import sqlite_vec

from .config import get_data_dir


logger = logging.getLogger(__name__)

DB_FILENAME = "prism.db"
CURRENT_SCHEMA_VERSION = 3
BODY_SNIPPET_CHARS = 500
MAX_KNN = 4096  # sqlite-vec upper bound for k

META_DIMENSIONS = "dimensions"
META_EMBEDDING_MODEL = "embedding_model"
META_TARGET_DIMENSIONS = "target_dimensions"

SCHEMA = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER NOT NULL
);

-- PR / issue metadata
CREATE TABLE IF NOT EXISTS items (
    id TEXT PRIMARY KEY,
    type TEXT NOT NULL,
    number INTEGER NOT NULL,
    repo TEXT NOT NULL,
    title TEXT NOT NULL,
    body_snippet TEXT NOT NULL,
    metadata_json TEXT NOT NULL DEFAULT '{}',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

-- Cached diffs for review
CREATE TABLE IF NOT EXISTS diffs (
    number INTEGER NOT NULL,
    repo TEXT NOT NULL,
    patch_text TEXT NOT NULL,
    fetched_at TEXT NOT NULL,
    PRIMARY KEY (number, repo)
);

-- Store-wide settings
CREATE TABLE IF NOT EXISTS meta (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_items_repo ON items(repo);
CREATE INDEX IF NOT EXISTS idx_items_number ON items(number, repo);
"""

VEC_TABLE_SQL = """
CREATE VIRTUAL TABLE IF NOT EXISTS vec_items USING vec0(
    id TEXT PRIMARY KEY,
    repo TEXT PARTITION KEY,
    embedding float[{dimensions}] distance_metric=cosine
)
"""
PARTITION_PATTERN = re.compile(r"repo\s+text\s+partition\s+key", re.IGNORECASE)


class StoreError(Exception):
    """Base error for vector store consistency problems."""


class DimensionMismatch(StoreError):
    """Vector width differs from the width the store was created with."""

    def __init__(self, expected: int, actual: int, detail: str = "", message: str | None = None):
        if message is None:
            message = (
                f"Dimension mismatch: database has {expected}-dim embeddings "
                f"but {detail or 'provider uses'} {actual}. "
                "Run `prism reset` to clear the database and re-scan, "
                "or `prism reembed` to re-embed stored items."
            )
        super().__init__(message)
        self.expected = expected
        self.actual = actual


class EmbeddingModelChanged(StoreError):
    """Store was populated by a different embedding model."""

    def __init__(self, recorded: str, configured: str):
        super().__init__(
            f"Embedding model changed: database was built with '{recorded}' "
            f"but '{configured}' is configured. "
            "Run `prism reembed` to re-embed stored items, or `prism reset` to start fresh."
        )
        self.recorded = recorded
        self.configured = configured


@dataclass
class PRItem:
    """A pull request or issue as seen by the triage pipeline."""

    number: int
    type: str  # "pr" or "issue"
    repo: str
    title: str
    body: str = ""
    state: str = "open"
    author: str = "unknown"
    created_at: str = ""
    updated_at: str = ""
    labels: list[str] = field(default_factory=list)
    # PR-specific
    diff_url: str | None = None
    ci_status: str | None = None  # success, failure, pending, unknown
    review_count: int | None = None
    additions: int | None = None
    deletions: int | None = None
    changed_files: int | None = None
    has_tests: bool | None = None

    @property
    def key(self) -> str:
        return item_key(self.repo, self.type, self.number)

    def metadata(self) -> dict[str, Any]:
        return {
            "author": self.author,
            "state": self.state,
            "labels": self.labels,
            "diff_url": self.diff_url,
            "additions": self.additions,
            "deletions": self.deletions,
            "changed_files": self.changed_files,
            "ci_status": self.ci_status,
            "review_count": self.review_count,
            "has_tests": self.has_tests,
        }


@dataclass
class StoreItem:
    """Persisted item row plus its embedding."""

    id: str
    type: str
    number: int
    repo: str
    title: str
    body_snippet: str
    embedding: Sequence[float]
    metadata: dict[str, Any]
    created_at: str
    updated_at: str

    @classmethod
    def from_item(cls, item: PRItem, embedding: Sequence[float]) -> "StoreItem":
        return cls(
            id=item.key,
            type=item.type,
            number=item.number,
            repo=item.repo,
            title=item.title,
            body_snippet=(item.body or "")[:BODY_SNIPPET_CHARS],
            embedding=embedding,
            metadata=item.metadata(),
            created_at=item.created_at,
            updated_at=item.updated_at,
        )

    def to_pr_item(self) -> PRItem:
        meta = self.metadata
        return PRItem(
            number=self.number,
            type=self.type,
            repo=self.repo,
            title=self.title,
            body=self.body_snippet,
            state=meta.get("state") or "open",
            author=meta.get("author") or "unknown",
            created_at=self.created_at,
            updated_at=self.updated_at,
            labels=list(meta.get("labels") or []),
            diff_url=meta.get("diff_url"),
            ci_status=meta.get("ci_status"),
            review_count=meta.get("review_count"),
            additions=meta.get("additions"),
            deletions=meta.get("deletions"),
            changed_files=meta.get("changed_files"),
            has_tests=meta.get("has_tests"),
        )


def item_key(repo: str, item_type: str, number: int) -> str:
    """Composite identity used as the primary key everywhere."""
    return f"{repo}:{item_type}:{number}"


def repo_of(item_id: str) -> str:
    """Repository part of a composite item id."""
    return item_id.rsplit(":", 2)[0]


def _to_blob(vector: Sequence[float]) -> bytes:
    return np.asarray(vector, dtype=np.float32).tobytes()


def _from_blob(blob: bytes) -> np.ndarray:
    return np.frombuffer(blob, dtype=np.float32).copy()


class VectorStore:
    """SQLite + sqlite-vec storage for items and their embeddings."""

    def __init__(
        self,
        db_path: Path | None = None,
        dimensions: int = 1536,
        embedding_model: str | None = None,
        target_dimensions: int | None = None,
        strict: bool = True,
    ):
        if db_path is None:
            db_path = get_data_dir() / DB_FILENAME
        self.db_path = Path(db_path)
        self.dimensions = dimensions
        self.embedding_model = embedding_model
        self.strict = strict
        self._ensure_schema(target_dimensions)

    def _ensure_schema(self, target_dimensions: int | None) -> None:
        """Create tables and run consistency checks before any write.

        Inspection mode (``strict=False``) only adopts the stored width and
        writes nothing.
        """
        if self.strict:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with self._connect() as conn:
            existing = self._vec_table_dimensions(conn)
            if existing is not None and existing != self.dimensions:
                if self.strict:
                    raise DimensionMismatch(existing, self.dimensions)
                logger.debug("Inspection mode: using stored width %d", existing)
                self.dimensions = existing

            if not self.strict:
                return

            self._check_model(conn)
            self._check_target_dimensions(conn, target_dimensions)
            self._create_tables(conn)
            self._set_meta(conn, META_DIMENSIONS, str(self.dimensions))
            if self.embedding_model:
                self._set_meta(conn, META_EMBEDDING_MODEL, self.embedding_model)
            if target_dimensions:
                self._set_meta(conn, META_TARGET_DIMENSIONS, str(target_dimensions))

    def _create_tables(self, conn: sqlite3.Connection) -> None:
        conn.executescript(SCHEMA)
        self._run_migrations(conn)
        conn.execute(VEC_TABLE_SQL.format(dimensions=self.dimensions))

    def _check_model(self, conn: sqlite3.Connection) -> None:
        if not self.embedding_model:
            return
        recorded = self._get_meta(conn, META_EMBEDDING_MODEL)
        if recorded and recorded != self.embedding_model:
            raise EmbeddingModelChanged(recorded, self.embedding_model)

    def _check_target_dimensions(self, conn: sqlite3.Connection, target: int | None) -> None:
        if target is None:
            return
        if target != self.dimensions:
            raise DimensionMismatch(self.dimensions, target, detail="truncation target is")
        recorded = self._get_meta(conn, META_TARGET_DIMENSIONS)
        if recorded and int(recorded) != target:
            raise DimensionMismatch(int(recorded), target, detail="truncation target is")

    def _table_exists(self, conn: sqlite3.Connection, name: str) -> bool:
        row = conn.execute(
            "SELECT name FROM sqlite_master WHERE type='table' AND name = ?", (name,)
        ).fetchone()
        return row is not None

    def _vec_table_dimensions(self, conn: sqlite3.Connection) -> int | None:
        row = conn.execute(
            "SELECT sql FROM sqlite_master WHERE type='table' AND name='vec_items'"
        ).fetchone()
        if row is None or not row["sql"]:
            return None
        match = re.search(r"float\[(\d+)\]", row["sql"])
        return int(match.group(1)) if match else None

    def _get_schema_version(self, conn: sqlite3.Connection) -> int:
        row = conn.execute("SELECT version FROM schema_version ORDER BY version DESC LIMIT 1").fetchone()
        if row is None:
            return 0
        value = row[0]
        return int(value) if value is not None else 0

    def _set_schema_version(self, conn: sqlite3.Connection, version: int) -> None:
        conn.execute("DELETE FROM schema_version")
        conn.execute("INSERT INTO schema_version (version) VALUES (?)", (version,))

    def _run_migrations(self, conn: sqlite3.Connection) -> None:
        current = self._get_schema_version(conn)
        if current >= CURRENT_SCHEMA_VERSION:
            return

        # v0 -> v1: items/diffs/vec_items (created by SCHEMA on fresh databases)
        if current < 1:
            current = 1

        # v1 -> v2: meta table; backfill the width of an existing vector table
        if current < 2:
            existing = self._vec_table_dimensions(conn)
            if existing is not None and self._get_meta(conn, META_DIMENSIONS) is None:
                self._set_meta(conn, META_DIMENSIONS, str(existing))
            current = 2

        # v2 -> v3: partition vec_items by repo
        if current < 3:
            self._partition_vec_table(conn)
            current = 3

        self._set_schema_version(conn, current)

    def _partition_vec_table(self, conn: sqlite3.Connection) -> None:
        """Rebuild an unpartitioned vec_items table, keeping its vectors."""
        row = conn.execute(
            "SELECT sql FROM sqlite_master WHERE type='table' AND name='vec_items'"
        ).fetchone()
        if row is None or not row["sql"] or PARTITION_PATTERN.search(row["sql"]):
            return

        dimensions = self._vec_table_dimensions(conn) or self.dimensions
        rows = conn.execute("SELECT id, embedding FROM vec_items").fetchall()
        conn.execute("DROP TABLE vec_items")
        conn.execute(VEC_TABLE_SQL.format(dimensions=dimensions))
        conn.executemany(
            "INSERT INTO vec_items (id, repo, embedding) VALUES (?, ?, ?)",
            [(r["id"], repo_of(r["id"]), r["embedding"]) for r in rows],
        )
        logger.info("Partitioned %d stored vectors by repo", len(rows))

    @contextmanager
    def _connect(self) -> Generator[sqlite3.Connection, None, None]:
        """Context manager for database connection with sqlite-vec loaded."""
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        try:
            conn.enable_load_extension(True)
            sqlite_vec.load(conn)
            conn.enable_load_extension(False)
            yield conn
            conn.commit()
        finally:
            conn.close()

    def _now(self) -> str:
        """Get current timestamp in ISO format."""
        return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")

    def _check_width(self, vector: Sequence[float]) -> None:
        if len(vector) != self.dimensions:
            raise DimensionMismatch(self.dimensions, len(vector), detail="write has")

    # =========================================================================
    # Meta
    # =========================================================================

    def _get_meta(self, conn: sqlite3.Connection, key: str) -> str | None:
        if not self._table_exists(conn, "meta"):
            return None
        row = conn.execute("SELECT value FROM meta WHERE key = ?", (key,)).fetchone()
        return row["value"] if row else None

    def _set_meta(self, conn: sqlite3.Connection, key: str, value: str) -> None:
        conn.execute(
            """
            INSERT INTO meta (key, value) VALUES (?, ?)
            ON CONFLICT(key) DO UPDATE SET value = excluded.value
            """,
            (key, value),
        )

    def get_meta(self, key: str) -> str | None:
        with self._connect() as conn:
            return self._get_meta(conn, key)

    def set_meta(self, key: str, value: str) -> None:
        with self._connect() as conn:
            self._set_meta(conn, key, value)

    # =========================================================================
    # Items + embeddings
    # =========================================================================

    def upsert(self, item: StoreItem) -> bool:
        """Insert or replace an item and its embedding in one transaction.

        Returns False without writing when the stored copy is newer.
        """
        self._check_width(item.embedding)
        with self._connect() as conn:
            row = conn.execute("SELECT updated_at FROM items WHERE id = ?", (item.id,)).fetchone()
            if row is not None and row["updated_at"] > item.updated_at:
                logger.debug(
                    "Skipping stale upsert for %s (%s < %s)", item.id, item.updated_at, row["updated_at"]
                )
                return False

            conn.execute(
                """
                INSERT INTO items
                    (id, type, number, repo, title, body_snippet, metadata_json, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    title = excluded.title,
                    body_snippet = excluded.body_snippet,
                    metadata_json = excluded.metadata_json,
                    updated_at = excluded.updated_at
                """,
                (item.id, item.type, item.number, item.repo, item.title,
                 item.body_snippet, json.dumps(item.metadata), item.created_at, item.updated_at),
            )
            conn.execute("DELETE FROM vec_items WHERE id = ?", (item.id,))
            conn.execute(
                "INSERT INTO vec_items (id, repo, embedding) VALUES (?, ?, ?)",
                (item.id, item.repo, _to_blob(item.embedding)),
            )
            return True

    def upsert_embedding_only(self, item_id: str, embedding: Sequence[float]) -> None:
        """Replace just the embedding (re-embedding without re-fetching metadata)."""
        self._check_width(embedding)
        with self._connect() as conn:
            conn.execute("DELETE FROM vec_items WHERE id = ?", (item_id,))
            conn.execute(
                "INSERT INTO vec_items (id, repo, embedding) VALUES (?, ?, ?)",
                (item_id, repo_of(item_id), _to_blob(embedding)),
            )

    def _row_to_store_item(self, row: sqlite3.Row) -> StoreItem:
        return StoreItem(
            id=row["id"],
            type=row["type"],
            number=row["number"],
            repo=row["repo"],
            title=row["title"],
            body_snippet=row["body_snippet"],
            embedding=np.zeros(0, dtype=np.float32),
            metadata=json.loads(row["metadata_json"] or "{}"),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def get_item(self, item_id: str) -> StoreItem | None:
        """Get a stored item by composite id (embedding not loaded)."""
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM items WHERE id = ?", (item_id,)).fetchone()
            return self._row_to_store_item(row) if row else None

    def get_by_number(self, repo: str, number: int, item_type: str | None = None) -> StoreItem | None:
        """Get a stored item by repo and number, optionally restricted to a type."""
        with self._connect() as conn:
            if item_type is None:
                row = conn.execute(
                    "SELECT * FROM items WHERE repo = ? AND number = ?", (repo, number)
                ).fetchone()
            else:
                row = conn.execute(
                    "SELECT * FROM items WHERE repo = ? AND number = ? AND type = ?",
                    (repo, number, item_type),
                ).fetchone()
            return self._row_to_store_item(row) if row else None

    def get_all_items(self, repo: str) -> list[PRItem]:
        """All items for a repo, hydrated from stored metadata."""
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM items WHERE repo = ? ORDER BY type, number", (repo,)
            ).fetchall()
        return [self._row_to_store_item(row).to_pr_item() for row in rows]

    def get_repos(self) -> list[str]:
        with self._connect() as conn:
            rows = conn.execute("SELECT DISTINCT repo FROM items ORDER BY repo").fetchall()
        return [row["repo"] for row in rows]

    def get_embedding(self, item_id: str) -> np.ndarray | None:
        with self._connect() as conn:
            row = conn.execute("SELECT embedding FROM vec_items WHERE id = ?", (item_id,)).fetchone()
            return _from_blob(row["embedding"]) if row else None

    def get_all_embeddings(self, repo: str) -> dict[str, np.ndarray]:
        """All embeddings for a repo in a single query, keyed by item id."""
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT i.id AS id, v.embedding AS embedding
                FROM items i
                INNER JOIN vec_items v ON v.id = i.id
                WHERE i.repo = ?
                ORDER BY i.type, i.number
                """,
                (repo,),
            ).fetchall()
        return {row["id"]: _from_blob(row["embedding"]) for row in rows}

    def search(
        self,
        embedding: Sequence[float],
        limit: int = 20,
        threshold: float = 0.0,
        repo: str | None = None,
    ) -> list[tuple[str, float]]:
        """Approximate nearest neighbours as (id, similarity), best first.

        With ``repo`` the query runs inside that repo's partition only.
        Candidates only: callers recompute exact cosine similarity before
        trusting a match.
        """
        self._check_width(embedding)
        k = max(1, min(limit, MAX_KNN))
        query = "SELECT id, distance FROM vec_items WHERE embedding MATCH ? AND k = ?"
        params: list[Any] = [_to_blob(embedding), k]
        if repo is not None:
            query += " AND repo = ?"
            params.append(repo)
        with self._connect() as conn:
            rows = conn.execute(query + " ORDER BY distance", params).fetchall()

        results: list[tuple[str, float]] = []
        for row in rows:
            distance = row["distance"]
            # zero-magnitude rows have no defined cosine distance
            if distance is None or distance != distance:
                continue
            similarity = 1.0 - float(distance)
            if similarity >= threshold:
                results.append((row["id"], similarity))
        return results

    def reset_vectors(self, dimensions: int) -> None:
        """Drop and recreate the vector table at a new width."""
        with self._connect() as conn:
            self._create_tables(conn)
            conn.execute("DROP TABLE IF EXISTS vec_items")
            conn.execute(VEC_TABLE_SQL.format(dimensions=dimensions))
            self._set_meta(conn, META_DIMENSIONS, str(dimensions))
        self.dimensions = dimensions

    # =========================================================================
    # Diffs
    # =========================================================================

    def cache_diff(self, repo: str, number: int, patch_text: str) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO diffs (number, repo, patch_text, fetched_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(number, repo) DO UPDATE SET
                    patch_text = excluded.patch_text,
                    fetched_at = excluded.fetched_at
                """,
                (number, repo, patch_text, self._now()),
            )

    def get_cached_diff(self, repo: str, number: int) -> str | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT patch_text FROM diffs WHERE repo = ? AND number = ?", (repo, number)
            ).fetchone()
            return row["patch_text"] if row else None

    # =========================================================================
    # Stats
    # =========================================================================

    def get_stats(self, repo: str) -> dict[str, int]:
        """Counts by type for a repo."""
        by_type: dict[str, int] = {}
        diffs = 0
        with self._connect() as conn:
            if self._table_exists(conn, "items"):
                rows = conn.execute(
                    "SELECT type, COUNT(*) AS c FROM items WHERE repo = ? GROUP BY type", (repo,)
                ).fetchall()
                by_type = {row["type"]: row["c"] for row in rows}
            if self._table_exists(conn, "diffs"):
                diffs = conn.execute(
                    "SELECT COUNT(*) AS c FROM diffs WHERE repo = ?", (repo,)
                ).fetchone()["c"]
        return {
            "total_items": sum(by_type.values()),
            "prs": by_type.get("pr", 0),
            "issues": by_type.get("issue", 0),
            "diffs": diffs,
        }
