"""
Configuration management for Prism.

Loads and validates:
- prism.yml: Main configuration (target repo, thresholds, weights, labels)
- Environment (.env): tokens and provider selection
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml


CONFIG_FILENAME = "prism.yml"
DATA_DIRNAME = "data"

EMBEDDING_PROVIDERS = ("openai", "kimi", "ollama", "voyageai", "jina")
LLM_PROVIDERS = ("openai", "kimi", "anthropic", "ollama", "opencode")
ZERO_VECTOR_POLICIES = ("warn", "ignore")


class ConfigError(ValueError):
    """Invalid or missing configuration."""


@dataclass
class ScoringWeights:
    """Weights for the primary quality signals (nominally summing to 1.0)."""

    has_tests: float = 0.25
    ci_passing: float = 0.20
    diff_size_penalty: float = 0.15
    author_history: float = 0.15
    description_quality: float = 0.15
    review_approvals: float = 0.10

    def total(self) -> float:
        return (
            self.has_tests
            + self.ci_passing
            + self.diff_size_penalty
            + self.author_history
            + self.description_quality
            + self.review_approvals
        )


@dataclass
class ThresholdsConfig:
    """Similarity thresholds for duplicates and vision tiers."""

    duplicate_similarity: float = 0.85
    aligned: float = 0.65
    drifting: float = 0.40


@dataclass
class LabelsConfig:
    """GitHub label names applied by --apply-labels."""

    duplicate: str = "prism:duplicate"
    aligned: str = "prism:aligned"
    drifting: str = "prism:drifting"
    off_vision: str = "prism:off-vision"
    top_pick: str = "prism:top-pick"

    def items(self) -> list[tuple[str, str]]:
        return [
            ("duplicate", self.duplicate),
            ("aligned", self.aligned),
            ("drifting", self.drifting),
            ("off_vision", self.off_vision),
            ("top_pick", self.top_pick),
        ]

    def for_classification(self, classification: str) -> str:
        key = "off_vision" if classification == "off-vision" else classification
        return getattr(self, key)


@dataclass
class PrismConfig:
    """Complete Prism configuration."""

    repo: str = ""
    vision_doc: str | None = None
    thresholds: ThresholdsConfig = field(default_factory=ThresholdsConfig)
    weights: ScoringWeights = field(default_factory=ScoringWeights)
    labels: LabelsConfig = field(default_factory=LabelsConfig)
    batch_size: int = 50
    max_prs: int = 5000
    zero_vectors: str = "warn"  # warn, ignore
    ann_cutoff: int = 5000
    ann_neighbors: int = 50

    @classmethod
    def load(cls, path: Path | None = None) -> "PrismConfig":
        """Load configuration from prism.yml (defaults to the working directory)."""
        config_path = path or Path.cwd() / CONFIG_FILENAME
        if not config_path.exists():
            raise ConfigError(f"Config file not found: {config_path}. Run: prism init")

        with open(config_path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ConfigError(f"Config file must contain a mapping: {config_path}")

        return cls._parse(data)

    @classmethod
    def _parse(cls, data: dict[str, Any]) -> "PrismConfig":
        config = cls()
        config.repo = str(data.get("repo", "") or "")
        config.vision_doc = data.get("vision_doc")

        thresholds_data = data.get("thresholds") or {}
        config.thresholds = ThresholdsConfig(
            duplicate_similarity=float(thresholds_data.get("duplicate_similarity", 0.85)),
            aligned=float(thresholds_data.get("aligned", 0.65)),
            drifting=float(thresholds_data.get("drifting", 0.40)),
        )
        if config.thresholds.drifting > config.thresholds.aligned:
            raise ConfigError(
                "thresholds.drifting must not exceed thresholds.aligned "
                f"({config.thresholds.drifting} > {config.thresholds.aligned})"
            )

        weights_data = (data.get("scoring") or {}).get("weights") or {}
        config.weights = ScoringWeights(
            has_tests=float(weights_data.get("has_tests", 0.25)),
            ci_passing=float(weights_data.get("ci_passing", 0.20)),
            diff_size_penalty=float(weights_data.get("diff_size_penalty", 0.15)),
            author_history=float(weights_data.get("author_history", 0.15)),
            description_quality=float(weights_data.get("description_quality", 0.15)),
            review_approvals=float(weights_data.get("review_approvals", 0.10)),
        )
        if config.weights.diff_size_penalty >= 1.0:
            raise ConfigError("scoring.weights.diff_size_penalty must be below 1.0")

        labels_data = data.get("labels") or {}
        defaults = LabelsConfig()
        config.labels = LabelsConfig(
            **{key: labels_data.get(key, value) for key, value in defaults.items()}
        )

        config.batch_size = int(data.get("batch_size", 50))
        config.max_prs = int(data.get("max_prs", 5000))
        config.ann_cutoff = int(data.get("ann_cutoff", 5000))
        config.ann_neighbors = int(data.get("ann_neighbors", 50))

        zero_vectors = data.get("zero_vectors", "warn")
        if zero_vectors not in ZERO_VECTOR_POLICIES:
            raise ConfigError(
                f"zero_vectors must be one of {', '.join(ZERO_VECTOR_POLICIES)}, got: {zero_vectors}"
            )
        config.zero_vectors = zero_vectors

        return config


@dataclass
class EnvConfig:
    """Secrets and provider selection read from the environment."""

    github_token: str
    embedding_provider: str = "openai"
    embedding_api_key: str | None = None
    embedding_model: str = ""  # empty selects the provider default
    embedding_dimensions: int | None = None  # matryoshka truncation target
    llm_provider: str = "openai"
    llm_api_key: str | None = None
    llm_model: str = "gpt-4o-mini"

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None) -> "EnvConfig":
        env = os.environ if environ is None else environ

        token = env.get("GITHUB_TOKEN", "")
        if not token:
            raise ConfigError("GITHUB_TOKEN is not set. Add it to .env or export it.")

        embedding_provider = env.get("EMBEDDING_PROVIDER", "openai")
        if embedding_provider not in EMBEDDING_PROVIDERS:
            raise ConfigError(
                f"Unknown EMBEDDING_PROVIDER '{embedding_provider}'. "
                f"Expected one of: {', '.join(EMBEDDING_PROVIDERS)}"
            )

        llm_provider = env.get("LLM_PROVIDER", "openai")
        if llm_provider not in LLM_PROVIDERS:
            raise ConfigError(
                f"Unknown LLM_PROVIDER '{llm_provider}'. "
                f"Expected one of: {', '.join(LLM_PROVIDERS)}"
            )

        raw_dims = env.get("EMBEDDING_DIMENSIONS")
        dimensions: int | None = None
        if raw_dims:
            try:
                dimensions = int(raw_dims)
            except ValueError:
                raise ConfigError(f"EMBEDDING_DIMENSIONS must be an integer, got: {raw_dims}")
            if dimensions <= 0:
                raise ConfigError(f"EMBEDDING_DIMENSIONS must be positive, got: {dimensions}")

        return cls(
            github_token=token,
            embedding_provider=embedding_provider,
            embedding_api_key=env.get("EMBEDDING_API_KEY") or None,
            embedding_model=env.get("EMBEDDING_MODEL", ""),
            embedding_dimensions=dimensions,
            llm_provider=llm_provider,
            llm_api_key=env.get("LLM_API_KEY") or None,
            llm_model=env.get("LLM_MODEL", "gpt-4o-mini"),
        )


def parse_repo(repo: str) -> tuple[str, str]:
    """Split "owner/repo" into (owner, name)."""
    parts = (repo or "").strip().split("/")
    if len(parts) != 2 or not parts[0] or not parts[1]:
        raise ConfigError(f"Invalid repo format: {repo!r}. Expected owner/repo")
    return parts[0], parts[1]


def get_data_dir(base: Path | None = None) -> Path:
    """Get the data directory path (holds prism.db, logs, fetched docs)."""
    return (base or Path.cwd()) / DATA_DIRNAME


def ensure_data_dir(base: Path | None = None) -> Path:
    """Ensure data directory exists and return its path."""
    data_dir = get_data_dir(base)
    data_dir.mkdir(parents=True, exist_ok=True)
    return data_dir
