"""
LLM code review for Prism.

Builds a review prompt from a PR's title, description and diff, asks the
configured model for a JSON verdict and validates it.

Provider routing goes through LiteLLM model prefixes:
- openai: gpt-4o-mini
- anthropic: anthropic/claude-...
- ollama: ollama/llama3 (local)
- kimi / opencode: OpenAI-compatible endpoints

See: https://docs.litellm.ai/docs/providers
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Literal

from pydantic import BaseModel, Field, ValidationError


logger = logging.getLogger(__name__)

MAX_DIFF_CHARS = 50_000
DIFF_TRUNCATION_MARKER = "\n\n[DIFF TRUNCATED]"
JSON_OBJECT = re.compile(r"\{[\s\S]*\}")

OPENAI_COMPATIBLE_BASES = {
    "kimi": "https://api.moonshot.cn/v1",
    "opencode": "https://opencode.ai/zen/v1",
}

REVIEW_SYSTEM_PROMPT = """You are a senior code reviewer analyzing a GitHub pull request. You must respond with valid JSON matching this exact schema:
{
  "summary": "Brief description of what this PR does",
  "concerns": ["List of specific concerns or issues"],
  "recommendation": "merge" | "revise" | "close",
  "confidence": 0.0-1.0
}

Be concise, specific, and objective. Focus on:
- Code quality and correctness
- Test coverage
- Potential breaking changes
- Security implications
- Whether it duplicates existing functionality"""


class ReviewError(Exception):
    """The model response could not be turned into a review."""


class ReviewResult(BaseModel):
    summary: str
    concerns: list[str] = Field(default_factory=list)
    recommendation: Literal["merge", "revise", "close"]
    confidence: float = Field(ge=0.0, le=1.0)


@dataclass
class LLMConfig:
    provider: str = "openai"
    model: str = "gpt-4o-mini"
    api_key: str | None = None
    temperature: float = 0.3
    max_tokens: int = 4096

    def litellm_model(self) -> str:
        if self.provider == "anthropic" and not self.model.startswith("anthropic/"):
            return f"anthropic/{self.model}"
        if self.provider == "ollama" and not self.model.startswith("ollama/"):
            return f"ollama/{self.model}"
        if self.provider in OPENAI_COMPATIBLE_BASES:
            return f"openai/{self.model}"
        return self.model

    def api_base(self) -> str | None:
        return OPENAI_COMPATIBLE_BASES.get(self.provider)


def build_review_prompt(title: str, body: str | None, diff: str) -> str:
    if len(diff) > MAX_DIFF_CHARS:
        diff = diff[:MAX_DIFF_CHARS] + DIFF_TRUNCATION_MARKER

    return f"""## PR: {title}

### Description
{body or "(No description provided)"}

### Diff
```diff
{diff}
```

Analyze this PR and respond with JSON only."""


def extract_json(text: str) -> dict[str, Any]:
    """Pull the outermost JSON object out of free-form model output."""
    match = JSON_OBJECT.search(text or "")
    if not match:
        raise ReviewError("LLM did not return valid JSON")
    try:
        return json.loads(match.group(0))
    except json.JSONDecodeError as e:
        raise ReviewError(f"LLM did not return valid JSON: {e}") from e


class Reviewer:
    """LiteLLM-based reviewer."""

    def __init__(self, config: LLMConfig):
        self.config = config
        self._litellm = None

    def _get_litellm(self):
        """Lazy import LiteLLM."""
        if self._litellm is None:
            import litellm
            self._litellm = litellm
        return self._litellm

    def _complete(self, prompt: str, json_mode: bool) -> str:
        litellm = self._get_litellm()
        kwargs: dict[str, Any] = {
            "model": self.config.litellm_model(),
            "messages": [
                {"role": "system", "content": REVIEW_SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            "temperature": self.config.temperature,
            "max_tokens": self.config.max_tokens,
        }
        if self.config.api_key:
            kwargs["api_key"] = self.config.api_key
        if self.config.api_base():
            kwargs["api_base"] = self.config.api_base()
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}

        response = litellm.completion(**kwargs)
        return response.choices[0].message.content or ""

    def review(self, title: str, body: str | None, diff: str) -> ReviewResult:
        prompt = build_review_prompt(title, body, diff)

        try:
            data = json.loads(self._complete(prompt, json_mode=True))
        except Exception as e:
            logger.info("JSON mode failed (%s), falling back to plain completion", e)
            data = extract_json(self._complete(prompt, json_mode=False))

        try:
            return ReviewResult.model_validate(data)
        except ValidationError as e:
            raise ReviewError(f"LLM returned an invalid review: {e}") from e


def review_pr(title: str, body: str | None, diff: str, llm_config: LLMConfig) -> ReviewResult:
    """Review a PR with the configured model."""
    return Reviewer(llm_config).review(title, body, diff)
