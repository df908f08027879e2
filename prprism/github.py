"""
GitHub API client for Prism.

Fetches pull requests and issues for one repository. Uses GITHUB_TOKEN for
authentication.

Supports:
- REST listing (cheap, no CI/review/test signals)
- GraphQL deep scan (CI rollup, review count, changed test files inline)
- Diff fetching with a store-backed cache
- Label management
- Rate limit tracking and backoff
"""

from __future__ import annotations

import base64
import logging
import re
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Iterator

import requests

from .scoring import parse_timestamp
from .store import PRItem

if TYPE_CHECKING:
    from .store import VectorStore


logger = logging.getLogger(__name__)

GITHUB_API_BASE = "https://api.github.com"
GITHUB_GRAPHQL_URL = "https://api.github.com/graphql"
MAX_PER_PAGE = 100
GRAPHQL_PAGE_SIZE = 25
MAX_RETRIES = 3
FORBIDDEN_RETRY_DELAY = 5.0
MAX_DIFF_CHARS = 500_000
DIFF_TRUNCATION_MARKER = "\n\n[TRUNCATED - diff exceeded 500KB]"
TEST_FILE_PATTERN = re.compile(r"test|spec|__tests__", re.IGNORECASE)
GRAPHQL_FILE_LIMIT = 100

GRAPHQL_STATES = {
    "open": ["OPEN"],
    "closed": ["CLOSED", "MERGED"],
    "all": ["OPEN", "CLOSED", "MERGED"],
}
GRAPHQL_ISSUE_STATES = {
    "open": ["OPEN"],
    "closed": ["CLOSED"],
    "all": ["OPEN", "CLOSED"],
}

PULL_REQUESTS_QUERY = """
query($owner: String!, $name: String!, $states: [PullRequestState!], $first: Int!, $after: String) {
  repository(owner: $owner, name: $name) {
    pullRequests(states: $states, first: $first, after: $after,
                 orderBy: {field: UPDATED_AT, direction: DESC}) {
      totalCount
      pageInfo { hasNextPage endCursor }
      nodes {
        number
        title
        body
        state
        createdAt
        updatedAt
        additions
        deletions
        changedFiles
        author { login }
        labels(first: 20) { nodes { name } }
        reviews { totalCount }
        files(first: 100) { totalCount nodes { path } }
        commits(last: 1) { nodes { commit { statusCheckRollup { state } } } }
      }
    }
  }
  rateLimit { remaining limit resetAt }
}
"""

ISSUES_QUERY = """
query($owner: String!, $name: String!, $states: [IssueState!], $first: Int!, $after: String) {
  repository(owner: $owner, name: $name) {
    issues(states: $states, first: $first, after: $after,
           orderBy: {field: UPDATED_AT, direction: DESC}) {
      totalCount
      pageInfo { hasNextPage endCursor }
      nodes {
        number
        title
        body
        state
        createdAt
        updatedAt
        author { login }
        labels(first: 20) { nodes { name } }
      }
    }
  }
  rateLimit { remaining limit resetAt }
}
"""


class GitHubAPIError(Exception):
    """Error from GitHub API."""
    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class RateLimitError(GitHubAPIError):
    """Rate limit exceeded."""
    def __init__(self, reset_time: int | None = None):
        super().__init__("GitHub API rate limit exceeded", 403)
        self.reset_time = reset_time


@dataclass
class RateLimitInfo:
    remaining: int = 5000
    limit: int = 5000
    reset_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


def map_ci_status(state: str | None) -> str:
    """Map a GraphQL statusCheckRollup state onto success/failure/pending/unknown."""
    if state == "SUCCESS":
        return "success"
    if state in ("FAILURE", "ERROR"):
        return "failure"
    if state in ("PENDING", "EXPECTED"):
        return "pending"
    return "unknown"


def has_test_files(paths: list[str]) -> bool:
    return any(TEST_FILE_PATTERN.search(path) for path in paths)


def detect_tests(paths: list[str], total_count: int) -> bool | None:
    """True when a test file changed; None when the file list was truncated without a hit."""
    if has_test_files(paths):
        return True
    if total_count > GRAPHQL_FILE_LIMIT:
        return None
    return False


class GitHubClient:
    """GitHub REST + GraphQL client bound to one repository."""

    def __init__(self, token: str, owner: str, repo: str):
        self.token = token
        self.owner = owner
        self.repo = repo
        self.rate_limit = RateLimitInfo()
        self.session = requests.Session()

        if self.token:
            self.session.headers["Authorization"] = f"token {self.token}"

        self.session.headers["Accept"] = "application/vnd.github.v3+json"
        self.session.headers["User-Agent"] = "prprism/0.4.1"

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.repo}"

    # =========================================================================
    # Transport
    # =========================================================================

    def _update_rate_limit(self, headers: Any) -> None:
        remaining = headers.get("X-RateLimit-Remaining")
        if remaining is not None:
            self.rate_limit.remaining = int(remaining)
        limit = headers.get("X-RateLimit-Limit")
        if limit is not None:
            self.rate_limit.limit = int(limit)
        reset = headers.get("X-RateLimit-Reset")
        if reset is not None:
            self.rate_limit.reset_at = datetime.fromtimestamp(int(reset), tz=timezone.utc)

    def _seconds_until_reset(self) -> float:
        delta = (self.rate_limit.reset_at - datetime.now(timezone.utc)).total_seconds()
        return max(0.0, delta) + 1.0

    def _request(
        self,
        method: str,
        endpoint: str,
        params: dict[str, Any] | None = None,
        url: str | None = None,
        **kwargs: Any,
    ) -> requests.Response:
        """Make an API request with retry and rate limit handling."""
        url = url or f"{GITHUB_API_BASE}{endpoint}"

        for attempt in range(MAX_RETRIES):
            try:
                response = self.session.request(method, url, params=params, **kwargs)
            except requests.RequestException as e:
                if attempt < MAX_RETRIES - 1:
                    time.sleep(FORBIDDEN_RETRY_DELAY * (attempt + 1))
                    continue
                raise GitHubAPIError(f"Request failed: {e}")

            self._update_rate_limit(response.headers)

            if response.status_code in (403, 429):
                if self.rate_limit.remaining == 0:
                    if attempt == MAX_RETRIES - 1:
                        raise RateLimitError(int(self.rate_limit.reset_at.timestamp()))
                    wait = self._seconds_until_reset()
                    logger.warning("Rate limited. Waiting %ds until reset...", int(wait))
                    time.sleep(wait)
                    continue
                if attempt < MAX_RETRIES - 1:
                    time.sleep(FORBIDDEN_RETRY_DELAY * (attempt + 1))
                    continue

            if response.status_code >= 500 and attempt < MAX_RETRIES - 1:
                time.sleep(FORBIDDEN_RETRY_DELAY * (attempt + 1))
                continue

            if response.status_code >= 400:
                raise GitHubAPIError(
                    f"GitHub API error: {response.status_code} - {response.text}",
                    response.status_code
                )

            return response

        raise GitHubAPIError("Max retries exceeded")

    def _graphql(self, query: str, variables: dict[str, Any]) -> dict[str, Any]:
        response = self._request("POST", "", url=GITHUB_GRAPHQL_URL, json={"query": query, "variables": variables})
        payload = response.json()
        if payload.get("errors"):
            messages = "; ".join(e.get("message", "") for e in payload["errors"])
            raise GitHubAPIError(f"GraphQL error: {messages}")

        data = payload.get("data") or {}
        rate = data.get("rateLimit")
        if rate:
            self.rate_limit.remaining = int(rate.get("remaining", self.rate_limit.remaining))
            self.rate_limit.limit = int(rate.get("limit", self.rate_limit.limit))
            reset_at = parse_timestamp(rate.get("resetAt"))
            if reset_at:
                self.rate_limit.reset_at = reset_at
        return data

    def _paginate(
        self,
        endpoint: str,
        params: dict[str, Any],
        per_page: int,
    ) -> Iterator[dict[str, Any]]:
        """Iterate through paginated API results."""
        page = 1
        while True:
            response = self._request("GET", endpoint, params={**params, "per_page": per_page, "page": page})
            items = response.json()
            if not items:
                break
            yield from items
            if len(items) < per_page:
                break
            page += 1

    # =========================================================================
    # Parsing
    # =========================================================================

    def _labels(self, raw: list[Any]) -> list[str]:
        names = []
        for label in raw or []:
            name = label if isinstance(label, str) else label.get("name")
            if name:
                names.append(name)
        return names

    def _parse_pr(self, data: dict[str, Any]) -> PRItem:
        """Parse a REST pull request payload."""
        user = data.get("user") or {}
        return PRItem(
            number=data.get("number", 0),
            type="pr",
            repo=self.full_name,
            title=data.get("title") or "",
            body=data.get("body") or "",
            state=data.get("state", ""),
            author=user.get("login") or "unknown",
            created_at=data.get("created_at") or "",
            updated_at=data.get("updated_at") or "",
            labels=self._labels(data.get("labels", [])),
            diff_url=data.get("diff_url"),
            additions=data.get("additions"),
            deletions=data.get("deletions"),
            changed_files=data.get("changed_files"),
        )

    def _parse_issue(self, data: dict[str, Any]) -> PRItem:
        user = data.get("user") or {}
        return PRItem(
            number=data.get("number", 0),
            type="issue",
            repo=self.full_name,
            title=data.get("title") or "",
            body=data.get("body") or "",
            state=data.get("state", ""),
            author=user.get("login") or "unknown",
            created_at=data.get("created_at") or "",
            updated_at=data.get("updated_at") or "",
            labels=self._labels(data.get("labels", [])),
        )

    def _parse_pr_node(self, node: dict[str, Any]) -> PRItem:
        """Parse a GraphQL pull request node, including deep-scan signals."""
        files = node.get("files") or {}
        paths = [f.get("path", "") for f in files.get("nodes") or []]
        commits = (node.get("commits") or {}).get("nodes") or []
        rollup = None
        if commits:
            rollup = ((commits[0].get("commit") or {}).get("statusCheckRollup") or {}).get("state")

        return PRItem(
            number=node.get("number", 0),
            type="pr",
            repo=self.full_name,
            title=node.get("title") or "",
            body=node.get("body") or "",
            state=(node.get("state") or "").lower(),
            author=(node.get("author") or {}).get("login") or "unknown",
            created_at=node.get("createdAt") or "",
            updated_at=node.get("updatedAt") or "",
            labels=self._labels((node.get("labels") or {}).get("nodes", [])),
            diff_url=f"https://github.com/{self.full_name}/pull/{node.get('number', 0)}.diff",
            ci_status=map_ci_status(rollup),
            review_count=(node.get("reviews") or {}).get("totalCount", 0),
            additions=node.get("additions"),
            deletions=node.get("deletions"),
            changed_files=node.get("changedFiles"),
            has_tests=detect_tests(paths, files.get("totalCount", 0)),
        )

    def _parse_issue_node(self, node: dict[str, Any]) -> PRItem:
        return PRItem(
            number=node.get("number", 0),
            type="issue",
            repo=self.full_name,
            title=node.get("title") or "",
            body=node.get("body") or "",
            state=(node.get("state") or "").lower(),
            author=(node.get("author") or {}).get("login") or "unknown",
            created_at=node.get("createdAt") or "",
            updated_at=node.get("updatedAt") or "",
            labels=self._labels((node.get("labels") or {}).get("nodes", [])),
        )

    def _is_before(self, updated_at: str, since_dt: datetime | None) -> bool:
        if since_dt is None:
            return False
        updated = parse_timestamp(updated_at)
        return updated is not None and updated < since_dt

    # =========================================================================
    # Listing
    # =========================================================================

    def fetch_prs(
        self,
        since: str | None = None,
        state: str = "open",
        max_items: int = 5000,
        batch_size: int = 50,
    ) -> list[PRItem]:
        """
        List pull requests via REST, most recently updated first.

        Args:
            since: ISO timestamp; stop at the first PR updated before it
            state: open, closed or all
            max_items: Maximum number of PRs to return
            batch_size: Page size (capped at 100)
        """
        since_dt = parse_timestamp(since)
        params = {"state": state, "sort": "updated", "direction": "desc"}
        items: list[PRItem] = []

        for data in self._paginate(f"/repos/{self.full_name}/pulls", params, min(batch_size, MAX_PER_PAGE)):
            pr = self._parse_pr(data)
            if self._is_before(pr.updated_at, since_dt):
                break
            items.append(pr)
            if len(items) >= max_items:
                break

        return items

    def fetch_issues(
        self,
        since: str | None = None,
        state: str = "open",
        max_items: int = 5000,
        batch_size: int = 50,
    ) -> list[PRItem]:
        """List issues via REST (the issues endpoint also returns PRs; those are skipped)."""
        since_dt = parse_timestamp(since)
        params = {"state": state, "sort": "updated", "direction": "desc"}
        items: list[PRItem] = []

        for data in self._paginate(f"/repos/{self.full_name}/issues", params, min(batch_size, MAX_PER_PAGE)):
            if data.get("pull_request"):
                continue
            issue = self._parse_issue(data)
            if self._is_before(issue.updated_at, since_dt):
                break
            items.append(issue)
            if len(items) >= max_items:
                break

        return items

    def _graphql_connection(
        self,
        query: str,
        connection: str,
        states: list[str],
        parse: Any,
        since: str | None,
        max_items: int,
    ) -> list[PRItem]:
        since_dt = parse_timestamp(since)
        items: list[PRItem] = []
        cursor: str | None = None

        while len(items) < max_items:
            data = self._graphql(query, {
                "owner": self.owner,
                "name": self.repo,
                "states": states,
                "first": GRAPHQL_PAGE_SIZE,
                "after": cursor,
            })
            page = ((data.get("repository") or {}).get(connection)) or {}
            for node in page.get("nodes") or []:
                item = parse(node)
                if self._is_before(item.updated_at, since_dt):
                    return items
                items.append(item)
                if len(items) >= max_items:
                    return items

            logger.debug("Fetched %d/%s %s", len(items), page.get("totalCount", "?"), connection)
            info = page.get("pageInfo") or {}
            if not info.get("hasNextPage"):
                break
            cursor = info.get("endCursor")

        return items

    def fetch_prs_graphql(self, since: str | None = None, state: str = "open", max_items: int = 5000) -> list[PRItem]:
        """List pull requests with CI status, review count and test detection inline."""
        return self._graphql_connection(
            PULL_REQUESTS_QUERY, "pullRequests", GRAPHQL_STATES.get(state, ["OPEN"]),
            self._parse_pr_node, since, max_items,
        )

    def fetch_issues_graphql(self, since: str | None = None, state: str = "open", max_items: int = 5000) -> list[PRItem]:
        return self._graphql_connection(
            ISSUES_QUERY, "issues", GRAPHQL_ISSUE_STATES.get(state, ["OPEN"]),
            self._parse_issue_node, since, max_items,
        )

    # =========================================================================
    # Single PR
    # =========================================================================

    def get_pr(self, number: int) -> PRItem:
        """Get a specific pull request."""
        response = self._request("GET", f"/repos/{self.full_name}/pulls/{number}")
        return self._parse_pr(response.json())

    def fetch_diff(self, number: int, store: "VectorStore | None" = None) -> str:
        """Unified diff for a PR, served from the store cache when present."""
        if store is not None:
            cached = store.get_cached_diff(self.full_name, number)
            if cached:
                return cached

        response = self._request(
            "GET",
            f"/repos/{self.full_name}/pulls/{number}",
            headers={"Accept": "application/vnd.github.v3.diff"},
        )
        diff = response.text
        if len(diff) > MAX_DIFF_CHARS:
            diff = diff[:MAX_DIFF_CHARS] + DIFF_TRUNCATION_MARKER

        if store is not None:
            store.cache_diff(self.full_name, number, diff)
        return diff

    def fetch_ci_status(self, number: int) -> str:
        """Combined check-run status for the PR head commit."""
        try:
            pr = self._request("GET", f"/repos/{self.full_name}/pulls/{number}").json()
            sha = (pr.get("head") or {}).get("sha")
            checks = self._request("GET", f"/repos/{self.full_name}/commits/{sha}/check-runs").json()
        except GitHubAPIError as e:
            logger.warning("Could not fetch CI status for #%d: %s", number, e)
            return "unknown"

        runs = checks.get("check_runs") or []
        if checks.get("total_count", 0) == 0 or not runs:
            return "unknown"
        if any(run.get("status") != "completed" for run in runs):
            return "pending"
        if all(run.get("conclusion") == "success" for run in runs):
            return "success"
        return "failure"

    # =========================================================================
    # Search + contents
    # =========================================================================

    def get_author_merge_count(self, author: str) -> int:
        """Number of merged PRs by an author in this repo (0 when the lookup fails)."""
        query = f"repo:{self.full_name} type:pr author:{author} is:merged"
        try:
            response = self._request("GET", "/search/issues", params={"q": query, "per_page": 1})
        except GitHubAPIError as e:
            logger.warning("Merge count lookup failed for %s: %s", author, e)
            return 0
        return int(response.json().get("total_count", 0))

    def fetch_file_content(self, path: str) -> str | None:
        """Decoded file content from the default branch, or None when missing."""
        try:
            response = self._request("GET", f"/repos/{self.full_name}/contents/{path}")
        except GitHubAPIError as e:
            if e.status_code == 404:
                return None
            raise
        data = response.json()
        if isinstance(data, dict) and data.get("encoding") == "base64" and "content" in data:
            return base64.b64decode(data["content"]).decode("utf-8", errors="replace")
        return None

    # =========================================================================
    # Labels
    # =========================================================================

    def apply_label(self, number: int, label: str) -> None:
        self._request("POST", f"/repos/{self.full_name}/issues/{number}/labels", json={"labels": [label]})

    def remove_label(self, number: int, label: str) -> None:
        try:
            self._request("DELETE", f"/repos/{self.full_name}/issues/{number}/labels/{label}")
        except GitHubAPIError as e:
            if e.status_code != 404:
                raise

    def ensure_label(self, label: str, color: str, description: str) -> None:
        """Create the label unless it already exists."""
        try:
            self._request("GET", f"/repos/{self.full_name}/labels/{label}")
            return
        except GitHubAPIError as e:
            if e.status_code != 404:
                raise
        self._request(
            "POST",
            f"/repos/{self.full_name}/labels",
            json={"name": label, "color": color, "description": description},
        )

    # =========================================================================
    # Rate limit
    # =========================================================================

    def get_rate_limit(self) -> RateLimitInfo:
        return RateLimitInfo(self.rate_limit.remaining, self.rate_limit.limit, self.rate_limit.reset_at)

    def check_rate_limit(self) -> RateLimitInfo:
        """Refresh rate limit status from the API."""
        core = self._request("GET", "/rate_limit").json().get("resources", {}).get("core", {})
        if core:
            self.rate_limit.remaining = int(core.get("remaining", self.rate_limit.remaining))
            self.rate_limit.limit = int(core.get("limit", self.rate_limit.limit))
            if core.get("reset"):
                self.rate_limit.reset_at = datetime.fromtimestamp(int(core["reset"]), tz=timezone.utc)
        return self.get_rate_limit()

    def minutes_until_reset(self) -> int:
        seconds = (self.rate_limit.reset_at - datetime.now(timezone.utc)).total_seconds()
        return max(0, -(-int(seconds) // 60))

    @staticmethod
    def estimate_api_calls_needed(total_prs: int) -> int:
        return -(-total_prs // MAX_PER_PAGE) + total_prs

    def format_rate_limit_warning(self, estimated_calls: int) -> str | None:
        if self.rate_limit.remaining > estimated_calls * 1.2:
            return None
        return (
            f"{self.rate_limit.remaining}/{self.rate_limit.limit} API calls remaining, "
            f"~{estimated_calls} needed. Resets in {self.minutes_until_reset()}min."
        )
