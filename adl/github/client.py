# =============================================================================
# AUTONOMOUS DEVELOPMENT LOOP - GITHUB API CLIENT
# =============================================================================
"""
GitHub API Client

REST client for everything the loop does on the target repository:

    - Contents: read planning documents, commit updated ones
    - Pulls: fetch, diff, review, mark ready (GraphQL), squash merge
    - Commits: changed files of a merge commit
    - Actions: workflow runs of a head SHA, job lists, job logs
    - Issues: incident and escalation issues, comments

Transport:
    - One requests.Session with token auth
    - urllib3 Retry on 5xx for every method
    - Primary rate limit tracked from response headers; calls sleep until
      the reset when the remaining budget runs low
    - Error statuses mapped onto typed exceptions (401, 403 rate limit,
      404, 422, anything else)

The client is synchronous; async services call it through
``asyncio.to_thread``.

Usage:
    client = GitHubClient(token="ghs_xxx", repo="owner/repo")
    text = client.get_file_content("GOALS.md", ref="main")
    client.create_review(12, "LGTM", event="APPROVE")
"""

import base64
import logging
import os
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Type
from urllib.parse import urljoin

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from adl.errors import ExternalServiceError


logger = logging.getLogger(__name__)


# =============================================================================
# EXCEPTIONS
# =============================================================================

class GitHubAPIError(ExternalServiceError):
    """Non-success answer (or no answer) from the GitHub API."""

    default_status: Optional[int] = None

    def __init__(self, message: str, status_code: int = None, response: dict = None):
        if status_code is None:
            status_code = self.default_status
        super().__init__(message, service="github", status_code=status_code)
        self.response = response or {}


class AuthenticationError(GitHubAPIError):
    """401: the token is missing, expired or revoked."""
    default_status = 401


class RateLimitError(GitHubAPIError):
    """403 caused by an exhausted rate limit."""
    default_status = 403

    def __init__(self, message: str, status_code: int = None, response: dict = None, reset_time: int = None):
        super().__init__(message, status_code, response)
        self.reset_time = reset_time


class NotFoundError(GitHubAPIError):
    """404: missing file, pull request, job log, ..."""
    default_status = 404


class ValidationError(GitHubAPIError):
    """422: the request was understood but rejected (e.g. stale blob SHA)."""
    default_status = 422

    @property
    def errors(self) -> List[dict]:
        return self.response.get("errors", [])


_STATUS_ERRORS: Dict[int, Type[GitHubAPIError]] = {
    401: AuthenticationError,
    404: NotFoundError,
    422: ValidationError,
}


# =============================================================================
# RATE LIMIT
# =============================================================================

@dataclass
class RateLimit:
    """Primary rate limit budget as last reported by the API."""
    remaining: Optional[int] = None
    reset_at: Optional[int] = None

    def update(self, headers: Dict[str, str]) -> None:
        try:
            if headers.get("X-RateLimit-Remaining") is not None:
                self.remaining = int(headers["X-RateLimit-Remaining"])
            if headers.get("X-RateLimit-Reset") is not None:
                self.reset_at = int(headers["X-RateLimit-Reset"])
        except (TypeError, ValueError):
            logger.debug("Ignoring malformed rate limit headers")

    def seconds_to_wait(self, threshold: int, now: Optional[float] = None) -> float:
        """Seconds to sleep before the next call; 0 when the budget is fine."""
        if self.remaining is None or self.reset_at is None or self.remaining > threshold:
            return 0.0
        now = time.time() if now is None else now
        return max(0.0, self.reset_at - now) + 1


# =============================================================================
# GITHUB CLIENT CLASS
# =============================================================================

class GitHubClient:
    """
    Synchronous GitHub REST client bound to one repository.

    Attributes:
        token: API token, also used for staging clones
        repo: ``owner/repo``
        base_url: API root (GitHub Enterprise installs override it)
        rate_limit: Last reported rate limit budget
    """

    DEFAULT_BASE_URL = "https://api.github.com"
    DEFAULT_TIMEOUT = 30
    RETRY_TOTAL = 3
    RETRY_BACKOFF = 0.5
    # Writes (merge, reviews, comments) are never replayed
    RETRY_METHODS = frozenset(["GET", "HEAD"])
    RATE_LIMIT_FLOOR = 10
    MAX_RATE_LIMIT_SLEEP = 3600

    def __init__(
        self,
        token: str = None,
        repo: str = None,
        base_url: str = None,
        timeout: int = None,
        retries: int = None,
    ):
        """
        Args:
            token: API token (default: GITHUB_TOKEN)
            repo: ``owner/repo`` (default: GITHUB_REPOSITORY)
            base_url: API root (default: GITHUB_API_URL or api.github.com)
            timeout: Per-request timeout in seconds
            retries: Transport retries on 5xx

        Raises:
            ValueError: If the token is missing or repo is not owner/repo
        """
        self.token = token or os.environ.get("GITHUB_TOKEN")
        self.repo = repo or os.environ.get("GITHUB_REPOSITORY")
        self.base_url = (base_url or os.environ.get("GITHUB_API_URL") or self.DEFAULT_BASE_URL).rstrip("/")
        self.timeout = timeout or self.DEFAULT_TIMEOUT

        if not self.token:
            raise ValueError("GitHub token required (GITHUB_TOKEN or token=...)")
        if not self.repo or "/" not in self.repo:
            raise ValueError(f"Repository must be given as owner/repo, got {self.repo!r}")

        self.rate_limit = RateLimit()
        self._session = self._build_session(self.RETRY_TOTAL if retries is None else retries)

        logger.info(f"GitHubClient initialized for {self.repo}")

    @property
    def owner(self) -> str:
        return self.repo.split("/", 1)[0]

    @property
    def name(self) -> str:
        return self.repo.split("/", 1)[1]

    def _build_session(self, retries: int) -> requests.Session:
        session = requests.Session()
        session.headers.update({
            "Authorization": f"Bearer {self.token}",
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
            "User-Agent": "adl-orchestrator",
        })
        adapter = HTTPAdapter(max_retries=Retry(
            total=retries,
            backoff_factor=self.RETRY_BACKOFF,
            status_forcelist=[500, 502, 503, 504],
            allowed_methods=self.RETRY_METHODS,
        ))
        session.mount("https://", adapter)
        session.mount("http://", adapter)
        return session

    # =========================================================================
    # CONTENT OPERATIONS
    # =========================================================================

    def get_file(self, path: str, ref: str = None) -> dict:
        """
        Get a file with its decoded text.

        Args:
            path: Path inside the repository
            ref: Git reference (branch, tag, commit)

        Returns:
            {"path": ..., "sha": ..., "content": <decoded text>}

        Raises:
            NotFoundError: If the file doesn't exist at ref
        """
        endpoint = f"/repos/{self.repo}/contents/{path}"
        params = {"ref": ref} if ref else None
        data = self._request("GET", endpoint, params=params)

        if isinstance(data, list):
            raise GitHubAPIError(f"{path} is a directory, not a file")

        content = base64.b64decode(data.get("content", "")).decode("utf-8")
        return {"path": data.get("path", path), "sha": data.get("sha"), "content": content}

    def get_file_content(self, path: str, ref: str = None) -> str:
        """Get the decoded text of a file."""
        return self.get_file(path, ref)["content"]

    def update_file(
        self,
        path: str,
        content: str,
        message: str,
        branch: str = None,
        sha: str = None,
    ) -> dict:
        """
        Create or update a file with a single commit.

        Args:
            path: Path inside the repository
            content: New file text
            message: Commit message
            branch: Target branch (default: repository default branch)
            sha: Blob SHA of the file being replaced; looked up when omitted

        Returns:
            Commit data from the contents API
        """
        if sha is None:
            try:
                sha = self.get_file(path, ref=branch)["sha"]
            except NotFoundError:
                sha = None

        endpoint = f"/repos/{self.repo}/contents/{path}"
        data = {
            "message": message,
            "content": base64.b64encode(content.encode("utf-8")).decode("ascii"),
        }
        if branch:
            data["branch"] = branch
        if sha:
            data["sha"] = sha

        return self._request("PUT", endpoint, data=data)

    # =========================================================================
    # PULL REQUEST OPERATIONS
    # =========================================================================

    def get_pull(self, pr_number: int) -> dict:
        """
        Get pull request by number.

        Returns:
            Pull request data with head/base refs, draft flag and node_id
        """
        endpoint = f"/repos/{self.repo}/pulls/{pr_number}"
        return self._request("GET", endpoint)

    def get_pull_diff(self, pr_number: int) -> str:
        """Get the unified diff of a pull request."""
        endpoint = f"/repos/{self.repo}/pulls/{pr_number}"
        return self._request(
            "GET",
            endpoint,
            headers={"Accept": "application/vnd.github.v3.diff"},
            raw=True,
        )

    def list_pulls(
        self,
        state: str = "open",
        sort: str = "created",
        direction: str = "desc",
        per_page: int = 30,
    ) -> List[dict]:
        """
        List pull requests.

        Args:
            state: "open", "closed", or "all"
            sort: "created", "updated", "popularity" or "long-running"
            direction: "asc" or "desc"
            per_page: Results per page (max 100)
        """
        endpoint = f"/repos/{self.repo}/pulls"
        params = {
            "state": state,
            "sort": sort,
            "direction": direction,
            "per_page": min(per_page, 100),
        }
        return self._request("GET", endpoint, params=params)

    def create_review(self, pr_number: int, body: str, event: str = "COMMENT") -> dict:
        """
        Submit a pull request review.

        Args:
            pr_number: Pull request number
            body: Review body (markdown)
            event: "APPROVE", "REQUEST_CHANGES" or "COMMENT"
        """
        if event not in ("APPROVE", "REQUEST_CHANGES", "COMMENT"):
            raise ValueError(f"Invalid review event: {event}")

        endpoint = f"/repos/{self.repo}/pulls/{pr_number}/reviews"
        return self._request("POST", endpoint, data={"body": body, "event": event})

    def merge_pull(
        self,
        pr_number: int,
        merge_method: str = "squash",
        commit_title: str = None,
    ) -> dict:
        """
        Merge a pull request.

        Returns:
            {"sha": <merge commit sha>, "merged": true, "message": ...}
        """
        endpoint = f"/repos/{self.repo}/pulls/{pr_number}/merge"
        data = {"merge_method": merge_method}
        if commit_title:
            data["commit_title"] = commit_title

        return self._request("PUT", endpoint, data=data)

    def mark_ready_for_review(self, node_id: str) -> dict:
        """
        Convert a draft pull request to ready for review.

        The REST API has no endpoint for this, so it goes through GraphQL.

        Args:
            node_id: The pull request's GraphQL node id
        """
        query = (
            "mutation($id: ID!) { markPullRequestReadyForReview(input: {pullRequestId: $id}) "
            "{ pullRequest { isDraft } } }"
        )
        result = self._request("POST", "/graphql", data={"query": query, "variables": {"id": node_id}})

        if result.get("errors"):
            message = "; ".join(e.get("message", "") for e in result["errors"])
            raise GitHubAPIError(f"GraphQL error: {message}")

        return result.get("data", {})

    # =========================================================================
    # COMMIT OPERATIONS
    # =========================================================================

    def get_commit(self, sha: str) -> dict:
        """
        Get a commit with its changed files.

        Returns:
            Commit data; ``files`` holds filename/patch entries
        """
        endpoint = f"/repos/{self.repo}/commits/{sha}"
        return self._request("GET", endpoint)

    # =========================================================================
    # ACTIONS OPERATIONS
    # =========================================================================

    def list_workflow_runs(self, head_sha: str, per_page: int = 100) -> List[dict]:
        """List workflow runs triggered for a commit."""
        endpoint = f"/repos/{self.repo}/actions/runs"
        params = {"head_sha": head_sha, "per_page": min(per_page, 100)}
        return self._request("GET", endpoint, params=params).get("workflow_runs", [])

    def list_run_jobs(self, run_id: int) -> List[dict]:
        """List the jobs of a workflow run."""
        endpoint = f"/repos/{self.repo}/actions/runs/{run_id}/jobs"
        return self._request("GET", endpoint).get("jobs", [])

    def get_job_logs(self, job_id: int) -> str:
        """
        Download the plain-text log of a job.

        GitHub redirects to short-lived storage; logs can lag a few seconds
        behind job completion, in which case this raises NotFoundError.
        """
        endpoint = f"/repos/{self.repo}/actions/jobs/{job_id}/logs"
        return self._request("GET", endpoint, raw=True)

    # =========================================================================
    # ISSUE OPERATIONS
    # =========================================================================

    def create_issue(
        self,
        title: str,
        body: str = None,
        labels: List[str] = None,
    ) -> dict:
        """
        Create a new issue.

        Args:
            title: Issue title
            body: Issue body (markdown)
            labels: List of label names

        Returns:
            Created issue data
        """
        endpoint = f"/repos/{self.repo}/issues"
        data = {"title": title}

        if body is not None:
            data["body"] = body
        if labels:
            data["labels"] = labels

        return self._request("POST", endpoint, data=data)

    def add_comment(self, issue_number: int, body: str) -> dict:
        """
        Add a comment to an issue or pull request.

        Args:
            issue_number: Issue or pull request number
            body: Comment body (markdown)
        """
        endpoint = f"/repos/{self.repo}/issues/{issue_number}/comments"
        return self._request("POST", endpoint, data={"body": body})

    # =========================================================================
    # TRANSPORT
    # =========================================================================

    def _wait_for_rate_limit(self) -> None:
        wait = self.rate_limit.seconds_to_wait(self.RATE_LIMIT_FLOOR)
        if 0 < wait <= self.MAX_RATE_LIMIT_SLEEP:
            logger.warning(
                f"GitHub rate limit low ({self.rate_limit.remaining} left), sleeping {wait:.0f}s"
            )
            time.sleep(wait)

    def _request(
        self,
        method: str,
        endpoint: str,
        data: dict = None,
        params: dict = None,
        headers: Dict[str, str] = None,
        raw: bool = False,
    ) -> Any:
        """
        Call the API and decode the answer.

        Args:
            raw: Return the body as text (diffs, job logs) instead of JSON
        """
        self._wait_for_rate_limit()
        url = urljoin(self.base_url + "/", endpoint.lstrip("/"))
        logger.debug(f"GitHub API: {method} {endpoint}")

        try:
            response = self._session.request(
                method=method,
                url=url,
                json=data,
                params=params,
                headers=headers,
                timeout=self.timeout,
            )
        except requests.exceptions.Timeout:
            raise GitHubAPIError(f"{method} {endpoint} timed out after {self.timeout}s")
        except requests.exceptions.RequestException as e:
            raise GitHubAPIError(f"{method} {endpoint} failed: {e}")

        self.rate_limit.update(response.headers)

        if response.status_code >= 400:
            self._raise_for_status(response, endpoint)

        if raw:
            return response.text
        if response.status_code == 204 or not response.content:
            return {}
        return response.json()

    def _raise_for_status(self, response: requests.Response, endpoint: str) -> None:
        status = response.status_code
        try:
            body = response.json()
        except ValueError:
            body = {}
        message = body.get("message") if isinstance(body, dict) else None
        message = message or response.text or response.reason or "no message"

        logger.error(f"GitHub API error [{status}] on {endpoint}: {message}")

        if status == 403 and "rate limit" in message.lower():
            raise RateLimitError(message, response=body, reset_time=self.rate_limit.reset_at)

        error_class = _STATUS_ERRORS.get(status, GitHubAPIError)
        raise error_class(message, status, body if isinstance(body, dict) else {})

    def close(self) -> None:
        self._session.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


def create_github_client(config: Dict[str, Any]) -> GitHubClient:
    """Create a client from the ``github`` configuration section."""
    return GitHubClient(
        token=config.get("token"),
        repo=config.get("repo"),
        base_url=config.get("api_url"),
        timeout=config.get("timeout"),
    )


__all__ = [
    "GitHubClient",
    "GitHubAPIError",
    "RateLimit",
    "RateLimitError",
    "NotFoundError",
    "AuthenticationError",
    "ValidationError",
    "create_github_client",
]
