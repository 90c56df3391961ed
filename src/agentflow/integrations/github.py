"""GitHub issue tracker client.

GitHubTracker is the Tracker collaborator for sessions: it fetches issue
details and posts progress comments through the GitHub REST API.

Includes rate limit handling and retry with exponential backoff and full
jitter for transient failures.

Source:
- src/agentflow/config.py (github_token, github_repo, github_base_url)
"""

import asyncio
import logging
import random
import time
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

import httpx
from pydantic import BaseModel, Field


logger = logging.getLogger(__name__)


class IssueDetail(BaseModel):
    """Issue as seen by a session.

    Attributes:
        number: Issue number (0 for prompt-only sessions).
        title: Issue title.
        body: Issue body, possibly empty.
        url: Web URL of the issue, when it lives in a tracker.
        labels: Label names.
    """

    number: int = Field(..., ge=0)
    title: str
    body: str = ""
    url: Optional[str] = None
    labels: List[str] = Field(default_factory=list)


@runtime_checkable
class Tracker(Protocol):
    async def fetch_issue_detail(self, issue_number: int) -> IssueDetail:
        ...

    async def add_comment(self, issue_number: int, body: str) -> None:
        ...


class GitHubAPIError(Exception):
    """Raised when a GitHub API request fails.

    Attributes:
        message: Human-readable error description.
        status_code: HTTP status code from the response.
        response_body: Response body from GitHub API.
        request_url: The URL that was requested.
    """

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        response_body: Optional[str] = None,
        request_url: Optional[str] = None,
    ):
        self.message = message
        self.status_code = status_code
        self.response_body = response_body
        self.request_url = request_url
        super().__init__(message)


class RateLimitError(GitHubAPIError):
    """Raised when GitHub API rate limit is exceeded.

    Attributes:
        reset_at: Unix timestamp when the rate limit resets.
        retry_after: Seconds to wait before retrying.
    """

    def __init__(
        self,
        message: str,
        reset_at: Optional[int] = None,
        retry_after: Optional[int] = None,
        **kwargs: Any,
    ):
        super().__init__(message, **kwargs)
        self.reset_at = reset_at
        self.retry_after = retry_after


class GitHubTracker:
    """Async GitHub issue client with rate limiting and retry logic.

    Attributes:
        token: GitHub API token (PAT or GitHub App token).
        repo: Repository in "owner/repo" form.
        base_url: Base URL for GitHub API (default: https://api.github.com).
        max_retries: Maximum number of retry attempts for transient failures.
        base_delay: Base delay in seconds for exponential backoff.
        max_delay: Maximum delay in seconds between retries.
        timeout: Request timeout in seconds.

    Example:
        >>> async with GitHubTracker(token="ghp_xxx", repo="acme/widgets") as tracker:
        ...     issue = await tracker.fetch_issue_detail(42)
    """

    # HTTP status codes that should trigger a retry
    RETRYABLE_STATUS_CODES = {408, 500, 502, 503, 504}

    def __init__(
        self,
        token: str,
        repo: str,
        base_url: str = "https://api.github.com",
        max_retries: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if repo.count("/") != 1:
            raise ValueError(f"repo must be in owner/repo form, got {repo!r}")
        self.token = token
        self.repo = repo
        self.base_url = base_url.rstrip("/")
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def client(self) -> httpx.AsyncClient:
        """Get the HTTP client, creating it if necessary."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=self._default_headers(),
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    def _default_headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.token}",
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
            "User-Agent": "agentflow/1.0",
        }

    async def close(self) -> None:
        """Close the HTTP client and release resources."""
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "GitHubTracker":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    def _calculate_backoff(self, attempt: int) -> float:
        """Exponential backoff with full jitter.

        Args:
            attempt: The current retry attempt (0-indexed).

        Returns:
            Delay in seconds before the next retry.
        """
        capped_delay = min(self.base_delay * (2 ** attempt), self.max_delay)
        return random.uniform(0, capped_delay)

    def _rate_limit_error(self, response: httpx.Response) -> RateLimitError:
        reset_at: Optional[int] = None
        retry_after: Optional[int] = None
        try:
            reset_header = response.headers.get("x-ratelimit-reset")
            if reset_header is not None:
                reset_at = int(reset_header)
                retry_after = max(0, reset_at - int(time.time()))
            retry_header = response.headers.get("retry-after")
            if retry_header is not None:
                retry_after = int(retry_header)
        except ValueError:
            pass

        logger.warning(
            "GitHub API rate limit exceeded",
            extra={"reset_at": reset_at, "retry_after": retry_after},
        )
        return RateLimitError(
            message="GitHub API rate limit exceeded",
            status_code=response.status_code,
            reset_at=reset_at,
            retry_after=retry_after,
        )

    async def _request(
        self,
        method: str,
        path: str,
        json_data: Optional[Dict[str, Any]] = None,
    ) -> httpx.Response:
        """Make an HTTP request with retry logic.

        Raises:
            GitHubAPIError: If the request fails after all retries.
            RateLimitError: If rate limit is exceeded.
        """
        last_exception: Optional[Exception] = None

        for attempt in range(self.max_retries + 1):
            try:
                response = await self.client.request(method=method, url=path, json=json_data)
            except httpx.RequestError as e:
                last_exception = e
                if attempt < self.max_retries:
                    delay = self._calculate_backoff(attempt)
                    logger.warning(
                        "Request error, retrying",
                        extra={
                            "error": str(e),
                            "attempt": attempt + 1,
                            "max_retries": self.max_retries,
                            "delay": delay,
                            "path": path,
                        },
                    )
                    await asyncio.sleep(delay)
                continue

            if response.status_code == 429 or (
                response.status_code == 403
                and response.headers.get("x-ratelimit-remaining") == "0"
            ):
                raise self._rate_limit_error(response)

            if response.status_code in self.RETRYABLE_STATUS_CODES and attempt < self.max_retries:
                delay = self._calculate_backoff(attempt)
                logger.warning(
                    "Retryable error from GitHub API",
                    extra={
                        "status_code": response.status_code,
                        "attempt": attempt + 1,
                        "delay": delay,
                        "path": path,
                    },
                )
                await asyncio.sleep(delay)
                continue

            if response.status_code >= 400:
                logger.error(
                    "GitHub API error",
                    extra={
                        "status_code": response.status_code,
                        "path": path,
                        "method": method,
                        "response_body": response.text[:500],
                    },
                )
                raise GitHubAPIError(
                    message=f"GitHub API error: {response.status_code}",
                    status_code=response.status_code,
                    response_body=response.text,
                    request_url=str(response.url),
                )

            return response

        raise GitHubAPIError(
            message=f"Request failed after {self.max_retries} retries: {last_exception}",
            request_url=f"{self.base_url}{path}",
        )

    async def fetch_issue_detail(self, issue_number: int) -> IssueDetail:
        """Get an issue's title, body and labels.

        Raises:
            GitHubAPIError: If the request fails.
        """
        response = await self._request("GET", f"/repos/{self.repo}/issues/{issue_number}")
        data = response.json()
        return IssueDetail(
            number=data.get("number", issue_number),
            title=data.get("title") or f"Issue #{issue_number}",
            body=data.get("body") or "",
            url=data.get("html_url"),
            labels=[
                label["name"] if isinstance(label, dict) else str(label)
                for label in data.get("labels") or []
            ],
        )

    async def add_comment(self, issue_number: int, body: str) -> None:
        """Post a markdown comment on an issue.

        Raises:
            GitHubAPIError: If the request fails.
        """
        logger.info(
            "Creating comment on issue",
            extra={"repo": self.repo, "issue_number": issue_number, "body_length": len(body)},
        )
        await self._request(
            "POST",
            f"/repos/{self.repo}/issues/{issue_number}/comments",
            json_data={"body": body},
        )
