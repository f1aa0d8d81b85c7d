"""GitHub API client for webhooks and paginated collections.

This module provides an async wrapper around the GitHub REST API for:
- Managing repository webhooks (list, create, update, delete)
- Fetching one page of a collection together with the next page's arguments
- Walking every page of a collection
- Reading a repository's public event feed for polling

Includes retry logic for idempotent requests and rate limit detection.

Source:
- src/connector/pagination (Link header parsing, next page arguments)
- src/connector/config.py (github_token, github_base_url)
"""

import asyncio
import logging
import random
import re
import time
from typing import Any, AsyncIterator, Dict, List, Mapping, Optional, Tuple
from urllib.parse import urlsplit

import httpx

from src.connector.github.models import Page
from src.connector.pagination import parse_link_header, resolve_next_args


logger = logging.getLogger(__name__)

_CAMEL_BOUNDARY = re.compile(r"([A-Z])")

# Collections addressed relative to a repository
REPOSITORY_COLLECTIONS = {
    "issues": "/repos/{owner}/{repo}/issues",
    "pulls": "/repos/{owner}/{repo}/pulls",
    "commits": "/repos/{owner}/{repo}/commits",
    "comments": "/repos/{owner}/{repo}/issues/comments",
    "releases": "/repos/{owner}/{repo}/releases",
    "branches": "/repos/{owner}/{repo}/branches",
    "hooks": "/repos/{owner}/{repo}/hooks",
}

SEARCH_COLLECTIONS = {
    "repositories": "/search/repositories",
    "issues": "/search/issues",
    "commits": "/search/commits",
}


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


class NotConfiguredError(Exception):
    """Raised when a GitHub call is attempted before a token is configured."""

    def __init__(self, message: Optional[str] = None):
        super().__init__(
            message
            or "GitHub token is not configured. Set CONNECTOR_GITHUB_TOKEN or "
            "POST /configure with a token from https://github.com/settings/tokens/"
        )


def to_api_args(args: Mapping[str, Any]) -> Dict[str, Any]:
    """Convert caller-facing arguments to GitHub query parameters.

    ``pageSize`` becomes ``per_page``, other camelCase names become
    snake_case, and arguments set to None are dropped.
    """
    result: Dict[str, Any] = {}
    for key, value in args.items():
        if value is None:
            continue
        if key == "pageSize":
            result["per_page"] = value
        else:
            result[_CAMEL_BOUNDARY.sub(lambda m: "_" + m.group(1).lower(), key)] = value
    return result


def parse_repository_url(url: str) -> Tuple[str, str]:
    """Parse a GitHub repository URL into owner and repository name.

    Args:
        url: URL such as https://github.com/octocat/Hello-World

    Returns:
        Tuple of (owner, repo).

    Raises:
        ValueError: If the URL is not a github.com repository URL.
    """
    parts = urlsplit(url.strip())
    if parts.scheme not in ("http", "https") or parts.netloc.lower() not in (
        "github.com",
        "www.github.com",
    ):
        raise ValueError(f"Not a GitHub URL: {url}")

    segments = [segment for segment in parts.path.split("/") if segment]
    if len(segments) < 2:
        raise ValueError(f"URL does not name a repository: {url}")

    repo = segments[1]
    if repo.endswith(".git"):
        repo = repo[: -len(".git")]
    return segments[0], repo


class GitHubClient:
    """Async GitHub API client with retry logic and pagination support.

    The client can be created without a token; every request then raises
    NotConfiguredError until configure() is called.

    Attributes:
        token: GitHub API token (PAT or GitHub App token).
        base_url: Base URL for GitHub API (default: https://api.github.com).
        max_retries: Maximum number of retry attempts for transient failures.
        base_delay: Base delay in seconds for exponential backoff.
        max_delay: Maximum delay in seconds between retries.
        timeout: Request timeout in seconds.
        max_pages: Upper bound on pages walked by iterate_pages().

    Example:
        >>> async with GitHubClient(token="ghp_xxx") as client:
        ...     page = await client.list_issues("octocat", "Hello-World", {"state": "open"})
        ...     while page.next:
        ...         page = await client.list_issues("octocat", "Hello-World", page.next)
    """

    # HTTP status codes that should trigger a retry
    RETRYABLE_STATUS_CODES = {408, 429, 500, 502, 503, 504}

    # POST is not retried: a timed-out create may still have succeeded
    IDEMPOTENT_METHODS = {"GET", "PUT", "PATCH", "DELETE"}

    def __init__(
        self,
        token: Optional[str] = None,
        base_url: str = "https://api.github.com",
        max_retries: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        timeout: float = 30.0,
        max_pages: int = 100,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize the GitHub client.

        Args:
            token: GitHub API token for authentication, or None.
            base_url: Base URL for GitHub API. Use this to support
                      GitHub Enterprise Server endpoints.
            max_retries: Maximum number of retry attempts.
            base_delay: Base delay in seconds for exponential backoff.
            max_delay: Maximum delay in seconds between retries.
            timeout: Request timeout in seconds.
            max_pages: Upper bound on pages walked by iterate_pages().
            transport: Optional httpx transport (used by tests).
        """
        self.token = token
        self.base_url = base_url.rstrip("/")
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.timeout = timeout
        self.max_pages = max_pages
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def is_configured(self) -> bool:
        return bool(self.token and self.token.strip())

    @property
    def client(self) -> httpx.AsyncClient:
        """Get the HTTP client, creating it if necessary.

        Raises:
            NotConfiguredError: If no token has been configured.
        """
        if not self.is_configured:
            raise NotConfiguredError()
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
            "User-Agent": "GitHub-Connector/1.0",
        }

    async def configure(self, token: str) -> None:
        """Replace the API token.

        The HTTP client is rebuilt on next use so the new token is sent.
        """
        if not token or not token.strip():
            raise ValueError("token cannot be empty")
        if token == self.token:
            return
        logger.info("Generating new GitHub client")
        await self.close()
        self.token = token

    async def close(self) -> None:
        """Close the HTTP client and release resources."""
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
        self._client = None

    async def __aenter__(self) -> "GitHubClient":
        """Async context manager entry."""
        return self

    async def __aexit__(
        self,
        exc_type: Any,
        exc_val: Any,
        exc_tb: Any,
    ) -> None:
        """Async context manager exit - close the client."""
        await self.close()

    def _calculate_backoff(self, attempt: int) -> float:
        """Exponential backoff with full jitter."""
        exponential_delay = self.base_delay * (2 ** attempt)
        capped_delay = min(exponential_delay, self.max_delay)
        return random.uniform(0, capped_delay)

    def _parse_int_header(
        self,
        headers: httpx.Headers,
        name: str,
    ) -> Optional[int]:
        value = headers.get(name)
        if value is not None:
            try:
                return int(value)
            except ValueError:
                pass
        return None

    async def _handle_rate_limit(
        self,
        response: httpx.Response,
    ) -> None:
        """Raise RateLimitError with the reset information from headers.

        Raises:
            RateLimitError: Always.
        """
        reset_at = self._parse_int_header(response.headers, "x-ratelimit-reset")

        retry_after = None
        if reset_at is not None:
            retry_after = max(0, reset_at - int(time.time()))

        # Retry-After takes precedence when present
        retry_after_header = self._parse_int_header(response.headers, "retry-after")
        if retry_after_header is not None:
            retry_after = retry_after_header

        logger.warning(
            "GitHub API rate limit exceeded",
            extra={
                "reset_at": reset_at,
                "retry_after": retry_after,
                "limit": self._parse_int_header(response.headers, "x-ratelimit-limit"),
                "used": self._parse_int_header(response.headers, "x-ratelimit-used"),
            },
        )

        raise RateLimitError(
            message="GitHub API rate limit exceeded",
            status_code=response.status_code,
            response_body=response.text,
            request_url=str(response.url),
            reset_at=reset_at,
            retry_after=retry_after,
        )

    async def _request(
        self,
        method: str,
        path: str,
        json_data: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> httpx.Response:
        """Make an HTTP request, retrying transient failures of idempotent calls.

        Args:
            method: HTTP method (GET, POST, PATCH, DELETE).
            path: API path (e.g., /repos/owner/repo/hooks).
            json_data: Optional JSON body for the request.
            params: Optional query parameters.

        Returns:
            The HTTP response from GitHub.

        Raises:
            NotConfiguredError: If no token is configured.
            GitHubAPIError: If the request fails after all retries.
            RateLimitError: If rate limit is exceeded.
        """
        client = self.client
        retries = self.max_retries if method.upper() in self.IDEMPOTENT_METHODS else 0
        last_exception: Optional[Exception] = None

        for attempt in range(retries + 1):
            try:
                response = await client.request(
                    method=method,
                    url=path,
                    json=json_data,
                    params=params,
                )

                if response.status_code == 403:
                    remaining = self._parse_int_header(
                        response.headers,
                        "x-ratelimit-remaining",
                    )
                    if remaining is not None and remaining == 0:
                        await self._handle_rate_limit(response)

                if response.status_code == 429:
                    await self._handle_rate_limit(response)

                if response.status_code in self.RETRYABLE_STATUS_CODES:
                    if attempt < retries:
                        delay = self._calculate_backoff(attempt)
                        logger.warning(
                            "Retryable error from GitHub API",
                            extra={
                                "status_code": response.status_code,
                                "attempt": attempt + 1,
                                "max_retries": retries,
                                "delay": delay,
                                "path": path,
                            },
                        )
                        await asyncio.sleep(delay)
                        continue

                if response.status_code >= 400:
                    error_body = response.text
                    logger.error(
                        "GitHub API error",
                        extra={
                            "status_code": response.status_code,
                            "path": path,
                            "method": method,
                            "response_body": error_body[:500],
                        },
                    )
                    raise GitHubAPIError(
                        message=f"GitHub API error: {response.status_code}",
                        status_code=response.status_code,
                        response_body=error_body,
                        request_url=str(response.url),
                    )

                return response

            except GitHubAPIError:
                raise
            except httpx.RequestError as e:
                last_exception = e
                if attempt < retries:
                    delay = self._calculate_backoff(attempt)
                    logger.warning(
                        "Request error, retrying",
                        extra={
                            "error": str(e),
                            "attempt": attempt + 1,
                            "max_retries": retries,
                            "delay": delay,
                            "path": path,
                        },
                    )
                    await asyncio.sleep(delay)
                    continue

        logger.error(
            "GitHub API request failed after all retries",
            extra={
                "path": path,
                "method": method,
                "max_retries": retries,
                "last_error": str(last_exception),
            },
        )
        raise GitHubAPIError(
            message=f"Request failed after {retries} retries: {last_exception}",
            request_url=f"{self.base_url}{path}",
        )

    # -------------------------------------------------------------------------
    # Pagination
    # -------------------------------------------------------------------------

    async def get_page(
        self,
        path: str,
        args: Optional[Mapping[str, Any]] = None,
        base_params: Optional[Mapping[str, Any]] = None,
    ) -> Page:
        """Fetch one page of a collection.

        Args:
            path: API path of the collection.
            args: Caller-facing arguments, including page/since when
                continuing a traversal.
            base_params: Extra query parameters that are not part of the
                caller's arguments and are not echoed in ``Page.next``.

        Returns:
            The page items and the arguments of the next page.
        """
        current_args = dict(args or {})
        params = to_api_args({**dict(base_params or {}), **current_args})

        response = await self._request(method="GET", path=path, params=params)
        body = response.json()

        total_count = None
        if isinstance(body, dict):
            items = body.get("items", [])
            total_count = body.get("total_count")
        else:
            items = body

        link_set = parse_link_header(response.headers.get("link"))
        return Page(
            items=items,
            next=resolve_next_args(current_args, link_set),
            total_count=total_count,
        )

    async def iterate_pages(
        self,
        path: str,
        args: Optional[Mapping[str, Any]] = None,
        max_pages: Optional[int] = None,
    ) -> AsyncIterator[Page]:
        """Yield every page of a collection, following ``next`` arguments.

        Stops at the last page or after ``max_pages`` pages.
        """
        limit = max_pages if max_pages is not None else self.max_pages
        next_args: Optional[Dict[str, Any]] = dict(args or {})
        fetched = 0

        while next_args is not None and fetched < limit:
            page = await self.get_page(path, next_args)
            fetched += 1
            yield page
            next_args = page.next

        if next_args is not None:
            logger.warning(
                "Stopped pagination at page limit",
                extra={"path": path, "max_pages": limit},
            )

    async def collect(
        self,
        path: str,
        args: Optional[Mapping[str, Any]] = None,
        max_pages: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """Return the items of every page of a collection."""
        items: List[Dict[str, Any]] = []
        async for page in self.iterate_pages(path, args, max_pages=max_pages):
            items.extend(page.items)
        return items

    # -------------------------------------------------------------------------
    # Webhooks
    # -------------------------------------------------------------------------

    @staticmethod
    def _hook_config(url: str, secret: Optional[str]) -> Dict[str, Any]:
        config: Dict[str, Any] = {"url": url, "content_type": "json"}
        if secret:
            config["secret"] = secret
        return config

    async def list_hooks(self, owner: str, repo: str) -> List[Dict[str, Any]]:
        """List every webhook of a repository.

        Returns:
            Raw hook objects from the GitHub API.

        Raises:
            GitHubAPIError: If the request fails.
        """
        path = REPOSITORY_COLLECTIONS["hooks"].format(owner=owner, repo=repo)
        hooks = await self.collect(path, {"per_page": 100})
        logger.debug(
            "Listed repository webhooks",
            extra={"owner": owner, "repo": repo, "count": len(hooks)},
        )
        return hooks

    async def create_hook(
        self,
        owner: str,
        repo: str,
        events: List[str],
        url: str,
        secret: Optional[str] = None,
    ) -> int:
        """Create a JSON webhook delivering ``events`` to ``url``.

        Returns:
            The new webhook id.

        Raises:
            GitHubAPIError: If the request fails.
        """
        path = f"/repos/{owner}/{repo}/hooks"

        logger.info(
            "Creating webhook",
            extra={"owner": owner, "repo": repo, "events": events},
        )

        response = await self._request(
            method="POST",
            path=path,
            json_data={
                "name": "web",
                "active": True,
                "events": list(events),
                "config": self._hook_config(url, secret),
            },
        )
        return response.json()["id"]

    async def update_hook(
        self,
        owner: str,
        repo: str,
        hook_id: int,
        events: List[str],
        url: str,
        secret: Optional[str] = None,
    ) -> None:
        """Replace the event list and config of a webhook in one call.

        Raises:
            GitHubAPIError: If the request fails.
        """
        path = f"/repos/{owner}/{repo}/hooks/{hook_id}"

        logger.info(
            "Updating webhook",
            extra={
                "owner": owner,
                "repo": repo,
                "hook_id": hook_id,
                "events": events,
            },
        )

        await self._request(
            method="PATCH",
            path=path,
            json_data={
                "active": True,
                "events": list(events),
                "config": self._hook_config(url, secret),
            },
        )

    async def delete_hook(self, owner: str, repo: str, hook_id: int) -> None:
        """Delete a webhook.

        Raises:
            GitHubAPIError: If the request fails.
        """
        path = f"/repos/{owner}/{repo}/hooks/{hook_id}"

        logger.info(
            "Deleting webhook",
            extra={"owner": owner, "repo": repo, "hook_id": hook_id},
        )

        await self._request(method="DELETE", path=path)

    # -------------------------------------------------------------------------
    # Collections
    # -------------------------------------------------------------------------

    async def list_users(self, args: Optional[Mapping[str, Any]] = None) -> Page:
        """List users. Paginated with a ``since`` user id cursor."""
        return await self.get_page("/users", args)

    async def get_user(self, username: str) -> Dict[str, Any]:
        response = await self._request(method="GET", path=f"/users/{username}")
        return response.json()

    async def list_user_repos(
        self,
        username: str,
        args: Optional[Mapping[str, Any]] = None,
    ) -> Page:
        return await self.get_page(f"/users/{username}/repos", args)

    async def get_repository(self, owner: str, repo: str) -> Dict[str, Any]:
        response = await self._request(method="GET", path=f"/repos/{owner}/{repo}")
        return response.json()

    async def list_repository_collection(
        self,
        owner: str,
        repo: str,
        collection: str,
        args: Optional[Mapping[str, Any]] = None,
    ) -> Page:
        """Fetch one page of a repository collection by name.

        Args:
            owner: Repository owner.
            repo: Repository name.
            collection: One of REPOSITORY_COLLECTIONS.
            args: Caller-facing arguments.

        Raises:
            KeyError: If the collection name is unknown.
            GitHubAPIError: If the request fails.
        """
        path = REPOSITORY_COLLECTIONS[collection].format(owner=owner, repo=repo)
        return await self.get_page(path, args)

    async def list_issues(
        self,
        owner: str,
        repo: str,
        args: Optional[Mapping[str, Any]] = None,
    ) -> Page:
        return await self.list_repository_collection(owner, repo, "issues", args)

    async def get_issue(
        self,
        owner: str,
        repo: str,
        issue_number: int,
    ) -> Dict[str, Any]:
        """Get issue details.

        Raises:
            GitHubAPIError: If the request fails.
        """
        path = f"/repos/{owner}/{repo}/issues/{issue_number}"
        response = await self._request(method="GET", path=path)
        return response.json()

    async def list_issue_comments(
        self,
        owner: str,
        repo: str,
        issue_number: int,
        args: Optional[Mapping[str, Any]] = None,
    ) -> Page:
        path = f"/repos/{owner}/{repo}/issues/{issue_number}/comments"
        return await self.get_page(path, args)

    async def list_pull_requests(
        self,
        owner: str,
        repo: str,
        args: Optional[Mapping[str, Any]] = None,
    ) -> Page:
        return await self.list_repository_collection(owner, repo, "pulls", args)

    async def list_commits(
        self,
        owner: str,
        repo: str,
        args: Optional[Mapping[str, Any]] = None,
    ) -> Page:
        return await self.list_repository_collection(owner, repo, "commits", args)

    async def list_releases(
        self,
        owner: str,
        repo: str,
        args: Optional[Mapping[str, Any]] = None,
    ) -> Page:
        return await self.list_repository_collection(owner, repo, "releases", args)

    async def list_branches(
        self,
        owner: str,
        repo: str,
        args: Optional[Mapping[str, Any]] = None,
    ) -> Page:
        return await self.list_repository_collection(owner, repo, "branches", args)

    async def search(
        self,
        kind: str,
        args: Mapping[str, Any],
    ) -> Page:
        """Fetch one page of search results.

        Args:
            kind: One of SEARCH_COLLECTIONS (repositories, issues, commits).
            args: Search arguments; ``q`` is required.

        Raises:
            KeyError: If the search kind is unknown.
            ValueError: If ``q`` is missing.
        """
        if not args.get("q"):
            raise ValueError("search requires a 'q' argument")
        return await self.get_page(SEARCH_COLLECTIONS[kind], args)

    async def search_repositories(self, args: Mapping[str, Any]) -> Page:
        return await self.search("repositories", args)

    async def search_issues(self, args: Mapping[str, Any]) -> Page:
        return await self.search("issues", args)

    async def search_commits(self, args: Mapping[str, Any]) -> Page:
        return await self.search("commits", args)

    async def get_repo_events(
        self,
        owner: str,
        repo: str,
    ) -> Tuple[List[Dict[str, Any]], Optional[int]]:
        """Read the first page of a repository's public event feed.

        Returns:
            Tuple of (events newest first, X-Poll-Interval seconds or None).
        """
        response = await self._request(
            method="GET",
            path=f"/repos/{owner}/{repo}/events",
            params={"per_page": 100},
        )
        poll_interval = self._parse_int_header(response.headers, "x-poll-interval")
        return response.json(), poll_interval

    async def health_check(self) -> bool:
        """Check if the GitHub API is accessible with the configured token."""
        if not self.is_configured:
            return False
        try:
            response = await self.client.get("/user")
            return response.status_code == 200
        except Exception as e:
            logger.warning(
                "GitHub API health check failed",
                extra={"error": str(e)},
            )
            return False
