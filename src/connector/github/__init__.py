"""GitHub API client for webhook management and collection traversal.

This module provides a wrapper around the GitHub REST API for:
- Listing, creating, updating and deleting repository webhooks
- Fetching paginated collections with next page arguments
- Reading repository event feeds for polling

Includes retry logic and rate limit detection for API resilience.
"""

from src.connector.github.client import (
    REPOSITORY_COLLECTIONS,
    SEARCH_COLLECTIONS,
    GitHubAPIError,
    GitHubClient,
    NotConfiguredError,
    RateLimitError,
    parse_repository_url,
    to_api_args,
)
from src.connector.github.models import Page

__all__ = [
    "GitHubAPIError",
    "GitHubClient",
    "NotConfiguredError",
    "Page",
    "REPOSITORY_COLLECTIONS",
    "RateLimitError",
    "SEARCH_COLLECTIONS",
    "parse_repository_url",
    "to_api_args",
]
