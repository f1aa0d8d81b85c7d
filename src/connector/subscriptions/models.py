"""Data models for webhook subscription state.

This module defines:
- RepositoryKey: the (owner, name) identity of a repository
- RemoteHook: one webhook as returned by the GitHub hooks listing
- WebhookRecord: the locally cached mirror of the webhook this service manages

The models use Pydantic for validation, consistent with the rest of the
connector (config.py, events/models.py).
"""

from datetime import datetime, timezone
from typing import Any, Dict, FrozenSet, Iterable, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class RepositoryKey(BaseModel):
    """Identity of a GitHub repository.

    Owner and name are kept exactly as given; GitHub resolves them
    case-insensitively but the connector never rewrites them, so the same
    repository must always be addressed with the same spelling.

    Attributes:
        owner: User or organization login.
        name: Repository name without the owner prefix.
    """

    model_config = ConfigDict(frozen=True)

    owner: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)

    @field_validator("owner", "name")
    @classmethod
    def validate_segment(cls, v: str) -> str:
        """Reject blank values and values containing a path separator."""
        if not v.strip():
            raise ValueError("repository owner and name cannot be blank")
        if "/" in v:
            raise ValueError("repository owner and name cannot contain '/'")
        return v

    @classmethod
    def parse(cls, full_name: str) -> "RepositoryKey":
        """Build a key from ``"owner/name"``.

        Raises:
            ValueError: If the value is not exactly two path segments.
        """
        parts = full_name.strip().strip("/").split("/")
        if len(parts) != 2:
            raise ValueError(f"Expected 'owner/name', got {full_name!r}")
        return cls(owner=parts[0], name=parts[1])

    @property
    def full_name(self) -> str:
        """Repository path in format "{owner}/{name}"."""
        return f"{self.owner}/{self.name}"

    def __str__(self) -> str:
        return self.full_name


class RemoteHook(BaseModel):
    """A repository webhook as reported by ``GET /repos/{o}/{r}/hooks``.

    Only the fields the subscription manager reasons about are kept.
    """

    id: int
    url: Optional[str] = None
    events: FrozenSet[str] = Field(default_factory=frozenset)
    active: bool = True

    @classmethod
    def from_github_response(cls, data: Dict[str, Any]) -> "RemoteHook":
        """Build a RemoteHook from a raw hook object.

        GitHub nests the delivery URL under ``config.url``.
        """
        config = data.get("config") or {}
        return cls(
            id=data["id"],
            url=config.get("url"),
            events=frozenset(data.get("events") or []),
            active=data.get("active", True),
        )


class WebhookRecord(BaseModel):
    """Local mirror of the webhook managed for one repository.

    Attributes:
        id: Remote webhook identifier.
        url: Callback URL the webhook delivers to.
        events: GitHub webhook event names the hook is subscribed to.
        updated_at: When the record was last written (UTC).
    """

    id: int
    url: str = Field(..., min_length=1)
    events: FrozenSet[str] = Field(default_factory=frozenset)
    updated_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
    )

    @classmethod
    def from_events(
        cls,
        hook_id: int,
        url: str,
        events: Iterable[str],
    ) -> "WebhookRecord":
        return cls(id=hook_id, url=url, events=frozenset(events))

    def sorted_events(self) -> list[str]:
        """Events in a stable order for API payloads and storage."""
        return sorted(self.events)
