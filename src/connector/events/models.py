"""Event models for repository change notifications.

This module defines:
- EventKind: the change events a caller can subscribe to
- Subscription: what a caller subscribed to (kind + repository, optionally
  narrowed to one issue or pull request)
- RepositoryEvent: a classified change ready for dispatch

Several kinds share one GitHub webhook event (issueOpened and issueClosed
both arrive as "issues" deliveries), so EventKind.remote_event names the
webhook event a subscription needs.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from src.connector.subscriptions.models import RepositoryKey


class EventKind(str, Enum):
    """Repository change events available for subscription.

    Attributes:
        ISSUE_OPENED: An issue was opened.
        ISSUE_CLOSED: An issue was closed.
        PULL_REQUEST_OPENED: A pull request was opened.
        PULL_REQUEST_CLOSED: A pull request was closed (merged or not).
        PUSH: Commits were pushed to a branch or tag.
        RELEASE_PUBLISHED: A release was published.
        COMMENT_CREATED: A comment was added to an issue or pull request.
    """

    ISSUE_OPENED = "issueOpened"
    ISSUE_CLOSED = "issueClosed"
    PULL_REQUEST_OPENED = "pullRequestOpened"
    PULL_REQUEST_CLOSED = "pullRequestClosed"
    PUSH = "push"
    RELEASE_PUBLISHED = "releasePublished"
    COMMENT_CREATED = "commentCreated"

    @property
    def remote_event(self) -> str:
        """GitHub webhook event name that carries this kind."""
        return _REMOTE_EVENTS[self]

    @property
    def accepts_resource_scope(self) -> bool:
        """Whether a subscription may narrow this kind to one issue/PR."""
        return self in _RESOURCE_SCOPED


_REMOTE_EVENTS = {
    EventKind.ISSUE_OPENED: "issues",
    EventKind.ISSUE_CLOSED: "issues",
    EventKind.PULL_REQUEST_OPENED: "pull_request",
    EventKind.PULL_REQUEST_CLOSED: "pull_request",
    EventKind.PUSH: "push",
    EventKind.RELEASE_PUBLISHED: "release",
    EventKind.COMMENT_CREATED: "issue_comment",
}

_RESOURCE_SCOPED = frozenset({
    EventKind.ISSUE_CLOSED,
    EventKind.PULL_REQUEST_CLOSED,
    EventKind.COMMENT_CREATED,
})


class Subscription(BaseModel):
    """A caller's interest in one kind of change.

    Attributes:
        kind: The event kind.
        repository: The repository the events come from.
        resource_id: Optional issue or pull request number. When set, only
            events about that issue or pull request match.
    """

    model_config = ConfigDict(frozen=True)

    kind: EventKind
    repository: RepositoryKey
    resource_id: Optional[int] = Field(default=None, gt=0)

    @model_validator(mode="after")
    def validate_scope(self) -> "Subscription":
        if self.resource_id is not None and not self.kind.accepts_resource_scope:
            raise ValueError(
                f"{self.kind.value} subscriptions cannot be scoped to a resource"
            )
        return self

    @property
    def remote_event(self) -> str:
        return self.kind.remote_event

    def matches(self, event: "RepositoryEvent") -> bool:
        """Check whether ``event`` should be delivered to this subscription."""
        if event.kind != self.kind or event.repository != self.repository:
            return False
        return self.resource_id is None or event.resource_id == self.resource_id


class RepositoryEvent(BaseModel):
    """A classified repository change.

    Attributes:
        kind: The event kind.
        repository: Repository the change happened in.
        resource_id: Issue or pull request number the change is about, if
            any.
        payload: The raw delivery payload.
        delivery_id: GitHub delivery id (X-GitHub-Delivery), if known.
        received_at: When the change was received (UTC).
    """

    kind: EventKind
    repository: RepositoryKey
    resource_id: Optional[int] = None
    payload: Dict[str, Any] = Field(default_factory=dict)
    delivery_id: Optional[str] = None
    received_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
    )

    def to_log_dict(self) -> Dict[str, Any]:
        """Flat dictionary for structured logging (payload omitted)."""
        return {
            "event_kind": self.kind.value,
            "repository": self.repository.full_name,
            "resource_id": self.resource_id,
            "delivery_id": self.delivery_id,
            "received_at": self.received_at.isoformat(),
        }
