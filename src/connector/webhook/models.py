"""GitHub webhook delivery models.

Inbound deliveries carry the event name and delivery id in headers and the
change itself in a JSON body:

    X-GitHub-Event: issues
    X-GitHub-Delivery: 72d3162e-cc78-11e3-81ab-4c9367dc0958
    X-Hub-Signature-256: sha256=...

    {"action": "opened", "issue": {...}, "repository": {"name": ..., "owner": {"login": ...}}}
"""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class DeliveryAction(str, Enum):
    """Webhook actions that map to a subscribable event kind.

    Attributes:
        OPENED: An issue or pull request was opened.
        CLOSED: An issue or pull request was closed.
        CREATED: A comment was created.
        PUBLISHED: A release was published.
    """

    OPENED = "opened"
    CLOSED = "closed"
    CREATED = "created"
    PUBLISHED = "published"


class DeliveryHeaders(BaseModel):
    """Delivery metadata GitHub sends as request headers.

    Attributes:
        event_name: Value of X-GitHub-Event (e.g. "issues", "ping").
        delivery_id: Value of X-GitHub-Delivery.
        signature: Value of X-Hub-Signature-256 ("sha256=<hex>").
    """

    event_name: Optional[str] = Field(
        default=None,
        description="GitHub webhook event name from X-GitHub-Event",
    )

    delivery_id: Optional[str] = Field(
        default=None,
        description="Unique delivery GUID from X-GitHub-Delivery",
    )

    signature: Optional[str] = Field(
        default=None,
        description="HMAC-SHA256 body signature from X-Hub-Signature-256",
    )

    @property
    def is_ping(self) -> bool:
        return self.event_name == "ping"
