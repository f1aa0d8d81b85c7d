"""GitHub webhook handler for inbound deliveries.

This module provides the WebhookHandler class, which verifies delivery
signatures and classifies GitHub webhook payloads into RepositoryEvents:

    issues          opened  -> issueOpened
    issues          closed  -> issueClosed        (resource_id = issue number)
    pull_request    opened  -> pullRequestOpened
    pull_request    closed  -> pullRequestClosed  (resource_id = PR number)
    push                    -> push
    release         published -> releasePublished
    issue_comment   created -> commentCreated     (resource_id = issue number)

When the X-GitHub-Event header is absent, the event name is inferred from
the payload shape. Every delivery names its repository:

{
  "action": "opened",
  "issue": {"number": 123, ...},
  "repository": {
    "name": "repo-name",
    "owner": {"login": "owner-name"}
  }
}

Payloads that do not map to an event kind (ping, other actions, other
events) are acknowledged and ignored.
"""

import hashlib
import hmac
import logging
from typing import Any, Dict, Optional

from pydantic import ValidationError

from src.connector.events.models import EventKind, RepositoryEvent
from src.connector.subscriptions.models import RepositoryKey

from .models import DeliveryAction, DeliveryHeaders

logger = logging.getLogger(__name__)

SIGNATURE_PREFIX = "sha256="

# (webhook event name, action) -> event kind
_CLASSIFICATION = {
    ("issues", DeliveryAction.OPENED): EventKind.ISSUE_OPENED,
    ("issues", DeliveryAction.CLOSED): EventKind.ISSUE_CLOSED,
    ("pull_request", DeliveryAction.OPENED): EventKind.PULL_REQUEST_OPENED,
    ("pull_request", DeliveryAction.CLOSED): EventKind.PULL_REQUEST_CLOSED,
    ("release", DeliveryAction.PUBLISHED): EventKind.RELEASE_PUBLISHED,
    ("issue_comment", DeliveryAction.CREATED): EventKind.COMMENT_CREATED,
}


class WebhookHandler:
    """Verifies and classifies GitHub webhook deliveries.

    Attributes:
        secret: The webhook secret deliveries are signed with, or None to
                accept unsigned deliveries.
    """

    def __init__(self, secret: Optional[str] = None) -> None:
        self.secret = secret

    def verify_signature(self, body: bytes, signature: Optional[str]) -> bool:
        """Check the X-Hub-Signature-256 header against the raw body.

        Args:
            body: The raw request body.
            signature: Header value in the form "sha256=<hex digest>".

        Returns:
            True if no secret is configured or the signature matches.
        """
        if not self.secret:
            return True

        if not signature or not signature.startswith(SIGNATURE_PREFIX):
            logger.warning("Missing or malformed webhook signature header")
            return False

        expected = hmac.new(
            self.secret.encode("utf-8"),
            body,
            hashlib.sha256,
        ).hexdigest()
        return hmac.compare_digest(expected, signature[len(SIGNATURE_PREFIX):])

    def classify(
        self,
        payload: Dict[str, Any],
        headers: Optional[DeliveryHeaders] = None,
    ) -> Optional[RepositoryEvent]:
        """Classify a webhook payload into a RepositoryEvent.

        Args:
            payload: The parsed JSON body.
            headers: Delivery headers; the event name is inferred from the
                     payload when absent.

        Returns:
            The classified event, or None if the delivery is not one of the
            subscribable event kinds or is malformed.
        """
        headers = headers or DeliveryHeaders()

        if not isinstance(payload, dict):
            logger.warning("Invalid payload: expected dict, got %s", type(payload))
            return None

        if headers.is_ping:
            logger.info(
                "Received ping delivery",
                extra={"hook_id": payload.get("hook_id"), "delivery_id": headers.delivery_id},
            )
            return None

        repository = self._extract_repository(payload.get("repository"))
        if repository is None:
            return None

        event_name = headers.event_name or self._infer_event_name(payload)
        if event_name is None:
            logger.debug("Could not infer webhook event from payload")
            return None

        kind = self._classify_kind(event_name, payload.get("action"))
        if kind is None:
            logger.debug(
                "Ignoring webhook delivery: event=%s action=%s",
                event_name,
                payload.get("action"),
            )
            return None

        resource_id = self._extract_resource_id(kind, payload)
        if kind.accepts_resource_scope and resource_id is None:
            logger.warning(
                "Missing resource number for %s delivery",
                kind.value,
                extra={"repository": repository.full_name},
            )
            return None

        event = RepositoryEvent(
            kind=kind,
            repository=repository,
            resource_id=resource_id,
            payload=payload,
            delivery_id=headers.delivery_id,
        )

        logger.info(
            "Classified webhook delivery: kind=%s, repository=%s",
            kind.value,
            repository.full_name,
        )
        return event

    @staticmethod
    def _infer_event_name(payload: Dict[str, Any]) -> Optional[str]:
        """Infer the webhook event name from the payload shape.

        Comment payloads also carry the issue, so comment is checked first.
        """
        if isinstance(payload.get("comment"), dict) and isinstance(payload.get("issue"), dict):
            return "issue_comment"
        if isinstance(payload.get("pull_request"), dict):
            return "pull_request"
        if isinstance(payload.get("issue"), dict):
            return "issues"
        if isinstance(payload.get("release"), dict):
            return "release"
        if "action" not in payload and ("pusher" in payload or "commits" in payload):
            return "push"
        return None

    @staticmethod
    def _classify_kind(event_name: str, action: Any) -> Optional[EventKind]:
        if event_name == "push":
            return EventKind.PUSH

        if not isinstance(action, str):
            return None

        try:
            parsed_action = DeliveryAction(action)
        except ValueError:
            return None

        return _CLASSIFICATION.get((event_name, parsed_action))

    @staticmethod
    def _extract_resource_id(kind: EventKind, payload: Dict[str, Any]) -> Optional[int]:
        """Issue or pull request number the event is about, if any."""
        if kind in (EventKind.PULL_REQUEST_OPENED, EventKind.PULL_REQUEST_CLOSED):
            resource = payload.get("pull_request")
        elif kind in (
            EventKind.ISSUE_OPENED,
            EventKind.ISSUE_CLOSED,
            EventKind.COMMENT_CREATED,
        ):
            resource = payload.get("issue")
        else:
            return None

        if not isinstance(resource, dict):
            return None

        number = resource.get("number")
        if not isinstance(number, int) or isinstance(number, bool) or number <= 0:
            return None
        return number

    @staticmethod
    def _extract_repository(repo_data: Any) -> Optional[RepositoryKey]:
        """Build the RepositoryKey from repository.owner.login and repository.name."""
        if not isinstance(repo_data, dict):
            logger.warning(
                "Missing or invalid 'repository' field in payload: %s",
                type(repo_data),
            )
            return None

        owner_data = repo_data.get("owner")
        owner = owner_data.get("login") if isinstance(owner_data, dict) else None
        name = repo_data.get("name")

        if not isinstance(owner, str) or not isinstance(name, str):
            logger.warning(
                "Invalid repository owner or name: owner=%s name=%s",
                owner,
                name,
            )
            return None

        try:
            return RepositoryKey(owner=owner, name=name)
        except ValidationError as e:
            logger.warning("Invalid repository in payload: %s", e)
            return None


def create_webhook_handler(secret: Optional[str] = None) -> WebhookHandler:
    """Factory function to create a WebhookHandler instance."""
    return WebhookHandler(secret=secret)
