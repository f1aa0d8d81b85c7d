"""Event sources: how repository changes reach the connector.

Two interchangeable strategies are provided; exactly one is active per
process, selected by CONNECTOR_EVENT_SOURCE:

- WebhookEventSource: registers GitHub webhook events on the repository's
  managed webhook. Deliveries arrive at POST /webhooks.
- PollingEventSource: reads the repository's public event feed
  (GET /repos/{owner}/{repo}/events) on a timer and turns new feed entries
  into the same RepositoryEvents a webhook delivery would produce.

The first poll of a repository only records where the feed currently ends;
changes from before the subscription are not replayed.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, FrozenSet, List, Optional, Set, Tuple

from pydantic import BaseModel, ConfigDict

from src.connector.events.dispatcher import EventDispatcher
from src.connector.github.client import GitHubAPIError, GitHubClient, NotConfiguredError
from src.connector.subscriptions.manager import SubscriptionManager
from src.connector.subscriptions.models import RepositoryKey
from src.connector.webhook.handler import WebhookHandler
from src.connector.webhook.models import DeliveryHeaders


logger = logging.getLogger(__name__)


# Event feed entry type -> webhook event name
FEED_EVENT_TYPES = {
    "IssuesEvent": "issues",
    "PullRequestEvent": "pull_request",
    "PushEvent": "push",
    "ReleaseEvent": "release",
    "IssueCommentEvent": "issue_comment",
}


class EventSource(ABC):
    """Abstract base class for event sources.

    activate/deactivate are called with GitHub webhook event names
    (EventKind.remote_event), once per change in remote interest.
    """

    @abstractmethod
    async def activate(self, repository: RepositoryKey, remote_event: str) -> None:
        """Start receiving ``remote_event`` changes for ``repository``."""
        pass

    @abstractmethod
    async def deactivate(self, repository: RepositoryKey, remote_event: str) -> None:
        """Stop receiving ``remote_event`` changes for ``repository``."""
        pass

    async def close(self) -> None:
        """Release resources held by the source."""
        pass


class WebhookEventSource(EventSource):
    """Event source backed by the repository's managed GitHub webhook."""

    def __init__(self, manager: SubscriptionManager):
        self.manager = manager

    async def activate(self, repository: RepositoryKey, remote_event: str) -> None:
        await self.manager.register(repository, remote_event)

    async def deactivate(self, repository: RepositoryKey, remote_event: str) -> None:
        await self.manager.unregister(repository, remote_event)


class PollCursor(BaseModel):
    """Position in a repository event feed.

    Attributes:
        created_at: Timestamp of the newest feed entry seen (ISO 8601, UTC).
        seen_ids: Ids of the entries seen with exactly that timestamp.
    """

    model_config = ConfigDict(frozen=True)

    created_at: str
    seen_ids: FrozenSet[str] = frozenset()


def select_new_events(
    events: List[Dict[str, Any]],
    cursor: Optional[PollCursor],
) -> Tuple[List[Dict[str, Any]], Optional[PollCursor]]:
    """Diff a feed page against the last seen position.

    Args:
        events: Feed entries as returned by GitHub (newest first).
        cursor: Position after the previous poll, or None on the first poll.

    Returns:
        Tuple of (entries newer than the cursor oldest first, new cursor).
        On the first poll no entries are returned; the cursor is set to the
        newest entry.
    """
    dated = [event for event in events if isinstance(event.get("created_at"), str)]
    if not dated:
        return [], cursor

    newest = max(event["created_at"] for event in dated)
    if cursor is not None and newest < cursor.created_at:
        return [], cursor

    newest_ids = frozenset(
        str(event.get("id")) for event in dated if event["created_at"] == newest
    )

    if cursor is None:
        return [], PollCursor(created_at=newest, seen_ids=newest_ids)

    fresh = [
        event
        for event in dated
        if event["created_at"] > cursor.created_at
        or (
            event["created_at"] == cursor.created_at
            and str(event.get("id")) not in cursor.seen_ids
        )
    ]
    fresh.sort(key=lambda event: event["created_at"])

    if newest == cursor.created_at:
        newest_ids = newest_ids | cursor.seen_ids

    return fresh, PollCursor(created_at=newest, seen_ids=newest_ids)


def feed_event_to_delivery(
    repository: RepositoryKey,
    feed_event: Dict[str, Any],
) -> Optional[Tuple[DeliveryHeaders, Dict[str, Any]]]:
    """Reshape an event feed entry as a webhook delivery.

    Returns:
        Tuple of (headers, payload), or None for feed types that have no
        webhook counterpart.
    """
    event_name = FEED_EVENT_TYPES.get(feed_event.get("type", ""))
    if event_name is None:
        return None

    payload = dict(feed_event.get("payload") or {})
    payload["repository"] = {
        "name": repository.name,
        "full_name": repository.full_name,
        "owner": {"login": repository.owner},
    }
    headers = DeliveryHeaders(
        event_name=event_name,
        delivery_id=str(feed_event["id"]) if feed_event.get("id") is not None else None,
    )
    return headers, payload


class PollingEventSource(EventSource):
    """Event source that polls the repository event feed.

    One asyncio.Task runs per repository with at least one active remote
    event; it is cancelled when the last event is deactivated.

    Attributes:
        interval: Minimum seconds between polls. A larger X-Poll-Interval
                  from GitHub takes precedence.
    """

    def __init__(
        self,
        client: GitHubClient,
        handler: WebhookHandler,
        dispatcher: EventDispatcher,
        interval: float = 60.0,
    ):
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.client = client
        self.handler = handler
        self.dispatcher = dispatcher
        self.interval = interval
        self._active: Dict[RepositoryKey, Set[str]] = {}
        self._tasks: Dict[RepositoryKey, asyncio.Task] = {}

    def active_events(self, repository: RepositoryKey) -> FrozenSet[str]:
        return frozenset(self._active.get(repository, ()))

    def is_polling(self, repository: RepositoryKey) -> bool:
        task = self._tasks.get(repository)
        return task is not None and not task.done()

    async def activate(self, repository: RepositoryKey, remote_event: str) -> None:
        self._active.setdefault(repository, set()).add(remote_event)

        if not self.is_polling(repository):
            self._tasks[repository] = asyncio.create_task(
                self._poll_loop(repository),
                name=f"poll:{repository.full_name}",
            )
            logger.info(
                "Started polling repository events",
                extra={"repository": repository.full_name, "interval": self.interval},
            )

    async def deactivate(self, repository: RepositoryKey, remote_event: str) -> None:
        events = self._active.get(repository)
        if events is None:
            return

        events.discard(remote_event)
        if events:
            return

        del self._active[repository]
        await self._cancel(repository)
        logger.info(
            "Stopped polling repository events",
            extra={"repository": repository.full_name},
        )

    async def _cancel(self, repository: RepositoryKey) -> None:
        task = self._tasks.pop(repository, None)
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.error(
                "Polling task for %s had failed: %s",
                repository.full_name,
                str(e),
                extra={"repository": repository.full_name, "error": str(e)},
            )

    async def poll_once(
        self,
        repository: RepositoryKey,
        cursor: Optional[PollCursor],
    ) -> Tuple[Optional[PollCursor], float]:
        """Fetch the feed once and dispatch new changes.

        Returns:
            Tuple of (new cursor, seconds to wait before the next poll).
        """
        feed, poll_interval = await self.client.get_repo_events(
            repository.owner,
            repository.name,
        )
        delay = max(self.interval, poll_interval or 0)

        fresh, cursor = select_new_events(feed, cursor)
        wanted = self.active_events(repository)

        for feed_event in fresh:
            delivery = feed_event_to_delivery(repository, feed_event)
            if delivery is None:
                continue
            headers, payload = delivery
            if headers.event_name not in wanted:
                continue

            event = self.handler.classify(payload, headers)
            if event is not None:
                await self.dispatcher.emit(event)

        logger.debug(
            "Polled repository events",
            extra={
                "repository": repository.full_name,
                "new_events": len(fresh),
                "next_poll_in": delay,
            },
        )
        return cursor, delay

    async def _poll_loop(self, repository: RepositoryKey) -> None:
        cursor: Optional[PollCursor] = None

        while True:
            delay = self.interval
            try:
                cursor, delay = await self.poll_once(repository, cursor)
            except (GitHubAPIError, NotConfiguredError) as e:
                logger.warning(
                    "Failed to poll repository events: %s",
                    str(e),
                    extra={"repository": repository.full_name, "error": str(e)},
                )
            except Exception as e:
                logger.error(
                    "Unexpected error polling repository events: %s",
                    str(e),
                    exc_info=True,
                    extra={"repository": repository.full_name, "error": str(e)},
                )
            await asyncio.sleep(delay)

    async def close(self) -> None:
        for repository in list(self._tasks):
            await self._cancel(repository)
        self._active.clear()


def create_event_source(
    source_type: str,
    manager: SubscriptionManager,
    client: GitHubClient,
    handler: WebhookHandler,
    dispatcher: EventDispatcher,
    poll_interval: float = 60.0,
) -> EventSource:
    """Create the configured event source.

    Args:
        source_type: "webhook" or "polling".

    Raises:
        ValueError: If the source type is unknown.
    """
    if source_type == "webhook":
        return WebhookEventSource(manager)
    if source_type == "polling":
        return PollingEventSource(client, handler, dispatcher, interval=poll_interval)
    raise ValueError(f"Unknown event source: {source_type}")
