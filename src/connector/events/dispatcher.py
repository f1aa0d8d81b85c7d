"""In-process event dispatcher.

The dispatcher keeps the registry of active subscriptions and their
listeners, and delivers every classified RepositoryEvent to the listeners
whose subscription matches it:

    dispatcher.subscribe(Subscription(kind=EventKind.ISSUE_CLOSED, repository=key, resource_id=42), on_closed)
    await dispatcher.emit(event)   # on_closed(event) if event is issue #42 closing

A subscription may be registered without a listener; its events then only
reach the configured EventEmitter sink. Listener failures are isolated: one
failing listener never prevents delivery to the others.

The registry also answers which GitHub webhook events are still needed for
a repository (has_remote_interest), so a remote event is only released when
no remaining subscription on that repository maps to it.
"""

import logging
from typing import Awaitable, Callable, Dict, List, Optional

from src.connector.events.emitter import EventEmitter, NullEventEmitter
from src.connector.events.models import RepositoryEvent, Subscription
from src.connector.subscriptions.models import RepositoryKey


logger = logging.getLogger(__name__)

Listener = Callable[[RepositoryEvent], Awaitable[None]]


class EventDispatcher:
    """Registry of subscriptions and fan-out of repository events.

    Attributes:
        emitter: Sink every emitted event is written to.
    """

    def __init__(
        self,
        emitter: Optional[EventEmitter] = None,
        metrics: Optional[object] = None,
    ):
        """Initialize the dispatcher.

        Args:
            emitter: Event sink. Defaults to NullEventEmitter.
            metrics: Optional ConnectorMetrics for the active subscription gauge.
        """
        self.emitter = emitter or NullEventEmitter()
        self._metrics = metrics
        # Each registration adds one entry; None marks a sink-only registration
        self._registry: Dict[Subscription, List[Optional[Listener]]] = {}

    def subscribe(
        self,
        subscription: Subscription,
        listener: Optional[Listener] = None,
    ) -> bool:
        """Register a listener for a subscription.

        Returns:
            True if this is the first registration of the subscription.
        """
        entries = self._registry.setdefault(subscription, [])
        first = not entries
        entries.append(listener)

        if first and self._metrics is not None:
            self._metrics.update_active_subscriptions(subscription.kind.value, 1)

        logger.debug(
            "Subscription registered",
            extra={
                "event_kind": subscription.kind.value,
                "repository": subscription.repository.full_name,
                "resource_id": subscription.resource_id,
                "registrations": len(entries),
            },
        )
        return first

    def unsubscribe(
        self,
        subscription: Subscription,
        listener: Optional[Listener] = None,
    ) -> bool:
        """Remove one registration of a subscription.

        Args:
            subscription: The subscription to remove.
            listener: The listener it was registered with (None for a
                sink-only registration).

        Returns:
            True if a registration was removed, False if none matched.
        """
        entries = self._registry.get(subscription)
        if not entries or listener not in entries:
            return False

        entries.remove(listener)
        if not entries:
            del self._registry[subscription]
            if self._metrics is not None:
                self._metrics.update_active_subscriptions(subscription.kind.value, -1)

        logger.debug(
            "Subscription removed",
            extra={
                "event_kind": subscription.kind.value,
                "repository": subscription.repository.full_name,
                "resource_id": subscription.resource_id,
                "registrations": len(entries),
            },
        )
        return True

    def is_subscribed(self, subscription: Subscription) -> bool:
        return subscription in self._registry

    def subscriptions(
        self,
        repository: Optional[RepositoryKey] = None,
    ) -> List[Subscription]:
        """List active subscriptions, optionally for one repository."""
        return [
            subscription
            for subscription in self._registry
            if repository is None or subscription.repository == repository
        ]

    def has_remote_interest(self, repository: RepositoryKey, remote_event: str) -> bool:
        """Check whether any subscription on ``repository`` needs ``remote_event``."""
        return any(
            subscription.remote_event == remote_event
            for subscription in self.subscriptions(repository)
        )

    def remote_events(self, repository: RepositoryKey) -> List[str]:
        """Sorted webhook event names needed by the repository's subscriptions."""
        return sorted({
            subscription.remote_event
            for subscription in self.subscriptions(repository)
        })

    async def emit(self, event: RepositoryEvent) -> int:
        """Deliver an event to matching listeners and the sink.

        Args:
            event: The classified event.

        Returns:
            Number of listeners the event was delivered to successfully.
        """
        listeners: List[Listener] = []
        for subscription, entries in list(self._registry.items()):
            if subscription.matches(event):
                listeners.extend(entry for entry in entries if entry is not None)

        delivered = 0
        for listener in listeners:
            try:
                await listener(event)
                delivered += 1
            except Exception as e:
                logger.error(
                    "Event listener failed: %s",
                    str(e),
                    extra={**event.to_log_dict(), "error": str(e)},
                )

        await self.emitter.emit(event)

        logger.debug(
            "Event dispatched",
            extra={**event.to_log_dict(), "listeners": delivered},
        )
        return delivered

    async def close(self) -> None:
        self._registry.clear()
        await self.emitter.close()
