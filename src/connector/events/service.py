"""Subscription service: the caller-facing subscribe/unsubscribe API.

Ties the dispatcher's subscription registry to the active EventSource.
Several event kinds share one GitHub webhook event (issueOpened and
issueClosed both need "issues"), so a remote event is activated on every
subscribe and deactivated only when no remaining subscription on the
repository needs it:

    subscribe(issueOpened on o/r)      -> activate(o/r, "issues")
    subscribe(issueClosed #7 on o/r)   -> activate(o/r, "issues")   (no-op remotely)
    unsubscribe(issueOpened on o/r)    -> "issues" still needed, nothing remote
    unsubscribe(issueClosed #7 on o/r) -> deactivate(o/r, "issues")
"""

import logging
from typing import Optional

from src.connector.events.dispatcher import EventDispatcher, Listener
from src.connector.events.models import Subscription
from src.connector.events.sources import EventSource
from src.connector.subscriptions.locks import KeyedLock


logger = logging.getLogger(__name__)


class SubscriptionService:
    """Subscribe and unsubscribe callers to repository events.

    Operations on the same repository are serialized so the remote
    interest check and the source call happen as one step.
    """

    def __init__(self, dispatcher: EventDispatcher, source: EventSource):
        self.dispatcher = dispatcher
        self.source = source
        self._locks = KeyedLock()

    async def subscribe(
        self,
        subscription: Subscription,
        listener: Optional[Listener] = None,
    ) -> None:
        """Subscribe to an event kind on a repository.

        The remote event is activated before the subscription is recorded;
        if activation fails nothing is recorded.

        Raises:
            TransportError: If the webhook could not be registered.
            NotConfiguredError: If the GitHub client has no token.
        """
        repository = subscription.repository
        async with self._locks.hold(repository):
            await self.source.activate(repository, subscription.remote_event)
            self.dispatcher.subscribe(subscription, listener)

        logger.info(
            "Subscribed to %s on %s",
            subscription.kind.value,
            repository.full_name,
            extra={
                "event_kind": subscription.kind.value,
                "repository": repository.full_name,
                "resource_id": subscription.resource_id,
            },
        )

    async def unsubscribe(
        self,
        subscription: Subscription,
        listener: Optional[Listener] = None,
    ) -> bool:
        """Remove a subscription.

        Returns:
            True if the subscription was registered, False otherwise.

        Raises:
            TransportError: If the webhook could not be updated. The
                subscription stays registered.
        """
        repository = subscription.repository
        remote_event = subscription.remote_event

        async with self._locks.hold(repository):
            if not self.dispatcher.unsubscribe(subscription, listener):
                return False

            if not self.dispatcher.has_remote_interest(repository, remote_event):
                try:
                    await self.source.deactivate(repository, remote_event)
                except Exception:
                    self.dispatcher.subscribe(subscription, listener)
                    raise

        logger.info(
            "Unsubscribed from %s on %s",
            subscription.kind.value,
            repository.full_name,
            extra={
                "event_kind": subscription.kind.value,
                "repository": repository.full_name,
                "resource_id": subscription.resource_id,
            },
        )
        return True

    async def close(self) -> None:
        await self.source.close()
        await self.dispatcher.close()
