"""Webhook subscription lifecycle manager.

All event subscriptions of a repository are multiplexed onto a single
GitHub webhook that delivers to this service's callback URL. The manager
adds and removes webhook event names on that hook:

    register(repo, "issues")        -> create hook {issues}
    register(repo, "pull_request")  -> update hook {issues, pull_request}
    unregister(repo, "issues")      -> update hook {pull_request}
    unregister(repo, "pull_request")-> delete hook

Every operation follows the same protocol: list the repository's hooks
remotely (remote truth, never the local cache), pick the hook whose URL is
our callback URL, apply one remote mutation, then mirror the result into
the SubscriptionStore. A failed remote call leaves the store untouched.

Operations on the same repository are serialized by a per-repository
asyncio.Lock; different repositories never wait on each other.

Hooks whose URL is not the callback URL are foreign: they are never
created, changed or deleted here. If several hooks carry the callback URL
(left behind by an earlier duplicate registration) the one with the lowest
id is managed and the rest are left alone.
"""

import logging
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

from src.connector.github.client import GitHubAPIError
from src.connector.subscriptions.locks import KeyedLock
from src.connector.subscriptions.models import (
    RemoteHook,
    RepositoryKey,
    WebhookRecord,
)
from src.connector.subscriptions.store import SubscriptionStore


logger = logging.getLogger(__name__)


class TransportError(Exception):
    """Raised when a remote webhook call fails during (un)registration.

    The manager never retries; the caller decides on retry and backoff.

    Attributes:
        repository: The repository being reconciled.
        event: The webhook event name being (un)registered, if any.
        operation: The remote operation that failed (list, create, update,
            delete).
        status_code: HTTP status code, if the server answered.
        response_body: Response body, if the server answered.
    """

    def __init__(
        self,
        repository: RepositoryKey,
        event: Optional[str],
        operation: str,
        original_error: GitHubAPIError,
    ):
        self.repository = repository
        self.event = event
        self.operation = operation
        self.status_code = original_error.status_code
        self.response_body = original_error.response_body
        self.original_error = original_error
        message = (
            f"Failed to {operation} webhook for {repository.full_name}"
            f" (event={event}): {original_error.message}"
        )
        super().__init__(message)


@runtime_checkable
class HookGateway(Protocol):
    """Remote repository webhook API, implemented by GitHubClient."""

    async def list_hooks(self, owner: str, repo: str) -> List[Dict[str, Any]]:
        ...

    async def create_hook(
        self,
        owner: str,
        repo: str,
        events: List[str],
        url: str,
        secret: Optional[str] = None,
    ) -> int:
        ...

    async def update_hook(
        self,
        owner: str,
        repo: str,
        hook_id: int,
        events: List[str],
        url: str,
        secret: Optional[str] = None,
    ) -> None:
        ...

    async def delete_hook(self, owner: str, repo: str, hook_id: int) -> None:
        ...


class SubscriptionManager:
    """Reconciles desired webhook events with the remote hook configuration.

    Attributes:
        callback_url: URL every managed webhook delivers to.
        webhook_secret: Secret set on created and updated hooks, if any.
    """

    def __init__(
        self,
        gateway: HookGateway,
        store: SubscriptionStore,
        callback_url: str,
        webhook_secret: Optional[str] = None,
        metrics: Optional[Any] = None,
    ):
        """Initialize the manager.

        Args:
            gateway: Remote webhook API.
            store: Cache of managed webhook records.
            callback_url: This service's webhook delivery URL.
            webhook_secret: Optional secret GitHub signs deliveries with.
            metrics: Optional ConnectorMetrics for operation counters.
        """
        if not callback_url:
            raise ValueError("callback_url cannot be empty")
        self.gateway = gateway
        self.store = store
        self.callback_url = callback_url
        self.webhook_secret = webhook_secret
        self._metrics = metrics
        self._locks = KeyedLock()

    def _record_operation(self, operation: str, outcome: str) -> None:
        if self._metrics is not None:
            self._metrics.record_subscription_operation(operation, outcome)

    async def _discover(
        self,
        key: RepositoryKey,
        event: Optional[str],
    ) -> Optional[RemoteHook]:
        """List the repository's hooks and return the one we manage."""
        try:
            raw_hooks = await self.gateway.list_hooks(key.owner, key.name)
        except GitHubAPIError as e:
            raise TransportError(key, event, "list", e) from e

        hooks = [RemoteHook.from_github_response(raw) for raw in raw_hooks]

        matching = sorted(
            (hook for hook in hooks if hook.url == self.callback_url),
            key=lambda hook: hook.id,
        )
        if not matching:
            return None

        if len(matching) > 1:
            logger.warning(
                "Multiple webhooks target the callback URL, managing lowest id",
                extra={
                    "repository": key.full_name,
                    "managed_hook_id": matching[0].id,
                    "ignored_hook_ids": [hook.id for hook in matching[1:]],
                },
            )
        return matching[0]

    async def _sync_cache(
        self,
        key: RepositoryKey,
        hook: RemoteHook,
    ) -> Optional[WebhookRecord]:
        """Rewrite the cached record if it disagrees with the remote hook.

        A hook without events has no record.
        """
        if not hook.events:
            await self.store.delete(key)
            return None

        cached = await self.store.get(key)
        if cached is not None and cached.id == hook.id and cached.events == hook.events:
            return cached

        if cached is not None:
            logger.warning(
                "Cached webhook record was stale, refreshing from remote",
                extra={
                    "repository": key.full_name,
                    "cached_hook_id": cached.id,
                    "remote_hook_id": hook.id,
                },
            )
        record = WebhookRecord.from_events(hook.id, self.callback_url, hook.events)
        await self.store.set(key, record)
        return record

    async def register(self, key: RepositoryKey, event: str) -> WebhookRecord:
        """Make sure the repository's webhook delivers ``event``.

        Idempotent: if the managed hook already has the event, no remote
        mutation is made.

        Args:
            key: Repository to subscribe.
            event: GitHub webhook event name (e.g. "issues").

        Returns:
            The webhook record after registration.

        Raises:
            TransportError: If a remote call fails. The store is unchanged.
            NotConfiguredError: If the GitHub client has no token.
        """
        async with self._locks.hold(key):
            hook = await self._discover(key, event)

            if hook is not None and event in hook.events:
                logger.info(
                    "Webhook already delivers event",
                    extra={
                        "repository": key.full_name,
                        "hook_id": hook.id,
                        "event": event,
                    },
                )
                self._record_operation("register", "noop")
                return await self._sync_cache(key, hook)

            if hook is not None:
                events = sorted(hook.events | {event})
                try:
                    await self.gateway.update_hook(
                        key.owner,
                        key.name,
                        hook.id,
                        events=events,
                        url=self.callback_url,
                        secret=self.webhook_secret,
                    )
                except GitHubAPIError as e:
                    self._record_operation("register", "error")
                    raise TransportError(key, event, "update", e) from e

                record = WebhookRecord.from_events(hook.id, self.callback_url, events)
                await self.store.set(key, record)
                logger.info(
                    "Webhook updated with new event",
                    extra={
                        "repository": key.full_name,
                        "hook_id": hook.id,
                        "event": event,
                        "events": events,
                    },
                )
                self._record_operation("register", "updated")
                return record

            try:
                hook_id = await self.gateway.create_hook(
                    key.owner,
                    key.name,
                    events=[event],
                    url=self.callback_url,
                    secret=self.webhook_secret,
                )
            except GitHubAPIError as e:
                self._record_operation("register", "error")
                raise TransportError(key, event, "create", e) from e

            record = WebhookRecord.from_events(hook_id, self.callback_url, [event])
            await self.store.set(key, record)
            logger.info(
                "New webhook created",
                extra={
                    "repository": key.full_name,
                    "hook_id": hook_id,
                    "event": event,
                },
            )
            self._record_operation("register", "created")
            return record

    async def unregister(self, key: RepositoryKey, event: str) -> Optional[WebhookRecord]:
        """Stop the repository's webhook from delivering ``event``.

        Idempotent: unregistering an event that is not delivered, or from a
        repository without a managed webhook, is not an error. When the last
        event is removed the webhook is deleted remotely and locally.

        Args:
            key: Repository to unsubscribe.
            event: GitHub webhook event name.

        Returns:
            The remaining webhook record, or None if no webhook remains.

        Raises:
            TransportError: If a remote call fails. The store is unchanged.
            NotConfiguredError: If the GitHub client has no token.
        """
        async with self._locks.hold(key):
            hook = await self._discover(key, event)

            if hook is None:
                if await self.store.delete(key):
                    logger.warning(
                        "Dropped cached webhook record with no remote webhook",
                        extra={"repository": key.full_name},
                    )
                logger.info(
                    "Webhook does not exist for repository",
                    extra={"repository": key.full_name, "event": event},
                )
                self._record_operation("unregister", "noop")
                return None

            if event not in hook.events:
                logger.info(
                    "Webhook does not deliver event",
                    extra={
                        "repository": key.full_name,
                        "hook_id": hook.id,
                        "event": event,
                    },
                )
                self._record_operation("unregister", "noop")
                return await self._sync_cache(key, hook)

            remaining = sorted(hook.events - {event})

            if not remaining:
                try:
                    await self.gateway.delete_hook(key.owner, key.name, hook.id)
                except GitHubAPIError as e:
                    self._record_operation("unregister", "error")
                    raise TransportError(key, event, "delete", e) from e

                await self.store.delete(key)
                logger.info(
                    "Webhook deleted",
                    extra={
                        "repository": key.full_name,
                        "hook_id": hook.id,
                        "event": event,
                    },
                )
                self._record_operation("unregister", "deleted")
                return None

            try:
                await self.gateway.update_hook(
                    key.owner,
                    key.name,
                    hook.id,
                    events=remaining,
                    url=self.callback_url,
                    secret=self.webhook_secret,
                )
            except GitHubAPIError as e:
                self._record_operation("unregister", "error")
                raise TransportError(key, event, "update", e) from e

            record = WebhookRecord.from_events(hook.id, self.callback_url, remaining)
            await self.store.set(key, record)
            logger.info(
                "Event removed from webhook",
                extra={
                    "repository": key.full_name,
                    "hook_id": hook.id,
                    "event": event,
                    "events": remaining,
                },
            )
            self._record_operation("unregister", "updated")
            return record

    async def reconcile(self, key: RepositoryKey) -> Optional[WebhookRecord]:
        """Rewrite the cached record from the remote hook listing.

        Returns:
            The refreshed record, or None if no managed webhook exists.
        """
        async with self._locks.hold(key):
            hook = await self._discover(key, None)
            if hook is None:
                await self.store.delete(key)
                return None
            return await self._sync_cache(key, hook)

    async def get_record(self, key: RepositoryKey) -> Optional[WebhookRecord]:
        """Return the cached record without contacting GitHub."""
        return await self.store.get(key)
