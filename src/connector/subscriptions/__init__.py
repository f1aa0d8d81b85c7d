"""Webhook subscription state and lifecycle.

One GitHub webhook per repository carries every event this service is
subscribed to. The SubscriptionManager adds and removes event names on it,
reconciling against the remote hook listing on every call, and mirrors the
result into a SubscriptionStore.
"""

from src.connector.subscriptions.manager import (
    HookGateway,
    SubscriptionManager,
    TransportError,
)
from src.connector.subscriptions.models import (
    RemoteHook,
    RepositoryKey,
    WebhookRecord,
)
from src.connector.subscriptions.store import (
    DatabaseError,
    InMemorySubscriptionStore,
    PostgresSubscriptionStore,
    SubscriptionStore,
)

__all__ = [
    # Models
    "RemoteHook",
    "RepositoryKey",
    "WebhookRecord",
    # Store
    "DatabaseError",
    "InMemorySubscriptionStore",
    "PostgresSubscriptionStore",
    "SubscriptionStore",
    # Manager
    "HookGateway",
    "SubscriptionManager",
    "TransportError",
]
