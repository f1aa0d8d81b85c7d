"""Repository events: models, dispatch and observability sinks.

This module provides:
- EventKind, Subscription and RepositoryEvent models
- EventDispatcher, which matches events against subscriptions
- EventEmitter sinks (logging, metrics)
- Prometheus metrics for the connector

Event sources and the SubscriptionService live in
src.connector.events.sources and src.connector.events.service.
"""

from src.connector.events.dispatcher import EventDispatcher, Listener
from src.connector.events.emitter import (
    CompositeEventEmitter,
    EventEmitter,
    EventSinkType,
    LoggingEventEmitter,
    NullEventEmitter,
    create_event_emitter,
)
from src.connector.events.metrics import (
    ConnectorMetrics,
    MetricsEventEmitter,
    generate_metrics_output,
    get_metrics,
)
from src.connector.events.models import EventKind, RepositoryEvent, Subscription

__all__ = [
    # Models
    "EventKind",
    "RepositoryEvent",
    "Subscription",
    # Dispatch
    "EventDispatcher",
    "Listener",
    # Emitters
    "CompositeEventEmitter",
    "EventEmitter",
    "EventSinkType",
    "LoggingEventEmitter",
    "NullEventEmitter",
    "create_event_emitter",
    # Metrics
    "ConnectorMetrics",
    "MetricsEventEmitter",
    "generate_metrics_output",
    "get_metrics",
]
