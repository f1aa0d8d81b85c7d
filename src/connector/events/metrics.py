"""Prometheus metrics for connector observability.

Metrics Defined:
- connector_events_dispatched_total: Counter of classified events, by kind
- connector_subscription_operations_total: Counter of register/unregister
  calls, by operation and outcome
- connector_active_subscriptions: Gauge of active subscriptions, by kind

Metrics are exposed at the `/metrics` endpoint in Prometheus format.
"""

import logging
from typing import Dict, Optional

from prometheus_client import (
    REGISTRY,
    CollectorRegistry,
    Counter,
    Gauge,
    generate_latest,
)

from src.connector.events.emitter import EventEmitter
from src.connector.events.models import EventKind, RepositoryEvent


logger = logging.getLogger(__name__)


class ConnectorMetrics:
    """Container for all connector Prometheus metrics.

    Supports custom registries for testing.

    Metrics:
        events_dispatched_total: Counter of events received and dispatched.
            Labels: kind (repositories are left to the logs)

        subscription_operations_total: Counter of subscription operations.
            Labels: operation (register/unregister), outcome
            (created/updated/deleted/noop/error)

        active_subscriptions: Gauge of active subscriptions.
            Labels: kind

    Example:
        >>> metrics = ConnectorMetrics(registry=CollectorRegistry())
        >>> metrics.record_subscription_operation("register", "created")
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        """Initialize connector metrics.

        Args:
            registry: Optional Prometheus registry. If None, uses the
                      default REGISTRY. Pass a custom registry for testing.
        """
        self.registry = registry or REGISTRY

        self.events_dispatched_total = Counter(
            "connector_events_dispatched_total",
            "Total number of repository events dispatched",
            labelnames=["kind"],
            registry=self.registry,
        )

        self.subscription_operations_total = Counter(
            "connector_subscription_operations_total",
            "Total number of webhook subscription operations",
            labelnames=["operation", "outcome"],
            registry=self.registry,
        )

        self.active_subscriptions = Gauge(
            "connector_active_subscriptions",
            "Current number of active subscriptions per event kind",
            labelnames=["kind"],
            registry=self.registry,
        )

        self._active_counts: Dict[str, int] = {}
        for kind in EventKind:
            self.active_subscriptions.labels(kind=kind.value).set(0)

    def record_event_dispatched(self, kind: str) -> None:
        self.events_dispatched_total.labels(kind=kind).inc()

    def record_subscription_operation(self, operation: str, outcome: str) -> None:
        """Record one register/unregister call.

        Args:
            operation: "register" or "unregister".
            outcome: created, updated, deleted, noop or error.
        """
        self.subscription_operations_total.labels(
            operation=operation,
            outcome=outcome,
        ).inc()

    def update_active_subscriptions(self, kind: str, delta: int) -> None:
        """Adjust the active subscription gauge, never below zero."""
        count = max(0, self._active_counts.get(kind, 0) + delta)
        self._active_counts[kind] = count
        self.active_subscriptions.labels(kind=kind).set(count)


_default_metrics: Optional[ConnectorMetrics] = None


def get_metrics(registry: Optional[CollectorRegistry] = None) -> ConnectorMetrics:
    """Get or create the connector metrics instance.

    Args:
        registry: Optional Prometheus registry. If None, returns the
                  global metrics instance for the default registry.
    """
    global _default_metrics

    if registry is not None:
        return ConnectorMetrics(registry=registry)

    if _default_metrics is None:
        _default_metrics = ConnectorMetrics()

    return _default_metrics


def generate_metrics_output(registry: Optional[CollectorRegistry] = None) -> bytes:
    """Generate Prometheus metrics output for the /metrics endpoint."""
    target_registry = registry or REGISTRY
    return generate_latest(target_registry)


class MetricsEventEmitter(EventEmitter):
    """Event emitter that counts dispatched events in Prometheus.

    Attributes:
        metrics: The ConnectorMetrics instance to update.
    """

    def __init__(
        self,
        metrics: Optional[ConnectorMetrics] = None,
        registry: Optional[CollectorRegistry] = None,
    ):
        if metrics is not None:
            self._metrics = metrics
        else:
            self._metrics = get_metrics(registry)

    @property
    def metrics(self) -> ConnectorMetrics:
        return self._metrics

    async def emit(self, event: RepositoryEvent) -> None:
        try:
            self._metrics.record_event_dispatched(kind=event.kind.value)
        except Exception as e:
            logger.error(
                "Failed to update metrics for event %s: %s",
                event.kind.value,
                str(e),
                extra={
                    "event_kind": event.kind.value,
                    "repository": event.repository.full_name,
                    "error": str(e),
                },
            )
