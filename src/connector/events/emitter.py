"""Sinks that observe every event the dispatcher delivers.

Subscribers receive events through listeners; sinks see all of them,
whether or not anyone is listening. The logging sink writes one INFO
record per event and the metrics sink (events/metrics.py) counts them.
"""

import logging
from abc import ABC, abstractmethod
from enum import Enum
from typing import List, Optional

from src.connector.events.models import RepositoryEvent


logger = logging.getLogger(__name__)


class EventSinkType(str, Enum):
    """Sinks selectable through create_event_emitter."""

    LOGGING = "logging"
    METRICS = "metrics"


class EventEmitter(ABC):
    """A destination for dispatched repository events.

    emit() is awaited by the dispatcher after the listeners have run.
    """

    @abstractmethod
    async def emit(self, event: RepositoryEvent) -> None:
        pass

    async def close(self) -> None:
        pass


class LoggingEventEmitter(EventEmitter):
    """Writes each event as a log record with the event fields in ``extra``."""

    def __init__(self, logger_name: Optional[str] = None):
        self._logger = logging.getLogger(logger_name) if logger_name else logger

    async def emit(self, event: RepositoryEvent) -> None:
        self._logger.info(
            "Repository event: %s for %s",
            event.kind.value,
            event.repository.full_name,
            extra=event.to_log_dict(),
        )


class CompositeEventEmitter(EventEmitter):
    """Fans an event out to several sinks.

    A sink that raises is logged and skipped; the remaining sinks still
    receive the event.
    """

    def __init__(self, emitters: Optional[List[EventEmitter]] = None):
        self._sinks: List[EventEmitter] = list(emitters or [])

    def add_emitter(self, emitter: EventEmitter) -> None:
        self._sinks.append(emitter)

    def remove_emitter(self, emitter: EventEmitter) -> bool:
        """Detach a sink. Returns False if it was not attached."""
        if emitter not in self._sinks:
            return False
        self._sinks.remove(emitter)
        return True

    @property
    def emitters(self) -> List[EventEmitter]:
        return list(self._sinks)

    async def emit(self, event: RepositoryEvent) -> None:
        for sink in self._sinks:
            try:
                await sink.emit(event)
            except Exception as e:
                logger.error(
                    "Event sink %s failed for %s on %s: %s",
                    type(sink).__name__,
                    event.kind.value,
                    event.repository.full_name,
                    str(e),
                    extra={
                        "sink": type(sink).__name__,
                        "event_kind": event.kind.value,
                        "repository": event.repository.full_name,
                        "delivery_id": event.delivery_id,
                    },
                )

    async def close(self) -> None:
        for sink in self._sinks:
            try:
                await sink.close()
            except Exception as e:
                logger.error("Failed to close event sink %s: %s", type(sink).__name__, str(e))


class NullEventEmitter(EventEmitter):
    """Drops every event. Used when no sink is wired, e.g. in tests."""

    async def emit(self, event: RepositoryEvent) -> None:
        pass


def create_event_emitter(
    sink_types: Optional[List[EventSinkType]] = None,
    logger_name: Optional[str] = None,
    metrics: Optional[object] = None,
) -> EventEmitter:
    """Build the emitter for the requested sinks.

    Args:
        sink_types: Sinks to enable; logging only when None or empty.
        logger_name: Logger for the logging sink.
        metrics: ConnectorMetrics for the metrics sink; the process-wide
            instance is used when omitted.

    Returns:
        The sink itself when only one is requested, otherwise a
        CompositeEventEmitter over all of them.
    """
    sinks: List[EventEmitter] = []

    for sink_type in sink_types or [EventSinkType.LOGGING]:
        if sink_type == EventSinkType.LOGGING:
            sinks.append(LoggingEventEmitter(logger_name=logger_name))
        elif sink_type == EventSinkType.METRICS:
            # metrics.py imports this module
            from src.connector.events.metrics import MetricsEventEmitter

            sinks.append(MetricsEventEmitter(metrics=metrics))
        else:
            logger.warning("Unknown event sink type: %s, skipping", sink_type)

    if not sinks:
        return LoggingEventEmitter(logger_name=logger_name)
    if len(sinks) == 1:
        return sinks[0]
    return CompositeEventEmitter(sinks)
