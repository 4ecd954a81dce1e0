"""
Event publisher.

The single interface through which all pipeline components announce state
changes. Transport (websocket fan-out, log shipping, metrics) lives in
subscribers; producers only ever call publish().

Delivery is synchronous and best-effort. A subscriber that raises is logged
and skipped. publish() never raises into the caller.
"""

import logging
import sys
import threading
from typing import Callable, List, Optional, Protocol, TextIO

from .events import EventType, PipelineEvent

logger = logging.getLogger(__name__)


Subscriber = Callable[[PipelineEvent], None]


class EventPublisher(Protocol):
    """Anything with a publish(event) method."""

    def publish(self, event: PipelineEvent) -> None:
        ...


class FanoutPublisher:
    """
    Thread-safe fan-out to a list of subscribers.

    Subscribers are called in registration order on the publishing thread.
    Per-job ordering is preserved because each job's events come from a
    single thread at a time.
    """

    def __init__(self, subscribers: Optional[List[Subscriber]] = None):
        self._subscribers: List[Subscriber] = list(subscribers or [])
        self._lock = threading.Lock()

    def subscribe(self, subscriber: Subscriber) -> Callable[[], None]:
        """
        Register a subscriber.

        Returns:
            Callable that removes the subscriber again
        """
        with self._lock:
            self._subscribers.append(subscriber)

        def unsubscribe() -> None:
            with self._lock:
                if subscriber in self._subscribers:
                    self._subscribers.remove(subscriber)

        return unsubscribe

    def publish(self, event: PipelineEvent) -> None:
        with self._lock:
            subscribers = list(self._subscribers)

        for subscriber in subscribers:
            try:
                subscriber(event)
            except Exception:
                logger.exception(
                    f"[Publisher] Subscriber {subscriber!r} failed on {event.event_type.value}"
                )


class NullPublisher:
    """Publisher that drops everything."""

    def publish(self, event: PipelineEvent) -> None:
        pass


# =============================================================================
# Subscribers
# =============================================================================

class LoggingSubscriber:
    """
    Writes every event to the log.

    Progress is logged at DEBUG to keep INFO readable during long runs.
    """

    def __init__(self, log: Optional[logging.Logger] = None):
        self._log = log or logging.getLogger("slidepipe.events")

    def __call__(self, event: PipelineEvent) -> None:
        level = logging.DEBUG if event.event_type == EventType.JOB_PROGRESS else logging.INFO
        if event.event_type in (EventType.JOB_FAILED, EventType.WATCHER_FAILED):
            level = logging.WARNING
        self._log.log(level, f"[Event] {event.to_json()}")


class JsonLinesSubscriber:
    """Writes one JSON object per event to a text stream."""

    def __init__(self, stream: Optional[TextIO] = None):
        self._stream = stream or sys.stdout
        self._lock = threading.Lock()

    def __call__(self, event: PipelineEvent) -> None:
        line = event.to_json()
        with self._lock:
            self._stream.write(line + "\n")
            self._stream.flush()
