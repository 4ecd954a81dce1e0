"""
Pipeline monitoring - event model, publisher, latest-state projection.

Components:
- events: Immutable event definitions (closed set)
- publisher: publish(event) fan-out, never raises into producers
- state_store: Latest state and progress per job
"""

from .events import EventType, PipelineEvent, TERMINAL_EVENTS
from .publisher import (
    EventPublisher,
    FanoutPublisher,
    JsonLinesSubscriber,
    LoggingSubscriber,
    NullPublisher,
)
from .state_store import JobView, StateStore

__all__ = [
    "EventType",
    "PipelineEvent",
    "TERMINAL_EVENTS",
    "EventPublisher",
    "FanoutPublisher",
    "JsonLinesSubscriber",
    "LoggingSubscriber",
    "NullPublisher",
    "JobView",
    "StateStore",
]
