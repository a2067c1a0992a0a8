"""Event recording for nodeproblem.

Recorders build core/v1 Event bodies; a broadcaster queues them and writes
them to the API server in the background, collapsing repeats into count
updates.

Submodules:
    event       -- EventRecorder, EventSource, event type constants.
    broadcaster -- EventBroadcaster: per-watcher queues, sink retries.
    correlator  -- EventCorrelator: repeat detection and count patches.
    sink        -- EventSink protocol and the core/v1 implementation.
"""

from nodeproblem.record.broadcaster import EventBroadcaster
from nodeproblem.record.correlator import EventCorrelator
from nodeproblem.record.event import (
    EVENT_TYPE_NORMAL,
    EVENT_TYPE_WARNING,
    EventRecorder,
    EventSource,
)
from nodeproblem.record.sink import CoreV1EventSink, EventSink

__all__ = [
    "EVENT_TYPE_NORMAL",
    "EVENT_TYPE_WARNING",
    "CoreV1EventSink",
    "EventBroadcaster",
    "EventCorrelator",
    "EventRecorder",
    "EventSink",
    "EventSource",
]
