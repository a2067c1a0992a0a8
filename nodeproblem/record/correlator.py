"""Event correlation: repeated identical events become count updates.

An event identical to one already written (same source, involved object,
type, reason and message) is not created again. Instead the earlier event is
patched with an incremented ``count`` and a fresh ``lastTimestamp``.
"""

from __future__ import annotations

import copy
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any

_MAX_LRU_CACHE_ENTRIES = 4096


@dataclass
class _EventLog:
    count: int
    first_timestamp: str
    name: str
    resource_version: str


@dataclass
class CorrelationResult:
    event: dict[str, Any]
    patch: dict[str, Any] | None = None

    @property
    def update_existing(self) -> bool:
        return self.patch is not None


def get_event_key(event: dict[str, Any]) -> tuple[str, ...]:
    source = event.get("source", {})
    obj = event.get("involvedObject", {})
    return (
        source.get("component", ""),
        source.get("host", ""),
        obj.get("kind", ""),
        obj.get("namespace", ""),
        obj.get("name", ""),
        obj.get("uid", ""),
        obj.get("apiVersion", ""),
        event.get("type", ""),
        event.get("reason", ""),
        event.get("message", ""),
    )


class EventCorrelator:
    """Tracks previously written events in a bounded LRU.

    Not thread-safe; each sink watcher owns its own correlator and runs on a
    single task.
    """

    def __init__(self, max_entries: int = _MAX_LRU_CACHE_ENTRIES) -> None:
        self._max_entries = max_entries
        self._cache: OrderedDict[tuple[str, ...], _EventLog] = OrderedDict()

    def __len__(self) -> int:
        return len(self._cache)

    def correlate(self, event: dict[str, Any]) -> CorrelationResult:
        """Return the event to write and, for a repeat, the patch to send."""
        key = get_event_key(event)
        last = self._cache.get(key)
        if last is None:
            return CorrelationResult(event=event)

        self._cache.move_to_end(key)
        updated = copy.deepcopy(event)
        updated["count"] = last.count + 1
        updated["firstTimestamp"] = last.first_timestamp
        updated["metadata"]["name"] = last.name
        if last.resource_version:
            updated["metadata"]["resourceVersion"] = last.resource_version
        patch = {
            "count": updated["count"],
            "lastTimestamp": updated["lastTimestamp"],
            "message": updated["message"],
        }
        return CorrelationResult(event=updated, patch=patch)

    def update_state(self, event: dict[str, Any]) -> None:
        """Remember *event* as successfully written."""
        key = get_event_key(event)
        metadata = event.get("metadata", {})
        self._cache[key] = _EventLog(
            count=event.get("count", 1),
            first_timestamp=event.get("firstTimestamp", ""),
            name=metadata.get("name", ""),
            resource_version=metadata.get("resourceVersion", ""),
        )
        self._cache.move_to_end(key)
        while len(self._cache) > self._max_entries:
            self._cache.popitem(last=False)
