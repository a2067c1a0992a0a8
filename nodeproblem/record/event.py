"""Event recorder: builds core/v1 Event bodies and hands them to a broadcaster."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import structlog

from nodeproblem.clock import Clock, RealClock, format_rfc3339, unix_nanos

if TYPE_CHECKING:
    from kubernetes_asyncio.client import V1ObjectReference

    from nodeproblem.record.broadcaster import EventBroadcaster

_log = structlog.get_logger(component="record.event")

EVENT_TYPE_NORMAL = "Normal"
EVENT_TYPE_WARNING = "Warning"

# Cluster-scoped objects (nodes) have no namespace; their events live here.
DEFAULT_EVENT_NAMESPACE = "default"


def validate_event_type(event_type: str) -> bool:
    return event_type in (EVENT_TYPE_NORMAL, EVENT_TYPE_WARNING)


@dataclass(frozen=True)
class EventSource:
    """Reporting component attached to every event a recorder emits."""

    component: str
    host: str = ""


def object_reference_to_dict(ref: V1ObjectReference) -> dict[str, str]:
    """Wire form of an object reference, empty fields omitted."""
    fields = {
        "kind": ref.kind,
        "namespace": ref.namespace,
        "name": ref.name,
        "uid": ref.uid,
        "apiVersion": ref.api_version,
        "resourceVersion": ref.resource_version,
        "fieldPath": ref.field_path,
    }
    return {key: value for key, value in fields.items() if value}


class EventRecorder:
    """Records events on behalf of a single source.

    Args:
        source:      Component/host stamped on every event.
        broadcaster: Delivers the events asynchronously.
        clock:       Time source for event names and timestamps.
    """

    def __init__(
        self,
        source: EventSource,
        broadcaster: EventBroadcaster,
        clock: Clock | None = None,
    ) -> None:
        self.source = source
        self._broadcaster = broadcaster
        self._clock = clock or RealClock()

    def event(self, obj_ref: V1ObjectReference, event_type: str, reason: str, message: str) -> None:
        """Emit an event with a preformatted message."""
        self._generate_event(obj_ref, event_type, reason, message)

    def eventf(
        self,
        obj_ref: V1ObjectReference,
        event_type: str,
        reason: str,
        message_fmt: str,
        *args: object,
    ) -> None:
        """Emit an event whose message is ``message_fmt % args``.

        With no ``args`` the format string is used verbatim, so literal ``%``
        characters survive. A format string that does not match ``args`` is
        logged and the event is still emitted, with the raw format string and
        the arguments as its message.
        """
        try:
            message = message_fmt % args if args else message_fmt
        except (TypeError, ValueError) as exc:
            _log.warning("event_message_format_error", message_fmt=message_fmt, reason=reason, error=str(exc))
            message = f"{message_fmt} {args!r}"
        self._generate_event(obj_ref, event_type, reason, message)

    def _generate_event(self, obj_ref: V1ObjectReference, event_type: str, reason: str, message: str) -> None:
        if not validate_event_type(event_type):
            _log.error("unsupported_event_type", event_type=event_type, reason=reason)
            return
        self._broadcaster.action(self.make_event(obj_ref, event_type, reason, message))

    def make_event(
        self,
        obj_ref: V1ObjectReference,
        event_type: str,
        reason: str,
        message: str,
    ) -> dict[str, Any]:
        """Build the core/v1 Event body for *obj_ref*."""
        now = self._clock.now()
        timestamp = format_rfc3339(now)
        namespace = obj_ref.namespace or DEFAULT_EVENT_NAMESPACE
        source: dict[str, str] = {"component": self.source.component}
        if self.source.host:
            source["host"] = self.source.host
        return {
            "apiVersion": "v1",
            "kind": "Event",
            "metadata": {
                "name": f"{obj_ref.name}.{unix_nanos(now):x}",
                "namespace": namespace,
            },
            "involvedObject": object_reference_to_dict(obj_ref),
            "reason": reason,
            "message": message,
            "source": source,
            "firstTimestamp": timestamp,
            "lastTimestamp": timestamp,
            "count": 1,
            "type": event_type,
        }
