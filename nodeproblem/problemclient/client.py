"""Node problem client.

Reads and patches the status conditions of the node this process runs on,
and records events against that node. The node identity, the connection and
the node object reference are resolved once when the client is built.
"""

from __future__ import annotations

import threading
from collections.abc import Callable, Mapping, Sequence
from typing import Protocol

import structlog
from kubernetes_asyncio import client as k8s_client
from kubernetes_asyncio.client import V1NodeCondition

from nodeproblem.clock import Clock, RealClock
from nodeproblem.models.config import ProblemClientConfig
from nodeproblem.problemclient.connection import get_hostname, get_node_ref, load_connection_config
from nodeproblem.problemclient.encoding import generate_patch
from nodeproblem.record import CoreV1EventSink, EventBroadcaster, EventRecorder, EventSource

_log = structlog.get_logger(component="problemclient")

RecorderFactory = Callable[[str], EventRecorder]


class ProblemClient(Protocol):
    """Operations a node-health agent needs from the control plane."""

    async def get_conditions(self, condition_types: Sequence[str]) -> list[V1NodeCondition]:
        """Return the current node's conditions of the given types."""
        ...

    async def set_conditions(self, conditions: Sequence[V1NodeCondition]) -> None:
        """Set or update conditions of the current node."""
        ...

    def eventf(self, event_type: str, source: str, reason: str, message_fmt: str, *args: object) -> None:
        """Record an event against the current node."""
        ...


class NodeProblemClient:
    """ProblemClient bound to a single node.

    Args:
        node_name:        Name of the node object to read, patch and attach
                          events to.
        core_v1:          CoreV1Api bound to the resolved connection.
        clock:            Time source for condition heartbeats.
        recorder_factory: Builds the event recorder for a source. Defaults to
                          one broadcaster per source writing to the core/v1
                          events API.
    """

    def __init__(
        self,
        node_name: str,
        core_v1: k8s_client.CoreV1Api,
        clock: Clock | None = None,
        recorder_factory: RecorderFactory | None = None,
    ) -> None:
        self.node_name = node_name
        self.node_ref = get_node_ref(node_name)
        self._core_v1 = core_v1
        self._clock = clock or RealClock()
        self._recorder_factory = recorder_factory or self._new_event_recorder
        self._recorders: dict[str, EventRecorder] = {}
        self._broadcasters: list[EventBroadcaster] = []
        # Guards check-create-insert on the recorder cache.
        self._recorders_lock = threading.Lock()

    async def __aenter__(self) -> NodeProblemClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def get_conditions(self, condition_types: Sequence[str]) -> list[V1NodeCondition]:
        """Fetch the node and return its conditions whose type was requested.

        The result keeps the order in which the node reports its conditions;
        the order of *condition_types* does not matter and requested types the
        node does not report are skipped. API and transport errors propagate
        unchanged.
        """
        node = await self._core_v1.read_node(self.node_name)
        wanted = set(condition_types)
        reported = (node.status.conditions if node.status else None) or []
        return [condition for condition in reported if condition.type in wanted]

    async def set_conditions(self, conditions: Sequence[V1NodeCondition]) -> None:
        """Patch the node status with *conditions*.

        Every condition's ``last_heartbeat_time`` is set to the clock's current
        time first. The caller's objects are updated in place.

        The server merges the list by condition type, so conditions not named
        here are left alone.

        Raises:
            PatchEncodingError: a condition cannot be serialised. Nothing is
                sent in that case.
        """
        now = self._clock.now()
        for condition in conditions:
            condition.last_heartbeat_time = now
        patch = generate_patch(conditions)
        # A dict body is sent as application/strategic-merge-patch+json.
        await self._core_v1.patch_node_status(self.node_name, patch)

    def eventf(self, event_type: str, source: str, reason: str, message_fmt: str, *args: object) -> None:
        """Record ``message_fmt % args`` as an event on this node.

        Returns immediately; delivery happens in the background and its
        failures are only logged.
        """
        self.recorder(source).eventf(self.node_ref, event_type, reason, message_fmt, *args)

    def recorder(self, source: str) -> EventRecorder:
        """Return the cached recorder for *source*, building it on first use."""
        with self._recorders_lock:
            recorder = self._recorders.get(source)
            if recorder is None:
                recorder = self._recorder_factory(source)
                self._recorders[source] = recorder
                _log.debug("event_recorder_created", source=source, node=self.node_name)
            return recorder

    def _new_event_recorder(self, source: str) -> EventRecorder:
        broadcaster = EventBroadcaster()
        broadcaster.start_structured_logging()
        broadcaster.start_recording_to_sink(CoreV1EventSink(self._core_v1))
        self._broadcasters.append(broadcaster)
        return broadcaster.new_recorder(EventSource(component=source, host=self.node_name))

    async def flush_events(self) -> None:
        """Wait for every event recorded so far to be handled."""
        with self._recorders_lock:
            broadcasters = list(self._broadcasters)
        for broadcaster in broadcasters:
            await broadcaster.flush()

    async def close(self) -> None:
        """Stop event delivery and close the API connection pool."""
        with self._recorders_lock:
            broadcasters = list(self._broadcasters)
            self._broadcasters.clear()
        for broadcaster in broadcasters:
            await broadcaster.shutdown()
        await self._core_v1.api_client.close()


def new_client(
    cfg: ProblemClientConfig,
    clock: Clock | None = None,
    environ: Mapping[str, str] | None = None,
) -> NodeProblemClient:
    """Resolve the connection and node identity and build the client.

    Must be called with an event loop running: the API client opens its
    connection pool on construction.

    Raises:
        ConfigResolutionError: the connection configuration cannot be resolved.
    """
    configuration = load_connection_config(cfg, environ)
    node_name = get_hostname(cfg.hostname_override)
    api_client = k8s_client.ApiClient(configuration=configuration)
    _log.info("problem_client_created", node=node_name, host=configuration.host)
    return NodeProblemClient(node_name, k8s_client.CoreV1Api(api_client), clock=clock)


def new_client_or_die(
    cfg: ProblemClientConfig,
    clock: Clock | None = None,
    environ: Mapping[str, str] | None = None,
) -> NodeProblemClient:
    """Like new_client, but terminates the process if construction fails."""
    try:
        return new_client(cfg, clock=clock, environ=environ)
    except Exception as exc:
        _log.critical("problem_client_create_failed", error=str(exc))
        raise SystemExit(1) from exc
