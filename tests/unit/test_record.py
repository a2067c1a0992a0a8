"""Tests for event recording: recorder bodies, correlation, broadcaster delivery."""

from __future__ import annotations

import asyncio
import copy
import threading
from datetime import timedelta
from typing import Any
from unittest.mock import MagicMock

import aiohttp
from kubernetes_asyncio.client.exceptions import ApiException

from nodeproblem.clock import FakeClock, unix_nanos
from nodeproblem.problemclient.connection import get_node_ref
from nodeproblem.record import EventBroadcaster, EventCorrelator, EventRecorder, EventSource
from tests.conftest import NODE_NAME, T0

_SOURCE = EventSource(component="kernel-monitor", host=NODE_NAME)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class _FakeSink:
    """Records sink calls; optional scripted failures per method.

    Successful writes return a server copy of the event carrying a new
    resourceVersion ("1", "2", ...).
    """

    def __init__(self, create_errors: list[Exception] | None = None, patch_errors: list[Exception] | None = None):
        self.created: list[dict[str, Any]] = []
        self.patched: list[tuple[dict[str, Any], dict[str, Any]]] = []
        self._create_errors = list(create_errors or [])
        self._patch_errors = list(patch_errors or [])
        self.create_attempts = 0
        self._version = 0

    def _stored(self, event: dict[str, Any]) -> dict[str, Any]:
        self._version += 1
        stored = copy.deepcopy(event)
        stored["metadata"]["resourceVersion"] = str(self._version)
        return stored

    async def create(self, event: dict[str, Any]) -> object:
        self.create_attempts += 1
        if self._create_errors:
            raise self._create_errors.pop(0)
        self.created.append(copy.deepcopy(event))
        return self._stored(event)

    async def patch(self, event: dict[str, Any], patch: dict[str, Any]) -> object:
        if self._patch_errors:
            raise self._patch_errors.pop(0)
        self.patched.append((copy.deepcopy(event), patch))
        return self._stored(event)


def _recorder(broadcaster: Any, clock: FakeClock | None = None) -> EventRecorder:
    return EventRecorder(_SOURCE, broadcaster, clock=clock or FakeClock(T0))


def _broadcaster_with_sink(sink: _FakeSink, max_tries: int = 12) -> EventBroadcaster:
    broadcaster = EventBroadcaster(max_tries=max_tries, sleep_duration=0.0)
    broadcaster.start_recording_to_sink(sink)
    return broadcaster


# =====================================================================
# EventRecorder
# =====================================================================


class TestEventRecorder:
    def test_builds_event_body(self) -> None:
        broadcaster = MagicMock()
        recorder = _recorder(broadcaster)

        recorder.eventf(get_node_ref(NODE_NAME), "Warning", "KernelOops", "BUG: unable to handle %s at %#x", "page", 16)

        broadcaster.action.assert_called_once()
        event = broadcaster.action.call_args.args[0]
        assert event["metadata"] == {"name": f"{NODE_NAME}.{unix_nanos(T0):x}", "namespace": "default"}
        assert event["involvedObject"] == {"kind": "Node", "name": NODE_NAME, "uid": NODE_NAME}
        assert event["message"] == "BUG: unable to handle page at 0x10"
        assert event["source"] == {"component": "kernel-monitor", "host": NODE_NAME}
        assert event["firstTimestamp"] == event["lastTimestamp"] == "2026-02-18T12:00:00Z"
        assert event["count"] == 1
        assert event["type"] == "Warning"

    def test_message_without_args_is_literal(self) -> None:
        broadcaster = MagicMock()
        _recorder(broadcaster).eventf(get_node_ref(NODE_NAME), "Normal", "DiskUsage", "disk at 95%")
        assert broadcaster.action.call_args.args[0]["message"] == "disk at 95%"

    def test_mismatched_format_still_emits(self, captured_logs: list[dict[str, Any]]) -> None:
        broadcaster = MagicMock()
        _recorder(broadcaster).eventf(get_node_ref(NODE_NAME), "Warning", "TaskHung", "pid %v", 3)

        assert broadcaster.action.call_args.args[0]["message"] == "pid %v (3,)"
        assert [log["event"] for log in captured_logs] == ["event_message_format_error"]

    def test_too_few_args_still_emits(self) -> None:
        broadcaster = MagicMock()
        _recorder(broadcaster).eventf(get_node_ref(NODE_NAME), "Warning", "TaskHung", "%s blocked for %ds", "task")
        assert broadcaster.action.call_args.args[0]["message"] == "%s blocked for %ds ('task',)"

    def test_unsupported_event_type_dropped(self, captured_logs: list[dict[str, Any]]) -> None:
        broadcaster = MagicMock()
        _recorder(broadcaster).eventf(get_node_ref(NODE_NAME), "Error", "Broken", "broken")
        broadcaster.action.assert_not_called()
        assert any(log["event"] == "unsupported_event_type" for log in captured_logs)

    def test_event_names_differ_over_time(self) -> None:
        broadcaster = MagicMock()
        clock = FakeClock(T0)
        recorder = _recorder(broadcaster, clock)
        ref = get_node_ref(NODE_NAME)

        recorder.event(ref, "Normal", "Tick", "tick")
        clock.step(timedelta(microseconds=1))
        recorder.event(ref, "Normal", "Tick", "tick")

        first, second = (c.args[0]["metadata"]["name"] for c in broadcaster.action.call_args_list)
        assert first != second


# =====================================================================
# EventCorrelator
# =====================================================================


class TestEventCorrelator:
    def _event(self, message: str = "task blocked", last: str = "2026-02-18T12:00:00Z") -> dict[str, Any]:
        return _recorder(MagicMock()).make_event(get_node_ref(NODE_NAME), "Warning", "TaskHung", message) | {
            "lastTimestamp": last
        }

    def test_first_event_is_created(self) -> None:
        correlator = EventCorrelator()
        result = correlator.correlate(self._event())
        assert result.update_existing is False
        assert result.patch is None

    def test_repeat_becomes_count_patch(self) -> None:
        correlator = EventCorrelator()
        first = self._event()
        correlator.update_state(first)

        result = correlator.correlate(self._event(last="2026-02-18T12:05:00Z"))

        assert result.update_existing is True
        assert result.patch == {"count": 2, "lastTimestamp": "2026-02-18T12:05:00Z", "message": "task blocked"}
        assert result.event["metadata"]["name"] == first["metadata"]["name"]
        assert result.event["firstTimestamp"] == first["firstTimestamp"]

    def test_different_message_is_new_event(self) -> None:
        correlator = EventCorrelator()
        correlator.update_state(self._event("task A blocked"))
        assert correlator.correlate(self._event("task B blocked")).update_existing is False

    def test_lru_bound(self) -> None:
        correlator = EventCorrelator(max_entries=2)
        for i in range(3):
            correlator.update_state(self._event(f"message {i}"))
        assert len(correlator) == 2
        assert correlator.correlate(self._event("message 0")).update_existing is False


# =====================================================================
# EventBroadcaster
# =====================================================================


class TestBroadcasterDelivery:
    async def test_event_created_in_sink(self) -> None:
        sink = _FakeSink()
        broadcaster = _broadcaster_with_sink(sink)
        try:
            _recorder(broadcaster).eventf(get_node_ref(NODE_NAME), "Warning", "OOMKilling", "killed %d", 1)
            await broadcaster.flush()
            assert [e["message"] for e in sink.created] == ["killed 1"]
        finally:
            await broadcaster.shutdown()

    async def test_repeated_event_patches_count(self) -> None:
        sink = _FakeSink()
        broadcaster = _broadcaster_with_sink(sink)
        recorder = _recorder(broadcaster)
        ref = get_node_ref(NODE_NAME)
        try:
            recorder.eventf(ref, "Warning", "TaskHung", "task blocked")
            await broadcaster.flush()
            recorder.eventf(ref, "Warning", "TaskHung", "task blocked")
            recorder.eventf(ref, "Warning", "TaskHung", "task blocked")
            await broadcaster.flush()

            assert len(sink.created) == 1
            assert [p["count"] for _, p in sink.patched] == [2, 3]
            # Each patch carries the resourceVersion the server returned for the previous write.
            assert [e["metadata"]["resourceVersion"] for e, _ in sink.patched] == ["1", "2"]
        finally:
            await broadcaster.shutdown()

    async def test_patch_not_found_recreates_event(self) -> None:
        sink = _FakeSink(patch_errors=[ApiException(status=404, reason="Not Found")])
        broadcaster = _broadcaster_with_sink(sink)
        recorder = _recorder(broadcaster)
        ref = get_node_ref(NODE_NAME)
        try:
            recorder.event(ref, "Warning", "TaskHung", "task blocked")
            await broadcaster.flush()
            recorder.event(ref, "Warning", "TaskHung", "task blocked")
            await broadcaster.flush()

            assert len(sink.created) == 2
            assert sink.created[1]["count"] == 1
            assert "resourceVersion" not in sink.created[1]["metadata"]
        finally:
            await broadcaster.shutdown()

    async def test_server_rejection_is_not_retried(self) -> None:
        sink = _FakeSink(create_errors=[ApiException(status=403, reason="Forbidden")])
        broadcaster = _broadcaster_with_sink(sink)
        try:
            _recorder(broadcaster).event(get_node_ref(NODE_NAME), "Normal", "Started", "started")
            await broadcaster.flush()
            assert sink.create_attempts == 1
            assert sink.created == []
        finally:
            await broadcaster.shutdown()

    async def test_transport_errors_are_retried(self) -> None:
        errors: list[Exception] = [aiohttp.ClientConnectionError("refused"), ConnectionResetError()]
        sink = _FakeSink(create_errors=errors)
        broadcaster = _broadcaster_with_sink(sink)
        try:
            _recorder(broadcaster).event(get_node_ref(NODE_NAME), "Normal", "Started", "started")
            await broadcaster.flush()
            assert sink.create_attempts == 3
            assert len(sink.created) == 1
        finally:
            await broadcaster.shutdown()

    async def test_gives_up_after_max_tries(self) -> None:
        sink = _FakeSink(create_errors=[aiohttp.ClientConnectionError("refused")] * 5)
        broadcaster = _broadcaster_with_sink(sink, max_tries=3)
        try:
            _recorder(broadcaster).event(get_node_ref(NODE_NAME), "Normal", "Started", "started")
            await broadcaster.flush()
            assert sink.create_attempts == 3
            assert sink.created == []
        finally:
            await broadcaster.shutdown()

    async def test_full_queue_drops_events(self) -> None:
        received: list[dict[str, Any]] = []

        async def _handler(event: dict[str, Any]) -> None:
            received.append(event)

        broadcaster = EventBroadcaster(max_queued=2)
        broadcaster.start_event_watcher(_handler)
        recorder = _recorder(broadcaster)
        try:
            # No await between the calls: the watcher task cannot drain the queue.
            for i in range(5):
                recorder.eventf(get_node_ref(NODE_NAME), "Normal", "Tick", "tick %d", i)
            await broadcaster.flush()
            assert [e["message"] for e in received] == ["tick 0", "tick 1"]
        finally:
            await broadcaster.shutdown()

    async def test_every_watcher_receives_event(self) -> None:
        sink = _FakeSink()
        seen: list[str] = []

        async def _handler(event: dict[str, Any]) -> None:
            seen.append(event["reason"])

        broadcaster = _broadcaster_with_sink(sink)
        broadcaster.start_event_watcher(_handler, name="extra")
        broadcaster.start_structured_logging()
        try:
            _recorder(broadcaster).event(get_node_ref(NODE_NAME), "Normal", "Started", "started")
            await broadcaster.flush()
            assert seen == ["Started"]
            assert len(sink.created) == 1
        finally:
            await broadcaster.shutdown()

    async def test_action_from_foreign_thread(self) -> None:
        sink = _FakeSink()
        broadcaster = _broadcaster_with_sink(sink)
        recorder = _recorder(broadcaster)
        ref = get_node_ref(NODE_NAME)
        try:
            # Bind the broadcaster to this loop first.
            recorder.event(ref, "Normal", "Started", "from loop")
            await broadcaster.flush()

            thread = threading.Thread(target=recorder.event, args=(ref, "Normal", "Started", "from thread"))
            thread.start()
            # Blocking join: the handed-over event has not reached the queues yet.
            thread.join()
            await broadcaster.flush()

            assert [e["message"] for e in sink.created] == ["from loop", "from thread"]
        finally:
            await broadcaster.shutdown()

    def test_event_without_loop_is_dropped(self, captured_logs: list[dict[str, Any]]) -> None:
        sink = _FakeSink()
        broadcaster = _broadcaster_with_sink(sink)
        _recorder(broadcaster).event(get_node_ref(NODE_NAME), "Normal", "Started", "started")
        assert sink.created == []
        assert [log["event"] for log in captured_logs] == ["event_dropped_no_event_loop"]

    async def test_shutdown_stops_delivery(self) -> None:
        sink = _FakeSink()
        broadcaster = _broadcaster_with_sink(sink)
        await broadcaster.shutdown()
        _recorder(broadcaster).event(get_node_ref(NODE_NAME), "Normal", "Started", "started")
        await asyncio.sleep(0)
        assert sink.create_attempts == 0


class TestBroadcasterLoopLifecycle:
    """One broadcaster outliving the event loop it was first used on."""

    def test_rebinds_to_next_loop(self) -> None:
        sink = _FakeSink()
        broadcaster = _broadcaster_with_sink(sink)
        recorder = _recorder(broadcaster)
        ref = get_node_ref(NODE_NAME)

        async def _cycle(message: str) -> None:
            recorder.event(ref, "Warning", "TaskHung", message)
            await broadcaster.flush()

        asyncio.run(_cycle("first cycle"))
        asyncio.run(_cycle("second cycle"))
        asyncio.run(_cycle("second cycle"))

        assert [e["message"] for e in sink.created] == ["first cycle", "second cycle"]
        # Correlation state survives the rebind.
        assert [p["count"] for _, p in sink.patched] == [2]

    def test_thread_after_loop_closed_is_dropped(self, captured_logs: list[dict[str, Any]]) -> None:
        sink = _FakeSink()
        broadcaster = _broadcaster_with_sink(sink)
        recorder = _recorder(broadcaster)
        ref = get_node_ref(NODE_NAME)

        async def _cycle() -> None:
            recorder.event(ref, "Normal", "Started", "inside loop")
            await broadcaster.flush()

        asyncio.run(_cycle())

        errors: list[BaseException] = []

        def _emit() -> None:
            try:
                recorder.event(ref, "Normal", "Started", "after loop")
            except BaseException as exc:
                errors.append(exc)

        thread = threading.Thread(target=_emit)
        thread.start()
        thread.join()

        assert errors == []
        assert [e["message"] for e in sink.created] == ["inside loop"]
        assert "event_dropped_loop_closed" in [log["event"] for log in captured_logs]

    def test_shutdown_after_loop_closed(self) -> None:
        sink = _FakeSink()
        broadcaster = _broadcaster_with_sink(sink)

        async def _cycle() -> None:
            _recorder(broadcaster).event(get_node_ref(NODE_NAME), "Normal", "Started", "started")
            await broadcaster.flush()

        asyncio.run(_cycle())
        asyncio.run(broadcaster.shutdown())

        assert len(sink.created) == 1
