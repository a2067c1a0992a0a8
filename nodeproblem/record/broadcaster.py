"""Asynchronous event broadcaster.

Recorders hand events to ``EventBroadcaster.action()``, which returns at once.
Every registered watcher (a sink writer, the structured logger) owns a bounded
queue drained by its own task, so a slow or unreachable API server never
blocks the caller or the other watchers. Delivery is best-effort: a full
watcher queue drops the event, and sink failures end up in the log only.
"""

from __future__ import annotations

import asyncio
import copy
import functools
import random
import threading
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

import aiohttp
import structlog
from kubernetes_asyncio.client.exceptions import ApiException

from nodeproblem.clock import Clock
from nodeproblem.record.correlator import EventCorrelator
from nodeproblem.record.event import EventRecorder, EventSource
from nodeproblem.record.sink import EventSink

_log = structlog.get_logger(component="record.broadcaster")

MAX_QUEUED_EVENTS = 1000
MAX_TRIES_PER_EVENT = 12
SLEEP_DURATION_SECONDS = 10.0

EventHandler = Callable[[dict[str, Any]], Awaitable[None]]


@dataclass
class _Watcher:
    name: str
    handler: EventHandler
    queue: asyncio.Queue[dict[str, Any]]
    task: asyncio.Task[None] | None = field(default=None)


class EventBroadcaster:
    """Fans recorded events out to watchers on a background event loop.

    The broadcaster binds to the running event loop the first time an event
    is recorded from it. Afterwards ``action()`` is safe to call from any
    thread. Once the bound loop is closed, the next event recorded from a
    running loop rebinds the broadcaster to that loop; events recorded in
    between from threads without a loop are dropped.

    Args:
        max_queued:     Capacity of each watcher queue.
        max_tries:      Sink write attempts per event on transport errors.
        sleep_duration: Seconds between sink write attempts.
    """

    def __init__(
        self,
        max_queued: int = MAX_QUEUED_EVENTS,
        max_tries: int = MAX_TRIES_PER_EVENT,
        sleep_duration: float = SLEEP_DURATION_SECONDS,
    ) -> None:
        self._max_queued = max_queued
        self._max_tries = max_tries
        self._sleep_duration = sleep_duration
        self._watchers: list[_Watcher] = []
        self._lock = threading.Lock()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._stopped = False

    # ------------------------------------------------------------------
    # Wiring
    # ------------------------------------------------------------------

    def new_recorder(self, source: EventSource, clock: Clock | None = None) -> EventRecorder:
        """Return a recorder that emits events from *source* through this broadcaster."""
        return EventRecorder(source, self, clock=clock)

    def start_event_watcher(self, handler: EventHandler, name: str = "watcher") -> None:
        """Register *handler* to receive every event recorded from now on."""
        with self._lock:
            self._watchers.append(_Watcher(name=name, handler=handler, queue=asyncio.Queue(self._max_queued)))

    def start_recording_to_sink(self, sink: EventSink) -> None:
        """Write every recorded event to *sink*, correlating repeats."""
        correlator = EventCorrelator()
        self.start_event_watcher(
            functools.partial(self._record_to_sink, sink, correlator),
            name="sink",
        )

    def start_structured_logging(self) -> None:
        """Log every recorded event at debug level."""

        async def _log_event(event: dict[str, Any]) -> None:
            obj = event.get("involvedObject", {})
            _log.debug(
                "event_recorded",
                kind=obj.get("kind"),
                name=obj.get("name"),
                type=event.get("type"),
                reason=event.get("reason"),
                message=event.get("message"),
            )

        self.start_event_watcher(_log_event, name="logging")

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def action(self, event: dict[str, Any]) -> None:
        """Queue *event* for every watcher without waiting for delivery."""
        try:
            running: asyncio.AbstractEventLoop | None = asyncio.get_running_loop()
        except RuntimeError:
            running = None

        with self._lock:
            if self._stopped:
                _log.warning("event_dropped_broadcaster_stopped", reason=event.get("reason"))
                return
            loop = self._bind(running)

        if loop is None:
            _log.warning("event_dropped_no_event_loop", reason=event.get("reason"))
            return
        if loop.is_closed():
            _log.warning("event_dropped_loop_closed", reason=event.get("reason"))
            return
        if running is loop:
            self._distribute(event)
            return
        try:
            loop.call_soon_threadsafe(self._distribute, event)
        except RuntimeError:
            # The loop closed after the check above.
            _log.warning("event_dropped_loop_closed", reason=event.get("reason"))

    def _bind(self, running: asyncio.AbstractEventLoop | None) -> asyncio.AbstractEventLoop | None:
        # Caller holds self._lock.
        if running is None or running is self._loop:
            return self._loop
        if self._loop is not None and not self._loop.is_closed():
            return self._loop
        if self._loop is not None:
            # Queues and tasks belong to the closed loop; start over on this one.
            for watcher in self._watchers:
                if not watcher.queue.empty():
                    _log.warning("events_lost_with_closed_loop", watcher=watcher.name, count=watcher.queue.qsize())
                watcher.queue = asyncio.Queue(self._max_queued)
                watcher.task = None
            _log.debug("event_broadcaster_rebound")
        self._loop = running
        return running

    def _distribute(self, event: dict[str, Any]) -> None:
        # Runs on the broadcaster's loop only.
        with self._lock:
            watchers = list(self._watchers)
        for watcher in watchers:
            if watcher.task is None:
                watcher.task = asyncio.create_task(self._run_watcher(watcher), name=f"event-{watcher.name}")
            try:
                watcher.queue.put_nowait(copy.deepcopy(event))
            except asyncio.QueueFull:
                _log.warning("event_dropped_queue_full", watcher=watcher.name, reason=event.get("reason"))

    async def _run_watcher(self, watcher: _Watcher) -> None:
        while True:
            event = await watcher.queue.get()
            try:
                await watcher.handler(event)
            except Exception as exc:
                _log.error("event_watcher_error", watcher=watcher.name, error=str(exc))
            finally:
                watcher.queue.task_done()

    # ------------------------------------------------------------------
    # Sink writes
    # ------------------------------------------------------------------

    async def _record_to_sink(self, sink: EventSink, correlator: EventCorrelator, event: dict[str, Any]) -> None:
        result = correlator.correlate(event)
        tries = 0
        while True:
            if await _record_event(sink, result.event, result.patch, correlator):
                return
            tries += 1
            if tries >= self._max_tries:
                _log.error(
                    "event_dropped_after_retries",
                    tries=tries,
                    name=result.event["metadata"]["name"],
                    reason=result.event.get("reason"),
                )
                return
            # Randomise the first wait so that many agents restarted together
            # do not hit the API server in lockstep.
            if tries == 1:
                await asyncio.sleep(self._sleep_duration * random.random())
            else:
                await asyncio.sleep(self._sleep_duration)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def flush(self) -> None:
        """Wait until every event recorded so far has been handled by its watchers.

        Events handed over from other threads are included as long as their
        ``action()`` call returned before ``flush()`` was awaited.
        """
        running = asyncio.get_running_loop()
        with self._lock:
            loop = self._bind(running)
        if loop is None or loop.is_closed():
            return
        if loop is not running:
            await asyncio.wrap_future(asyncio.run_coroutine_threadsafe(self._join(), loop))
        else:
            await self._join()

    async def _join(self) -> None:
        # Let callbacks scheduled by call_soon_threadsafe reach the queues.
        await asyncio.sleep(0)
        with self._lock:
            watchers = [w for w in self._watchers if w.task is not None]
        await asyncio.gather(*(w.queue.join() for w in watchers))

    async def shutdown(self) -> None:
        """Stop all watchers. Events still queued are discarded."""
        with self._lock:
            self._stopped = True
            # Tasks of a closed loop were already cancelled when it shut down.
            tasks = [w.task for w in self._watchers if w.task is not None and not w.task.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)


async def _record_event(
    sink: EventSink,
    event: dict[str, Any],
    patch: dict[str, Any] | None,
    correlator: EventCorrelator,
) -> bool:
    """Write *event* to *sink* once.

    Returns False only when the write should be retried, i.e. the API server
    could not be reached. Errors returned by the server are final.
    """
    try:
        if patch is not None:
            try:
                written = await sink.patch(event, patch)
            except ApiException as exc:
                if exc.status != 404:
                    raise
                # The event expired on the server; start a new series.
                event["count"] = 1
                event["metadata"].pop("resourceVersion", None)
                written = await sink.create(event)
        else:
            written = await sink.create(event)
    except ApiException as exc:
        if exc.status == 409:
            _log.info("event_already_exists", name=event["metadata"]["name"])
        else:
            _log.error(
                "event_rejected",
                name=event["metadata"]["name"],
                status=exc.status,
                error=exc.reason,
            )
        return True
    except (aiohttp.ClientError, OSError) as exc:
        _log.warning("event_sink_write_failed", name=event["metadata"]["name"], error=str(exc))
        return False

    resource_version = _resource_version(written)
    if resource_version:
        event["metadata"]["resourceVersion"] = resource_version
    correlator.update_state(event)
    return True


def _resource_version(written: object) -> str:
    """resourceVersion of the event the server returned, or ""."""
    if isinstance(written, dict):
        value = written.get("metadata", {}).get("resourceVersion")
    else:
        value = getattr(getattr(written, "metadata", None), "resource_version", None)
    return value if isinstance(value, str) else ""
