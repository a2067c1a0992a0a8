"""Event sinks: where the broadcaster writes recorded events."""

from __future__ import annotations

from typing import Any, Protocol

from kubernetes_asyncio import client as k8s_client


class EventSink(Protocol):
    async def create(self, event: dict[str, Any]) -> object: ...

    async def patch(self, event: dict[str, Any], patch: dict[str, Any]) -> object: ...


class CoreV1EventSink:
    """Writes events through the core/v1 events API.

    The sink is not tied to a namespace; each event goes to the namespace in
    its own metadata.
    """

    def __init__(self, core_v1: k8s_client.CoreV1Api) -> None:
        self._core_v1 = core_v1

    async def create(self, event: dict[str, Any]) -> object:
        return await self._core_v1.create_namespaced_event(event["metadata"]["namespace"], event)

    async def patch(self, event: dict[str, Any], patch: dict[str, Any]) -> object:
        metadata = event["metadata"]
        return await self._core_v1.patch_namespaced_event(metadata["name"], metadata["namespace"], patch)
