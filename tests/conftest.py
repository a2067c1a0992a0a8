"""Shared fixtures for nodeproblem tests.

The control plane is replaced by an AsyncMock standing in for CoreV1Api, so
no test touches a real cluster.
"""

from __future__ import annotations

from collections.abc import Iterator
from datetime import UTC, datetime
from typing import Any
from unittest.mock import AsyncMock

import pytest
import structlog
from kubernetes_asyncio.client import V1Node, V1NodeCondition, V1NodeStatus, V1ObjectMeta

from nodeproblem.clock import FakeClock
from nodeproblem.problemclient import NodeProblemClient

NODE_NAME = "node-a"

T0 = datetime(2026, 2, 18, 12, 0, 0, tzinfo=UTC)


def make_condition(
    condition_type: str = "Ready",
    status: str = "True",
    reason: str | None = "KubeletReady",
    message: str | None = "kubelet is posting ready status",
    last_heartbeat_time: datetime | None = None,
    last_transition_time: datetime | None = None,
) -> V1NodeCondition:
    """Create a V1NodeCondition with sensible defaults for testing."""
    return V1NodeCondition(
        type=condition_type,
        status=status,
        reason=reason,
        message=message,
        last_heartbeat_time=last_heartbeat_time or T0,
        last_transition_time=last_transition_time or T0,
    )


def make_node(conditions: list[V1NodeCondition] | None, name: str = NODE_NAME) -> V1Node:
    return V1Node(
        metadata=V1ObjectMeta(name=name),
        status=V1NodeStatus(conditions=conditions),
    )


def make_core_v1(node: V1Node | None = None) -> AsyncMock:
    core_v1 = AsyncMock()
    core_v1.read_node.return_value = node if node is not None else make_node([])
    return core_v1


@pytest.fixture(autouse=True)
def captured_logs() -> Iterator[list[dict[str, Any]]]:
    with structlog.testing.capture_logs() as logs:
        yield logs


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(T0)


@pytest.fixture
def core_v1() -> AsyncMock:
    return make_core_v1()


@pytest.fixture
def problem_client(core_v1: AsyncMock, clock: FakeClock) -> NodeProblemClient:
    return NodeProblemClient(NODE_NAME, core_v1, clock=clock)
