"""Wire encoding of node conditions and the status patch."""

from __future__ import annotations

import json
from collections.abc import Iterable
from datetime import datetime
from typing import Any

from kubernetes_asyncio.client import V1NodeCondition

from nodeproblem.clock import format_rfc3339
from nodeproblem.exceptions import PatchEncodingError


def _encode_time(t: datetime | None) -> str | None:
    if t is None:
        return None
    if not isinstance(t, datetime):
        raise TypeError(f"expected datetime, got {type(t).__name__}")
    return format_rfc3339(t)


def _decode_time(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value)


def encode_condition(condition: V1NodeCondition) -> dict[str, Any]:
    """Serialise a condition under its API field names.

    Field order follows the NodeCondition schema. Timestamps are always
    present (null when unset); reason and message are omitted when empty.
    """
    encoded: dict[str, Any] = {
        "type": condition.type,
        "status": condition.status,
        "lastHeartbeatTime": _encode_time(condition.last_heartbeat_time),
        "lastTransitionTime": _encode_time(condition.last_transition_time),
    }
    if condition.reason:
        encoded["reason"] = condition.reason
    if condition.message:
        encoded["message"] = condition.message
    return encoded


def decode_condition(data: dict[str, Any]) -> V1NodeCondition:
    """Inverse of encode_condition; raises KeyError/ValueError on bad input."""
    return V1NodeCondition(
        type=data["type"],
        status=data["status"],
        reason=data.get("reason"),
        message=data.get("message"),
        last_heartbeat_time=_decode_time(data.get("lastHeartbeatTime")),
        last_transition_time=_decode_time(data.get("lastTransitionTime")),
    )


def generate_patch(conditions: Iterable[V1NodeCondition]) -> dict[str, Any]:
    """Build the strategic merge patch ``{"status":{"conditions":[...]}}``.

    Raises PatchEncodingError if any condition cannot be encoded as JSON.
    """
    try:
        patch = {"status": {"conditions": [encode_condition(c) for c in conditions]}}
        json.dumps(patch)
    except (AttributeError, TypeError, ValueError) as exc:
        raise PatchEncodingError(exc) from exc
    return patch


def encode_patch(patch: dict[str, Any]) -> bytes:
    """Compact JSON bytes of *patch* (no whitespace between tokens)."""
    return json.dumps(patch, separators=(",", ":")).encode()
