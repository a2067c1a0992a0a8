"""Click command group for nodeproblem.

Every subcommand builds one NodeProblemClient for the local node, performs a
single operation and exits. Connection failures at start-up terminate the
process with status 1; API errors are reported as click errors.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Coroutine
from pathlib import Path
from typing import Any, TypeVar

import click
from kubernetes_asyncio.client import V1NodeCondition
from kubernetes_asyncio.client.exceptions import ApiException

from nodeproblem.clock import RealClock
from nodeproblem.config import load_config
from nodeproblem.models.config import NodeProblemConfig
from nodeproblem.observability.logging import get_logger, setup_logging
from nodeproblem.problemclient import new_client_or_die
from nodeproblem.problemclient.encoding import decode_condition, encode_condition, encode_patch, generate_patch
from nodeproblem.record import EVENT_TYPE_NORMAL, EVENT_TYPE_WARNING

_T = TypeVar("_T")


@click.group()
@click.option(
    "--hostname-override",
    default="",
    envvar="NPD_HOSTNAME_OVERRIDE",
    help="If non-empty, use this string as the node name instead of the actual hostname.",
)
@click.option(
    "--insecure-connection",
    is_flag=True,
    default=False,
    envvar="NPD_INSECURE_CONNECTION",
    help="Skip TLS verification and locate the API server from KUBERNETES_SERVICE_HOST/PORT.",
)
@click.option(
    "--log-level",
    default="info",
    envvar="NPD_LOG_LEVEL",
    type=click.Choice(["debug", "info", "warning", "error"], case_sensitive=False),
)
@click.pass_context
def cli(ctx: click.Context, hostname_override: str, insecure_connection: bool, log_level: str) -> None:
    """Read and update this node's conditions and record node events."""
    config = load_config(
        hostname_override=hostname_override,
        insecure_connection=insecure_connection,
        log_level=log_level,
    )
    setup_logging(config.log.level)
    get_logger("cli").debug(
        "configuration_loaded",
        hostname_override=config.client.hostname_override,
        insecure_connection=config.client.insecure_connection,
    )
    ctx.obj = config


# ---------------------------------------------------------------------------
# conditions
# ---------------------------------------------------------------------------


@cli.group()
def conditions() -> None:
    """Inspect or update node conditions."""


@conditions.command("get")
@click.argument("condition_types", nargs=-1, required=True)
@click.pass_obj
def get_conditions(config: NodeProblemConfig, condition_types: tuple[str, ...]) -> None:
    """Print the node's conditions of the given TYPES as JSON."""
    result = _run(_get_conditions(config, list(condition_types)))
    click.echo(json.dumps(result, indent=2))


async def _get_conditions(config: NodeProblemConfig, condition_types: list[str]) -> list[dict[str, object]]:
    async with new_client_or_die(config.client) as client:
        found = await client.get_conditions(condition_types)
    return [encode_condition(c) for c in found]


@conditions.command("set")
@click.option("--type", "condition_type", help="Condition type, e.g. KernelDeadlock.")
@click.option("--status", type=click.Choice(["True", "False", "Unknown"]), help="Condition status.")
@click.option("--reason", default="", help="One-word CamelCase reason.")
@click.option("--message", default="", help="Human readable details.")
@click.option(
    "--from-file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="JSON array of conditions using API field names.",
)
@click.option("--dry-run", is_flag=True, help="Print the status patch instead of sending it.")
@click.pass_obj
def set_conditions(
    config: NodeProblemConfig,
    condition_type: str | None,
    status: str | None,
    reason: str,
    message: str,
    from_file: Path | None,
    dry_run: bool,
) -> None:
    """Set or update node conditions."""
    if from_file is not None:
        new_conditions = _load_conditions(from_file)
    elif condition_type and status:
        new_conditions = [
            V1NodeCondition(
                type=condition_type,
                status=status,
                reason=reason or None,
                message=message or None,
                last_transition_time=RealClock().now(),
            )
        ]
    else:
        raise click.UsageError("either --from-file or both --type and --status are required")

    if dry_run:
        for condition in new_conditions:
            condition.last_heartbeat_time = RealClock().now()
        click.echo(encode_patch(generate_patch(new_conditions)).decode())
        return

    _run(_set_conditions(config, new_conditions))
    click.echo(f"updated {len(new_conditions)} condition(s)")


def _load_conditions(path: Path) -> list[V1NodeCondition]:
    try:
        raw = json.loads(path.read_text())
        if not isinstance(raw, list):
            raise ValueError("expected a JSON array")
        return [decode_condition(item) for item in raw]
    except (KeyError, TypeError, ValueError) as exc:
        raise click.BadParameter(f"{path}: {exc}", param_hint="--from-file") from exc


async def _set_conditions(config: NodeProblemConfig, new_conditions: list[V1NodeCondition]) -> None:
    async with new_client_or_die(config.client) as client:
        await client.set_conditions(new_conditions)


# ---------------------------------------------------------------------------
# event
# ---------------------------------------------------------------------------


@cli.command("event")
@click.option(
    "--type",
    "event_type",
    type=click.Choice([EVENT_TYPE_NORMAL, EVENT_TYPE_WARNING]),
    default=EVENT_TYPE_NORMAL,
    show_default=True,
)
@click.option("--source", required=True, help="Reporting component, e.g. kernel-monitor.")
@click.option("--reason", required=True, help="One-word CamelCase reason.")
@click.argument("message")
@click.pass_obj
def record_event(config: NodeProblemConfig, event_type: str, source: str, reason: str, message: str) -> None:
    """Record MESSAGE as an event on this node."""
    _run(_record_event(config, event_type, source, reason, message))


async def _record_event(config: NodeProblemConfig, event_type: str, source: str, reason: str, message: str) -> None:
    async with new_client_or_die(config.client) as client:
        client.eventf(event_type, source, reason, "%s", message)
        await client.flush_events()


def _run(coro: Coroutine[Any, Any, _T]) -> _T:
    try:
        return asyncio.run(coro)
    except ApiException as exc:
        raise click.ClickException(f"api server returned {exc.status}: {exc.reason}") from exc
