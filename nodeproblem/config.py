"""Configuration loading from environment variables."""

from __future__ import annotations

import os

from nodeproblem.models.config import LogConfig, NodeProblemConfig, ProblemClientConfig


def _env(key: str, default: str = "") -> str:
    return os.environ.get(f"NPD_{key}", default)


def _env_bool(key: str, default: bool = False) -> bool:
    val = _env(key, str(default).lower())
    return val.lower() in ("true", "1", "yes")


def _validate_log_level(value: str) -> str:
    valid = {"debug", "info", "warning", "error"}
    if value.lower() not in valid:
        raise ValueError(f"Invalid log level: {value}. Must be one of {valid}")
    return value.lower()


def load_config(
    hostname_override: str | None = None,
    insecure_connection: bool | None = None,
    log_level: str | None = None,
) -> NodeProblemConfig:
    """Load configuration from NPD_* environment variables.

    Explicit arguments (command-line flags) take precedence over the
    environment when they are not None.
    """
    if hostname_override is None:
        hostname_override = _env("HOSTNAME_OVERRIDE", "")
    if insecure_connection is None:
        insecure_connection = _env_bool("INSECURE_CONNECTION", False)
    if log_level is None:
        log_level = _env("LOG_LEVEL", "info")
    return NodeProblemConfig(
        client=ProblemClientConfig(
            hostname_override=hostname_override,
            insecure_connection=insecure_connection,
        ),
        log=LogConfig(level=_validate_log_level(log_level)),
    )
