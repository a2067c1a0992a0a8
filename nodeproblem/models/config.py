"""Configuration data structures."""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(frozen=True)
class ProblemClientConfig:
    """Node problem client configuration.

    Replaces the process-wide ``--hostname-override`` and
    ``--insecure-connection`` flags with an explicit record handed to the
    client constructor.
    """

    hostname_override: str = ""
    insecure_connection: bool = False


@dataclass
class LogConfig:
    """Logging configuration."""

    level: str = "info"


@dataclass
class NodeProblemConfig:
    """Top-level configuration."""

    client: ProblemClientConfig = field(default_factory=ProblemClientConfig)
    log: LogConfig = field(default_factory=LogConfig)
