"""Connection configuration and node identity resolution.

Both are leaves of the client's construction order: neither touches the
network, and neither is revisited after the client is built.
"""

from __future__ import annotations

import os
import socket
from collections.abc import Mapping

import structlog
from kubernetes_asyncio import client as k8s_client
from kubernetes_asyncio import config as k8s_config

from nodeproblem.exceptions import ConfigResolutionError
from nodeproblem.models.config import ProblemClientConfig

_log = structlog.get_logger(component="problemclient.connection")

SERVICE_HOST_ENV = "KUBERNETES_SERVICE_HOST"
SERVICE_PORT_ENV = "KUBERNETES_SERVICE_PORT"


def join_host_port(host: str, port: str) -> str:
    """Combine host and port into ``host:port``, bracketing IPv6 literals."""
    if ":" in host:
        return f"[{host}]:{port}"
    return f"{host}:{port}"


def get_cluster_host(environ: Mapping[str, str] | None = None) -> str:
    """Build the API server URL from the in-cluster service environment.

    Raises ConfigResolutionError if either variable is unset or empty.
    """
    env = os.environ if environ is None else environ
    host = env.get(SERVICE_HOST_ENV, "")
    port = env.get(SERVICE_PORT_ENV, "")
    if not host or not port:
        raise ConfigResolutionError(
            "unable to load in-cluster configuration, "
            f"{SERVICE_HOST_ENV} and {SERVICE_PORT_ENV} must be defined"
        )
    return "https://" + join_host_port(host, port)


def load_connection_config(
    cfg: ProblemClientConfig,
    environ: Mapping[str, str] | None = None,
) -> k8s_client.Configuration:
    """Resolve the API server connection configuration.

    Secure mode uses in-cluster service account discovery. Insecure mode
    builds the host from the service environment variables and disables TLS
    verification.
    """
    configuration = k8s_client.Configuration()
    if not cfg.insecure_connection:
        try:
            k8s_config.load_incluster_config(client_configuration=configuration)
        except k8s_config.ConfigException as exc:
            raise ConfigResolutionError(str(exc)) from exc
        _log.info("in_cluster_config_loaded", host=configuration.host)
        return configuration

    configuration.host = get_cluster_host(environ)
    configuration.verify_ssl = False
    _log.warning("tls_verification_disabled", host=configuration.host)
    return configuration


def get_hostname(hostname_override: str = "") -> str:
    """Return the node name: the override if set, else the machine hostname.

    The result is trimmed and lower-cased to match the node object name the
    kubelet registers.
    """
    hostname = hostname_override
    if not hostname:
        hostname = socket.gethostname()
    return hostname.strip().lower()


def get_node_ref(node_name: str) -> k8s_client.V1ObjectReference:
    """Reference to the node object used as the subject of recorded events.

    The node name doubles as the UID; the reference is never refreshed from
    the server.
    """
    return k8s_client.V1ObjectReference(
        kind="Node",
        name=node_name,
        uid=node_name,
        namespace="",
    )
