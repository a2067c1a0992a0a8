"""Exception hierarchy for the node problem client.

Read and patch failures are not listed here: the ``kubernetes_asyncio``
``ApiException`` (and transport errors from aiohttp) reach the caller
unwrapped.
"""

from __future__ import annotations


class ProblemClientError(Exception):
    """Base class for errors raised by nodeproblem."""


class ConfigResolutionError(ProblemClientError):
    """Connection configuration could not be resolved.

    Raised when in-cluster discovery fails, or when insecure mode is selected
    and KUBERNETES_SERVICE_HOST / KUBERNETES_SERVICE_PORT are not both set.
    """


class PatchEncodingError(ProblemClientError):
    """The condition list could not be serialised into a status patch."""

    def __init__(self, cause: Exception) -> None:
        super().__init__(f"unable to encode node condition patch: {cause}")
        self.cause = cause
