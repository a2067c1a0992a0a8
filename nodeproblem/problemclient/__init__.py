"""Problem client: node conditions and node events on the control plane.

Submodules:
    client     -- ProblemClient protocol, NodeProblemClient, constructors.
    connection -- Connection configuration, hostname and node reference.
    encoding   -- NodeCondition wire encoding and the status patch.
"""

from nodeproblem.problemclient.client import (
    NodeProblemClient,
    ProblemClient,
    new_client,
    new_client_or_die,
)
from nodeproblem.problemclient.encoding import generate_patch

__all__ = [
    "NodeProblemClient",
    "ProblemClient",
    "generate_patch",
    "new_client",
    "new_client_or_die",
]
