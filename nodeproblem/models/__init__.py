"""Core data structures for nodeproblem."""

from nodeproblem.models.config import LogConfig, NodeProblemConfig, ProblemClientConfig

__all__ = [
    "LogConfig",
    "NodeProblemConfig",
    "ProblemClientConfig",
]
