"""nodeproblem: node condition and event client for node-health agents."""

__version__ = "0.1.0"
