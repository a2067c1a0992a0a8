"""nodeproblem command-line interface.

Exposes:
    cli -- Click group entry point (registered as ``nodeproblem`` script).
"""

from nodeproblem.cli.main import cli

__all__ = ["cli"]
