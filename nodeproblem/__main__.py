"""Entry point for `python -m nodeproblem`.

Usage:
    python -m nodeproblem conditions get Ready
    python -m nodeproblem event --type Warning --source kernel-monitor --reason OOMKilling "..."
"""

from __future__ import annotations

from nodeproblem.cli import cli

cli()
