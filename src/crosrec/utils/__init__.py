"""
Utility modules for the recovery tool.

This package groups helpers shared across core logic and the CLI.
"""

from .command import CmdResult, run_cmd

__all__ = [
    "CmdResult",
    "run_cmd",
]
