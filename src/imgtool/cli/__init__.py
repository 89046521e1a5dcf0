"""
img-tool CLI Module.

Provides command-line interface for img-tool operations.
"""

from imgtool.cli.main import main, cli

__all__ = ["main", "cli"]
