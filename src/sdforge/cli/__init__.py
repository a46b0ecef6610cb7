"""
sdforge CLI Module.

Provides the command-line interface for backup and restore operations.
"""

from sdforge.cli.main import main, cli

__all__ = ["main", "cli"]
