"""CLI command implementations for treetest.

This package contains the implementation of each CLI command,
separated from the CLI framework setup in cli.py.
"""

from .branches import branches, build_tree
from .init import init
from .run import run

__all__ = [
    "branches",
    "build_tree",
    "init",
    "run",
]
