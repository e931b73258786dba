"""treetest: branching test trees written in an indentation-based DSL."""

__version__ = "0.1.0"
