"""Pydantic data models for generated branches and runner snapshots.

This package defines the branch-side data structures:
- Steps cloned into branches, and hook records (Step)
- Parsed variable assignments and element finders
- Branches and the serialized branch set (Branch, BranchSet)
- Runner state snapshots (RunnerSnapshot)

Tree-side nodes live in ``treetest.core.nodes``; these models only hold
ids that point back into the tree.

Example:
    >>> from treetest.models import Branch, Step
    >>> branch = Branch(steps=[Step(text="Open home page")])
    >>> branch.model_dump_json(exclude_defaults=True)
"""

from .branch import HOOK_LISTS, Branch, BranchSet, Frequency
from .runner import RunnerSnapshot, RunnerState
from .step import ElementFinder, Step, StepError, VarAssignment

__all__ = [
    "HOOK_LISTS",
    "Branch",
    "BranchSet",
    "ElementFinder",
    "Frequency",
    "RunnerSnapshot",
    "RunnerState",
    "Step",
    "StepError",
    "VarAssignment",
]
