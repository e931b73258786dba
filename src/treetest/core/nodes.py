"""Tree-side node records.

Nodes live in the tree's arena (``Tree.nodes``) and refer to each other by
integer id. Nothing here points at a Python object owned elsewhere.
"""

from dataclasses import dataclass, field

from ..constants import HOOK_NAMES
from ..models import ElementFinder, VarAssignment
from .text import canonicalize


@dataclass
class StepNode:
    """One parsed source line."""

    text: str
    filename: str | None = None
    line_number: int | None = None
    line: str = ""
    id: int = -1
    indents: int = 0
    code_block: str | None = None
    comment: str | None = None

    is_function_declaration: bool = False
    is_function_call: bool = False
    is_textual_step: bool = False
    is_to_do: bool = False
    is_manual: bool = False
    is_debug: bool = False
    is_only: bool = False
    is_non_parallel: bool = False
    is_sequential: bool = False
    is_expected_fail: bool = False
    expected_fail_note: str | None = None
    is_skip: bool = False
    is_skip_below: bool = False
    is_skip_branch: bool = False
    is_hook: bool = False
    is_built_in: bool = False

    vars_being_set: list[VarAssignment] = field(default_factory=list)
    element_finders: list[ElementFinder] = field(default_factory=list)

    parent: int | None = None
    children: list[int] = field(default_factory=list)
    containing_step_block: int | None = None

    @property
    def is_blank(self) -> bool:
        return self.text == ""

    @property
    def hook_name(self) -> str | None:
        if not self.is_hook:
            return None
        name = canonicalize(self.text)
        return name if name in HOOK_NAMES else None


@dataclass
class StepBlockNode:
    """Consecutive same-indent steps that branch off independently."""

    steps: list[int]
    filename: str | None = None
    line_number: int | None = None
    id: int = -1
    indents: int = 0
    is_sequential: bool = False
    is_built_in: bool = False

    parent: int | None = None
    children: list[int] = field(default_factory=list)


Node = StepNode | StepBlockNode
