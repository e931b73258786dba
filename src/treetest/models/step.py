"""Step model for branch steps and hooks.

A branch never holds tree nodes directly. Each position in a branch is a
``Step`` cloned from the node it came from, so the same tree node can sit in
many branches with independent outcomes.
"""

from typing import Literal

from pydantic import BaseModel, Field


class VarAssignment(BaseModel):
    """One ``{var} = value`` assignment on a line.

    Attributes:
        name: Variable name without braces.
        value: Right-hand side exactly as written (quotes included).
        is_local: True for ``{{var}}``.
    """

    name: str
    value: str
    is_local: bool = False


class ElementFinder(BaseModel):
    """Parsed ``[...]`` element-finder shorthand."""

    ordinal: int | None = None
    text: str | None = None
    variable: str | None = None
    next_to: str | None = None


class StepError(BaseModel):
    """Error recorded on a step, hook or branch instead of being raised."""

    message: str
    filename: str | None = None
    line_number: int | None = None
    traceback: str | None = None


class Step(BaseModel):
    """A step as it appears inside a branch, or a hook record.

    Attributes:
        text: Step text with identifiers, code block and comment removed.
        filename: Source file of the originating line.
        line_number: Source line of the originating line.
        code_block: Body between ``{`` and ``}``; for function calls, the
            declaration's body.
        branch_indents: Function-call nesting depth at which this step runs.
        node_id: Arena id of the originating tree node. Not serialized.
        function_declaration_id: Arena id of the resolved declaration.
            Not serialized.
        function_declaration_text: Text of the resolved declaration, used to
            bind ``{{param}}`` inputs at run time.
        vars_being_set: Assignments this step performs.
    """

    text: str
    filename: str | None = None
    line_number: int | None = None
    code_block: str | None = None
    branch_indents: int = 0

    node_id: int | None = Field(default=None, exclude=True)
    function_declaration_id: int | None = Field(default=None, exclude=True)
    function_declaration_text: str | None = None

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
    vars_being_set: list[VarAssignment] = Field(default_factory=list)

    is_running: bool = False
    is_passed: bool = False
    is_failed: bool = False
    is_skipped: bool = False
    as_expected: bool | None = None
    error: StepError | None = None
    log: list[str] = Field(default_factory=list)

    @property
    def is_complete(self) -> bool:
        return self.is_passed or self.is_failed or self.is_skipped

    def mark(
        self,
        state: Literal["pass", "fail", "skip"],
        error: StepError | None = None,
    ) -> None:
        """Set exactly one outcome flag and record the error, if any."""
        self.is_passed = state == "pass"
        self.is_failed = state == "fail"
        self.is_skipped = state == "skip"
        if error is not None:
            self.error = error

    def reset_outcome(self) -> None:
        self.is_running = False
        self.is_passed = False
        self.is_failed = False
        self.is_skipped = False
        self.as_expected = None
        self.error = None
        self.log = []
