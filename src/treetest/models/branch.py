"""Branch model: one fully resolved execution path through a tree."""

from typing import Literal

from pydantic import BaseModel, Field

from .step import Step, StepError

Frequency = Literal["high", "med", "low"]

HOOK_LISTS = (
    "before_every_branch",
    "after_every_branch",
    "before_every_step",
    "after_every_step",
)


class Branch(BaseModel):
    """Ordered sequence of step clones plus hooks and outcome flags.

    Attributes:
        steps: Steps to execute, in order.
        before_every_branch: Hooks run before the first step.
        after_every_branch: Hooks run after the last step.
        before_every_step: Hooks run before each step.
        after_every_step: Hooks run after each step.
        frequency: Deepest ``{frequency}`` seen along the path.
        groups: Every ``{group}`` seen along the path, in order.
        non_parallel_id: Branches sharing an id run one at a time.
        passed_last_time: Set when a previous run of an identical branch
            passed.
    """

    steps: list[Step] = Field(default_factory=list)
    before_every_branch: list[Step] = Field(default_factory=list)
    after_every_branch: list[Step] = Field(default_factory=list)
    before_every_step: list[Step] = Field(default_factory=list)
    after_every_step: list[Step] = Field(default_factory=list)

    frequency: Frequency | None = None
    groups: list[str] = Field(default_factory=list)
    non_parallel_id: str | None = None
    is_debug: bool = False

    # Only meaningful while branchifying
    is_only: bool = Field(default=False, exclude=True)
    is_skip_branch: bool = Field(default=False, exclude=True)
    non_parallel_node_ids: list[int] = Field(default_factory=list, exclude=True)

    is_running: bool = False
    is_passed: bool = False
    is_failed: bool = False
    is_skipped: bool = False
    passed_last_time: bool = False
    error: StepError | None = None
    log: list[str] = Field(default_factory=list)

    @property
    def is_complete(self) -> bool:
        return self.is_passed or self.is_failed or self.is_skipped

    def step_texts(self) -> tuple[str, ...]:
        return tuple(step.text for step in self.steps)

    def clone(self) -> "Branch":
        return self.model_copy(deep=True)

    def push(self, step: Step) -> None:
        """Append a step, taking on its only, debug and skip-branch modifiers."""
        self.steps.append(step)
        self._take_modifiers(step)

    def unshift(self, step: Step) -> None:
        """Prepend a step, taking on its only, debug and skip-branch modifiers."""
        self.steps.insert(0, step)
        self._take_modifiers(step)

    def merge_to_end(self, other: "Branch") -> "Branch":
        """Append another branch's steps and fold in its hooks and tags.

        Before-type hooks of ``other`` go in front of this branch's hooks,
        after-type hooks go behind them. Returns self.
        """
        for step in other.steps:
            self.push(step)

        self.before_every_branch = other.before_every_branch + self.before_every_branch
        self.after_every_branch = self.after_every_branch + other.after_every_branch
        self.before_every_step = other.before_every_step + self.before_every_step
        self.after_every_step = self.after_every_step + other.after_every_step

        if other.frequency is not None:
            self.frequency = other.frequency
        self.groups.extend(other.groups)
        for node_id in other.non_parallel_node_ids:
            if node_id not in self.non_parallel_node_ids:
                self.non_parallel_node_ids.append(node_id)
        self.is_only = self.is_only or other.is_only
        self.is_debug = self.is_debug or other.is_debug
        self.is_skip_branch = self.is_skip_branch or other.is_skip_branch
        return self

    def _take_modifiers(self, step: Step) -> None:
        self.is_only = self.is_only or step.is_only
        self.is_debug = self.is_debug or step.is_debug
        self.is_skip_branch = self.is_skip_branch or step.is_skip_branch

    def append_to_log(self, text: str) -> None:
        self.log.append(text)

    def mark_branch(
        self,
        state: Literal["pass", "fail", "skip"],
        error: StepError | None = None,
    ) -> None:
        """Put the branch in a terminal state and release it."""
        self.is_running = False
        self.is_passed = state == "pass"
        self.is_failed = state == "fail"
        self.is_skipped = state == "skip"
        if error is not None:
            self.error = error

    def finish_off(self) -> None:
        """Fail the branch if any step failed, otherwise pass it."""
        for step in self.steps:
            step.is_running = False
        if any(step.is_failed for step in self.steps):
            self.mark_branch("fail")
        else:
            self.mark_branch("pass")

    def running_index(self) -> int | None:
        for i, step in enumerate(self.steps):
            if step.is_running:
                return i
        return None

    def reset_outcome(self) -> None:
        self.is_running = False
        self.is_passed = False
        self.is_failed = False
        self.is_skipped = False
        self.error = None
        self.log = []
        for step in self.steps:
            step.reset_outcome()


class BranchSet(BaseModel):
    """Serialized form of a generated tree: branches plus tree-wide hooks."""

    branches: list[Branch] = Field(default_factory=list)
    before_everything: list[Step] = Field(default_factory=list)
    after_everything: list[Step] = Field(default_factory=list)
