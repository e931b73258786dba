"""The tree: node arena, generated branches, and the services runners use.

Example:
    >>> tree = Tree()
    >>> tree.parse_in("A -\\n    B -\\n    C -\\n", "example.tt")
    >>> tree.generate_branches()
    >>> tree.get_branch_count()
    2
"""

import json
import logging
import textwrap
from typing import Any

from ..constants import FREQUENCY_SORT_ORDER
from ..errors import StructureError
from ..models import Branch, BranchSet, Frequency, Step, StepError
from .branchifier import Branchifier
from .nodes import Node, StepNode
from .tree_builder import ROOT_ID, ParserState, new_root, parse_in

logger = logging.getLogger(__name__)


def deserialize_branches(data: str | dict[str, Any] | BranchSet) -> BranchSet:
    """Load a serialized branch set from JSON text or a decoded dict."""
    if isinstance(data, BranchSet):
        return data
    if isinstance(data, str):
        return BranchSet.model_validate_json(data)
    return BranchSet.model_validate(data)


def _same_origin(a: Step, b: Step) -> bool:
    if a.node_id is None or b.node_id is None:
        return a.text == b.text
    return a.node_id == b.node_id and a.function_declaration_id == b.function_declaration_id


class Tree:
    """Parsed test tree plus the branches generated from it.

    Attributes:
        root: Synthetic root node at indent -1.
        nodes: Arena of every parsed node, keyed by id.
        state: Parser cursor state for the next ``parse_in`` call.
        branches: Generated branches, in run order.
        before_everything: Hooks run once before any branch.
        after_everything: Hooks run once after all branches.
        elapsed: Milliseconds the last uninterrupted run took, -1 if it
            paused, None if it never finished.
        is_debug: True when the branches were narrowed to one ``~`` branch.
    """

    def __init__(self) -> None:
        self.root: StepNode = new_root()
        self.nodes: dict[int, Node] = {ROOT_ID: self.root}
        self.state = ParserState()
        self.branches: list[Branch] = []
        self.before_everything: list[Step] = []
        self.after_everything: list[Step] = []
        self.elapsed: float | None = None
        self.is_debug = False
        self.is_branchified = False

    def parse_in(self, text: str, filename: str | None = None, is_built_in: bool = False) -> None:
        """Parse source text and attach it under the root."""
        self.state = parse_in(self.nodes, self.state, text, filename, is_built_in)

    def branchify(
        self,
        node_id: int = ROOT_ID,
        groups: list[str] | None = None,
        min_frequency: Frequency | None = None,
        no_debug: bool = False,
    ) -> list[Branch]:
        """Expand one node into branches without storing them."""
        return Branchifier(self.nodes, groups, min_frequency, no_debug).branchify(node_id)

    def branchify_injected(self, text: str, chain: list[Step], level: int = 0) -> Branch:
        """Parse ``text`` as a one-off step and expand it below ``chain``.

        The parsed nodes hang under the last step of ``chain`` only while
        they're expanded, so function calls resolve the way they would at
        that position. The arena, branches and parser state are left as they
        were.

        Returns:
            The first branch the text expands into. Empty if it only declares
            functions or hooks.

        Raises:
            StructureError: If ``text`` holds more than one top-level step.
        """
        scratch: dict[int, Node] = {ROOT_ID: new_root()}
        parse_in(scratch, self.state, textwrap.dedent(text).strip("\n"))
        top = scratch[ROOT_ID].children
        if len(top) != 1:
            raise StructureError("Only one top-level step can be injected at a time")

        chain = [step for step in chain if step.node_id is not None]
        injected = {node_id: node for node_id, node in scratch.items() if node_id != ROOT_ID}
        injected[top[0]].parent = chain[-1].node_id if chain else ROOT_ID
        self.nodes.update(injected)
        try:
            branches = Branchifier(self.nodes).branchify(top[0], chain, level)
        finally:
            for node_id in injected:
                del self.nodes[node_id]
        return branches[0] if branches else Branch()

    def generate_branches(
        self,
        groups: list[str] | None = None,
        min_frequency: Frequency | None = None,
        no_debug: bool = False,
    ) -> None:
        """Branchify the whole tree, sort by frequency, and store the result."""
        branchifier = Branchifier(self.nodes, groups, min_frequency, no_debug)
        branches = branchifier.branchify(ROOT_ID)
        branches.sort(key=lambda branch: FREQUENCY_SORT_ORDER[branch.frequency])

        self.branches = branches
        self._apply_skip_modifiers()
        self.before_everything = branchifier.before_everything
        self.after_everything = branchifier.after_everything
        self.is_debug = any(branch.is_debug for branch in branches)
        self.is_branchified = True
        logger.info("Generated %d branches", len(branches))

    def _apply_skip_modifiers(self) -> None:
        """Skip branches with a ``$s`` or a leading ``.s``, and cut the others at ``.s``.

        A cut branch keeps its steps before the ``.s``. Other branches that
        share those steps up to the ``.s`` are skipped as repeats.
        """
        for branch in self.branches:
            if branch.is_skip_branch or (branch.steps and branch.steps[0].is_skip_below):
                branch.mark_branch("skip")

        for branch in self.branches:
            if branch.is_skipped:
                continue
            index = next((i for i, s in enumerate(branch.steps) if s.is_skip_below), None)
            if index is None:
                continue
            for step in branch.steps[index:]:
                step.mark("skip")
            for other in self.find_similar_branches(branch, index + 1):
                if not other.is_skipped:
                    other.mark_branch("skip")
                    other.append_to_log(
                        "Branch skipped because it is identical to an earlier branch, "
                        f"up to the .s step (ends at {branch.steps[index].filename}:"
                        f"{branch.steps[index].line_number})"
                    )

    def serialize_branches(self) -> dict[str, Any]:
        """Branches and tree-wide hooks as JSON-compatible data."""
        branch_set = BranchSet(
            branches=self.branches,
            before_everything=self.before_everything,
            after_everything=self.after_everything,
        )
        return branch_set.model_dump(mode="json", exclude_defaults=True)

    def serialize_branches_json(self) -> str:
        return json.dumps(self.serialize_branches(), indent=2)

    def merge_branches_from_prev_run(self, previous: str | dict[str, Any] | BranchSet) -> None:
        """Mark branches that passed in a previous run as ``passed_last_time``.

        Branches match when their step texts are identical and in the same
        order. Branches only present in the previous run are ignored.
        """
        previous_set = deserialize_branches(previous)
        passed = {
            branch.step_texts()
            for branch in previous_set.branches
            if branch.is_passed or branch.passed_last_time
        }
        merged = 0
        for branch in self.branches:
            if branch.step_texts() in passed:
                branch.passed_last_time = True
                merged += 1
        logger.info("%d branches passed in the previous run", merged)

    def skip_passed_branches(self) -> int:
        """Skip every not-yet-run branch that passed last time. Returns the count."""
        skipped = 0
        for branch in self.branches:
            if branch.passed_last_time and not branch.is_complete and not branch.is_running:
                branch.mark_branch("skip")
                branch.append_to_log("Branch skipped because it passed in the previous run")
                skipped += 1
        return skipped

    def get_branch_count(
        self,
        runnable_only: bool = False,
        complete_only: bool = False,
        passed_only: bool = False,
        failed_only: bool = False,
        skipped_only: bool = False,
        running_only: bool = False,
    ) -> int:
        count = 0
        for branch in self.branches:
            if runnable_only and branch.passed_last_time:
                continue
            if complete_only and not branch.is_complete:
                continue
            if passed_only and not branch.is_passed:
                continue
            if failed_only and not branch.is_failed:
                continue
            if skipped_only and not branch.is_skipped:
                continue
            if running_only and not branch.is_running:
                continue
            count += 1
        return count

    def get_step_count(
        self,
        runnable_only: bool = False,
        complete_only: bool = False,
        unexpected_only: bool = False,
    ) -> int:
        """Count steps across all branches.

        Args:
            runnable_only: Leave out branches that passed last time.
            complete_only: Only steps that finished, or sit in a finished branch.
            unexpected_only: Only steps whose outcome was not as expected.
        """
        count = 0
        for branch in self.branches:
            if runnable_only and branch.passed_last_time:
                continue
            for step in branch.steps:
                if complete_only and not (step.is_complete or branch.is_complete):
                    continue
                if unexpected_only and step.as_expected is not False:
                    continue
                count += 1
        return count

    def has_unstarted_branches(self) -> bool:
        return any(not b.is_running and not b.is_complete for b in self.branches)

    def next_branch(self) -> Branch | None:
        """Claim the next branch that can start now.

        Skips branches whose non-parallel id is held by a running branch.
        Returns None when nothing can start, which is not the same as every
        branch being done.
        """
        claimed = {b.non_parallel_id for b in self.branches if b.is_running and b.non_parallel_id}
        for branch in self.branches:
            if branch.is_running or branch.is_complete:
                continue
            if branch.non_parallel_id is not None and branch.non_parallel_id in claimed:
                continue
            branch.is_running = True
            return branch
        return None

    def find_similar_branches(
        self,
        branch: Branch,
        common_step_count: int,
        candidates: list[Branch] | None = None,
    ) -> list[Branch]:
        """Other branches whose first ``common_step_count`` steps come from the same nodes."""
        if len(branch.steps) < common_step_count:
            return []
        similar = []
        for other in self.branches if candidates is None else candidates:
            if other is branch or len(other.steps) < common_step_count:
                continue
            if all(
                _same_origin(branch.steps[i], other.steps[i]) for i in range(common_step_count)
            ):
                similar.append(other)
        return similar

    def _skip_repeats(self, branch: Branch, common_step_count: int, message: str) -> None:
        for other in self.find_similar_branches(branch, common_step_count):
            if other.is_running or other.is_complete:
                continue
            other.mark_branch("skip")
            other.append_to_log(message)

    def mark_step(
        self,
        step: Step,
        branch: Branch,
        is_passed: bool,
        as_expected: bool,
        error: StepError | None = None,
        stop_branch_now: bool = False,
        skip_repeat_branches: bool = False,
    ) -> None:
        """Record a step's outcome and finish the branch when it's over.

        Args:
            step: Step that just ran.
            branch: Branch the step belongs to.
            is_passed: Whether the step passed.
            as_expected: Whether that outcome was the expected one.
            error: Error to record on the step.
            stop_branch_now: Finish the branch even if steps remain.
            skip_repeat_branches: When the branch fails, skip not-yet-run
                branches that share every step up to this one.
        """
        step.mark("pass" if is_passed else "fail", error)
        step.as_expected = as_expected

        if stop_branch_now or step is branch.steps[-1]:
            branch.finish_off()

        if skip_repeat_branches and branch.is_failed and not is_passed:
            index = branch.steps.index(step)
            self._skip_repeats(
                branch,
                index + 1,
                "Branch skipped because it is identical to an earlier branch that "
                f"ended in a failure, up to the failed step "
                f"(ends at {step.filename}:{step.line_number})",
            )

    def skip_step(self, step: Step, branch: Branch) -> None:
        """Mark a step skipped, finishing the branch if it was the last one."""
        step.mark("skip")
        if step is branch.steps[-1]:
            branch.finish_off()

    def next_step(
        self, branch: Branch, advance: bool = False, skip_repeat_branches: bool = False
    ) -> Step | None:
        """Step that follows the running one, or the first step.

        With ``advance``, the running flag moves onto the returned step, and
        the branch is finished when no step is left. A ``-T`` or ``-M`` step
        ends the branch as passed instead of being returned. So does a
        ``.s`` step.
        """
        if branch.is_complete:
            return None

        index = branch.running_index()
        next_index = 0 if index is None else index + 1
        step = branch.steps[next_index] if next_index < len(branch.steps) else None

        if step is not None and step.is_skip_below:
            if advance:
                branch.finish_off()
            return None

        if step is not None and (step.is_to_do or step.is_manual):
            if advance:
                branch.finish_off()
                if skip_repeat_branches:
                    self._skip_repeats(
                        branch,
                        next_index + 1,
                        "Branch skipped because it is identical to an earlier branch, "
                        f"up to the -T or -M step (ends at {step.filename}:{step.line_number})",
                    )
            return None

        if advance:
            if index is not None:
                branch.steps[index].is_running = False
            if step is None:
                branch.finish_off()
                return None
            step.is_running = True
        return step
