"""Branchifier: expands a parsed tree into a flat list of branches.

Every path from the root to a leaf becomes one branch. Function calls are
inlined, step blocks fan out into one branch per member, and ``..`` turns a
subtree into a single ordered run. Hooks declared along a path attach to
every branch below them.

The branchifier never mutates tree nodes. It builds fresh ``Step`` clones
for every position, so calling it twice on one tree is safe.
"""

import logging
from dataclasses import dataclass, field

from ..constants import (
    AFTER_EVERY_BRANCH,
    AFTER_EVERY_STEP,
    AFTER_EVERYTHING,
    BEFORE_EVERY_BRANCH,
    BEFORE_EVERY_STEP,
    BEFORE_EVERYTHING,
    FREQUENCY_RANKS,
    FREQUENCY_VAR,
    GROUP_VAR,
)
from ..errors import ConfigurationError, InfiniteLoopError, StructureError
from ..models import HOOK_LISTS, Branch, Frequency, Step
from .nodes import Node, StepBlockNode, StepNode
from .resolver import find_function_declaration
from .text import strip_quotes
from .tree_builder import ROOT_ID

logger = logging.getLogger(__name__)


@dataclass
class _Hooks:
    """Hooks declared among one node's children."""

    before_every_branch: list[Step] = field(default_factory=list)
    after_every_branch: list[Step] = field(default_factory=list)
    before_every_step: list[Step] = field(default_factory=list)
    after_every_step: list[Step] = field(default_factory=list)

    def attach(self, branch: Branch) -> None:
        for name in HOOK_LISTS:
            getattr(branch, name).extend(h.model_copy(deep=True) for h in getattr(self, name))


def hook_step(node: StepNode) -> Step:
    """Build the record a hook declaration runs as."""
    return Step(
        text=node.text,
        filename=node.filename,
        line_number=node.line_number,
        code_block=node.code_block,
        node_id=node.id,
        is_hook=True,
        is_built_in=node.is_built_in,
    )


def _first_only_index(branch: Branch) -> int:
    return next(i for i, step in enumerate(branch.steps) if step.is_only)


def remove_unwanted_branches(branches: list[Branch]) -> list[Branch]:
    """Keep only the ``$`` branches whose first ``$`` is shallowest, if any exist."""
    only = [branch for branch in branches if branch.is_only]
    if not only:
        return branches
    shallowest = min(_first_only_index(branch) for branch in only)
    return [branch for branch in only if _first_only_index(branch) == shallowest]


def assign_non_parallel_ids(branches: list[Branch]) -> None:
    """Give branches that share any ``+`` step, transitively, one common id."""
    parent: dict[int, int] = {}

    def find(x: int) -> int:
        while parent[x] != x:
            parent[x] = parent[parent[x]]
            x = parent[x]
        return x

    for branch in branches:
        for node_id in branch.non_parallel_node_ids:
            parent.setdefault(node_id, node_id)
        for a, b in zip(branch.non_parallel_node_ids, branch.non_parallel_node_ids[1:]):
            root_a, root_b = find(a), find(b)
            if root_a != root_b:
                parent[max(root_a, root_b)] = min(root_a, root_b)

    for branch in branches:
        if branch.non_parallel_node_ids:
            branch.non_parallel_id = f"np-{find(branch.non_parallel_node_ids[0])}"


class Branchifier:
    """Expands nodes of one tree into branches.

    Args:
        nodes: The tree's arena.
        groups: Only keep branches tagged with at least one of these groups.
        min_frequency: Only keep branches at or above this frequency.
            Branches without a frequency are always kept.
        no_debug: Fail on any ``$`` or ``~``.

    After ``branchify`` on the root, ``before_everything`` and
    ``after_everything`` hold the tree-wide hooks.
    """

    def __init__(
        self,
        nodes: dict[int, Node],
        groups: list[str] | None = None,
        min_frequency: Frequency | None = None,
        no_debug: bool = False,
    ) -> None:
        self.nodes = nodes
        self.groups = groups
        self.min_frequency = min_frequency
        self.no_debug = no_debug
        self.before_everything: list[Step] = []
        self.after_everything: list[Step] = []
        self._debug_nodes: list[int] = []
        self._expanding: list[int] = []

    def branchify(
        self, node_id: int = ROOT_ID, chain: list[Step] | None = None, level: int = 0
    ) -> list[Branch]:
        """Expand a node and apply the group, frequency and ``~`` filters.

        Args:
            node_id: Node to expand.
            chain: Steps that sit above the node on a branch. Function calls
                under the node resolve against them.
            level: Function-call depth the node's steps run at.

        Raises:
            ResolutionError: If a function call has no declaration.
            StructureError: On misplaced hooks or bad {var} = F declarations.
            ConfigurationError: On conflicting ``$``, ``~`` and filters.
            InfiniteLoopError: If function calls recurse.
        """
        self.before_everything = []
        self.after_everything = []
        self._debug_nodes = []
        self._expanding = []

        branches = self._branchify(self.nodes[node_id], chain or [], level) or []

        if self.groups:
            branches = [b for b in branches if any(g in b.groups for g in self.groups)]
        if self.min_frequency:
            min_rank = FREQUENCY_RANKS[self.min_frequency]
            branches = [
                b
                for b in branches
                if b.frequency is None or FREQUENCY_RANKS[b.frequency] >= min_rank
            ]

        surviving = {s.node_id for b in branches for s in b.steps if s.is_debug}
        for debug_id in self._debug_nodes:
            if debug_id not in surviving:
                node = self.nodes[debug_id]
                raise ConfigurationError(
                    "This step contains a ~, but is not included in the branches "
                    "being run (check $, groups and minimum frequency)",
                    node.filename,
                    node.line_number,
                )
        debug_branches = [b for b in branches if b.is_debug]
        if debug_branches:
            branches = debug_branches[:1]

        assign_non_parallel_ids(branches)
        logger.debug("Branchified node %d into %d branches", node_id, len(branches))
        return branches

    def _children_targets(self, child_id: int) -> list[Node]:
        """Nodes to branchify for one child: members of a plain step block, else the child."""
        child = self.nodes[child_id]
        if isinstance(child, StepBlockNode) and not child.is_sequential:
            return [self.nodes[member] for member in child.steps]
        return [child]

    def _collect_hooks(self, children_ids: list[int]) -> _Hooks:
        hooks = _Hooks()
        for child_id in children_ids:
            child = self.nodes[child_id]
            if not isinstance(child, StepNode) or not child.is_hook:
                continue
            if child.children:
                raise StructureError(
                    "A hook declaration cannot have children",
                    child.filename,
                    child.line_number,
                )
            name = child.hook_name
            step = hook_step(child)
            if name == BEFORE_EVERY_BRANCH:
                hooks.before_every_branch.insert(0, step)
            elif name == AFTER_EVERY_BRANCH:
                hooks.after_every_branch.append(step)
            elif name == BEFORE_EVERY_STEP:
                hooks.before_every_step.insert(0, step)
            elif name == AFTER_EVERY_STEP:
                hooks.after_every_step.append(step)
            else:
                if child.indents != 0:
                    raise StructureError(
                        "A Before Everything or After Everything hook must not be indented",
                        child.filename,
                        child.line_number,
                    )
                if name == BEFORE_EVERYTHING:
                    self.before_everything.insert(0, step)
                elif name == AFTER_EVERYTHING:
                    self.after_everything.append(step)
        return hooks

    def _make_step(self, node: StepNode, level: int, declaration: StepNode | None) -> Step:
        step = Step(
            text=node.text,
            filename=node.filename,
            line_number=node.line_number,
            code_block=declaration.code_block if declaration else node.code_block,
            branch_indents=level,
            node_id=node.id,
            function_declaration_id=declaration.id if declaration else None,
            function_declaration_text=declaration.text if declaration else None,
            is_function_call=node.is_function_call,
            is_textual_step=node.is_textual_step,
            is_to_do=node.is_to_do or bool(declaration and declaration.is_to_do),
            is_manual=node.is_manual or bool(declaration and declaration.is_manual),
            is_debug=node.is_debug or bool(declaration and declaration.is_debug),
            is_only=node.is_only or bool(declaration and declaration.is_only),
            is_non_parallel=node.is_non_parallel
            or bool(declaration and declaration.is_non_parallel),
            is_sequential=node.is_sequential,
            is_expected_fail=node.is_expected_fail,
            expected_fail_note=node.expected_fail_note,
            is_skip=node.is_skip or bool(declaration and declaration.is_skip),
            is_skip_below=node.is_skip_below or bool(declaration and declaration.is_skip_below),
            is_skip_branch=node.is_skip_branch
            or bool(declaration and declaration.is_skip_branch),
            is_built_in=node.is_built_in,
            vars_being_set=[a.model_copy() for a in node.vars_being_set],
        )
        if step.is_debug:
            self._debug_nodes.append(node.id)
        return step

    def _check_no_debug(self, node: StepNode) -> None:
        if self.no_debug and (node.is_only or node.is_debug):
            raise ConfigurationError(
                "A $ or ~ was found, but the no-debug flag is set",
                node.filename,
                node.line_number,
            )

    def _validate_var_setting_function(self, call: StepNode, declaration: StepNode) -> None:
        """A ``{var} = F`` target without a code block must only set one variable per step."""
        if declaration.code_block is not None:
            return
        if not declaration.children:
            raise StructureError(
                "The function called by a {variable} = F step must have a code block "
                "or children that each set one {variable}",
                call.filename,
                call.line_number,
            )
        for child_id in declaration.children:
            for target in self._children_targets(child_id):
                if (
                    not isinstance(target, StepNode)
                    or len(target.vars_being_set) != 1
                    or target.children
                ):
                    raise StructureError(
                        "Each child of a function called by a {variable} = F step must "
                        "set exactly one {variable} and have no children",
                        target.filename,
                        target.line_number,
                    )

    def _rename_returned_vars(
        self, call: StepNode, declaration: StepNode, branches: list[Branch]
    ) -> None:
        target = call.vars_being_set[0]
        returning = {
            member.id
            for child_id in declaration.children
            for member in self._children_targets(child_id)
        }
        for branch in branches:
            for step in branch.steps:
                if step.node_id in returning and step.vars_being_set:
                    step.vars_being_set = [
                        step.vars_being_set[0].model_copy(
                            update={"name": target.name, "is_local": target.is_local}
                        )
                    ]

    def _expand_call(
        self, node: StepNode, chain: list[Step], level: int
    ) -> tuple[list[Branch], StepNode]:
        """Inline a function call: one branch per branch of the declaration's body."""
        lookup = Step(
            text=node.text, filename=node.filename, line_number=node.line_number, node_id=node.id
        )
        declaration = find_function_declaration(self.nodes, chain + [lookup])
        if declaration.id in self._expanding:
            raise InfiniteLoopError("Infinite loop detected", node.filename, node.line_number)

        step = self._make_step(node, level, declaration)
        returns_var = bool(node.vars_being_set)
        if returns_var:
            self._validate_var_setting_function(node, declaration)

        self._expanding.append(declaration.id)
        try:
            body = self._branchify(
                declaration, chain + [step], level + 1, is_function_call=True
            ) or [Branch()]
        finally:
            self._expanding.pop()

        if returns_var and declaration.code_block is None:
            self._rename_returned_vars(node, declaration, body)

        branches = []
        for body_branch in body:
            branch = body_branch.clone()
            branch.unshift(step.model_copy(deep=True))
            branches.append(branch)
        return branches, declaration

    def _branches_from_node(
        self, node: Node, chain: list[Step], level: int, is_function_call: bool
    ) -> tuple[list[Branch], StepNode | None]:
        """Branches contributed by the node itself, before its children."""
        if node.id == ROOT_ID or (isinstance(node, StepNode) and is_function_call):
            return [Branch()], None

        if isinstance(node, StepBlockNode):
            # Only sequential blocks get here; plain blocks are split by the parent
            branches = [Branch()]
            for member_id in node.steps:
                member_branches = self._branchify(
                    self.nodes[member_id], chain, level, is_sequential=True
                )
                if not member_branches:
                    continue
                branches = [
                    b.clone().merge_to_end(m.clone()) for b in branches for m in member_branches
                ]
            return branches, None

        if node.is_function_call:
            return self._expand_call(node, chain, level)

        branch = Branch()
        step = self._make_step(node, level, None)
        branch.push(step)
        for assignment in node.vars_being_set:
            if assignment.name == FREQUENCY_VAR:
                branch.frequency = strip_quotes(assignment.value)
            elif assignment.name == GROUP_VAR:
                branch.groups.append(strip_quotes(assignment.value))
        return [branch], None

    def _branchify(
        self,
        node: Node,
        chain: list[Step],
        level: int,
        is_function_call: bool = False,
        is_sequential: bool = False,
    ) -> list[Branch] | None:
        """Expand one node and everything under it.

        Returns None for nodes that contribute nothing on their own
        (declarations reached without a call, hooks).
        """
        if isinstance(node, StepNode) and node.id != ROOT_ID:
            if node.is_function_declaration and not is_function_call:
                return None
            self._check_no_debug(node)

        if isinstance(node, StepNode) and node.is_sequential:
            is_sequential = True

        own_branches, declaration = self._branches_from_node(
            node, chain, level, is_function_call
        )

        children_ids = node.children
        if (
            not children_ids
            and isinstance(node, StepNode)
            and node.containing_step_block is not None
            and not is_sequential
        ):
            children_ids = self.nodes[node.containing_step_block].children

        hooks = self._collect_hooks(children_ids)
        result: list[Branch] = []
        for own in own_branches:
            chain_here = chain + own.steps
            if is_sequential:
                run = [own.clone()]
                for child_id in children_ids:
                    for target in self._children_targets(child_id):
                        below = self._branchify(target, chain_here, level, is_sequential=True)
                        if not below:
                            continue
                        run = [r.clone().merge_to_end(b.clone()) for r in run for b in below]
                result.extend(run)
                continue

            below_all: list[Branch] = []
            for child_id in children_ids:
                for target in self._children_targets(child_id):
                    below = self._branchify(target, chain_here, level)
                    if below:
                        below_all.extend(below)
            below_all = remove_unwanted_branches(below_all)

            if not below_all:
                result.append(own.clone())
            else:
                result.extend(own.clone().merge_to_end(b.clone()) for b in below_all)

        non_parallel_ids = []
        if declaration is not None and declaration.is_non_parallel:
            non_parallel_ids.append(declaration.id)
        if isinstance(node, StepNode) and node.is_non_parallel and node.id != ROOT_ID:
            non_parallel_ids.append(node.id)

        for branch in result:
            hooks.attach(branch)
            for np_id in non_parallel_ids:
                if np_id not in branch.non_parallel_node_ids:
                    branch.non_parallel_node_ids.append(np_id)

        if node.id == ROOT_ID:
            result = [branch for branch in result if branch.steps]
        return result
