"""Function resolver: matches a call to the declaration it invokes."""

from ..constants import GHERKIN_PREFIXES
from ..errors import ResolutionError
from ..models import Step
from .nodes import Node, StepNode
from .text import to_signature


def call_name(node: StepNode) -> str:
    """Text of the function being called; for ``{var} = F``, that's ``F``."""
    if node.vars_being_set:
        return node.vars_being_set[0].value
    return node.text


def _strip_gherkin(signature: str) -> str:
    first, _, rest = signature.partition(" ")
    if first in GHERKIN_PREFIXES and rest:
        return rest
    return signature


def is_function_match(call_text: str, declaration_text: str) -> bool:
    """Check whether a call matches a declaration name.

    Comparison is case-insensitive and whitespace-normalized. Every input in
    the call (``'string'``, ``[finder]``, ``{var}``, ``{{var}}``) lines up
    with a ``{{param}}`` in the declaration. A leading Given/When/Then/And on
    the call is ignored.
    """
    call_signature = to_signature(call_text)
    declaration_signature = to_signature(declaration_text)
    return call_signature == declaration_signature or (
        _strip_gherkin(call_signature) == declaration_signature
    )


def _siblings(nodes: dict[int, Node], node: Node) -> list[int]:
    parent = node.parent
    if isinstance(node, StepNode) and node.containing_step_block is not None:
        parent = nodes[node.containing_step_block].parent
    if parent is None:
        return []
    return nodes[parent].children


def _search(nodes: dict[int, Node], candidates: list[int], name: str) -> StepNode | None:
    for node_id in candidates:
        candidate = nodes[node_id]
        if (
            isinstance(candidate, StepNode)
            and candidate.is_function_declaration
            and not candidate.is_hook
            and is_function_match(name, candidate.text)
        ):
            return candidate
    return None


def find_function_declaration(nodes: dict[int, Node], chain: list[Step]) -> StepNode:
    """Find the declaration a function call resolves to.

    Args:
        nodes: The tree's arena.
        chain: Steps already on the branch, top-down, ending with the call.
            Each must carry its ``node_id``.

    Returns:
        The first matching declaration, scanning outward from the call: the
        siblings of each step in the chain, then the children of the
        declaration the step above it called into.

    Raises:
        ResolutionError: If no visible declaration matches.
    """
    call = chain[-1]
    call_node = nodes[call.node_id]
    assert isinstance(call_node, StepNode)
    name = call_name(call_node)

    for i in range(len(chain) - 1, -1, -1):
        node = nodes[chain[i].node_id]
        match = _search(nodes, _siblings(nodes, node), name)
        if match is not None:
            return match
        if i > 0 and chain[i - 1].function_declaration_id is not None:
            declaration = nodes[chain[i - 1].function_declaration_id]
            match = _search(nodes, declaration.children, name)
            if match is not None:
                return match

    raise ResolutionError(
        f"The function '{name}' cannot be found. Is there a typo, or did you mean "
        "to make this a textual step (with a - at the end)?",
        call.filename,
        call.line_number,
    )
