"""Tree builder: turns source text into linked nodes in a tree's arena.

Parsing runs in passes over the file:
1. Parse every line, absorbing code block bodies up to their closing ``}``.
2. Validate ``..`` sequential markers.
3. Collapse runs of consecutive same-indent steps into step blocks.
4. Link parents and children by indentation.

Each call attaches the new top-level steps under the tree's root, so one
tree can be built from several files.
"""

import logging
import re
from dataclasses import dataclass, field, replace

from ..constants import SEQUENTIAL_LINE, SPACES_PER_INDENT
from ..errors import IndentError, StructureError
from .line_parser import parse_line
from .nodes import Node, StepBlockNode, StepNode

logger = logging.getLogger(__name__)

ROOT_ID = 0

FULL_LINE_COMMENT = re.compile(r"^\s*//")
CLOSING_BRACE = re.compile(r"^(\s*)\}\s*(//.*)?$")


@dataclass(frozen=True)
class ParserState:
    """Cursor state carried from one ``parse_in`` call to the next.

    Attributes:
        next_id: Arena id the next parsed node receives.
        filenames: Files parsed so far, in order.
    """

    next_id: int = ROOT_ID + 1
    filenames: tuple[str, ...] = field(default_factory=tuple)


@dataclass
class _PendingBlock:
    """A collapsed step block whose members have no arena ids yet."""

    node: StepBlockNode
    members: list[StepNode]


def new_root() -> StepNode:
    return StepNode(text="", id=ROOT_ID, indents=-1)


def num_indents(line: str, filename: str | None = None, line_number: int | None = None) -> int:
    """Count the indents at the start of a line.

    Returns 0 for blank and comment-only lines.

    Raises:
        IndentError: If the leading whitespace holds anything but spaces, or
            the number of spaces is not a multiple of four.
    """
    if not line.strip() or FULL_LINE_COMMENT.match(line):
        return 0
    leading = line[: len(line) - len(line.lstrip())]
    if leading.strip(" "):
        raise IndentError(
            "Spaces are the only type of whitespace allowed at the beginning of a step",
            filename,
            line_number,
        )
    if len(leading) % SPACES_PER_INDENT:
        raise IndentError(
            f"The number of spaces at the beginning of a step must be a multiple of "
            f"{SPACES_PER_INDENT}. You have {len(leading)}.",
            filename,
            line_number,
        )
    return len(leading) // SPACES_PER_INDENT


def _blank(filename: str | None, line_number: int) -> StepNode:
    return StepNode(text="", filename=filename, line_number=line_number)


def _parse_lines(lines: list[str], filename: str | None, is_built_in: bool) -> list[StepNode]:
    """First pass: one node per line, code block bodies folded into their opener."""
    parsed: list[StepNode] = []
    i = 0
    while i < len(lines):
        raw = lines[i]
        line_number = i + 1
        if FULL_LINE_COMMENT.match(raw):
            i += 1
            continue

        indents = num_indents(raw, filename, line_number)
        node = parse_line(raw, filename, line_number)
        node.indents = indents
        node.is_built_in = is_built_in
        parsed.append(node)
        i += 1

        if node.code_block is None:
            continue

        parts = [node.code_block]
        close_spaces = indents * SPACES_PER_INDENT
        while i < len(lines):
            match = CLOSING_BRACE.match(lines[i])
            if match and len(match.group(1)) == close_spaces:
                break
            if match and len(match.group(1)) < close_spaces:
                raise StructureError(
                    "This code block's closing } is at the wrong indent",
                    filename,
                    i + 1,
                )
            parts.append(lines[i])
            i += 1
        if i >= len(lines):
            raise StructureError(
                "An opened code block was never closed", filename, line_number
            )
        node.code_block = "\n".join(parts)

        # Body lines and the closing brace act as blank lines
        for body_line_number in range(line_number + 1, i + 2):
            parsed.append(_blank(filename, body_line_number))
        i += 1

    return parsed


def _validate_sequential_lines(parsed: list[StepNode], filename: str | None) -> None:
    for idx, node in enumerate(parsed):
        if node.text != SEQUENTIAL_LINE:
            continue
        prev = parsed[idx - 1] if idx > 0 else None
        nxt = parsed[idx + 1] if idx + 1 < len(parsed) else None
        if (
            prev is not None
            and not prev.is_blank
            and prev.text != SEQUENTIAL_LINE
            and prev.indents == node.indents
        ):
            raise StructureError(
                "A .. line cannot be at the same indent as the step directly above it",
                filename,
                node.line_number,
            )
        if nxt is None or nxt.is_blank:
            raise StructureError(
                "A .. line must be followed by a step block", filename, node.line_number
            )
        if nxt.text == SEQUENTIAL_LINE:
            raise StructureError(
                "You cannot have two .. lines in a row", filename, node.line_number
            )
        if nxt.indents != node.indents:
            raise StructureError(
                "The step block under a .. line must be at the same indent",
                filename,
                node.line_number,
            )


def _collapse_step_blocks(
    parsed: list[StepNode], filename: str | None, is_built_in: bool
) -> list[StepNode | _PendingBlock]:
    """Group consecutive same-indent steps (no blank line between) into blocks."""
    result: list[StepNode | _PendingBlock] = []
    i = 0
    while i < len(parsed):
        node = parsed[i]
        if node.is_blank or node.text == SEQUENTIAL_LINE:
            result.append(node)
            i += 1
            continue

        j = i + 1
        while (
            j < len(parsed)
            and not parsed[j].is_blank
            and parsed[j].text != SEQUENTIAL_LINE
            and parsed[j].indents == node.indents
        ):
            j += 1
        members = parsed[i:j]
        if len(members) == 1:
            result.append(node)
            i += 1
            continue

        if j < len(parsed) and not parsed[j].is_blank and parsed[j].indents == node.indents + 1:
            raise StructureError(
                "There must be an empty line under a step block if it has children",
                filename,
                parsed[j].line_number,
            )
        for member in members:
            if member.is_function_declaration:
                raise StructureError(
                    "You cannot have a function declaration within a step block",
                    filename,
                    member.line_number,
                )
            if member.code_block is not None:
                raise StructureError(
                    "You cannot have a code block within a step block",
                    filename,
                    member.line_number,
                )

        is_sequential = i > 0 and parsed[i - 1].text == SEQUENTIAL_LINE
        line_number = node.line_number
        if is_sequential and line_number is not None:
            line_number -= 1
        block = StepBlockNode(
            steps=[],
            filename=filename,
            line_number=line_number,
            indents=node.indents,
            is_sequential=is_sequential,
            is_built_in=is_built_in,
        )
        result.append(_PendingBlock(block, members))
        i = j
    return result


def parse_in(
    nodes: dict[int, Node],
    state: ParserState,
    text: str,
    filename: str | None = None,
    is_built_in: bool = False,
) -> ParserState:
    """Parse ``text`` and attach its steps under the root in ``nodes``.

    Args:
        nodes: The tree's arena. Must already hold the root under ``ROOT_ID``.
        state: Cursor state returned by the previous call.
        text: Source text.
        filename: Name used in error messages and on every node.
        is_built_in: Marks steps and hooks that come from framework files.

    Returns:
        The cursor state for the next call.

    Raises:
        IndentError: On bad leading whitespace.
        StepSyntaxError: On a line that violates the step grammar.
        StructureError: On an invalid tree shape.
    """
    lines = [line.rstrip("\r") for line in text.split("\n")]
    parsed = _parse_lines(lines, filename, is_built_in)

    first = next((node for node in parsed if not node.is_blank), None)
    if first is not None and first.indents != 0:
        raise StructureError(
            "The first step must have 0 indents", filename, first.line_number
        )

    _validate_sequential_lines(parsed, filename)
    collapsed = _collapse_step_blocks(parsed, filename, is_built_in)

    filtered: list[StepNode | _PendingBlock] = []
    for idx, node in enumerate(collapsed):
        if isinstance(node, StepNode) and node.text == SEQUENTIAL_LINE:
            nxt = collapsed[idx + 1] if idx + 1 < len(collapsed) else None
            if not isinstance(nxt, _PendingBlock):
                raise StructureError(
                    "A .. line must be followed by a step block",
                    filename,
                    node.line_number,
                )
            continue
        if isinstance(node, StepNode) and node.is_blank:
            continue
        filtered.append(node)

    next_id = state.next_id
    prev: Node | None = None
    for item in filtered:
        node: Node = item.node if isinstance(item, _PendingBlock) else item
        node.id = next_id
        nodes[node.id] = node
        next_id += 1
        if isinstance(item, _PendingBlock):
            for member in item.members:
                member.id = next_id
                member.containing_step_block = node.id
                nodes[member.id] = member
                item.node.steps.append(member.id)
                next_id += 1

        if prev is None:
            parent_id = ROOT_ID
        else:
            delta = node.indents - prev.indents
            if delta > 1:
                raise StructureError(
                    "You cannot have a step that has 2 or more indents beyond the previous step",
                    filename,
                    node.line_number,
                )
            if delta == 1:
                parent_id = prev.id
            else:
                ancestor = prev
                for _ in range(-delta):
                    ancestor = nodes[ancestor.parent]
                parent_id = ancestor.parent

        node.parent = parent_id
        nodes[parent_id].children.append(node.id)
        prev = node

    logger.debug("Parsed %d nodes from %s", next_id - state.next_id, filename)
    return replace(
        state,
        next_id=next_id,
        filenames=state.filenames + ((filename,) if filename else ()),
    )
