"""Line parser: turns one raw source line into a StepNode.

A line has the shape::

    [* ]text [identifiers...] [{ code-block-start] [// comment]

Identifiers are trailing whitespace-separated tokens (``-T``, ``-M``, ``-``,
``~``, ``$``, ``+``, ``..``, ``#``, ``-s``, ``.s``, ``$s``). A trailing ``{``
opens a code block that the tree builder closes on a later line.
"""

import re

from ..constants import (
    DEBUG_IDENTIFIER,
    EXPECTED_FAIL_IDENTIFIER,
    FREQUENCY_RANKS,
    FREQUENCY_VAR,
    GROUP_VAR,
    HOOK_NAMES,
    IDENTIFIERS,
    MANUAL_IDENTIFIER,
    NON_PARALLEL_IDENTIFIER,
    ONLY_IDENTIFIER,
    SEQUENTIAL_IDENTIFIER,
    SEQUENTIAL_LINE,
    SKIP_BELOW_IDENTIFIER,
    SKIP_BRANCH_IDENTIFIER,
    SKIP_IDENTIFIER,
    TEXTUAL_IDENTIFIER,
    TODO_IDENTIFIER,
)
from ..errors import StepSyntaxError
from ..models import ElementFinder, VarAssignment
from .nodes import StepNode
from .text import (
    BRACKET,
    VAR_REGEX,
    canonicalize,
    find_outside_quotes,
    has_string_literal,
    is_string_literal,
    strip_quotes,
)

DECLARATION_PREFIX = re.compile(r"^\s*\*\s+")
IDENTIFIER_SUFFIX = re.compile(
    r"\s+(" + "|".join(re.escape(i) for i in sorted(IDENTIFIERS, key=len, reverse=True)) + r")$"
)
NUMBERS_ONLY = re.compile(r"[\d.,\s]+")
VAR_HEAD = re.compile(r"\s*(?:\{\{([^{}\\]+)\}\}|\{([^{}\\]+)\})\s*=\s*")

ORDINAL = re.compile(r"^([0-9]+)(st|nd|rd|th)(?=\s|$)\s*")
NEXT_TO = re.compile(r"(?:^|\s+)next\s+to\s+('[^']+'|\"[^\"]+\")\s*$")
QUOTED = re.compile(r"^('[^']+'|\"[^\"]+\")")


def split_comment(line: str) -> tuple[str, str | None]:
    """Split off a ``//`` comment that is not inside a string literal."""
    matches = find_outside_quotes(line, r"//")
    if not matches:
        return line, None
    start = matches[0].start()
    return line[:start], line[start:]


def split_code_block_opener(body: str) -> tuple[str, str | None]:
    """Split ``text {rest`` into ``("text", "rest")`` when ``{`` opens a code block.

    The opener is the last unquoted ``{`` that is preceded by whitespace and
    not followed by a ``}``.
    """
    matches = find_outside_quotes(body, r"\{")
    if not matches:
        return body, None
    start = matches[-1].start()
    if start == 0 or not body[start - 1].isspace():
        return body, None
    rest = body[start + 1 :]
    if "}" in rest:
        return body, None
    return body[:start].rstrip(), rest


def split_identifiers(body: str) -> tuple[str, list[str]]:
    """Peel trailing identifier tokens off the end of ``body``."""
    identifiers: list[str] = []
    while True:
        match = IDENTIFIER_SUFFIX.search(body)
        if match is None or match.start() == 0:
            break
        identifiers.insert(0, match.group(1))
        body = body[: match.start()]
    return body.strip(), identifiers


def parse_var_assignments(text: str) -> list[VarAssignment]:
    """Parse leading ``{var} = value[, {var2} = value2...]`` assignments.

    Values are split on commas only where the next segment starts with
    another ``{var} =`` head, so a single call value may contain commas.
    """
    assignments: list[VarAssignment] = []
    pos = 0
    while True:
        head = VAR_HEAD.match(text, pos)
        if head is None:
            break
        local_name, global_name = head.group(1), head.group(2)
        value_start = head.end()
        end = len(text)
        next_pos = None
        for comma in find_outside_quotes(text[value_start:], r","):
            candidate = value_start + comma.end()
            if VAR_HEAD.match(text, candidate):
                end = value_start + comma.start()
                next_pos = candidate
                break
        assignments.append(
            VarAssignment(
                name=(local_name or global_name).strip(),
                value=text[value_start:end].strip(),
                is_local=local_name is not None,
            )
        )
        if next_pos is None:
            break
        pos = next_pos
    return assignments


def parse_element_finder(name: str) -> ElementFinder | None:
    """Parse the inside of a ``[...]`` construct.

    Grammar: ordinal? (quoted-text and/or bare variable)? ("next to" quoted)?
    with at least one part present. Returns None when the text doesn't fit.
    """
    rest = name.strip()
    ordinal = text = variable = next_to = None

    match = ORDINAL.match(rest)
    if match:
        ordinal = int(match.group(1))
        rest = rest[match.end() :]

    match = NEXT_TO.search(rest)
    if match:
        next_to = strip_quotes(match.group(1))
        rest = rest[: match.start()].strip()
        if ordinal is None and not rest:
            return None

    if rest:
        match = QUOTED.match(rest)
        if match:
            text = strip_quotes(match.group(1))
            rest = rest[match.end() :]
            if rest and not rest[0].isspace():
                return None
            rest = rest.strip()
        if rest:
            if "'" in rest or '"' in rest:
                return None
            variable = rest

    if ordinal is None and text is None and variable is None and next_to is None:
        return None
    return ElementFinder(ordinal=ordinal, text=text, variable=variable, next_to=next_to)


def _check_special_var(
    assignment: VarAssignment, filename: str | None, line_number: int | None
) -> None:
    lowered = assignment.name.lower()
    if lowered not in (FREQUENCY_VAR, GROUP_VAR):
        return
    if assignment.name != lowered:
        raise StepSyntaxError(
            f"The {{{lowered}}} variable must be written in lowercase",
            filename,
            line_number,
        )
    if assignment.is_local:
        raise StepSyntaxError(
            f"The {{{lowered}}} variable cannot be local ({{{{{lowered}}}}})",
            filename,
            line_number,
        )
    if not is_string_literal(assignment.value):
        raise StepSyntaxError(
            f"The {{{lowered}}} variable must be set to a 'string'",
            filename,
            line_number,
        )
    if lowered == FREQUENCY_VAR and strip_quotes(assignment.value) not in FREQUENCY_RANKS:
        raise StepSyntaxError(
            "The {frequency} variable must be set to 'high', 'med', or 'low'",
            filename,
            line_number,
        )


def parse_line(
    line: str, filename: str | None = None, line_number: int | None = None
) -> StepNode:
    """Parse one source line.

    Args:
        line: Raw line, indentation included.
        filename: Source file, used in error messages.
        line_number: 1-indexed line number, used in error messages.

    Returns:
        A StepNode with no tree links. Blank and comment-only lines get text
        ``""``; a lone ``..`` gets text ``".."``.

    Raises:
        StepSyntaxError: If the line violates the step grammar.
    """
    node = StepNode(text="", filename=filename, line_number=line_number, line=line)

    body, comment = split_comment(line.rstrip("\r\n"))
    node.comment = comment
    if not body.strip():
        return node
    if body.strip() == SEQUENTIAL_LINE:
        node.text = SEQUENTIAL_LINE
        return node

    body = body.rstrip()
    match = DECLARATION_PREFIX.match(body)
    if match:
        node.is_function_declaration = True
        body = body[match.end() :]
    else:
        body = body.lstrip()

    body, node.code_block = split_code_block_opener(body)
    text, identifiers = split_identifiers(body)
    if not text:
        raise StepSyntaxError("Invalid step name", filename, line_number)
    node.text = text

    node.is_to_do = TODO_IDENTIFIER in identifiers
    node.is_manual = MANUAL_IDENTIFIER in identifiers
    node.is_debug = DEBUG_IDENTIFIER in identifiers
    node.is_only = ONLY_IDENTIFIER in identifiers
    node.is_non_parallel = NON_PARALLEL_IDENTIFIER in identifiers
    node.is_sequential = SEQUENTIAL_IDENTIFIER in identifiers
    node.is_expected_fail = EXPECTED_FAIL_IDENTIFIER in identifiers
    node.is_skip = SKIP_IDENTIFIER in identifiers
    node.is_skip_below = SKIP_BELOW_IDENTIFIER in identifiers
    node.is_skip_branch = SKIP_BRANCH_IDENTIFIER in identifiers
    node.is_textual_step = TEXTUAL_IDENTIFIER in identifiers or (
        not node.is_function_declaration and (node.is_to_do or node.is_manual or node.is_skip)
    )
    if node.is_expected_fail and comment:
        node.expected_fail_note = comment[2:].strip() or None

    if NUMBERS_ONLY.fullmatch(text):
        raise StepSyntaxError("Invalid step name", filename, line_number)

    if canonicalize(text) in HOOK_NAMES:
        if not node.is_function_declaration:
            raise StepSyntaxError(
                "A hook name must be preceded by a * (e.g. * Before Every Step {)",
                filename,
                line_number,
            )
        node.is_hook = True
        if node.code_block is None:
            raise StepSyntaxError("A hook must have a code block", filename, line_number)
        if node.is_only or node.is_debug:
            raise StepSyntaxError(
                "A hook cannot be marked with $ or ~", filename, line_number
            )

    if node.is_function_declaration:
        if has_string_literal(text):
            raise StepSyntaxError(
                "A function declaration cannot have 'strings' inside of it",
                filename,
                line_number,
            )
        if TEXTUAL_IDENTIFIER in identifiers:
            raise StepSyntaxError(
                "A function declaration cannot be a textual step (-)",
                filename,
                line_number,
            )
        for match in VAR_REGEX.finditer(text):
            if match.group("global"):
                raise StepSyntaxError(
                    "A function declaration can only use {{local}} variables",
                    filename,
                    line_number,
                )

    assignments = parse_var_assignments(text)
    if assignments:
        if node.is_function_declaration:
            raise StepSyntaxError(
                "A step setting {variables} cannot start with *",
                filename,
                line_number,
            )
        if node.is_textual_step:
            raise StepSyntaxError(
                "A textual step (-) cannot also start with a {variable} assignment",
                filename,
                line_number,
            )
        for assignment in assignments:
            if not assignment.value:
                raise StepSyntaxError(
                    f"{{{assignment.name}}} is not set to a value",
                    filename,
                    line_number,
                )
            _check_special_var(assignment, filename, line_number)
        if len(assignments) > 1:
            if not all(is_string_literal(a.value) for a in assignments):
                raise StepSyntaxError(
                    "When multiple {variables} are set on one line, "
                    "they must all be set to 'strings'",
                    filename,
                    line_number,
                )
        elif not is_string_literal(assignments[0].value) and node.code_block is None:
            node.is_function_call = True
        node.vars_being_set = assignments
    elif not node.is_textual_step and not node.is_function_declaration:
        node.is_function_call = node.code_block is None

    for match in find_outside_quotes(text, BRACKET):
        finder = parse_element_finder(match.group(0)[1:-1])
        if finder is None:
            raise StepSyntaxError(
                f"Invalid element finder {match.group(0)}", filename, line_number
            )
        node.element_finders.append(finder)

    return node
