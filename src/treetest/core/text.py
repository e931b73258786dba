"""Text helpers shared by the line parser, resolver and run instances."""

import re

STRING_LITERAL = r"'(?:[^\\']|\\.)*'|\"(?:[^\\\"]|\\.)*\""
BRACKET = r"\[[^\[\]\\]+\]"
LOCAL_VAR = r"\{\{[^{}\\]+\}\}"
GLOBAL_VAR = r"\{[^{}\\]+\}"

STRING_LITERAL_REGEX = re.compile(STRING_LITERAL)
INPUT_REGEX = re.compile(f"{STRING_LITERAL}|{BRACKET}|{LOCAL_VAR}|{GLOBAL_VAR}")
VAR_REGEX = re.compile(f"(?P<local>{LOCAL_VAR})|(?P<global>{GLOBAL_VAR})")
WHITESPACE_REGEX = re.compile(r"\s+")


def find_outside_quotes(text: str, pattern: str) -> list[re.Match[str]]:
    """Find matches of ``pattern`` that are not inside a complete string literal."""
    combined = re.compile(f"{STRING_LITERAL}|(?P<target>{pattern})")
    return [m for m in combined.finditer(text) if m.group("target") is not None]


def is_string_literal(text: str) -> bool:
    return STRING_LITERAL_REGEX.fullmatch(text.strip()) is not None


def has_string_literal(text: str) -> bool:
    return STRING_LITERAL_REGEX.search(text) is not None


def strip_quotes(text: str) -> str:
    text = text.strip()
    if len(text) >= 2 and text[0] == text[-1] and text[0] in "'\"":
        return text[1:-1]
    return text


def strip_brackets(text: str) -> str:
    """Remove the outer braces or brackets from ``{var}``, ``{{var}}`` or ``[finder]``."""
    text = text.strip()
    if text.startswith("{{") and text.endswith("}}"):
        return text[2:-2].strip()
    if (text.startswith("{") and text.endswith("}")) or (
        text.startswith("[") and text.endswith("]")
    ):
        return text[1:-1].strip()
    return text


def unescape(text: str) -> str:
    return re.sub(r"\\(.)", r"\1", text)


def canonicalize(text: str) -> str:
    """Lowercase, trim and collapse runs of whitespace."""
    return WHITESPACE_REGEX.sub(" ", text.strip().lower())


def find_inputs(text: str) -> list[str]:
    """Return the string, element-finder and variable tokens of a step, in order."""
    return [m.group(0) for m in INPUT_REGEX.finditer(text)]


def to_signature(text: str) -> str:
    """Canonical form of a call or declaration name with every input as ``{}``."""
    return canonicalize(unescape(INPUT_REGEX.sub("{}", text)))
