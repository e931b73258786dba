"""Errors raised while parsing, branchifying, and running test trees."""


class TreeTestError(Exception):
    """Base exception for treetest errors."""


class SourceError(TreeTestError):
    """An error tied to a location in a source file.

    Attributes:
        message: Description of the problem, without location.
        filename: File the offending line came from, if known.
        line_number: 1-indexed line number, if known.
    """

    def __init__(
        self,
        message: str,
        filename: str | None = None,
        line_number: int | None = None,
    ) -> None:
        self.message = message
        self.filename = filename
        self.line_number = line_number
        super().__init__(self._format())

    def _format(self) -> str:
        if self.filename is None:
            return self.message
        if self.line_number is None:
            return f"{self.message} [{self.filename}]"
        return f"{self.message} [{self.filename}:{self.line_number}]"


class StepSyntaxError(SourceError):
    """Raised when a single line violates the step grammar."""


class IndentError(SourceError):
    """Raised when leading whitespace is not a multiple of four spaces."""


class StructureError(SourceError):
    """Raised when the tree shape is invalid (step blocks, code blocks, hooks)."""


class ResolutionError(SourceError):
    """Raised when a function call matches no visible declaration."""


class ConfigurationError(SourceError):
    """Raised for conflicting $, ~, frequency, group or no-debug settings."""


class InfiniteLoopError(SourceError):
    """Raised when function calls recurse into themselves."""


class RunnerStateError(TreeTestError):
    """Raised when a runner method is called in the wrong state."""


class UndefinedVariableError(TreeTestError):
    """Raised inside a running step that reads a variable nobody set."""
