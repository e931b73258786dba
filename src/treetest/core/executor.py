"""Step execution: the capability the runner hands code blocks to.

The runner only depends on ``StepExecutor``. ``PythonCodeExecutor`` is the
default implementation; it treats each code block as the body of an
``async def`` so step code can ``await`` freely.
"""

import asyncio
import logging
import textwrap
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol

from ..models import Branch, Step

if TYPE_CHECKING:
    from .run_instance import RunInstance
    from .runner import Runner

logger = logging.getLogger(__name__)

CODE_BLOCK_FUNCTION = "__code_block__"

_UNSET: Any = object()


@dataclass
class StepContext:
    """What step code can see and change while it runs.

    Attributes:
        runner: The runner executing the step.
        instance: The run instance walking the current branch.
        step: The step or hook being executed.
        branch: The branch being run, None for Before/After Everything.
        persistent: Shared dict that lives for the whole run.
    """

    runner: "Runner"
    instance: "RunInstance"
    step: Step
    branch: Branch | None
    persistent: dict[str, Any]

    def g(self, name: str, value: Any = _UNSET) -> Any:
        """Get a global variable, or set it when ``value`` is given."""
        if value is _UNSET:
            return self.instance.get_global(name)
        self.instance.set_global(name, value)
        return value

    def l(self, name: str, value: Any = _UNSET) -> Any:  # noqa: E743
        """Get a local variable, or set it when ``value`` is given."""
        if value is _UNSET:
            return self.instance.get_local(name)
        self.instance.set_local(name, value)
        return value

    def log(self, text: str) -> None:
        """Append a line to the step's and branch's logs."""
        self.step.log.append(text)
        if self.branch is not None:
            self.branch.append_to_log(text)


class StepExecutor(Protocol):
    """Runs one code block. May suspend, may raise."""

    async def execute(self, code: str, context: StepContext) -> Any: ...


def _body_source(code: str) -> str:
    """Dedent a code block, keeping text that followed the opening brace."""
    first, _, rest = code.partition("\n")
    body = first.strip() + "\n" + textwrap.dedent(rest)
    if not body.strip():
        return "pass"
    return body


class PythonCodeExecutor:
    """Executes code blocks as Python coroutine bodies.

    Inside a block the names ``ctx``, ``log``, ``g``, ``l`` and
    ``persistent`` are bound, along with everything in ``namespace``. The
    block's ``return`` value becomes the step's result.

    Args:
        namespace: Extra globals visible to every code block.
    """

    def __init__(self, namespace: dict[str, Any] | None = None) -> None:
        self.namespace = dict(namespace or {})
        self._compiled: dict[tuple[str, str | None, int | None], Callable[..., Awaitable[Any]]] = {}

    def compile(
        self, code: str, filename: str | None = None, line_number: int | None = None
    ) -> Callable[..., Awaitable[Any]]:
        """Compile a code block into a coroutine function.

        Line numbers in tracebacks match the source file: the body's first
        line lands on ``line_number``.
        """
        key = (code, filename, line_number)
        if key in self._compiled:
            return self._compiled[key]

        padding = "\n" * max((line_number or 1) - 2, 0)
        source = (
            padding
            + f"async def {CODE_BLOCK_FUNCTION}(ctx, log, g, l, persistent):\n"
            + textwrap.indent(_body_source(code), "    ")
        )
        scope: dict[str, Any] = {"asyncio": asyncio, **self.namespace}
        exec(compile(source, filename or "<code block>", "exec"), scope)
        function = scope[CODE_BLOCK_FUNCTION]
        self._compiled[key] = function
        return function

    async def execute(self, code: str, context: StepContext) -> Any:
        function = self.compile(code, context.step.filename, context.step.line_number)
        logger.debug("Executing code block of '%s'", context.step.text)
        return await function(context, context.log, context.g, context.l, context.persistent)
