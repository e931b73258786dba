"""Tests for the Python code block executor."""

import traceback
from unittest.mock import MagicMock

import pytest

from treetest.core import PythonCodeExecutor, StepContext
from treetest.models import Branch, Step


def make_context(step: Step | None = None, branch: Branch | None = None) -> StepContext:
    return StepContext(
        runner=MagicMock(),
        instance=MagicMock(),
        step=step or Step(text="Do it", filename="steps.tt", line_number=10),
        branch=branch,
        persistent={},
    )


@pytest.mark.asyncio
@pytest.mark.unit
class TestPythonCodeExecutor:
    """Tests for PythonCodeExecutor."""

    async def test_return_value_is_result(self) -> None:
        executor = PythonCodeExecutor()
        assert await executor.execute("\n    return 1 + 1", make_context()) == 2

    async def test_empty_block_returns_none(self) -> None:
        assert await PythonCodeExecutor().execute("\n", make_context()) is None

    async def test_code_can_await(self) -> None:
        code = "\n    await asyncio.sleep(0)\n    return 'done'"
        assert await PythonCodeExecutor().execute(code, make_context()) == "done"

    async def test_traceback_points_at_source_line(self) -> None:
        """A block opened on line 10 has its first body line on line 11."""
        executor = PythonCodeExecutor()
        with pytest.raises(ValueError) as exc_info:
            await executor.execute("\n    raise ValueError('x')", make_context())
        frame = traceback.extract_tb(exc_info.value.__traceback__)[-1]
        assert frame.filename == "steps.tt"
        assert frame.lineno == 11

    async def test_namespace_is_visible(self) -> None:
        executor = PythonCodeExecutor({"base_url": "http://localhost"})
        code = "\n    return base_url + '/login'"
        assert await executor.execute(code, make_context()) == "http://localhost/login"

    async def test_log_goes_to_step_and_branch(self) -> None:
        step = Step(text="Do it")
        branch = Branch(steps=[step])
        await PythonCodeExecutor().execute("\n    log('hello')", make_context(step, branch))
        assert step.log == ["hello"]
        assert branch.log == ["hello"]

    async def test_variables_go_through_the_instance(self) -> None:
        context = make_context()
        context.instance.get_local.return_value = "bob"
        code = "\n    g('user', 'alice')\n    return l('name')"

        assert await PythonCodeExecutor().execute(code, context) == "bob"
        context.instance.set_global.assert_called_once_with("user", "alice")
        context.instance.get_local.assert_called_once_with("name")

    async def test_persistent_is_shared(self) -> None:
        context = make_context()
        await PythonCodeExecutor().execute("\n    persistent['token'] = 'abc'", context)
        assert context.persistent == {"token": "abc"}


@pytest.mark.unit
class TestCompile:
    """Tests for compiling code blocks."""

    def test_compiled_blocks_are_cached(self) -> None:
        executor = PythonCodeExecutor()
        first = executor.compile("\n    pass", "a.tt", 3)
        assert executor.compile("\n    pass", "a.tt", 3) is first
        assert executor.compile("\n    pass", "a.tt", 4) is not first

    def test_syntax_error_is_raised(self) -> None:
        with pytest.raises(SyntaxError):
            PythonCodeExecutor().compile("\n    return (", "a.tt", 1)
