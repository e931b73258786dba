"""Tests for the async runner and its run instances."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from treetest.core import PythonCodeExecutor, Runner, Tree
from treetest.errors import ResolutionError, RunnerStateError
from treetest.models import RunnerState


def make_runner(tree: Tree, **kwargs) -> tuple[Runner, list]:
    """Runner whose code blocks can append to a shared ``ran`` list."""
    ran: list = []
    return Runner(tree, executor=PythonCodeExecutor({"ran": ran}), **kwargs), ran


DEBUG_SOURCE = """
A {
    ran.append("A")
}
    B ~ {
        ran.append("B")
    }
        C {
            ran.append("C")
        }
"""


@pytest.mark.unit
class TestRunnerSetup:
    """Tests for runner construction and bookkeeping."""

    def test_max_parallel_must_be_positive(self, make_tree) -> None:
        with pytest.raises(ValueError, match="at least 1"):
            Runner(make_tree("A -\n"), max_parallel=0)

    def test_init_generates_branches(self) -> None:
        tree = Tree()
        tree.parse_in("A -\n    B -\n    C -\n", "test.tt")
        runner = Runner(tree)
        runner.init()
        assert tree.get_branch_count() == 2
        assert runner.state is RunnerState.NOT_STARTED

    def test_persistent_accessor(self, make_tree) -> None:
        runner = Runner(make_tree("A -\n"))
        assert runner.p("token") is None
        assert runner.p("token", "abc") == "abc"
        assert runner.persistent == {"token": "abc"}
        assert runner.p("token", None) is None
        assert runner.persistent == {"token": None}

    def test_serialize_leaves_out_persistent(self, make_tree) -> None:
        runner = Runner(make_tree("A -\n"), max_parallel=3)
        runner.p("secret", "x")
        data = runner.serialize()
        assert set(data) == {
            "state",
            "max_parallel",
            "is_paused",
            "is_stopped",
            "is_complete",
            "elapsed",
        }
        assert data["state"] == "not_started"
        assert data["max_parallel"] == 3


@pytest.mark.asyncio
@pytest.mark.unit
class TestRun:
    """Tests for complete runs."""

    async def test_all_branches_pass(self, make_tree) -> None:
        tree = make_tree(
            """
            A {
                ran.append("A")
            }
                B {
                    ran.append("B")
                }

                C {
                    ran.append("C")
                }
            """
        )
        runner, ran = make_runner(tree)
        assert await runner.run() is True
        assert sorted(ran) == ["A", "A", "B", "C"]
        assert runner.is_complete
        assert tree.get_branch_count(passed_only=True) == 2
        assert tree.elapsed is not None and tree.elapsed >= 0
        assert runner.serialize()["state"] == "complete"

    async def test_failing_step_is_recorded(self, make_tree) -> None:
        tree = make_tree(
            """
            A {
                raise ValueError("boom")
            }
            """
        )
        runner, _ = make_runner(tree)
        assert await runner.run() is True

        branch = tree.branches[0]
        step = branch.steps[0]
        assert branch.is_failed
        assert step.is_failed
        assert step.as_expected is False
        assert step.error is not None
        assert step.error.message == "ValueError: boom"
        assert step.error.line_number == 1
        assert "line 2" in (step.error.traceback or "")

    async def test_expected_failure(self, make_tree) -> None:
        tree = make_tree(
            """
            A # {
                raise ValueError("known bug")
            }
            """
        )
        runner, _ = make_runner(tree)
        await runner.run()
        step = tree.branches[0].steps[0]
        assert step.is_failed
        assert step.as_expected is True
        assert tree.get_step_count(unexpected_only=True) == 0

    async def test_failure_skips_repeat_branches(self, make_tree) -> None:
        tree = make_tree(
            """
            A {
                raise ValueError("x")
            }
                B -
                C -
            """
        )
        runner, _ = make_runner(tree, max_parallel=1)
        await runner.run()
        first, second = tree.branches
        assert first.is_failed
        assert second.is_skipped

    async def test_skip_passed_branches(self, make_tree) -> None:
        tree = make_tree("A {\n    pass\n}\n")
        tree.branches[0].passed_last_time = True
        executor = AsyncMock()
        runner = Runner(tree, executor=executor)

        assert await runner.run() is True
        executor.execute.assert_not_called()
        assert tree.branches[0].is_skipped

    async def test_passed_branches_run_when_not_skipping(self, make_tree) -> None:
        tree = make_tree("A {\n    pass\n}\n")
        tree.branches[0].passed_last_time = True
        executor = AsyncMock()
        runner = Runner(tree, executor=executor, skip_passed=False)

        await runner.run()
        executor.execute.assert_called_once()
        assert tree.branches[0].is_passed

    async def test_run_after_complete_is_a_no_op(self, make_tree) -> None:
        tree = make_tree("A {\n    ran.append('A')\n}\n")
        runner, ran = make_runner(tree)
        await runner.run()
        assert await runner.run() is True
        assert ran == ["A"]

    async def test_skip_modifiers(self, make_tree) -> None:
        tree = make_tree(
            """
            A {
                ran.append("A")
            }
                B -s {
                    ran.append("B")
                }
                    C {
                        ran.append("C")
                    }
                D .s {
                    ran.append("D")
                }
                E $s {
                    ran.append("E")
                }
            """
        )
        runner, ran = make_runner(tree, max_parallel=1)

        assert await runner.run() is True
        assert ran == ["A", "C", "A"]
        skipped_step, cut, skipped_branch = tree.branches
        assert skipped_step.is_passed
        assert skipped_step.steps[1].is_skipped
        assert cut.is_passed
        assert cut.steps[1].is_skipped
        assert skipped_branch.is_skipped


@pytest.mark.asyncio
@pytest.mark.unit
class TestHooks:
    """Tests for hooks at run time."""

    async def test_hook_order(self, make_tree) -> None:
        tree = make_tree(
            """
            * Before Everything {
                ran.append("before everything")
            }

            * After Everything {
                ran.append("after everything")
            }

            * Before Every Branch {
                ran.append("before branch")
            }

            * After Every Branch {
                ran.append("after branch")
            }

            * Before Every Step {
                ran.append("before step")
            }

            * After Every Step {
                ran.append("after step")
            }

            A {
                ran.append("A")
            }
            """
        )
        runner, ran = make_runner(tree)
        await runner.run()
        assert ran == [
            "before everything",
            "before branch",
            "before step",
            "A",
            "after step",
            "after branch",
            "after everything",
        ]
        assert tree.before_everything[0].is_passed

    async def test_before_everything_failure_skips_branches(self, make_tree) -> None:
        tree = make_tree(
            """
            * Before Everything {
                raise RuntimeError("setup")
            }

            * After Everything {
                ran.append("after")
            }

            A {
                ran.append("A")
            }
            """
        )
        runner, ran = make_runner(tree)
        assert await runner.run() is True
        assert ran == ["after"]
        hook = tree.before_everything[0]
        assert hook.is_failed
        assert hook.error is not None
        assert hook.error.message == "RuntimeError: setup"
        assert not tree.branches[0].is_complete

    async def test_before_every_branch_failure_fails_branch(self, make_tree) -> None:
        tree = make_tree(
            """
            * Before Every Branch {
                raise RuntimeError("no")
            }

            A {
                ran.append("A")
            }
            """
        )
        runner, ran = make_runner(tree)
        assert await runner.run() is True
        branch = tree.branches[0]
        assert branch.is_failed
        assert branch.error is not None
        assert branch.error.message == "RuntimeError: no"
        assert ran == []

    async def test_after_every_step_failure_fails_step(self, make_tree) -> None:
        tree = make_tree(
            """
            * After Every Step {
                raise RuntimeError("screenshot failed")
            }

            A -
            """
        )
        runner, _ = make_runner(tree)
        await runner.run()
        step = tree.branches[0].steps[0]
        assert step.is_failed
        assert tree.branches[0].is_failed


@pytest.mark.asyncio
@pytest.mark.unit
class TestVariables:
    """Tests for global, local and passed-in variables."""

    async def test_global_string_assignment(self, make_tree) -> None:
        tree = make_tree(
            """
            {name} = 'world'
                {greeting} = 'hello {name}'
                    Greet {
                        ran.append(g("greeting"))
                    }
            """
        )
        runner, ran = make_runner(tree)
        await runner.run()
        assert ran == ["hello world"]

    async def test_function_parameter(self, make_tree) -> None:
        tree = make_tree(
            """
            Say 'hi'

            * Say {{word}} {
                ran.append(l("word"))
            }
            """
        )
        runner, ran = make_runner(tree)
        await runner.run()
        assert ran == ["hi"]

    async def test_assignment_from_code_block_result(self, make_tree) -> None:
        tree = make_tree(
            """
            {x} = Compute
                Check {
                    ran.append(g("x"))
                }

            * Compute {
                return 42
            }
            """
        )
        runner, ran = make_runner(tree)
        await runner.run()
        assert ran == [42]

    async def test_local_passed_through_nested_call(self, make_tree) -> None:
        tree = make_tree(
            """
            Outer 'abc'

            * Outer {{val}}
                Inner {{val}}

                * Inner {{thing}} {
                    ran.append(l("thing"))
                }
            """
        )
        runner, ran = make_runner(tree)
        await runner.run()
        assert ran == ["abc"]

    async def test_variables_reset_between_branches(self, make_tree) -> None:
        tree = make_tree(
            """
            First {
                g("seen", True)
            }

            Second {
                ran.append(ctx.instance.global_vars.get("seen"))
            }
            """
        )
        runner, ran = make_runner(tree, max_parallel=1)
        await runner.run()
        assert ran == [None]

    async def test_undefined_variable_fails_step(self, make_tree) -> None:
        tree = make_tree(
            """
            A {
                g("missing")
            }
            """
        )
        runner, _ = make_runner(tree)
        await runner.run()
        error = tree.branches[0].steps[0].error
        assert error is not None
        assert error.message == "UndefinedVariableError: The variable {missing} wasn't set"

    async def test_persistent_survives_branches(self, make_tree) -> None:
        tree = make_tree(
            """
            First {
                persistent["count"] = persistent.get("count", 0) + 1
            }

            Second {
                persistent["count"] = persistent.get("count", 0) + 1
            }
            """
        )
        runner, _ = make_runner(tree)
        await runner.run()
        assert runner.p("count") == 2


@pytest.mark.asyncio
@pytest.mark.unit
class TestPauseAndResume:
    """Tests for ~ pauses, stepping and injection."""

    async def test_pause_before_debug_step_and_resume(self, make_tree) -> None:
        tree = make_tree(DEBUG_SOURCE)
        runner, ran = make_runner(tree)

        assert await runner.run() is False
        assert runner.is_paused
        assert ran == ["A"]
        assert tree.elapsed == -1
        next_step = runner.next_ready_step()
        assert next_step is not None
        assert next_step.text == "B"

        assert await runner.run() is True
        assert ran == ["A", "B", "C"]
        assert runner.is_complete
        assert tree.elapsed == -1

    async def test_run_one_step(self, make_tree) -> None:
        tree = make_tree(DEBUG_SOURCE)
        runner, ran = make_runner(tree)
        await runner.run()

        assert await runner.run_one_step() is False
        assert ran == ["A", "B"]
        assert runner.is_paused
        assert runner.next_ready_step().text == "C"

        assert await runner.run_one_step() is True
        assert ran == ["A", "B", "C"]
        assert runner.is_complete

    async def test_skip_one_step(self, make_tree) -> None:
        tree = make_tree(DEBUG_SOURCE)
        runner, ran = make_runner(tree)
        await runner.run()

        assert await runner.skip_one_step() is False
        assert tree.branches[0].steps[1].is_skipped
        assert await runner.run() is True
        assert ran == ["A", "C"]
        assert tree.branches[0].is_passed

    async def test_inject_keeps_position(self, make_tree) -> None:
        tree = make_tree(DEBUG_SOURCE)
        runner, ran = make_runner(tree)
        await runner.run()

        injected = await runner.inject('Note {\n    ran.append("injected")\n}')
        assert injected.steps[0].is_passed
        assert ran == ["A", "injected"]
        assert runner.next_ready_step().text == "B"

        failed = await runner.inject("Break {\n    1 / 0\n}")
        step = failed.steps[0]
        assert step.is_failed
        assert step.error is not None
        assert step.error.message.startswith("ZeroDivisionError")
        assert runner.is_paused
        assert not tree.branches[0].is_complete

        assert await runner.run() is True
        assert ran == ["A", "injected", "B", "C"]

    async def test_inject_assignment_and_function_call(self, make_tree) -> None:
        tree = make_tree(
            """
            * Remember {{value}} {
                ran.append(l("value"))
            }

            A {
                ran.append("A")
            }
                B ~ {
                    ran.append(g("x"))
                }
            """
        )
        runner, ran = make_runner(tree)
        await runner.run()

        assigned = await runner.inject("{x} = 'hi'")
        assert assigned.steps[0].is_passed
        assert runner.run_instances[0].global_vars == {"x": "hi"}

        called = await runner.inject("Remember 'there'")
        assert called.steps[0].function_declaration_text == "Remember {{value}}"
        assert called.steps[0].is_passed

        assert await runner.run() is True
        assert ran == ["A", "there", "hi"]

    async def test_inject_unknown_function(self, make_tree) -> None:
        runner, _ = make_runner(make_tree(DEBUG_SOURCE))
        await runner.run()
        with pytest.raises(ResolutionError):
            await runner.inject("Does not exist")
        assert runner.next_ready_step().text == "B"

    async def test_run_last_step(self, make_tree) -> None:
        tree = make_tree(DEBUG_SOURCE)
        runner, ran = make_runner(tree)
        await runner.run()
        assert runner.last_step().text == "A"

        step = await runner.run_last_step()
        assert step is not None
        assert step.text == "A"
        assert step.is_passed
        assert ran == ["A", "A"]
        assert runner.is_paused
        assert runner.next_ready_step().text == "B"

        assert await runner.run() is True
        assert ran == ["A", "A", "B", "C"]

    async def test_no_last_step_before_the_first(self, make_tree) -> None:
        tree = make_tree(
            """
            A ~ {
                ran.append("A")
            }
            """
        )
        runner, ran = make_runner(tree)
        await runner.run()
        assert runner.last_step() is None
        assert await runner.run_last_step() is None
        assert ran == []

    async def test_stepping_to_end_of_branch_leaves_others_to_run(self, make_tree) -> None:
        tree = make_tree(
            """
            * After Everything {
                ran.append("AE")
            }

            A {
                raise ValueError("x")
            }
                B {
                    ran.append("B")
                }
                C {
                    ran.append("C")
                }
            """
        )
        runner, ran = make_runner(tree, pause_on_fail=True, max_parallel=1)
        assert await runner.run() is False
        assert runner.next_ready_step().text == "B"

        assert await runner.run_one_step() is True
        assert ran == ["B"]
        assert not runner.is_complete
        assert tree.has_unstarted_branches()

        assert await runner.run() is False
        assert runner.next_ready_step().text == "C"
        assert await runner.run() is True
        assert ran == ["B", "C", "AE"]
        assert tree.get_branch_count(failed_only=True) == 2

    async def test_stepping_requires_pause(self, make_tree) -> None:
        runner, _ = make_runner(make_tree("A -\n"))
        with pytest.raises(RunnerStateError, match="Must be paused to run a step"):
            await runner.run_one_step()
        with pytest.raises(RunnerStateError, match="Must be paused to skip a step"):
            await runner.skip_one_step()
        with pytest.raises(RunnerStateError, match="Must be paused"):
            await runner.inject("B -")
        with pytest.raises(RunnerStateError, match="Must be paused"):
            await runner.run_last_step()

    async def test_pause_on_fail(self, make_tree) -> None:
        tree = make_tree(
            """
            A {
                raise ValueError("first")
            }
                B {
                    ran.append("B")
                }
            """
        )
        runner, ran = make_runner(tree, pause_on_fail=True)
        assert await runner.run() is False
        assert runner.next_ready_step().text == "B"

        assert await runner.run() is True
        assert ran == ["B"]
        assert tree.branches[0].is_failed

    async def test_debug_tree_pauses_on_fail(self, make_tree) -> None:
        tree = make_tree(
            """
            A ~ {
                raise ValueError("x")
            }
                B -
            """
        )
        runner, _ = make_runner(tree)
        assert runner.pause_on_fail
        await runner.run()
        await runner.run()
        assert runner.is_paused
        assert runner.next_ready_step().text == "B"


@pytest.mark.asyncio
@pytest.mark.unit
class TestStop:
    """Tests for stopping a run."""

    async def test_stop_from_inside_a_step(self, make_tree) -> None:
        tree = make_tree(
            """
            * After Everything {
                ran.append("after")
            }

            A {
                await ctx.runner.stop()
            }
                B {
                    ran.append("B")
                }
            """
        )
        runner, ran = make_runner(tree)
        assert await runner.run() is False
        assert runner.is_stopped
        assert ran == ["after"]
        assert not tree.branches[0].is_running

        with pytest.raises(RunnerStateError, match="stopped"):
            await runner.run()

    async def test_stop_while_paused(self, make_tree) -> None:
        tree = make_tree(DEBUG_SOURCE)
        runner, ran = make_runner(tree)
        await runner.run()
        await runner.stop()
        await runner.stop()
        assert runner.is_stopped
        assert runner.serialize()["is_stopped"] is True
        assert ran == ["A"]


@pytest.mark.asyncio
@pytest.mark.unit
class TestConcurrency:
    """Tests for parallel and non-parallel branches."""

    SOURCE = """
        A -{marker}
            B {{
                await work()
            }}

            C {{
                await work()
            }}
        """

    @staticmethod
    def tracking_executor() -> tuple[PythonCodeExecutor, dict]:
        stats = {"active": 0, "peak": 0}

        async def work() -> None:
            stats["active"] += 1
            stats["peak"] = max(stats["peak"], stats["active"])
            await asyncio.sleep(0.02)
            stats["active"] -= 1

        return PythonCodeExecutor({"work": work}), stats

    async def test_branches_run_side_by_side(self, make_tree) -> None:
        executor, stats = self.tracking_executor()
        runner = Runner(make_tree(self.SOURCE.format(marker="")), executor=executor)
        await runner.run()
        assert stats["peak"] == 2

    async def test_non_parallel_branches_run_one_at_a_time(self, make_tree) -> None:
        executor, stats = self.tracking_executor()
        tree = make_tree(self.SOURCE.format(marker=" +"))
        runner = Runner(tree, executor=executor)
        await runner.run()
        assert stats["peak"] == 1
        assert tree.get_branch_count(passed_only=True) == 2

    async def test_max_parallel_limits_instances(self, make_tree) -> None:
        executor, stats = self.tracking_executor()
        runner = Runner(make_tree(self.SOURCE.format(marker="")), executor=executor, max_parallel=1)
        await runner.run()
        assert stats["peak"] == 1
        assert len(runner.run_instances) == 1
