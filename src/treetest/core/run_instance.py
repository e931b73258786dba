"""Run instance: one cooperative worker that walks branches step by step.

A runner starts several instances side by side. Each one claims a branch
with ``Tree.next_branch()``, runs its hooks and steps, and moves on to the
next branch until none are left. The instance keeps its position
(``branch`` and ``step``) when it pauses, so the runner can resume it
or act on the step it stopped in front of.
"""

import asyncio
import logging
import traceback
from typing import TYPE_CHECKING, Any

from ..constants import BRANCH_WAIT_INTERVAL
from ..errors import UndefinedVariableError
from ..models import Branch, Step, StepError
from .executor import StepContext
from .text import VAR_REGEX, find_inputs, is_string_literal, strip_brackets, strip_quotes, unescape

if TYPE_CHECKING:
    from .runner import Runner

logger = logging.getLogger(__name__)


def to_step_error(exc: BaseException, step: Step) -> StepError:
    """Convert an exception raised by step code into a recordable error."""
    message = f"{type(exc).__name__}: {exc}" if str(exc) else type(exc).__name__
    return StepError(
        message=message,
        filename=step.filename,
        line_number=step.line_number,
        traceback="".join(traceback.format_exception(exc)),
    )


class RunInstance:
    """Runs branches one at a time for a runner.

    Attributes:
        branch: Branch currently claimed, None between branches.
        step: Step that runs next in ``branch``. While paused, this is the
            step the instance stopped in front of.
        is_paused: True while waiting to be resumed.
        is_stopped: True once the runner stopped this instance.
    """

    def __init__(self, runner: "Runner") -> None:
        self.runner = runner
        self.tree = runner.tree
        self.branch: Branch | None = None
        self.step: Step | None = None
        self.is_paused = False
        self.is_stopped = False

        self.global_vars: dict[str, Any] = {}
        self.local_vars: dict[str, Any] = {}
        self._local_stack: list[dict[str, Any]] = []
        self._passed_in: dict[str, Any] = {}
        self._prev_step: Step | None = None

    async def run(self) -> None:
        """Run branches until none are left, this instance pauses, or it's stopped."""
        resuming = self.is_paused
        self.is_paused = False
        if resuming:
            logger.info("Resuming at '%s'", self.step.text if self.step else "end of branch")

        while not self.is_stopped:
            if not resuming:
                self.branch = await self._claim_branch()
                if self.branch is None:
                    return
                await self._start_branch()
                if self.is_stopped:
                    return

            finished = await self._run_steps(override_debug=resuming)
            resuming = False
            if not finished:
                return
            await self._end_branch()

    async def run_one_step(self) -> bool:
        """Run the step this instance is paused on, then pause again.

        Returns:
            True if the branch finished (its After Every Branch hooks ran too).
        """
        if self.step is not None and self.branch is not None:
            await self.run_step(self.step, self.branch)
            self.step = self._advance()
        return await self._pause_or_finish()

    async def skip_one_step(self) -> bool:
        """Mark the paused-on step skipped without running it, then pause again."""
        if self.step is not None and self.branch is not None:
            logger.info("Skipping '%s'", self.step.text)
            self.tree.skip_step(self.step, self.branch)
            self.step = self._advance()
        return await self._pause_or_finish()

    async def inject(self, text: str) -> Branch:
        """Parse ``text`` as a step and run it at the paused position.

        Function calls in ``text`` resolve as if the step sat right under
        the last step that ran. Execution stops at the first failing step.
        The paused position doesn't move, so the pending step still runs
        next.

        Returns:
            Branch of the injected steps, with their outcomes.

        Raises:
            TreeTestError: If ``text`` doesn't parse or a call doesn't resolve.
        """
        level = self._prev_step.branch_indents if self._prev_step else 0
        injected = self.tree.branchify_injected(text, self._steps_ran(), level)
        logger.info("Injecting %d steps", len(injected.steps))
        for step in injected.steps:
            await self.run_step(step, injected, is_detached=True)
            if step.is_failed:
                logger.warning(
                    "Injected step '%s' failed: %s",
                    step.text,
                    step.error.message if step.error else "",
                )
                break
        return injected

    def last_step(self) -> Step | None:
        """Step right before the paused position, None if there's none."""
        if self.branch is None or self.step is None:
            return None
        index = self._index_of(self.step)
        return self.branch.steps[index - 1] if index > 0 else None

    async def run_last_step(self) -> Step | None:
        """Run the step before the paused position again, and stay paused."""
        step = self.last_step()
        if step is None or self.branch is None:
            return None
        logger.info("Running '%s' again", step.text)
        step.reset_outcome()
        await self.run_step(step, self.branch, is_detached=True)
        return step

    def stop(self) -> None:
        """Stop after the in-flight step and release the claimed branch."""
        self.is_stopped = True
        if self.branch is not None:
            self.branch.is_running = False
            for step in self.branch.steps:
                step.is_running = False

    async def _pause_or_finish(self) -> bool:
        if self.step is None:
            await self._end_branch()
            self.is_paused = False
            return True
        self.is_paused = True
        return False

    def _index_of(self, step: Step) -> int:
        assert self.branch is not None
        return next(i for i, s in enumerate(self.branch.steps) if s is step)

    def _steps_ran(self) -> list[Step]:
        """Steps of the claimed branch before the paused position."""
        if self.branch is None:
            return []
        if self.step is None:
            return list(self.branch.steps)
        return self.branch.steps[: self._index_of(self.step)]

    def _advance(self) -> Step | None:
        if self.branch is None:
            return None
        return self.tree.next_step(
            self.branch, advance=True, skip_repeat_branches=self.runner.skip_repeat_branches
        )

    async def _claim_branch(self) -> Branch | None:
        """Wait for a branch this instance may start.

        Gives up when nothing is left to start, or the only blocked branches
        wait on a paused instance.
        """
        while not self.is_stopped:
            branch = self.tree.next_branch()
            if branch is not None:
                return branch
            if not self.tree.has_unstarted_branches() or self.runner.has_paused_instance():
                return None
            await asyncio.sleep(BRANCH_WAIT_INTERVAL)
        return None

    async def _start_branch(self) -> None:
        assert self.branch is not None
        branch = self.branch
        logger.debug("Starting branch of %d steps", len(branch.steps))

        self.global_vars = {}
        self.local_vars = {}
        self._local_stack = []
        self._passed_in = {}
        self._prev_step = None
        self.step = None

        for hook in branch.before_every_branch:
            error = await self.run_hook(hook)
            if self.is_stopped:
                return
            if error is not None:
                branch.mark_branch("fail", error)
                branch.append_to_log(f"Before Every Branch hook failed: {error.message}")
                return

        self.step = self._advance()

    async def _end_branch(self) -> None:
        branch = self.branch
        if branch is None:
            return
        for hook in branch.after_every_branch:
            error = await self.run_hook(hook)
            if error is not None:
                branch.mark_branch("fail", error)
                branch.append_to_log(f"After Every Branch hook failed: {error.message}")
        outcome = "passed" if branch.is_passed else "failed" if branch.is_failed else "skipped"
        logger.info("Branch %s", outcome)
        self.branch = None
        self.step = None

    async def _run_steps(self, override_debug: bool) -> bool:
        """Run steps from the cursor on. Returns False if paused or stopped first."""
        assert self.branch is not None
        while self.step is not None:
            step = self.step
            if step.is_debug and not override_debug:
                self.is_paused = True
                logger.info(
                    "Paused before '%s' (%s:%s)", step.text, step.filename, step.line_number
                )
                return False
            override_debug = False

            await self.run_step(step, self.branch)
            if self.is_stopped:
                return False

            self.step = self._advance()
            if step.is_failed and self.runner.pause_on_fail and self.step is not None:
                self.is_paused = True
                logger.info("Paused after failure of '%s'", step.text)
                return False
        return True

    async def run_step(self, step: Step, branch: Branch, is_detached: bool = False) -> None:
        """Execute one step with its Before/After Every Step hooks and record the outcome.

        A detached run (an injected step, or a step run again) never ends
        the branch early or skips other branches on failure.
        """
        if step.is_skipped:
            return
        if step.is_skip:
            logger.debug("Skipping '%s' (-s)", step.text)
            self.tree.skip_step(step, branch)
            return

        error: StepError | None = None
        for hook in branch.before_every_step:
            error = await self.run_hook(hook)
            if error is not None:
                break

        if error is None:
            try:
                self._enter_scope(step)
                await self._execute(step, branch)
            except Exception as exc:
                error = to_step_error(exc, step)

        is_passed = error is None
        pause_on_fail = self.runner.pause_on_fail or is_detached
        self.tree.mark_step(
            step,
            branch,
            is_passed=is_passed,
            as_expected=is_passed != step.is_expected_fail,
            error=error,
            stop_branch_now=not is_passed and not pause_on_fail,
            skip_repeat_branches=self.runner.skip_repeat_branches and not is_detached,
        )
        if error is not None:
            logger.debug("Step '%s' failed: %s", step.text, error.message)

        for hook in branch.after_every_step:
            hook_error = await self.run_hook(hook)
            if hook_error is not None and not step.is_failed:
                step.mark("fail", hook_error)
                step.as_expected = step.is_expected_fail
                if not pause_on_fail or branch.is_complete:
                    branch.finish_off()

    async def _execute(self, step: Step, branch: Branch) -> None:
        result: Any = None
        if step.is_function_call:
            self._passed_in = self._bind_inputs(step)
            if step.code_block is not None:
                self._local_stack.append(self.local_vars)
                self.local_vars = dict(self._passed_in)
                try:
                    result = await self.runner.executor.execute(
                        step.code_block, self._context(step, branch)
                    )
                finally:
                    self.local_vars = self._local_stack.pop()
        elif step.code_block is not None:
            context = self._context(step, branch)
            result = await self.runner.executor.execute(step.code_block, context)

        for assignment in step.vars_being_set:
            if is_string_literal(assignment.value):
                value = unescape(self.replace_vars(strip_quotes(assignment.value)))
            elif step.code_block is not None:
                value = result
            else:
                continue
            if assignment.is_local:
                self.set_local(assignment.name, value)
            else:
                self.set_global(assignment.name, value)

    async def run_hook(self, hook: Step) -> StepError | None:
        if hook.code_block is None:
            return None
        try:
            await self.runner.executor.execute(hook.code_block, self._context(hook))
        except Exception as exc:
            error = to_step_error(exc, hook)
            logger.warning("Hook '%s' failed: %s", hook.text, error.message)
            return error
        return None

    def _context(self, step: Step, branch: Branch | None = None) -> StepContext:
        return StepContext(
            runner=self.runner,
            instance=self,
            step=step,
            branch=branch if branch is not None else self.branch,
            persistent=self.runner.persistent,
        )

    def _enter_scope(self, step: Step) -> None:
        """Push or pop local scopes as the branch moves in and out of functions."""
        prev_level = self._prev_step.branch_indents if self._prev_step else 0
        if step.branch_indents > prev_level:
            for _ in range(step.branch_indents - prev_level):
                self._local_stack.append(self.local_vars)
                self.local_vars = {}
            self.local_vars.update(self._passed_in)
            self._passed_in = {}
        elif step.branch_indents < prev_level:
            for _ in range(prev_level - step.branch_indents):
                self.local_vars = self._local_stack.pop() if self._local_stack else {}
        self._prev_step = step

    def _bind_inputs(self, step: Step) -> dict[str, Any]:
        """Values a function call passes in, keyed by the declaration's ``{{param}}`` names."""
        if step.function_declaration_text is None:
            return {}
        params = [
            strip_brackets(token)
            for token in find_inputs(step.function_declaration_text)
            if token.startswith("{{")
        ]
        call_text = step.vars_being_set[0].value if step.vars_being_set else step.text
        return {
            name: self._input_value(token)
            for name, token in zip(params, find_inputs(call_text), strict=False)
        }

    def _input_value(self, token: str) -> Any:
        if token.startswith("{{"):
            return self.get_local(strip_brackets(token))
        if token.startswith("{"):
            return self.get_global(strip_brackets(token))
        if token.startswith("["):
            return strip_brackets(token)
        return unescape(self.replace_vars(strip_quotes(token)))

    def replace_vars(self, text: str) -> str:
        """Substitute ``{var}`` and ``{{var}}`` references with their values."""

        def substitute(match: Any) -> str:
            name = strip_brackets(match.group(0))
            if match.group("local"):
                return str(self.get_local(name))
            return str(self.get_global(name))

        return VAR_REGEX.sub(substitute, text)

    def get_global(self, name: str) -> Any:
        if name not in self.global_vars:
            raise UndefinedVariableError(f"The variable {{{name}}} wasn't set")
        return self.global_vars[name]

    def set_global(self, name: str, value: Any) -> None:
        self.global_vars[name] = value

    def get_local(self, name: str) -> Any:
        if name not in self.local_vars:
            raise UndefinedVariableError(f"The variable {{{{{name}}}}} wasn't set")
        return self.local_vars[name]

    def set_local(self, name: str, value: Any) -> None:
        self.local_vars[name] = value
