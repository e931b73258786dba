"""Runner: executes a tree's branches with cooperative concurrency.

The runner is a small state machine::

    NOT_STARTED -> RUNNING -> (PAUSED <-> RUNNING) -> STOPPED | COMPLETE

``run()`` starts or resumes. A run pauses when an instance reaches a ``~``
step, or a step fails while ``pause_on_fail`` is on. While paused,
``run_one_step()``, ``skip_one_step()``, ``run_last_step()`` and ``inject()``
act at the paused instance's cursor.
"""

import asyncio
import logging
import time
from typing import Any

from ..constants import DEFAULT_MAX_PARALLEL
from ..errors import RunnerStateError
from ..models import Branch, Frequency, RunnerSnapshot, RunnerState, Step
from .executor import PythonCodeExecutor, StepExecutor
from .run_instance import RunInstance
from .tree import Tree

logger = logging.getLogger(__name__)

_UNSET: Any = object()


class Runner:
    """Runs the branches of one tree.

    Args:
        tree: Tree to run. Branches are generated on ``init()`` if the tree
            wasn't branchified yet.
        executor: Runs code blocks. Defaults to ``PythonCodeExecutor``.
        max_parallel: Upper bound on branches running at once.
        skip_passed: Skip branches that passed in the previous run.
        skip_repeat_branches: After a failure or a -T/-M stop, skip not-yet-run
            branches that share every step up to that point.
        pause_on_fail: Pause after a failing step instead of ending the
            branch. Always on when the tree is in debug mode.
        groups: Group filter used when generating branches.
        min_frequency: Frequency filter used when generating branches.
        no_debug: Reject ``$`` and ``~`` when generating branches.

    Attributes:
        persistent: Shared dict visible to every step as ``persistent``.
            Lives for the whole run, survives pauses, and is never
            serialized.
        state: Current ``RunnerState``.
    """

    def __init__(
        self,
        tree: Tree,
        executor: StepExecutor | None = None,
        max_parallel: int = DEFAULT_MAX_PARALLEL,
        skip_passed: bool = True,
        skip_repeat_branches: bool = True,
        pause_on_fail: bool = False,
        groups: list[str] | None = None,
        min_frequency: Frequency | None = None,
        no_debug: bool = False,
    ) -> None:
        if max_parallel < 1:
            raise ValueError("max_parallel must be at least 1")
        self.tree = tree
        self.executor: StepExecutor = executor or PythonCodeExecutor()
        self.max_parallel = max_parallel
        self.skip_passed = skip_passed
        self.skip_repeat_branches = skip_repeat_branches
        self._pause_on_fail = pause_on_fail
        self.groups = groups
        self.min_frequency = min_frequency
        self.no_debug = no_debug

        self.persistent: dict[str, Any] = {}
        self.run_instances: list[RunInstance] = []
        self.state = RunnerState.NOT_STARTED
        self._time_started: float | None = None
        self._after_everything_started = False
        self._is_initialized = False

    @property
    def pause_on_fail(self) -> bool:
        return self._pause_on_fail or self.tree.is_debug

    @property
    def is_paused(self) -> bool:
        return self.state is RunnerState.PAUSED

    @property
    def is_stopped(self) -> bool:
        return self.state is RunnerState.STOPPED

    @property
    def is_complete(self) -> bool:
        return self.state is RunnerState.COMPLETE

    def has_paused_instance(self) -> bool:
        return any(instance.is_paused for instance in self.run_instances)

    def init(self, is_first_run: bool = True) -> None:
        """Generate branches if needed and reset run bookkeeping.

        Calling it again before ``run()`` has no further effect.

        Args:
            is_first_run: Apply ``skip_passed`` to branches carrying
                ``passed_last_time``.
        """
        if self._is_initialized:
            return
        if not self.tree.is_branchified:
            self.tree.generate_branches(self.groups, self.min_frequency, self.no_debug)
        self.run_instances = []
        self.state = RunnerState.NOT_STARTED
        self._after_everything_started = False
        if is_first_run and self.skip_passed:
            skipped = self.tree.skip_passed_branches()
            if skipped:
                logger.info("Skipping %d branches that passed last time", skipped)
        self._is_initialized = True

    async def run(self) -> bool:
        """Start or resume the run.

        Returns:
            True if every branch reached a terminal state without pausing
            or stopping.

        Raises:
            RunnerStateError: If the runner was stopped.
        """
        if self.is_stopped:
            raise RunnerStateError("Cannot run a stopped runner")
        self.init()

        if self.is_paused:
            logger.info("Resuming run")
            self.state = RunnerState.RUNNING
            self.tree.elapsed = -1
            # Idle instances come back too, for branches that never started
            await asyncio.gather(*(instance.run() for instance in self.run_instances))
        else:
            logger.info("Starting run of %d branches", len(self.tree.branches))
            self.state = RunnerState.RUNNING
            self._time_started = time.monotonic()
            self.tree.elapsed = None
            if await self._run_before_everything():
                await self._run_branches()

        await self._end()
        return self.is_complete

    async def run_one_step(self) -> bool:
        """Run the paused step, then pause again.

        Returns:
            True if the branch completed. Its After Every Branch hooks ran.
            The After Everything hooks ran too if no other branch is paused
            or still waiting to start.

        Raises:
            RunnerStateError: If the runner isn't paused.
        """
        instance = self._paused_instance("Must be paused to run a step")
        is_branch_complete = await instance.run_one_step()
        await self._after_single_step(is_branch_complete)
        return is_branch_complete

    async def skip_one_step(self) -> bool:
        """Skip the paused step, then pause again. Same return value as ``run_one_step``."""
        instance = self._paused_instance("Must be paused to skip a step")
        is_branch_complete = await instance.skip_one_step()
        await self._after_single_step(is_branch_complete)
        return is_branch_complete

    async def run_last_step(self) -> Step | None:
        """Run the step before the paused position again, then stay paused.

        Returns:
            The step that ran again, None if no step ran before the pause.

        Raises:
            RunnerStateError: If the runner isn't paused.
        """
        instance = self._paused_instance("Must be paused to run a step")
        return await instance.run_last_step()

    async def inject(self, text: str) -> Branch:
        """Parse ``text`` as a step and run it without advancing the paused position.

        Returns:
            Branch of the injected steps, with their outcomes.

        Raises:
            RunnerStateError: If the runner isn't paused.
            TreeTestError: If ``text`` doesn't parse or a call doesn't resolve.
        """
        instance = self._paused_instance("Must be paused to run a step")
        return await instance.inject(text)

    async def stop(self) -> None:
        """Stop every instance after its in-flight step, then run After Everything."""
        if self.is_stopped or self.is_complete:
            return
        logger.info("Stopping run")
        self.state = RunnerState.STOPPED
        for instance in self.run_instances:
            instance.stop()
        self._finalize_elapsed()
        await self._run_after_everything()

    def next_ready_step(self) -> Step | None:
        """Step the first paused instance would run next, None if there's none."""
        for instance in self.run_instances:
            if instance.is_paused:
                return instance.step
        return None

    def last_step(self) -> Step | None:
        """Step the first paused instance ran last, None if there's none."""
        for instance in self.run_instances:
            if instance.is_paused:
                return instance.last_step()
        return None

    def p(self, name: str, value: Any = _UNSET) -> Any:
        """Get a persistent variable, or set it when ``value`` is given."""
        if value is _UNSET:
            return self.persistent.get(name)
        self.persistent[name] = value
        return value

    def serialize(self) -> dict[str, Any]:
        """Snapshot of the runner state as JSON-compatible data."""
        snapshot = RunnerSnapshot(
            state=self.state,
            max_parallel=self.max_parallel,
            is_paused=self.is_paused,
            is_stopped=self.is_stopped,
            is_complete=self.is_complete,
            elapsed=self.tree.elapsed,
        )
        return snapshot.model_dump(mode="json")

    def _paused_instance(self, message: str) -> RunInstance:
        if not self.is_paused:
            raise RunnerStateError(message)
        for instance in self.run_instances:
            if instance.is_paused:
                return instance
        raise RunnerStateError(message)

    async def _after_single_step(self, is_branch_complete: bool) -> None:
        if self.has_paused_instance() or not is_branch_complete:
            return
        if self.tree.has_unstarted_branches():
            logger.info("Branch complete, run() continues with the remaining branches")
            return
        self.tree.elapsed = -1
        await self._run_after_everything()
        self.state = RunnerState.COMPLETE

    async def _run_branches(self) -> None:
        count = min(self.max_parallel, len(self.tree.branches))
        self.run_instances = [RunInstance(self) for _ in range(count)]
        await asyncio.gather(*(instance.run() for instance in self.run_instances))

    async def _run_hooks(self, hooks: list[Step], label: str, abort_on_error: bool) -> bool:
        """Run tree-wide hooks in order, recording each outcome on the hook.

        Returns:
            False if a hook failed (or a stop came in) and the rest were abandoned.
        """
        hook_instance = RunInstance(self)
        for hook in hooks:
            error = await hook_instance.run_hook(hook)
            hook.mark("pass" if error is None else "fail", error)
            if error is not None:
                logger.warning("%s hook failed: %s", label, error.message)
            if abort_on_error and (error is not None or self.is_stopped):
                return False
        return True

    async def _run_before_everything(self) -> bool:
        return await self._run_hooks(
            self.tree.before_everything, "Before Everything", abort_on_error=True
        )

    async def _run_after_everything(self) -> None:
        if self._after_everything_started:
            return
        self._after_everything_started = True
        await self._run_hooks(self.tree.after_everything, "After Everything", abort_on_error=False)

    def _finalize_elapsed(self) -> None:
        if self.tree.elapsed == -1 or self._time_started is None:
            return
        self.tree.elapsed = (time.monotonic() - self._time_started) * 1000

    async def _end(self) -> None:
        if self.is_stopped:
            # stop() runs After Everything itself
            return
        if self.has_paused_instance():
            self.state = RunnerState.PAUSED
            self.tree.elapsed = -1
            logger.info("Run paused")
            return
        await self._run_after_everything()
        if self.is_stopped:
            # An After Everything hook called stop()
            return
        self._finalize_elapsed()
        self.state = RunnerState.COMPLETE
        logger.info(
            "Run complete: %d passed, %d failed, %d skipped",
            self.tree.get_branch_count(passed_only=True),
            self.tree.get_branch_count(failed_only=True),
            self.tree.get_branch_count(skipped_only=True),
        )
