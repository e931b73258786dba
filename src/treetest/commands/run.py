"""Run command: execute the branches of test files."""

import asyncio
from pathlib import Path

import typer
from pydantic import ValidationError
from rich.markup import escape

from ..config import load_config
from ..core import PythonCodeExecutor, Runner, Tree
from ..errors import TreeTestError
from ..output import get_output_context
from .branches import build_tree


async def _run(runner: Runner) -> bool:
    """Run to completion. A pause can't be resumed from here, so it ends the run."""
    is_complete = await runner.run()
    if runner.is_paused:
        step = runner.next_ready_step()
        where = f"{step.text} ({step.filename}:{step.line_number})" if step else "end of branch"
        get_output_context().print(f"[yellow]Paused before:[/yellow] {escape(where)}")
        await runner.stop()
    return is_complete


def _summary(tree: Tree, runner: Runner) -> dict[str, object]:
    return {
        "branches": len(tree.branches),
        "passed": tree.get_branch_count(passed_only=True),
        "failed": tree.get_branch_count(failed_only=True),
        "skipped": tree.get_branch_count(skipped_only=True),
        "unexpected_steps": tree.get_step_count(unexpected_only=True),
        "elapsed_ms": tree.elapsed,
        "runner": runner.serialize(),
    }


def run(
    files: list[Path] = typer.Argument(..., exists=True, dir_okay=False, help="Test files"),
    prev: Path | None = typer.Option(
        None, "--prev", "-p", exists=True, dir_okay=False, help="Branches JSON of a previous run"
    ),
    out: Path | None = typer.Option(None, "--out", "-o", help="Write branches JSON here"),
    max_parallel: int | None = typer.Option(
        None, "--max-parallel", "-n", min=1, help="Branches run at once"
    ),
    groups: str | None = typer.Option(
        None, "--groups", "-g", help="Only branches in these comma-separated groups"
    ),
    no_debug: bool = typer.Option(False, "--no-debug", help="Fail on any $ or ~"),
    config_path: Path = typer.Option(Path("."), "--config", "-c", help="Config file or directory"),
) -> None:
    """Run the branches of test files and report the outcome."""
    ctx = get_output_context()

    try:
        config = load_config(config_path)
        tree = build_tree(files, config, groups=groups, no_debug=no_debug)
        if prev is not None:
            tree.merge_branches_from_prev_run(prev.read_text())
    except TreeTestError as e:
        ctx.error(str(e))
        raise typer.Exit(2) from None
    except ValidationError as e:
        ctx.error(f"Invalid previous run file: {e}")
        raise typer.Exit(2) from None

    runner = Runner(
        tree,
        PythonCodeExecutor(),
        max_parallel=max_parallel or config.runner.max_parallel,
        skip_passed=config.runner.skip_passed,
        skip_repeat_branches=config.runner.skip_repeat_branches,
        pause_on_fail=config.runner.pause_on_fail,
    )
    runner.init()
    is_complete = asyncio.run(_run(runner))

    if out is not None:
        out.write_text(tree.serialize_branches_json())

    summary = _summary(tree, runner)
    all_passed = is_complete and tree.get_branch_count(failed_only=True) == 0

    if ctx.json_mode:
        ctx.print_json(summary)
    else:
        ctx.console.print(
            f"[bold]{summary['branches']}[/bold] branches: "
            f"[green]{summary['passed']} passed[/green], "
            f"[red]{summary['failed']} failed[/red], "
            f"[yellow]{summary['skipped']} skipped[/yellow]"
        )
        for branch in tree.branches:
            if branch.is_failed:
                failed = next((s for s in branch.steps if s.is_failed), None)
                error = failed.error if failed else branch.error
                if error is not None:
                    location = f"[{error.filename}:{error.line_number}]"
                    ctx.console.print(f"[red]✗[/red] {escape(error.message)} {escape(location)}")
        if out is not None:
            ctx.console.print(f"Branches written to {out}")

    if not all_passed:
        raise typer.Exit(1)
