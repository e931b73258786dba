"""Branches command: parse test files and show the branches they produce."""

from pathlib import Path

import typer
from rich.table import Table

from ..config import TreeTestConfig, load_config
from ..core import Tree
from ..errors import TreeTestError
from ..models import Frequency
from ..output import get_output_context


def build_tree(
    files: list[Path],
    config: TreeTestConfig,
    groups: str | None = None,
    min_frequency: Frequency | None = None,
    no_debug: bool = False,
) -> Tree:
    """Parse every file into one tree and generate its branches.

    Command-line filters override the ``[branches]`` config section.

    Raises:
        TreeTestError: On any parse or branchify error.
        OSError: If a file can't be read.
    """
    tree = Tree()
    for path in files:
        tree.parse_in(path.read_text(), str(path))

    group_list = [g.strip() for g in groups.split(",") if g.strip()] if groups else None
    tree.generate_branches(
        groups=group_list or config.branches.groups,
        min_frequency=min_frequency or config.branches.min_frequency,
        no_debug=no_debug or config.branches.no_debug,
    )
    return tree


def branches(
    files: list[Path] = typer.Argument(..., exists=True, dir_okay=False, help="Test files"),
    groups: str | None = typer.Option(
        None, "--groups", "-g", help="Only branches in these comma-separated groups"
    ),
    min_frequency: str | None = typer.Option(
        None, "--min-frequency", help="Only branches at or above high, med or low"
    ),
    no_debug: bool = typer.Option(False, "--no-debug", help="Fail on any $ or ~"),
    show: bool = typer.Option(False, "--list", "-l", help="List every branch's steps"),
    config_path: Path = typer.Option(Path("."), "--config", "-c", help="Config file or directory"),
) -> None:
    """Parse test files and report the branches they generate."""
    ctx = get_output_context()

    if min_frequency is not None and min_frequency not in ("high", "med", "low"):
        ctx.error(f"Invalid frequency: {min_frequency} (use high, med or low)")
        raise typer.Exit(1)

    try:
        config = load_config(config_path)
        tree = build_tree(files, config, groups, min_frequency, no_debug)  # type: ignore[arg-type]
    except TreeTestError as e:
        ctx.error(str(e))
        raise typer.Exit(2) from None

    data = tree.serialize_branches()
    if ctx.json_mode:
        ctx.print_json({"count": len(tree.branches), **data})
        return

    ctx.console.print(f"[bold]{len(tree.branches)}[/bold] branches")
    if not show:
        return

    table = Table("#", "Steps", "Frequency", "Groups")
    for i, branch in enumerate(tree.branches, start=1):
        table.add_row(
            str(i),
            "\n".join(step.text for step in branch.steps),
            branch.frequency or "",
            ", ".join(branch.groups),
        )
    ctx.print_table(table)
