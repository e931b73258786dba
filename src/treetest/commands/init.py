"""Init command implementation."""

from pathlib import Path

import typer

from ..config import write_config_template
from ..constants import CONFIG_FILENAME
from ..output import get_output_context


def init(
    directory: Path = typer.Argument(
        Path("."),
        help="Directory to create treetest.toml in",
        file_okay=False,
    ),
) -> None:
    """Create a treetest.toml config template."""
    ctx = get_output_context()

    if not directory.exists():
        ctx.error(f"Directory not found: {directory}")
        raise typer.Exit(1)

    config_path = directory / CONFIG_FILENAME
    if config_path.exists():
        ctx.console.print(f"[yellow]Config already exists:[/yellow] {config_path}")
        return

    write_config_template(directory)
    ctx.success(f"Created config template: {config_path}", {"path": str(config_path)})
