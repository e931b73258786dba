"""Logging configuration for the treetest CLI."""

import logging
from enum import IntEnum
from typing import TextIO

from rich.console import Console
from rich.logging import RichHandler


class LogLevel(IntEnum):
    """Log level enumeration."""

    QUIET = logging.WARNING
    NORMAL = logging.INFO
    VERBOSE = logging.DEBUG


def configure_logging(
    verbosity: int = 0,
    quiet: bool = False,
    no_color: bool = False,
    stream: TextIO | None = None,
    debug: bool = False,
) -> Console:
    """Route treetest's log records through a RichHandler.

    Args:
        verbosity: Number of -v flags. One shows step and branch detail, two
            adds timestamps and source paths.
        quiet: Only warnings and errors; wins over verbosity.
        no_color: Plain output.
        stream: Where records go, stderr by default.
        debug: Step detail with timestamps and source paths.

    Returns:
        The handler's console, shared with ``OutputContext``.
    """
    if quiet:
        level = LogLevel.QUIET
    elif debug or verbosity >= 1:
        level = LogLevel.VERBOSE
    else:
        level = LogLevel.NORMAL

    console = Console(
        file=stream,
        stderr=stream is None,
        force_terminal=not no_color,
        no_color=no_color,
    )

    handler = RichHandler(
        console=console,
        show_time=debug or verbosity >= 2,
        show_path=debug or verbosity >= 2,
    )

    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[handler],
        force=True,
    )

    return console
