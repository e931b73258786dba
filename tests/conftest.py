"""Shared test fixtures for treetest tests."""

import textwrap
from collections.abc import Callable
from pathlib import Path

import pytest
from typer.testing import CliRunner

from treetest.core import Tree


def build_tree(source: str, filename: str = "test.tt", **filters) -> Tree:
    """Parse dedented source into a fresh tree and generate its branches."""
    tree = Tree()
    tree.parse_in(textwrap.dedent(source).lstrip("\n"), filename)
    tree.generate_branches(**filters)
    return tree


@pytest.fixture
def runner() -> CliRunner:
    """Create CLI test runner."""
    return CliRunner()


@pytest.fixture
def make_tree() -> Callable[..., Tree]:
    """Factory fixture: source text in, branchified tree out."""
    return build_tree


@pytest.fixture
def write_test_file(tmp_path: Path) -> Callable[[str, str], Path]:
    """Write dedented source to a file under tmp_path and return its path."""

    def write(source: str, name: str = "example.tt") -> Path:
        path = tmp_path / name
        path.write_text(textwrap.dedent(source).lstrip("\n"))
        return path

    return write
