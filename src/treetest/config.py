"""Configuration management for treetest."""

import tomllib
from pathlib import Path

import tomli_w
from pydantic import BaseModel, Field, ValidationError

from .constants import CONFIG_FILENAME, DEFAULT_MAX_PARALLEL
from .errors import ConfigurationError
from .models import Frequency


class RunnerConfig(BaseModel):
    """How branches are executed."""

    max_parallel: int = Field(default=DEFAULT_MAX_PARALLEL, ge=1)
    skip_passed: bool = True  # skip branches that passed in the previous run
    skip_repeat_branches: bool = True
    pause_on_fail: bool = False  # forced on when a ~ is present


class BranchesConfig(BaseModel):
    """Which branches are generated."""

    groups: list[str] | None = None
    min_frequency: Frequency | None = None
    no_debug: bool = False  # reject $ and ~ (use in CI)


class TreeTestConfig(BaseModel):
    """Root configuration for treetest."""

    runner: RunnerConfig = Field(default_factory=RunnerConfig)
    branches: BranchesConfig = Field(default_factory=BranchesConfig)


def load_config(path: Path) -> TreeTestConfig:
    """Load config from treetest.toml.

    Args:
        path: The config file, or the directory holding it

    Returns:
        Loaded configuration, or defaults if the file doesn't exist

    Raises:
        ConfigurationError: If the file is not valid TOML or fails validation
    """
    config_path = path / CONFIG_FILENAME if path.is_dir() else path
    if not config_path.exists():
        return TreeTestConfig()
    try:
        with open(config_path, "rb") as f:
            data = tomllib.load(f)
        return TreeTestConfig.model_validate(data)
    except (tomllib.TOMLDecodeError, ValidationError) as e:
        raise ConfigurationError(f"Invalid config: {e}", str(config_path)) from e


def write_config_template(directory: Path) -> Path:
    """Write default treetest.toml template.

    Args:
        directory: Directory to write into

    Returns:
        Path to the written config file
    """
    config_path = directory / CONFIG_FILENAME
    template = {
        "runner": {
            "max_parallel": DEFAULT_MAX_PARALLEL,
            "skip_passed": True,
            "skip_repeat_branches": True,
            "pause_on_fail": False,
        },
        # Optional filters: groups = ["smoke"], min_frequency = "med"
        "branches": {"no_debug": False},
    }
    with open(config_path, "wb") as f:
        tomli_w.dump(template, f)
    return config_path
