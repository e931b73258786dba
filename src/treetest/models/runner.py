"""Serializable snapshot of a runner's state."""

from enum import Enum

from pydantic import BaseModel


class RunnerState(str, Enum):
    """Lifecycle states of a runner."""

    NOT_STARTED = "not_started"
    RUNNING = "running"
    PAUSED = "paused"
    STOPPED = "stopped"
    COMPLETE = "complete"


class RunnerSnapshot(BaseModel):
    """Plain runner state; the shared ``persistent`` context is left out."""

    state: RunnerState
    max_parallel: int
    is_paused: bool
    is_stopped: bool
    is_complete: bool
    elapsed: float | None = None
