# agentflow/core/types/status.py
"""
Core enums shared by every engine layer.
This module should not import from other agentflow modules.
"""

from enum import Enum


class RunStatus(str, Enum):
    """
    Status shared by Task Process, Task Run and Workflow Run.

    State machine:
        PENDING → RUNNING → COMPLETED
                          → FAILED
                          → TIMEOUT
                          → STOPPED
    """

    PENDING = 'Pending'
    """Created, waiting to be dispatched or for a worker to pick it up"""

    RUNNING = 'Running'
    """A worker holds it (process) or at least one child is not terminal"""

    COMPLETED = 'Completed'
    """Finished successfully"""

    FAILED = 'Failed'
    """Failed after exhausting retries, or short-circuited by an upstream failure"""

    STOPPED = 'Stopped'
    """Cancelled explicitly; never retried automatically"""

    TIMEOUT = 'Timeout'
    """Exceeded timeout_after_seconds; terminal, never retried"""

    @property
    def is_terminal(self) -> bool:
        """Whether this status represents a final state (no further transitions)."""
        return self in RUN_TERMINAL_STATES

    @property
    def is_failure(self) -> bool:
        """Whether this terminal status blocks dependents (Failed or Timeout)."""
        return self in RUN_FAILURE_STATES


RUN_TERMINAL_STATES: frozenset[RunStatus] = frozenset({
    RunStatus.COMPLETED,
    RunStatus.FAILED,
    RunStatus.STOPPED,
    RunStatus.TIMEOUT,
})

RUN_FAILURE_STATES: frozenset[RunStatus] = frozenset({
    RunStatus.FAILED,
    RunStatus.TIMEOUT,
})

RUN_ACTIVE_STATES: frozenset[RunStatus] = frozenset({
    RunStatus.PENDING,
    RunStatus.RUNNING,
})


class ListenerStatus(str, Enum):
    """Status of a workflow listener subscription."""

    PENDING = 'pending'
    RUNNING = 'running'
    COMPLETED = 'completed'
    FAILED = 'failed'

    @property
    def is_terminal(self) -> bool:
        """Whether the listener callback has already been delivered."""
        return self in LISTENER_TERMINAL_STATES


LISTENER_TERMINAL_STATES: frozenset[ListenerStatus] = frozenset({
    ListenerStatus.COMPLETED,
    ListenerStatus.FAILED,
})


class ArtifactMode(str, Enum):
    """How a task definition consumes (input) or produces (output) artifacts."""

    SINGLE = 'single'
    SPLIT = 'split'
    MERGE = 'merge'
