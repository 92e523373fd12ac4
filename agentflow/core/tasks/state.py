"""
Status rules for task processes, task runs and workflow runs.

Pure functions over RunStatus values; the modules that own the rows
apply them under a row lock.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable

from agentflow.core.errors import illegal_transition
from agentflow.core.types.status import RunStatus

# Allowed process transitions. Terminal -> PENDING only happens through
# resume; COMPLETED is final (rerun archives the process instead).
PROCESS_TRANSITIONS: dict[RunStatus, frozenset[RunStatus]] = {
    RunStatus.PENDING: frozenset({RunStatus.RUNNING, RunStatus.STOPPED}),
    RunStatus.RUNNING: frozenset({
        RunStatus.COMPLETED,
        RunStatus.FAILED,
        RunStatus.TIMEOUT,
        RunStatus.STOPPED,
        RunStatus.PENDING,  # retry
    }),
    RunStatus.FAILED: frozenset({RunStatus.PENDING}),
    RunStatus.TIMEOUT: frozenset({RunStatus.PENDING}),
    RunStatus.STOPPED: frozenset({RunStatus.PENDING}),
    RunStatus.COMPLETED: frozenset(),
}


def can_transition(current: RunStatus, target: RunStatus) -> bool:
    return target in PROCESS_TRANSITIONS[current]


def ensure_transition(entity: str, entity_id: str, current: RunStatus, target: RunStatus) -> None:
    if not can_transition(current, target):
        raise illegal_transition(entity, entity_id, current.value, f'move to {target.value}')


def aggregate_status(statuses: Iterable[RunStatus]) -> RunStatus:
    """
    Status of a parent derived from its children.

    any non-terminal -> RUNNING
    else any FAILED  -> FAILED
    else any TIMEOUT -> TIMEOUT
    else any STOPPED -> STOPPED
    else             -> COMPLETED (also when there are no children)
    """
    seen = set(statuses)
    if any(not status.is_terminal for status in seen):
        return RunStatus.RUNNING
    for status in (RunStatus.FAILED, RunStatus.TIMEOUT, RunStatus.STOPPED):
        if status in seen:
            return status
    return RunStatus.COMPLETED


def compute_task_run_status(process_statuses: Iterable[RunStatus]) -> RunStatus:
    """Task run status from the statuses of its non-archived processes."""
    return aggregate_status(process_statuses)


def apply_status(entity: Any, status: RunStatus, now: datetime) -> RunStatus:
    """Set status and the matching timestamp; returns the previous status.

    Works on any row with started_at/completed_at/failed_at/stopped_at
    columns (processes, task runs, workflow runs).
    """
    previous = entity.status
    entity.status = status
    if status == RunStatus.RUNNING and entity.started_at is None:
        entity.started_at = now
    elif status == RunStatus.COMPLETED:
        entity.completed_at = now
    elif status in (RunStatus.FAILED, RunStatus.TIMEOUT):
        entity.failed_at = now
    elif status == RunStatus.STOPPED:
        entity.stopped_at = now
    return previous


def clear_terminal_timestamps(entity: Any) -> None:
    """Forget completion/failure/stop instants before an entity runs again."""
    entity.completed_at = None
    entity.failed_at = None
    entity.stopped_at = None
