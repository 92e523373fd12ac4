"""SQLAlchemy models for task definitions, task runs and task processes."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from sqlalchemy import (
    Boolean,
    Enum as SQLAlchemyEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    false as sa_false,
)
from sqlalchemy.orm import Mapped, mapped_column

from agentflow.core.defaults import DEFAULT_QUEUE_NAME, DEFAULT_TIMEOUT_AFTER_SECONDS
from agentflow.core.models.base import Base, JSONType, UTCDateTime, new_id, utcnow
from agentflow.core.models.retry import ProcessRetryPolicy
from agentflow.core.models.runner_config import decode_runner_config
from agentflow.core.models.usage import UsageSummary
from agentflow.core.types.status import ArtifactMode, RunStatus


def _run_status_column() -> Any:
    return SQLAlchemyEnum(RunStatus, native_enum=False, length=16)


class TaskDefinitionModel(Base):
    """
    Reusable description of how one pipeline stage runs.

    - runner_kind: selects the runner and the RunnerConfig variant
    - agent_binding: agent/model the runner talks to, if any
    - input/output_artifact_mode: single, split or merge
    - input/output_artifact_levels: lineage depths to read/expose ([0] = top level)
    - timeout_after_seconds: per-process hard limit
    - queue_type: worker pool the processes are dispatched to
    - task_runner_config: JSON bag decoded into the runner's config type
    - retry_policy: ProcessRetryPolicy as JSON
    """

    __tablename__ = 'agentflow_task_definitions'

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    team_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    runner_kind: Mapped[str] = mapped_column(String(64), nullable=False)
    agent_binding: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    schema_definition_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)

    input_artifact_mode: Mapped[ArtifactMode] = mapped_column(
        SQLAlchemyEnum(ArtifactMode, native_enum=False, length=16),
        nullable=False,
        default=ArtifactMode.SINGLE,
    )
    input_artifact_levels: Mapped[Optional[list[int]]] = mapped_column(
        JSONType, nullable=True
    )
    output_artifact_mode: Mapped[ArtifactMode] = mapped_column(
        SQLAlchemyEnum(ArtifactMode, native_enum=False, length=16),
        nullable=False,
        default=ArtifactMode.SINGLE,
    )
    output_artifact_levels: Mapped[Optional[list[int]]] = mapped_column(
        JSONType, nullable=True
    )

    timeout_after_seconds: Mapped[int] = mapped_column(
        Integer, nullable=False, default=DEFAULT_TIMEOUT_AFTER_SECONDS
    )
    queue_type: Mapped[str] = mapped_column(
        String(100), nullable=False, default=DEFAULT_QUEUE_NAME
    )
    task_runner_config: Mapped[dict[str, Any]] = mapped_column(
        JSONType, nullable=False, default=dict
    )
    retry_policy: Mapped[dict[str, Any]] = mapped_column(
        JSONType, nullable=False, default=dict
    )

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (UniqueConstraint('team_id', 'name', name='uq_task_definition_name'),)

    def runner_config(self) -> Any:
        return decode_runner_config(self.runner_kind, self.task_runner_config)

    def retry(self) -> ProcessRetryPolicy:
        return ProcessRetryPolicy.model_validate(self.retry_policy or {})


class TaskRunModel(Base):
    """
    All processes executing one task definition within one workflow run
    (or standalone when workflow_run_id is None).

    Status is derived from the current attempt's processes; see
    agentflow.core.tasks.state.compute_task_run_status.
    """

    __tablename__ = 'agentflow_task_runs'

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    team_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    task_definition_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey('agentflow_task_definitions.id'),
        nullable=False,
        index=True,
    )
    workflow_run_id: Mapped[Optional[str]] = mapped_column(
        String(36),
        ForeignKey('agentflow_workflow_runs.id', ondelete='CASCADE'),
        nullable=True,
        index=True,
    )
    workflow_node_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False, default='')

    status: Mapped[RunStatus] = mapped_column(
        _run_status_column(), nullable=False, default=RunStatus.PENDING, index=True
    )
    input_artifact_ids: Mapped[list[str]] = mapped_column(
        JSONType, nullable=False, default=list
    )
    # Assembled per output_artifact_mode when the run completes
    output_artifact_ids: Mapped[list[str]] = mapped_column(
        JSONType, nullable=False, default=list
    )
    # Incremented by every rerun; previous attempts live in agentflow_task_run_attempts
    attempt_number: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    usage_summary: Mapped[dict[str, Any]] = mapped_column(
        JSONType, nullable=False, default=dict
    )

    started_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    failed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    stopped_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        UniqueConstraint(
            'workflow_run_id', 'workflow_node_id', name='uq_task_run_workflow_node'
        ),
    )

    @property
    def usage(self) -> UsageSummary:
        return UsageSummary.from_json(self.usage_summary)

    def __repr__(self) -> str:
        return f'<TaskRun {self.id[:8]} {self.name!r} {self.status.value}>'


class TaskProcessModel(Base):
    """
    Finest-grained schedulable unit of a task run.

    - sequence: creation order within the task run (drives output ordering)
    - operation: runner-specific step name ('default', 'comparison_window', 'merge', ...)
    - job_dispatch_id: id of the queued job backing the current attempt;
      a process may only become RUNNING while it is set
    - attempt_count: retries used so far
    - is_intermediate: outputs stay on the process, never reach the task run
    - timeout_at: started_at + timeout_after_seconds of the current attempt
    - archived_at: set when a rerun supersedes the attempt this process belongs to
    """

    __tablename__ = 'agentflow_task_processes'

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    team_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    task_run_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey('agentflow_task_runs.id', ondelete='CASCADE'),
        nullable=False,
        index=True,
    )
    sequence: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    name: Mapped[str] = mapped_column(String(255), nullable=False, default='')
    operation: Mapped[str] = mapped_column(String(64), nullable=False, default='default')
    queue_type: Mapped[str] = mapped_column(
        String(100), nullable=False, default=DEFAULT_QUEUE_NAME, index=True
    )

    status: Mapped[RunStatus] = mapped_column(
        _run_status_column(), nullable=False, default=RunStatus.PENDING, index=True
    )
    input_artifact_ids: Mapped[list[str]] = mapped_column(
        JSONType, nullable=False, default=list
    )
    output_artifact_ids: Mapped[list[str]] = mapped_column(
        JSONType, nullable=False, default=list
    )
    agent_thread_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    job_dispatch_id: Mapped[Optional[str]] = mapped_column(
        String(36), nullable=True, index=True
    )
    attempt_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_intermediate: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=sa_false()
    )
    meta: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    error: Mapped[Optional[dict[str, Any]]] = mapped_column(JSONType, nullable=True)
    usage_summary: Mapped[dict[str, Any]] = mapped_column(
        JSONType, nullable=False, default=dict
    )

    dispatched_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    started_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    timeout_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    failed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    stopped_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    archived_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        Index('ix_agentflow_task_processes_run_sequence', 'task_run_id', 'sequence'),
        Index('ix_agentflow_task_processes_queue_status', 'queue_type', 'status'),
    )

    @property
    def usage(self) -> UsageSummary:
        return UsageSummary.from_json(self.usage_summary)

    def is_past_timeout(self, now: datetime) -> bool:
        return self.timeout_at is not None and now >= self.timeout_at

    def __repr__(self) -> str:
        return f'<TaskProcess {self.id[:8]} {self.operation} {self.status.value}>'


class TaskProcessAttemptModel(Base):
    """One failed or timed-out attempt of a task process (append-only)."""

    __tablename__ = 'agentflow_task_process_attempts'

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    task_process_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey('agentflow_task_processes.id', ondelete='CASCADE'),
        nullable=False,
        index=True,
    )
    attempt_number: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[RunStatus] = mapped_column(_run_status_column(), nullable=False)
    job_dispatch_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    error: Mapped[Optional[dict[str, Any]]] = mapped_column(JSONType, nullable=True)
    started_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    ended_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)


class TaskRunAttemptModel(Base):
    """
    Snapshot of a superseded task run attempt, written by rerun.

    Each record references the attempt it replaced, so the history of a
    task run is a chain instead of rows cleared in place.
    """

    __tablename__ = 'agentflow_task_run_attempts'

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    task_run_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey('agentflow_task_runs.id', ondelete='CASCADE'),
        nullable=False,
        index=True,
    )
    attempt_number: Mapped[int] = mapped_column(Integer, nullable=False)
    previous_attempt_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey('agentflow_task_run_attempts.id'), nullable=True
    )
    status: Mapped[RunStatus] = mapped_column(_run_status_column(), nullable=False)
    process_ids: Mapped[list[str]] = mapped_column(JSONType, nullable=False, default=list)
    output_artifact_ids: Mapped[list[str]] = mapped_column(
        JSONType, nullable=False, default=list
    )
    usage_summary: Mapped[dict[str, Any]] = mapped_column(
        JSONType, nullable=False, default=dict
    )
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    started_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    ended_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
