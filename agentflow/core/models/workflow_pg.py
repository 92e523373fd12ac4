"""SQLAlchemy models for workflow definitions, runs and listeners."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from sqlalchemy import (
    Enum as SQLAlchemyEnum,
    ForeignKey,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from agentflow.core.models.base import Base, JSONType, UTCDateTime, new_id, utcnow
from agentflow.core.models.usage import UsageSummary
from agentflow.core.types.status import ListenerStatus, RunStatus


class WorkflowDefinitionModel(Base):
    """
    Directed acyclic graph of nodes (task definitions) and connections.

    `name` is the key external features use to start runs of this
    definition; it is unique per team.
    """

    __tablename__ = 'agentflow_workflow_definitions'

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    team_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (UniqueConstraint('team_id', 'name', name='uq_workflow_definition_name'),)


class WorkflowNodeModel(Base):
    """A node of a workflow definition, bound to one task definition."""

    __tablename__ = 'agentflow_workflow_nodes'

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    workflow_definition_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey('agentflow_workflow_definitions.id', ondelete='CASCADE'),
        nullable=False,
        index=True,
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    task_definition_id: Mapped[str] = mapped_column(
        String(36), ForeignKey('agentflow_task_definitions.id'), nullable=False
    )
    # Editor coordinates {x, y}
    settings: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    params: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)


class WorkflowConnectionModel(Base):
    """Edge from a source node's output port to a target node's input port."""

    __tablename__ = 'agentflow_workflow_connections'

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    workflow_definition_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey('agentflow_workflow_definitions.id', ondelete='CASCADE'),
        nullable=False,
        index=True,
    )
    source_node_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey('agentflow_workflow_nodes.id', ondelete='CASCADE'),
        nullable=False,
        index=True,
    )
    source_output_port: Mapped[str] = mapped_column(
        String(64), nullable=False, default='output'
    )
    target_node_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey('agentflow_workflow_nodes.id', ondelete='CASCADE'),
        nullable=False,
        index=True,
    )
    target_input_port: Mapped[str] = mapped_column(String(64), nullable=False, default='input')

    __table_args__ = (
        UniqueConstraint(
            'source_node_id',
            'source_output_port',
            'target_node_id',
            'target_input_port',
            name='uq_workflow_connection',
        ),
    )


class WorkflowRunModel(Base):
    """
    One execution of a workflow definition.

    - input_artifact_ids: artifacts handed to the starting nodes
    - short_circuited_node_ids: nodes marked Failed because an upstream
      task run failed; no task run is ever created for them
    """

    __tablename__ = 'agentflow_workflow_runs'

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    team_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    workflow_definition_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey('agentflow_workflow_definitions.id'),
        nullable=False,
        index=True,
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False, default='')
    status: Mapped[RunStatus] = mapped_column(
        SQLAlchemyEnum(RunStatus, native_enum=False, length=16),
        nullable=False,
        default=RunStatus.PENDING,
        index=True,
    )
    input_artifact_ids: Mapped[list[str]] = mapped_column(
        JSONType, nullable=False, default=list
    )
    short_circuited_node_ids: Mapped[list[str]] = mapped_column(
        JSONType, nullable=False, default=list
    )
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

    @property
    def usage(self) -> UsageSummary:
        return UsageSummary.from_json(self.usage_summary)

    def __repr__(self) -> str:
        return f'<WorkflowRun {self.id[:8]} {self.name!r} {self.status.value}>'


class WorkflowListenerModel(Base):
    """
    Polymorphic subscription binding a workflow run to an external entity.

    (listener_type, listener_id) point at any domain entity; workflow_type
    tells apart several purposes for the same entity. Rows are never
    deleted and `metadata_` only ever grows (see listeners.merge_metadata).
    """

    __tablename__ = 'agentflow_workflow_listeners'

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    team_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    workflow_run_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey('agentflow_workflow_runs.id', ondelete='CASCADE'),
        nullable=False,
        index=True,
    )
    listener_type: Mapped[str] = mapped_column(String(100), nullable=False)
    listener_id: Mapped[str] = mapped_column(String(64), nullable=False)
    workflow_type: Mapped[str] = mapped_column(String(100), nullable=False)
    status: Mapped[ListenerStatus] = mapped_column(
        SQLAlchemyEnum(ListenerStatus, native_enum=False, length=16),
        nullable=False,
        default=ListenerStatus.PENDING,
        index=True,
    )
    # 'metadata' is reserved on declarative classes
    metadata_: Mapped[dict[str, Any]] = mapped_column(
        'metadata', JSONType, nullable=False, default=dict
    )

    started_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    failed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        UniqueConstraint(
            'listener_type',
            'listener_id',
            'workflow_run_id',
            'workflow_type',
            name='uq_workflow_listener',
        ),
    )
