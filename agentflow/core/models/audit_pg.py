"""Append-only audit trail attached to aggregate roots."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from sqlalchemy import String
from sqlalchemy.orm import Mapped, mapped_column

from agentflow.core.models.base import Base, JSONType, UTCDateTime, new_id, utcnow


class AuditLogModel(Base):
    """
    One lifecycle event of a workflow run, task run, task process or listener.

    - entity_type: 'workflow_run' | 'task_run' | 'task_process' | 'workflow_listener'
    - event: short verb ('status', 'rerun', 'reset_from_windows', ...)
    - old_status / new_status: set for status transitions
    - data: free-form event payload
    """

    __tablename__ = 'agentflow_audit_log'

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    team_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    entity_type: Mapped[str] = mapped_column(String(32), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    event: Mapped[str] = mapped_column(String(64), nullable=False)
    old_status: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    new_status: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    data: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, index=True
    )
