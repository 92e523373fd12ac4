"""SQLAlchemy model backing the database job queue."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from sqlalchemy import Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from agentflow.core.models.base import Base, JSONType, UTCDateTime, new_id, utcnow


class JobModel(Base):
    """
    One dispatch of a task process onto a worker queue.

    - id: dispatch id, copied onto TaskProcessModel.job_dispatch_id
    - available_at: not deliverable before this instant (retry backoff)
    - claimed_at: last delivery; redelivered when older than the stale window
    - delivery_count: number of deliveries (at-least-once)
    - acked_at: set once the worker finished with the job
    """

    __tablename__ = 'agentflow_jobs'

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    queue_type: Mapped[str] = mapped_column(String(100), nullable=False)
    team_id: Mapped[str] = mapped_column(String(64), nullable=False)
    task_process_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    payload: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    available_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    claimed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    delivery_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    acked_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index('ix_agentflow_jobs_queue_available', 'queue_type', 'acked_at', 'available_at'),
    )
