"""SQLAlchemy model for artifacts exchanged between pipeline stages."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from sqlalchemy import ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from agentflow.core.models.base import Base, JSONType, UTCDateTime, new_id, utcnow


class ArtifactModel(Base):
    """
    One unit of data produced or consumed by a task process.

    - position: ordering among siblings (outputs of one process, children of one parent)
    - files: JSON list of stored-file descriptors {id, url, mime, page_number}
    - parent_artifact_id / root_artifact_id: lineage tree; a child always
      shares its parent's root
    - original_artifact_id: set on copies made while splitting/merging,
      always pointing at the first original
    - task_process_id: producing process (None for workflow inputs)
    - locked_at: set when the producing process completes; content is
      read-only afterwards
    """

    __tablename__ = 'agentflow_artifacts'

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    team_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False, default='')
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    text_content: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    json_content: Mapped[Optional[Any]] = mapped_column(JSONType, nullable=True)
    files: Mapped[list[dict[str, Any]]] = mapped_column(
        JSONType, nullable=False, default=list
    )
    meta: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)

    parent_artifact_id: Mapped[Optional[str]] = mapped_column(
        String(36),
        ForeignKey('agentflow_artifacts.id', ondelete='CASCADE'),
        nullable=True,
        index=True,
    )
    root_artifact_id: Mapped[Optional[str]] = mapped_column(
        String(36), nullable=True, index=True
    )
    original_artifact_id: Mapped[Optional[str]] = mapped_column(
        String(36), nullable=True, index=True
    )
    task_process_id: Mapped[Optional[str]] = mapped_column(
        String(36), nullable=True, index=True
    )

    locked_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow
    )

    __table_args__ = (
        Index('ix_agentflow_artifacts_parent_position', 'parent_artifact_id', 'position'),
    )

    @property
    def is_locked(self) -> bool:
        return self.locked_at is not None

    def content_fingerprint(self) -> dict[str, Any]:
        """Content view used to compare artifacts across reruns (ids excluded)."""
        return {
            'name': self.name,
            'position': self.position,
            'text_content': self.text_content,
            'json_content': self.json_content,
            'files': self.files,
            'meta': self.meta,
        }

    def __repr__(self) -> str:
        return f'<Artifact {self.id[:8]} {self.name!r} pos={self.position}>'
