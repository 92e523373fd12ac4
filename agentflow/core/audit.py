"""Audit trail writes, attached alongside aggregate-root transitions."""

from __future__ import annotations

from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from agentflow.core.models.audit_pg import AuditLogModel


def record_event(
    session: AsyncSession,
    *,
    team_id: str,
    entity_type: str,
    entity_id: str,
    event: str,
    old_status: Optional[str] = None,
    new_status: Optional[str] = None,
    data: Optional[dict[str, Any]] = None,
) -> AuditLogModel:
    """Add an audit row to the session; it is flushed with the caller's transaction."""
    entry = AuditLogModel(
        team_id=team_id,
        entity_type=entity_type,
        entity_id=entity_id,
        event=event,
        old_status=old_status,
        new_status=new_status,
        data=dict(data or {}),
    )
    session.add(entry)
    return entry


def record_status_change(
    session: AsyncSession,
    *,
    team_id: str,
    entity_type: str,
    entity_id: str,
    old_status: Any,
    new_status: Any,
    data: Optional[dict[str, Any]] = None,
) -> Optional[AuditLogModel]:
    """Record a status transition; no row when the status did not change."""
    old_value = getattr(old_status, 'value', old_status)
    new_value = getattr(new_status, 'value', new_status)
    if old_value == new_value:
        return None
    return record_event(
        session,
        team_id=team_id,
        entity_type=entity_type,
        entity_id=entity_id,
        event='status',
        old_status=old_value,
        new_status=new_value,
        data=data,
    )


async def history(
    session: AsyncSession, entity_type: str, entity_id: str
) -> list[AuditLogModel]:
    """Audit rows of one entity, oldest first."""
    result = await session.execute(
        select(AuditLogModel)
        .where(AuditLogModel.entity_type == entity_type)
        .where(AuditLogModel.entity_id == entity_id)
        .order_by(AuditLogModel.created_at.asc(), AuditLogModel.id.asc())
    )
    return list(result.scalars())
