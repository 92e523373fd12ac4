"""Artifact creation, lineage and read helpers."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable, Optional, Sequence

from pydantic import BaseModel, Field
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from agentflow.core.errors import (
    ArtifactImmutableError,
    ErrorCode,
    NotFoundError,
    not_found,
)
from agentflow.core.logging import get_logger
from agentflow.core.models.artifact_pg import ArtifactModel
from agentflow.core.models.base import utcnow

logger = get_logger('artifacts')

# Fields a producer may set; everything else is engine-owned
CONTENT_FIELDS = ('name', 'position', 'text_content', 'json_content', 'files', 'meta')


class ArtifactDraft(BaseModel):
    """An artifact a process handler wants to emit, before it is persisted."""

    name: str = ''
    position: Optional[int] = None
    text_content: Optional[str] = None
    json_content: Optional[Any] = None
    files: list[dict[str, Any]] = Field(default_factory=list)
    meta: dict[str, Any] = Field(default_factory=dict)
    children: list['ArtifactDraft'] = Field(default_factory=list)
    # Set when the draft republishes an input artifact
    original_artifact_id: Optional[str] = None


async def create_artifact(
    session: AsyncSession,
    team_id: str,
    *,
    name: str = '',
    position: int = 0,
    text_content: Optional[str] = None,
    json_content: Optional[Any] = None,
    files: Optional[list[dict[str, Any]]] = None,
    meta: Optional[dict[str, Any]] = None,
    parent: Optional[ArtifactModel] = None,
    task_process_id: Optional[str] = None,
    original_artifact_id: Optional[str] = None,
) -> ArtifactModel:
    """Create an artifact; children inherit the root of their parent."""
    if parent is not None and parent.team_id != team_id:
        raise NotFoundError(
            message=f'parent artifact {parent.id!r} belongs to another team',
            code=ErrorCode.ARTIFACT_LINEAGE,
        )

    artifact = ArtifactModel(
        team_id=team_id,
        name=name,
        position=position,
        text_content=text_content,
        json_content=json_content,
        files=list(files or []),
        meta=dict(meta or {}),
        parent_artifact_id=parent.id if parent is not None else None,
        root_artifact_id=(parent.root_artifact_id or parent.id) if parent is not None else None,
        task_process_id=task_process_id,
        original_artifact_id=original_artifact_id,
    )
    session.add(artifact)
    await session.flush()
    return artifact


async def persist_drafts(
    session: AsyncSession,
    team_id: str,
    drafts: Sequence[ArtifactDraft],
    *,
    task_process_id: Optional[str],
    parent: Optional[ArtifactModel] = None,
) -> list[ArtifactModel]:
    """Persist handler output drafts (and their children) in draft order.

    Drafts without an explicit position are numbered by their index so
    the emitted order is the read order.
    """
    created: list[ArtifactModel] = []
    for index, draft in enumerate(drafts):
        artifact = await create_artifact(
            session,
            team_id,
            name=draft.name,
            position=draft.position if draft.position is not None else index,
            text_content=draft.text_content,
            json_content=draft.json_content,
            files=draft.files,
            meta=draft.meta,
            parent=parent,
            task_process_id=task_process_id,
            original_artifact_id=draft.original_artifact_id,
        )
        if draft.children:
            await persist_drafts(
                session,
                team_id,
                draft.children,
                task_process_id=task_process_id,
                parent=artifact,
            )
        created.append(artifact)
    return created


async def copy_artifact(
    session: AsyncSession,
    artifact: ArtifactModel,
    *,
    task_process_id: Optional[str] = None,
    parent: Optional[ArtifactModel] = None,
    position: Optional[int] = None,
    include_children: bool = True,
) -> ArtifactModel:
    """Copy an artifact for traceability through split/merge.

    The copy points at the first original, never at an intermediate copy.
    """
    copy = await create_artifact(
        session,
        artifact.team_id,
        name=artifact.name,
        position=artifact.position if position is None else position,
        text_content=artifact.text_content,
        json_content=artifact.json_content,
        files=list(artifact.files or []),
        meta=dict(artifact.meta or {}),
        parent=parent,
        task_process_id=task_process_id,
        original_artifact_id=artifact.original_artifact_id or artifact.id,
    )
    if include_children:
        for child in await get_children(session, artifact.id):
            await copy_artifact(
                session, child, task_process_id=task_process_id, parent=copy
            )
    return copy


async def update_artifact_content(
    session: AsyncSession, artifact: ArtifactModel, **changes: Any
) -> ArtifactModel:
    """Change content fields of an artifact that is not locked yet."""
    if artifact.is_locked:
        raise ArtifactImmutableError(
            message=f'artifact {artifact.id!r} is read-only',
            code=ErrorCode.ARTIFACT_IMMUTABLE,
            notes=[f'locked at {artifact.locked_at.isoformat() if artifact.locked_at else "?"}'],
            help_text='produce a new artifact (or a copy) instead of editing a completed output',
        )
    unknown = set(changes) - set(CONTENT_FIELDS)
    if unknown:
        raise ValueError(f'not artifact content fields: {sorted(unknown)}')
    for key, value in changes.items():
        setattr(artifact, key, value)
    await session.flush()
    return artifact


async def lock_process_outputs(
    session: AsyncSession, task_process_id: str, now: Optional[datetime] = None
) -> None:
    """Make every artifact produced by a completed process read-only."""
    await session.execute(
        update(ArtifactModel)
        .where(ArtifactModel.task_process_id == task_process_id)
        .where(ArtifactModel.locked_at.is_(None))
        .values(locked_at=now or utcnow())
    )


async def get_artifact(session: AsyncSession, team_id: str, artifact_id: str) -> ArtifactModel:
    artifact = await session.get(ArtifactModel, artifact_id)
    if artifact is None or artifact.team_id != team_id:
        raise not_found('artifact', artifact_id)
    return artifact


async def get_artifacts(session: AsyncSession, artifact_ids: Sequence[str]) -> list[ArtifactModel]:
    """Load artifacts preserving the order of `artifact_ids`; unknown ids are skipped."""
    if not artifact_ids:
        return []
    result = await session.execute(
        select(ArtifactModel).where(ArtifactModel.id.in_(list(artifact_ids)))
    )
    by_id = {artifact.id: artifact for artifact in result.scalars()}
    return [by_id[artifact_id] for artifact_id in artifact_ids if artifact_id in by_id]


async def get_children(session: AsyncSession, parent_id: str) -> list[ArtifactModel]:
    result = await session.execute(
        select(ArtifactModel)
        .where(ArtifactModel.parent_artifact_id == parent_id)
        .order_by(ArtifactModel.position.asc(), ArtifactModel.created_at.asc())
    )
    return list(result.scalars())


async def artifacts_at_levels(
    session: AsyncSession,
    artifacts: Sequence[ArtifactModel],
    levels: Optional[Iterable[int]],
) -> list[ArtifactModel]:
    """Select artifacts at the given lineage depths below `artifacts`.

    Level 0 is the given list itself, level 1 their children, and so on.
    Order is depth first, following positions, so the result stays
    deterministic. None or an empty list means level 0.
    """
    wanted = sorted(set(levels or [0]))
    if wanted == [0]:
        return list(artifacts)

    max_level = wanted[-1]
    selected: list[ArtifactModel] = []

    async def walk(node: ArtifactModel, depth: int) -> None:
        if depth in wanted:
            selected.append(node)
        if depth < max_level:
            for child in await get_children(session, node.id):
                await walk(child, depth + 1)

    for artifact in artifacts:
        await walk(artifact, 0)
    return selected


async def artifact_tree(session: AsyncSession, artifact_id: str) -> dict[str, Any]:
    """Nested view of an artifact and its descendants for inspection."""
    artifact = await session.get(ArtifactModel, artifact_id)
    if artifact is None:
        raise not_found('artifact', artifact_id)

    async def build(node: ArtifactModel) -> dict[str, Any]:
        children = [await build(child) for child in await get_children(session, node.id)]
        return {
            'id': node.id,
            'name': node.name,
            'position': node.position,
            'original_artifact_id': node.original_artifact_id,
            'task_process_id': node.task_process_id,
            'locked': node.is_locked,
            'children': children,
        }

    return await build(artifact)
