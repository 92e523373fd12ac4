"""
Workflow listeners: let unrelated features react to workflow completion.

A listener row binds a workflow run to any external entity through a
(listener_type, listener_id) pair plus a workflow_type naming the
purpose. The engine never imports those features; it resolves the
entity through a loader registered per listener type and calls exactly
one of the success/failure callbacks per listener, once.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Mapping, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from agentflow.core.logging import get_logger
from agentflow.core.models.app import RunContext
from agentflow.core.models.base import utcnow
from agentflow.core.models.workflow_pg import WorkflowListenerModel, WorkflowRunModel
from agentflow.core.registry import Registry
from agentflow.core.types.status import ListenerStatus, RunStatus

logger = get_logger('workflow.listeners')


@dataclass(frozen=True)
class ListenerRef:
    """Polymorphic pointer at an external entity: (kind, id)."""

    kind: str
    id: str

    @classmethod
    def of(cls, entity: Any) -> ListenerRef:
        """Ref for a domain object; its kind is `__listener_type__` or its class name."""
        kind = getattr(entity, '__listener_type__', None) or type(entity).__name__
        return cls(kind=str(kind), id=str(entity.id))


EntityLoader = Callable[[AsyncSession, ListenerRef], Awaitable[Any]]
ListenerCallback = Callable[
    [AsyncSession, Any, WorkflowRunModel, WorkflowListenerModel], Awaitable[None]
]


@dataclass(frozen=True)
class ListenerBinding:
    load: EntityLoader
    on_success: Optional[ListenerCallback] = None
    on_failure: Optional[ListenerCallback] = None


class ListenerRegistry(Registry[ListenerBinding]):
    """listener type -> how to load the entity and what to call on completion."""

    def __init__(self) -> None:
        super().__init__('listener type')

    def bind(
        self,
        kind: str,
        load: EntityLoader,
        *,
        on_success: Optional[ListenerCallback] = None,
        on_failure: Optional[ListenerCallback] = None,
        replace: bool = False,
    ) -> ListenerBinding:
        return self.register(
            kind, ListenerBinding(load, on_success, on_failure), replace=replace
        )


def merge_metadata(
    current: Optional[Mapping[str, Any]],
    event: str,
    data: Optional[Mapping[str, Any]] = None,
) -> dict[str, Any]:
    """
    New metadata with `data` merged in and the event appended to 'history'.

    Keys are added or updated, never removed, and earlier history entries
    are kept as they were.
    """
    merged = dict(current or {})
    history = list(merged.get('history', []))
    history.append({'event': event, 'at': utcnow().isoformat(), 'data': dict(data or {})})
    merged.update(data or {})
    merged['history'] = history
    return merged


async def create_for_listener(
    session: AsyncSession,
    ctx: RunContext,
    listener: ListenerRef,
    workflow_run: WorkflowRunModel,
    workflow_type: str,
    metadata: Optional[Mapping[str, Any]] = None,
) -> WorkflowListenerModel:
    """The pending listener for (entity, run, type); an existing one is returned as is."""
    result = await session.execute(
        select(WorkflowListenerModel)
        .where(WorkflowListenerModel.listener_type == listener.kind)
        .where(WorkflowListenerModel.listener_id == listener.id)
        .where(WorkflowListenerModel.workflow_run_id == workflow_run.id)
        .where(WorkflowListenerModel.workflow_type == workflow_type)
    )
    existing = result.scalar_one_or_none()
    if existing is not None:
        return existing

    row = WorkflowListenerModel(
        team_id=ctx.team_id,
        workflow_run_id=workflow_run.id,
        listener_type=listener.kind,
        listener_id=listener.id,
        workflow_type=workflow_type,
        status=ListenerStatus.PENDING,
        metadata_=merge_metadata({}, 'created', metadata),
    )
    session.add(row)
    await session.flush()
    logger.debug(
        f'Listener {listener.kind}:{listener.id} ({workflow_type}) '
        f'attached to workflow run {workflow_run.id[:8]}'
    )
    return row


def _mark(
    listener: WorkflowListenerModel,
    status: ListenerStatus,
    metadata: Optional[Mapping[str, Any]],
) -> WorkflowListenerModel:
    now = utcnow()
    listener.status = status
    if status == ListenerStatus.RUNNING:
        listener.started_at = listener.started_at or now
    elif status == ListenerStatus.COMPLETED:
        listener.completed_at = now
    elif status == ListenerStatus.FAILED:
        listener.failed_at = now
    listener.metadata_ = merge_metadata(listener.metadata_, status.value, metadata)
    return listener


async def mark_as_running(
    session: AsyncSession,
    listener: WorkflowListenerModel,
    metadata: Optional[Mapping[str, Any]] = None,
) -> WorkflowListenerModel:
    _mark(listener, ListenerStatus.RUNNING, metadata)
    await session.flush()
    return listener


async def mark_as_completed(
    session: AsyncSession,
    listener: WorkflowListenerModel,
    metadata: Optional[Mapping[str, Any]] = None,
) -> WorkflowListenerModel:
    _mark(listener, ListenerStatus.COMPLETED, metadata)
    await session.flush()
    return listener


async def mark_as_failed(
    session: AsyncSession,
    listener: WorkflowListenerModel,
    metadata: Optional[Mapping[str, Any]] = None,
) -> WorkflowListenerModel:
    _mark(listener, ListenerStatus.FAILED, metadata)
    await session.flush()
    return listener


async def find_for_workflow_run(
    session: AsyncSession,
    workflow_run_id: str,
    *,
    pending_only: bool = False,
    lock: bool = False,
) -> list[WorkflowListenerModel]:
    stmt = (
        select(WorkflowListenerModel)
        .where(WorkflowListenerModel.workflow_run_id == workflow_run_id)
        .order_by(WorkflowListenerModel.created_at.asc(), WorkflowListenerModel.id.asc())
    )
    if pending_only:
        stmt = stmt.where(
            WorkflowListenerModel.status.in_([ListenerStatus.PENDING, ListenerStatus.RUNNING])
        )
    if lock:
        stmt = stmt.with_for_update()
    result = await session.execute(stmt)
    return list(result.scalars())


async def find_for_listener_and_type(
    session: AsyncSession,
    ctx: RunContext,
    listener: ListenerRef,
    workflow_type: str,
) -> list[WorkflowListenerModel]:
    """Every listener of an entity for one purpose, newest first."""
    result = await session.execute(
        select(WorkflowListenerModel)
        .where(WorkflowListenerModel.team_id == ctx.team_id)
        .where(WorkflowListenerModel.listener_type == listener.kind)
        .where(WorkflowListenerModel.listener_id == listener.id)
        .where(WorkflowListenerModel.workflow_type == workflow_type)
        .order_by(WorkflowListenerModel.created_at.desc(), WorkflowListenerModel.id.desc())
    )
    return list(result.scalars())


async def on_workflow_complete(
    session: AsyncSession,
    workflow_run: WorkflowRunModel,
    load: EntityLoader,
    on_success: Optional[ListenerCallback] = None,
    on_failure: Optional[ListenerCallback] = None,
    *,
    listener_type: Optional[str] = None,
) -> int:
    """
    Call exactly one branch per pending listener of a terminal workflow run.

    Completed runs take the success branch; Failed, Timeout and Stopped
    runs take the failure branch. Listeners that already reached a
    terminal status are skipped, so calling this again is a no-op.
    Listener status follows the run outcome even when a callback raises;
    the error is recorded as 'callback_error' in the listener metadata
    and the other listeners are still delivered. Returns the number of
    listeners delivered.
    """
    if not workflow_run.status.is_terminal:
        return 0

    succeeded = workflow_run.status == RunStatus.COMPLETED
    callback = on_success if succeeded else on_failure
    delivered = 0
    for listener in await find_for_workflow_run(
        session, workflow_run.id, pending_only=True, lock=True
    ):
        if listener_type is not None and listener.listener_type != listener_type:
            continue
        await mark_as_running(session, listener)
        outcome = {'workflow_status': workflow_run.status.value}
        try:
            entity = await load(session, ListenerRef(listener.listener_type, listener.listener_id))
            if callback is not None:
                await callback(session, entity, workflow_run, listener)
        except Exception as exc:
            logger.exception(
                f'Listener {listener.listener_type}:{listener.listener_id} callback failed'
            )
            outcome['callback_error'] = f'{type(exc).__name__}: {exc}'

        if succeeded:
            await mark_as_completed(session, listener, outcome)
        else:
            await mark_as_failed(session, listener, outcome)
        delivered += 1
    return delivered


async def notify_listeners(
    session: AsyncSession,
    registry: ListenerRegistry,
    workflow_run: WorkflowRunModel,
) -> int:
    """Deliver every pending listener of a terminal run through its registered binding."""
    if not workflow_run.status.is_terminal:
        return 0

    kinds = dict.fromkeys(
        listener.listener_type
        for listener in await find_for_workflow_run(session, workflow_run.id, pending_only=True)
    )
    delivered = 0
    for kind in kinds:
        if kind not in registry:
            logger.error(f"No listener binding for '{kind}', listeners of this type stay pending")
            continue
        binding = registry[kind]
        delivered += await on_workflow_complete(
            session,
            workflow_run,
            binding.load,
            binding.on_success,
            binding.on_failure,
            listener_type=kind,
        )
    if delivered:
        logger.info(
            f'Delivered {delivered} listener(s) of workflow run {workflow_run.id[:8]} '
            f'({workflow_run.status.value})'
        )
    return delivered
