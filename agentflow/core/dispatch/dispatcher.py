"""Dispatch pending task processes onto the job queue, bounded per queue type."""

from __future__ import annotations

from datetime import timedelta
from typing import TYPE_CHECKING

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from agentflow.core.dispatch.queue import Job
from agentflow.core.logging import get_logger
from agentflow.core.models.base import utcnow
from agentflow.core.models.task_pg import TaskProcessModel
from agentflow.core.types.status import RunStatus

if TYPE_CHECKING:
    from agentflow.core.models.app import RunContext
    from agentflow.core.runtime import Runtime

logger = get_logger('queue')


async def dispatch_process(
    session: AsyncSession,
    runtime: Runtime,
    process: TaskProcessModel,
    *,
    delay_seconds: float = 0.0,
) -> str:
    """Enqueue one job for a pending process and record its dispatch id.

    The new dispatch id supersedes any earlier one, so a late delivery of
    a previous job is ignored by the worker.
    """
    now = utcnow()
    job = Job(
        queue_type=process.queue_type,
        team_id=process.team_id,
        task_process_id=process.id,
        payload={'attempt': process.attempt_count, 'operation': process.operation},
        available_at=now + timedelta(seconds=delay_seconds) if delay_seconds > 0 else now,
    )
    process.job_dispatch_id = job.id
    process.dispatched_at = now
    await session.flush()
    await runtime.queue.enqueue(session, job)
    return job.id


async def in_flight_count(session: AsyncSession, queue_type: str) -> int:
    """Processes holding a worker slot: dispatched and waiting, or running."""
    result = await session.execute(
        select(func.count(TaskProcessModel.id))
        .where(TaskProcessModel.queue_type == queue_type)
        .where(TaskProcessModel.archived_at.is_(None))
        .where(
            (TaskProcessModel.status == RunStatus.RUNNING)
            | (
                (TaskProcessModel.status == RunStatus.PENDING)
                & TaskProcessModel.job_dispatch_id.is_not(None)
            )
        )
    )
    return int(result.scalar_one())


async def dispatch_pending_processes(
    session: AsyncSession, ctx: RunContext, runtime: Runtime, queue_type: str
) -> int:
    """Dispatch undispatched pending processes while the queue type has free slots.

    Oldest processes go first. Returns the number of jobs enqueued.
    """
    capacity = ctx.max_workers(queue_type) - await in_flight_count(session, queue_type)
    if capacity <= 0:
        logger.debug(f'Queue {queue_type} saturated, dispatch deferred')
        return 0

    result = await session.execute(
        select(TaskProcessModel)
        .where(TaskProcessModel.queue_type == queue_type)
        .where(TaskProcessModel.status == RunStatus.PENDING)
        .where(TaskProcessModel.job_dispatch_id.is_(None))
        .where(TaskProcessModel.archived_at.is_(None))
        .order_by(TaskProcessModel.created_at.asc(), TaskProcessModel.sequence.asc())
        .limit(capacity)
        .with_for_update(skip_locked=True)
    )
    processes = list(result.scalars())
    for process in processes:
        await dispatch_process(session, runtime, process)
    if processes:
        logger.debug(f'Dispatched {len(processes)} process(es) on {queue_type}')
    return len(processes)
