"""Read-only views for operators: listings, timing, lineage and usage."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from agentflow.core.artifacts.store import artifact_tree as _artifact_tree
from agentflow.core.artifacts.store import get_artifact
from agentflow.core.models.app import RunContext
from agentflow.core.models.task_pg import TaskProcessAttemptModel, TaskProcessModel, TaskRunModel
from agentflow.core.models.usage import UsageSummary
from agentflow.core.models.workflow_pg import WorkflowRunModel
from agentflow.core.tasks.runner import get_task_run
from agentflow.core.types.status import RunStatus
from agentflow.core.workflows.engine import get_workflow_run


def _seconds(start: Optional[datetime], end: Optional[datetime]) -> Optional[float]:
    if start is None or end is None:
        return None
    return round((end - start).total_seconds(), 3)


def _ended_at(entity: Any) -> Optional[datetime]:
    return entity.completed_at or entity.failed_at or entity.stopped_at


async def list_task_processes(
    session: AsyncSession,
    ctx: RunContext,
    *,
    status: Optional[RunStatus] = None,
    task_run_id: Optional[str] = None,
    include_archived: bool = False,
) -> list[TaskProcessModel]:
    stmt = select(TaskProcessModel).where(TaskProcessModel.team_id == ctx.team_id)
    if status is not None:
        stmt = stmt.where(TaskProcessModel.status == status)
    if task_run_id is not None:
        stmt = stmt.where(TaskProcessModel.task_run_id == task_run_id)
    if not include_archived:
        stmt = stmt.where(TaskProcessModel.archived_at.is_(None))
    stmt = stmt.order_by(TaskProcessModel.created_at.asc(), TaskProcessModel.sequence.asc())
    return list((await session.execute(stmt)).scalars())


async def list_task_runs(
    session: AsyncSession,
    ctx: RunContext,
    *,
    status: Optional[RunStatus] = None,
    workflow_run_id: Optional[str] = None,
) -> list[TaskRunModel]:
    stmt = select(TaskRunModel).where(TaskRunModel.team_id == ctx.team_id)
    if status is not None:
        stmt = stmt.where(TaskRunModel.status == status)
    if workflow_run_id is not None:
        stmt = stmt.where(TaskRunModel.workflow_run_id == workflow_run_id)
    stmt = stmt.order_by(TaskRunModel.created_at.asc(), TaskRunModel.id.asc())
    return list((await session.execute(stmt)).scalars())


async def list_workflow_runs(
    session: AsyncSession, ctx: RunContext, *, status: Optional[RunStatus] = None
) -> list[WorkflowRunModel]:
    stmt = select(WorkflowRunModel).where(WorkflowRunModel.team_id == ctx.team_id)
    if status is not None:
        stmt = stmt.where(WorkflowRunModel.status == status)
    stmt = stmt.order_by(WorkflowRunModel.created_at.asc(), WorkflowRunModel.id.asc())
    return list((await session.execute(stmt)).scalars())


async def task_run_timing(
    session: AsyncSession, ctx: RunContext, task_run_id: str
) -> dict[str, Any]:
    """
    Wall-clock view of a task run and its current processes.

    queue_seconds is dispatch -> start, run_seconds is start -> end;
    either is None while the corresponding instant is missing.
    """
    task_run = await get_task_run(session, ctx, task_run_id)
    processes = await list_task_processes(session, ctx, task_run_id=task_run.id)
    attempts = await session.execute(
        select(TaskProcessAttemptModel.task_process_id, func.count(TaskProcessAttemptModel.id))
        .where(TaskProcessAttemptModel.task_process_id.in_([p.id for p in processes]))
        .group_by(TaskProcessAttemptModel.task_process_id)
    )
    failed_attempts = dict(attempts.tuples().all())

    return {
        'task_run_id': task_run.id,
        'name': task_run.name,
        'status': task_run.status.value,
        'attempt_number': task_run.attempt_number,
        'started_at': task_run.started_at,
        'ended_at': _ended_at(task_run),
        'run_seconds': _seconds(task_run.started_at, _ended_at(task_run)),
        'processes': [
            {
                'id': process.id,
                'name': process.name,
                'operation': process.operation,
                'status': process.status.value,
                'dispatched_at': process.dispatched_at,
                'started_at': process.started_at,
                'ended_at': _ended_at(process),
                'queue_seconds': _seconds(process.dispatched_at, process.started_at),
                'run_seconds': _seconds(process.started_at, _ended_at(process)),
                'retries': process.attempt_count,
                'failed_attempts': failed_attempts.get(process.id, 0),
            }
            for process in processes
        ],
    }


async def artifact_tree(session: AsyncSession, ctx: RunContext, artifact_id: str) -> dict[str, Any]:
    await get_artifact(session, ctx.team_id, artifact_id)
    return await _artifact_tree(session, artifact_id)


async def usage_report(
    session: AsyncSession, ctx: RunContext, workflow_run_id: str
) -> dict[str, Any]:
    """Workflow usage with its per-task-run breakdown (archived attempts included)."""
    workflow_run = await get_workflow_run(session, ctx, workflow_run_id)
    task_runs = await list_task_runs(session, ctx, workflow_run_id=workflow_run.id)
    return {
        'workflow_run_id': workflow_run.id,
        'status': workflow_run.status.value,
        'usage': workflow_run.usage.to_json(),
        'task_runs': [
            {
                'task_run_id': run.id,
                'name': run.name,
                'status': run.status.value,
                'usage': run.usage.to_json(),
            }
            for run in task_runs
        ],
        'total': UsageSummary.total(run.usage for run in task_runs).to_json(),
    }
