"""
Task run and task process lifecycle.

Every function here works inside the caller's session and transaction.
Status changes are applied to rows loaded FOR UPDATE and re-checked, so
concurrent completion of sibling processes converges on the same task
run status; the last sibling to finish is the one that observes a
terminal aggregate and advances the workflow.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Optional, Sequence

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from agentflow.core.artifacts.store import (
    artifacts_at_levels,
    copy_artifact,
    create_artifact,
    get_artifacts,
    get_children,
    lock_process_outputs,
    persist_drafts,
)
from agentflow.core.audit import record_event, record_status_change
from agentflow.core.dispatch.dispatcher import dispatch_pending_processes, dispatch_process
from agentflow.core.errors import illegal_transition, not_found
from agentflow.core.logging import get_logger
from agentflow.core.models.app import RunContext
from agentflow.core.models.artifact_pg import ArtifactModel
from agentflow.core.models.base import utcnow
from agentflow.core.models.task_pg import (
    TaskDefinitionModel,
    TaskProcessAttemptModel,
    TaskProcessModel,
    TaskRunAttemptModel,
    TaskRunModel,
)
from agentflow.core.models.usage import UsageSummary
from agentflow.core.models.workflow_pg import (
    WorkflowConnectionModel,
    WorkflowNodeModel,
    WorkflowRunModel,
)
from agentflow.core.runners.base import ProcessPlan
from agentflow.core.tasks.state import (
    apply_status,
    clear_terminal_timestamps,
    compute_task_run_status,
    ensure_transition,
)
from agentflow.core.types.status import ArtifactMode, RunStatus
from agentflow.core.usage import refresh_usage_from_processes

if TYPE_CHECKING:
    from agentflow.core.runtime import Runtime
    from agentflow.core.worker.context import ProcessOutput

logger = get_logger('task.runner')


# =============================================================================
# Lookups
# =============================================================================


async def get_task_run(
    session: AsyncSession, ctx: RunContext, task_run_id: str, *, lock: bool = False
) -> TaskRunModel:
    stmt = (
        select(TaskRunModel)
        .where(TaskRunModel.id == task_run_id)
        .where(TaskRunModel.team_id == ctx.team_id)
        .execution_options(populate_existing=True)
    )
    if lock:
        stmt = stmt.with_for_update()
    task_run = (await session.execute(stmt)).scalar_one_or_none()
    if task_run is None:
        raise not_found('task run', task_run_id)
    return task_run


async def get_process(
    session: AsyncSession, ctx: RunContext, process_id: str, *, lock: bool = False
) -> TaskProcessModel:
    stmt = (
        select(TaskProcessModel)
        .where(TaskProcessModel.id == process_id)
        .where(TaskProcessModel.team_id == ctx.team_id)
        .execution_options(populate_existing=True)
    )
    if lock:
        stmt = stmt.with_for_update()
    process = (await session.execute(stmt)).scalar_one_or_none()
    if process is None:
        raise not_found('task process', process_id)
    return process


async def current_processes(session: AsyncSession, task_run_id: str) -> list[TaskProcessModel]:
    """Processes of the current attempt, in sequence order."""
    result = await session.execute(
        select(TaskProcessModel)
        .where(TaskProcessModel.task_run_id == task_run_id)
        .where(TaskProcessModel.archived_at.is_(None))
        .order_by(TaskProcessModel.sequence.asc())
    )
    return list(result.scalars())


async def lock_task_run(session: AsyncSession, ctx: RunContext, task_run_id: str) -> TaskRunModel:
    """
    Lock the current processes of a task run, then the task run itself.

    Rows are always locked process -> task run -> workflow run, the order
    a worker finishing a process takes them in.
    """
    await session.execute(
        select(TaskProcessModel)
        .where(TaskProcessModel.task_run_id == task_run_id)
        .where(TaskProcessModel.team_id == ctx.team_id)
        .where(TaskProcessModel.archived_at.is_(None))
        .order_by(TaskProcessModel.id.asc())
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return await get_task_run(session, ctx, task_run_id, lock=True)


async def _definition_of(session: AsyncSession, task_run: TaskRunModel) -> TaskDefinitionModel:
    definition = await session.get(TaskDefinitionModel, task_run.task_definition_id)
    if definition is None:
        raise not_found('task definition', task_run.task_definition_id)
    return definition


# =============================================================================
# Task run creation and expansion
# =============================================================================


async def create_task_run(
    session: AsyncSession,
    ctx: RunContext,
    definition: TaskDefinitionModel,
    *,
    input_artifact_ids: Sequence[str] = (),
    workflow_run: Optional[WorkflowRunModel] = None,
    node: Optional[WorkflowNodeModel] = None,
    name: Optional[str] = None,
) -> TaskRunModel:
    """Create a pending task run; standalone runs take their inputs explicitly."""
    task_run = TaskRunModel(
        team_id=ctx.team_id,
        task_definition_id=definition.id,
        workflow_run_id=workflow_run.id if workflow_run is not None else None,
        workflow_node_id=node.id if node is not None else None,
        name=name or (node.name if node is not None else definition.name),
        status=RunStatus.PENDING,
        input_artifact_ids=list(input_artifact_ids),
    )
    session.add(task_run)
    await session.flush()
    record_event(
        session,
        team_id=ctx.team_id,
        entity_type='task_run',
        entity_id=task_run.id,
        event='created',
        new_status=RunStatus.PENDING.value,
        data={'workflow_run_id': task_run.workflow_run_id, 'node_id': task_run.workflow_node_id},
    )
    return task_run


async def resolve_input_batches(
    session: AsyncSession, task_run: TaskRunModel
) -> list[list[ArtifactModel]]:
    """
    Upstream artifact batches of a task run, one per source.

    - workflow node with sources: each source node's task run outputs,
      sources in node creation order
    - workflow starting node: the workflow run inputs
    - standalone task run: its own input_artifact_ids
    """
    if task_run.workflow_run_id is None or task_run.workflow_node_id is None:
        return [await get_artifacts(session, task_run.input_artifact_ids)]

    source_rows = await session.execute(
        select(WorkflowNodeModel.id)
        .join(
            WorkflowConnectionModel,
            WorkflowConnectionModel.source_node_id == WorkflowNodeModel.id,
        )
        .where(WorkflowConnectionModel.target_node_id == task_run.workflow_node_id)
        .order_by(WorkflowNodeModel.created_at.asc(), WorkflowNodeModel.id.asc())
    )
    source_ids = list(dict.fromkeys(source_rows.scalars()))

    if not source_ids:
        workflow_run = await session.get(WorkflowRunModel, task_run.workflow_run_id)
        ids = workflow_run.input_artifact_ids if workflow_run is not None else []
        return [await get_artifacts(session, ids)]

    runs = await session.execute(
        select(TaskRunModel)
        .where(TaskRunModel.workflow_run_id == task_run.workflow_run_id)
        .where(TaskRunModel.workflow_node_id.in_(source_ids))
    )
    by_node = {run.workflow_node_id: run for run in runs.scalars()}
    batches: list[list[ArtifactModel]] = []
    for source_id in source_ids:
        source_run = by_node.get(source_id)
        ids = source_run.output_artifact_ids if source_run is not None else []
        batches.append(await get_artifacts(session, ids))
    return batches


async def _next_sequence(session: AsyncSession, task_run_id: str) -> int:
    result = await session.execute(
        select(func.max(TaskProcessModel.sequence)).where(
            TaskProcessModel.task_run_id == task_run_id
        )
    )
    current = result.scalar_one_or_none()
    return 0 if current is None else current + 1


async def create_process(
    session: AsyncSession,
    task_run: TaskRunModel,
    definition: TaskDefinitionModel,
    plan: ProcessPlan,
) -> TaskProcessModel:
    process = TaskProcessModel(
        team_id=task_run.team_id,
        task_run_id=task_run.id,
        sequence=await _next_sequence(session, task_run.id),
        name=plan.name,
        operation=plan.operation,
        queue_type=definition.queue_type,
        status=RunStatus.PENDING,
        input_artifact_ids=list(plan.input_artifact_ids),
        is_intermediate=plan.is_intermediate,
        meta=dict(plan.meta),
    )
    session.add(process)
    await session.flush()
    return process


async def create_processes(
    session: AsyncSession,
    ctx: RunContext,
    runtime: Runtime,
    task_run: TaskRunModel,
    definition: TaskDefinitionModel,
    plans: Sequence[ProcessPlan],
) -> list[TaskProcessModel]:
    """Create planned processes and dispatch whatever the queue has room for."""
    created = [await create_process(session, task_run, definition, plan) for plan in plans]
    if created:
        await dispatch_pending_processes(session, ctx, runtime, definition.queue_type)
    return created


async def start_task_run(
    session: AsyncSession,
    ctx: RunContext,
    runtime: Runtime,
    task_run: TaskRunModel,
) -> TaskRunModel:
    """
    Expand a pending task run into processes and dispatch them.

    A run whose inputs expand to no process completes immediately with
    an empty output.
    """
    if task_run.status != RunStatus.PENDING:
        raise illegal_transition('task run', task_run.id, task_run.status.value, 'start')

    definition = await _definition_of(session, task_run)
    batches = await resolve_input_batches(session, task_run)
    task_run.input_artifact_ids = [artifact.id for batch in batches for artifact in batch]
    selected = [
        await artifacts_at_levels(session, batch, definition.input_artifact_levels)
        for batch in batches
    ]

    runner = runtime.runner_for(definition.runner_kind)
    plans = runner.plan_processes(definition, selected)

    now = utcnow()
    previous = apply_status(task_run, RunStatus.RUNNING, now)
    record_status_change(
        session,
        team_id=task_run.team_id,
        entity_type='task_run',
        entity_id=task_run.id,
        old_status=previous,
        new_status=RunStatus.RUNNING,
        data={'processes': len(plans), 'attempt': task_run.attempt_number},
    )
    logger.info(
        f"Task run '{task_run.name}' ({task_run.id[:8]}) started with {len(plans)} process(es)"
    )

    await create_processes(session, ctx, runtime, task_run, definition, plans)
    if not plans:
        await refresh_task_run(session, ctx, runtime, task_run)
    return task_run


async def run_task(
    session: AsyncSession,
    ctx: RunContext,
    runtime: Runtime,
    definition: TaskDefinitionModel,
    input_artifact_ids: Sequence[str],
    *,
    name: Optional[str] = None,
) -> TaskRunModel:
    """Create and start a standalone task run."""
    task_run = await create_task_run(
        session, ctx, definition, input_artifact_ids=input_artifact_ids, name=name
    )
    return await start_task_run(session, ctx, runtime, task_run)


# =============================================================================
# Process transitions
# =============================================================================


def _audit_process(
    session: AsyncSession,
    process: TaskProcessModel,
    previous: RunStatus,
    data: Optional[dict[str, Any]] = None,
) -> None:
    record_status_change(
        session,
        team_id=process.team_id,
        entity_type='task_process',
        entity_id=process.id,
        old_status=previous,
        new_status=process.status,
        data=data,
    )


def mark_process_running(
    session: AsyncSession,
    process: TaskProcessModel,
    dispatch_id: str,
    timeout_after_seconds: int,
    now: Optional[datetime] = None,
) -> bool:
    """
    Pending -> Running for the delivery that matches the current dispatch.

    Returns False (and changes nothing) for a stale or redelivered job:
    archived process, status other than Pending, or another dispatch id.
    """
    if (
        process.archived_at is not None
        or process.status != RunStatus.PENDING
        or process.job_dispatch_id is None
        or process.job_dispatch_id != dispatch_id
    ):
        return False

    now = now or utcnow()
    previous = process.status
    process.status = RunStatus.RUNNING
    process.started_at = now
    process.timeout_at = now + timedelta(seconds=timeout_after_seconds)
    _audit_process(session, process, previous, {'dispatch_id': dispatch_id})
    return True


def _record_attempt(
    session: AsyncSession,
    process: TaskProcessModel,
    status: RunStatus,
    error: Optional[dict[str, Any]],
    now: datetime,
) -> None:
    session.add(
        TaskProcessAttemptModel(
            task_process_id=process.id,
            attempt_number=process.attempt_count + 1,
            status=status,
            job_dispatch_id=process.job_dispatch_id,
            error=error,
            started_at=process.started_at,
            ended_at=now,
        )
    )


async def complete_process(
    session: AsyncSession,
    ctx: RunContext,
    runtime: Runtime,
    process: TaskProcessModel,
    output: ProcessOutput,
    now: Optional[datetime] = None,
) -> TaskProcessModel:
    """Persist outputs, make them read-only, then advance the task run."""
    ensure_transition('task process', process.id, process.status, RunStatus.COMPLETED)
    now = now or utcnow()

    created = await persist_drafts(
        session, process.team_id, output.artifacts, task_process_id=process.id
    )
    process.output_artifact_ids = [artifact.id for artifact in created]
    if output.usage is not None:
        process.usage_summary = (process.usage + output.usage).to_json()
    if output.meta:
        process.meta = {**process.meta, **output.meta}
    if output.agent_thread_id:
        process.agent_thread_id = output.agent_thread_id
    process.error = None

    previous = apply_status(process, RunStatus.COMPLETED, now)
    _audit_process(session, process, previous, {'outputs': len(created)})
    await lock_process_outputs(session, process.id, now)
    logger.info(f"Process '{process.name}' ({process.id[:8]}) completed: {len(created)} output(s)")

    await on_process_terminal(session, ctx, runtime, process)
    return process


async def fail_process(
    session: AsyncSession,
    ctx: RunContext,
    runtime: Runtime,
    process: TaskProcessModel,
    error: dict[str, Any],
    *,
    usage: Optional[UsageSummary] = None,
    now: Optional[datetime] = None,
) -> RunStatus:
    """
    Record a failed attempt and retry it while the policy allows.

    A failure reported after timeout_at is a timeout, which is never
    retried. Returns the resulting process status.
    """
    now = now or utcnow()
    if process.is_past_timeout(now):
        return await timeout_process(session, ctx, runtime, process, now=now)

    ensure_transition('task process', process.id, process.status, RunStatus.FAILED)
    _record_attempt(session, process, RunStatus.FAILED, error, now)
    process.error = error
    if usage is not None:
        process.usage_summary = (process.usage + usage).to_json()

    run = await session.get(TaskRunModel, process.task_run_id)
    policy = (await _definition_of(session, run)).retry() if run is not None else None

    if policy is not None and policy.allows_retry(process.attempt_count):
        previous = process.status
        process.attempt_count += 1
        process.status = RunStatus.PENDING
        process.started_at = None
        process.timeout_at = None
        delay = policy.delay_seconds(process.attempt_count)
        _audit_process(session, process, previous, {'retry': process.attempt_count, 'error': error})
        logger.warning(
            f"Process '{process.name}' ({process.id[:8]}) failed, retry "
            f'{process.attempt_count}/{policy.max_retries} in {delay:.1f}s: '
            f"{error.get('message')}"
        )
        await dispatch_process(session, runtime, process, delay_seconds=delay)
        return process.status

    previous = apply_status(process, RunStatus.FAILED, now)
    _audit_process(session, process, previous, {'error': error})
    logger.warning(
        f"Process '{process.name}' ({process.id[:8]}) failed after "
        f'{process.attempt_count + 1} attempt(s): {error.get("message")}'
    )
    await on_process_terminal(session, ctx, runtime, process)
    return process.status


async def timeout_process(
    session: AsyncSession,
    ctx: RunContext,
    runtime: Runtime,
    process: TaskProcessModel,
    *,
    now: Optional[datetime] = None,
) -> RunStatus:
    """Running -> Timeout; terminal, never retried."""
    ensure_transition('task process', process.id, process.status, RunStatus.TIMEOUT)
    now = now or utcnow()
    error = {
        'type': 'Timeout',
        'message': f'exceeded timeout_at {process.timeout_at.isoformat() if process.timeout_at else "?"}',
    }
    _record_attempt(session, process, RunStatus.TIMEOUT, error, now)
    process.error = error
    previous = apply_status(process, RunStatus.TIMEOUT, now)
    _audit_process(session, process, previous, {'error': error})
    logger.warning(f"Process '{process.name}' ({process.id[:8]}) timed out")
    await on_process_terminal(session, ctx, runtime, process)
    return process.status


def _stop(session: AsyncSession, process: TaskProcessModel, now: datetime) -> bool:
    if process.status.is_terminal:
        return False
    previous = apply_status(process, RunStatus.STOPPED, now)
    _audit_process(session, process, previous)
    return True


async def stop_process(
    session: AsyncSession,
    ctx: RunContext,
    runtime: Runtime,
    process: TaskProcessModel,
) -> bool:
    """Cancel one process. A worker still holding it discards its result."""
    if not _stop(session, process, utcnow()):
        return False
    logger.info(f"Process '{process.name}' ({process.id[:8]}) stopped")
    await on_process_terminal(session, ctx, runtime, process)
    return True


async def on_process_terminal(
    session: AsyncSession,
    ctx: RunContext,
    runtime: Runtime,
    process: TaskProcessModel,
) -> None:
    """
    Bookkeeping after a process reached a terminal status:

    1. hand its worker slot to the next pending process of the queue
    2. let the runner plan follow-up processes (merge after windows, ...)
    3. recompute the task run status, advancing the workflow when terminal
    """
    await dispatch_pending_processes(session, ctx, runtime, process.queue_type)

    task_run = await get_task_run(session, ctx, process.task_run_id, lock=True)
    definition = await _definition_of(session, task_run)

    if process.archived_at is None and task_run.status == RunStatus.RUNNING:
        runner = runtime.runner_for(definition.runner_kind)
        processes = await current_processes(session, task_run.id)
        plans = await runner.after_process_terminal(
            session, ctx, task_run, definition, process, processes
        )
        await create_processes(session, ctx, runtime, task_run, definition, plans)

    await refresh_task_run(session, ctx, runtime, task_run)


# =============================================================================
# Task run status and outputs
# =============================================================================


async def refresh_task_run(
    session: AsyncSession,
    ctx: RunContext,
    runtime: Runtime,
    task_run: TaskRunModel,
) -> RunStatus:
    """
    Recompute a task run's status from its current processes.

    Idempotent: when the derived status equals the stored one nothing but
    the usage roll-up is touched. On a terminal transition the outputs are
    assembled (Completed only) and the owning workflow run is advanced.
    """
    processes = await current_processes(session, task_run.id)
    status = compute_task_run_status(process.status for process in processes)
    await refresh_usage_from_processes(session, task_run)

    if status == task_run.status:
        logger.debug(f'Task run {task_run.id[:8]} unchanged: {status.value}')
        return status

    now = utcnow()
    if status == RunStatus.COMPLETED:
        definition = await _definition_of(session, task_run)
        task_run.output_artifact_ids = await assemble_outputs(
            session, task_run, definition, processes, now
        )

    previous = apply_status(task_run, status, now)
    record_status_change(
        session,
        team_id=task_run.team_id,
        entity_type='task_run',
        entity_id=task_run.id,
        old_status=previous,
        new_status=status,
        data={'outputs': len(task_run.output_artifact_ids)},
    )
    logger.info(
        f"Task run '{task_run.name}' ({task_run.id[:8]}) {previous.value} -> {status.value}"
    )

    if status.is_terminal and task_run.workflow_run_id is not None:
        from agentflow.core.workflows.engine import on_task_run_terminal

        await on_task_run_terminal(session, ctx, runtime, task_run)
    return status


async def process_outputs(
    session: AsyncSession, processes: Sequence[TaskProcessModel]
) -> list[ArtifactModel]:
    """Outputs of completed, non-intermediate processes: by sequence, then position."""
    artifacts: list[ArtifactModel] = []
    for process in sorted(processes, key=lambda p: p.sequence):
        if process.status != RunStatus.COMPLETED or process.is_intermediate:
            continue
        outputs = await get_artifacts(session, process.output_artifact_ids)
        artifacts.extend(sorted(outputs, key=lambda artifact: artifact.position))
    return artifacts


async def assemble_outputs(
    session: AsyncSession,
    task_run: TaskRunModel,
    definition: TaskDefinitionModel,
    processes: Sequence[TaskProcessModel],
    now: Optional[datetime] = None,
) -> list[str]:
    """
    Visible output of a completed task run, per output_artifact_mode.

    - single: process outputs at output_artifact_levels
    - split: every output expanded into its children (childless outputs stay)
    - merge: one new artifact whose children are copies of the outputs
    """
    artifacts = await process_outputs(session, processes)
    mode = definition.output_artifact_mode

    if mode == ArtifactMode.SPLIT:
        expanded: list[ArtifactModel] = []
        for artifact in artifacts:
            expanded.extend(await get_children(session, artifact.id) or [artifact])
        return [artifact.id for artifact in expanded]

    if mode == ArtifactMode.MERGE:
        merged = await create_artifact(
            session,
            task_run.team_id,
            name=task_run.name,
            meta={'task_run_id': task_run.id, 'merged_from': [a.id for a in artifacts]},
        )
        for position, artifact in enumerate(artifacts):
            await copy_artifact(session, artifact, parent=merged, position=position)
        await session.execute(
            update(ArtifactModel)
            .where(
                (ArtifactModel.id == merged.id)
                | (ArtifactModel.root_artifact_id == merged.id)
            )
            .values(locked_at=now or utcnow())
        )
        return [merged.id]

    selected = await artifacts_at_levels(session, artifacts, definition.output_artifact_levels)
    return [artifact.id for artifact in selected]


async def output_artifacts(session: AsyncSession, task_run: TaskRunModel) -> list[ArtifactModel]:
    """Task run outputs in their stored (position) order."""
    return await get_artifacts(session, task_run.output_artifact_ids)


async def input_artifacts(session: AsyncSession, task_run: TaskRunModel) -> list[ArtifactModel]:
    return await get_artifacts(session, task_run.input_artifact_ids)


# =============================================================================
# Rerun, stop, resume, timeouts
# =============================================================================


async def snapshot_attempt(
    session: AsyncSession,
    task_run: TaskRunModel,
    processes: Sequence[TaskProcessModel],
    reason: Optional[str],
    now: datetime,
) -> TaskRunAttemptModel:
    """Append the current attempt to the task run's attempt chain."""
    result = await session.execute(
        select(TaskRunAttemptModel.id)
        .where(TaskRunAttemptModel.task_run_id == task_run.id)
        .order_by(TaskRunAttemptModel.attempt_number.desc())
        .limit(1)
    )
    attempt = TaskRunAttemptModel(
        task_run_id=task_run.id,
        attempt_number=task_run.attempt_number,
        previous_attempt_id=result.scalar_one_or_none(),
        status=task_run.status,
        process_ids=[process.id for process in processes],
        output_artifact_ids=list(task_run.output_artifact_ids),
        usage_summary=dict(task_run.usage_summary or {}),
        reason=reason,
        started_at=task_run.started_at,
        ended_at=task_run.completed_at or task_run.failed_at or task_run.stopped_at or now,
    )
    session.add(attempt)
    await session.flush()
    return attempt


def archive_processes(processes: Sequence[TaskProcessModel], now: datetime) -> None:
    for process in processes:
        if process.archived_at is None:
            process.archived_at = now


async def begin_new_attempt(
    session: AsyncSession,
    ctx: RunContext,
    task_run: TaskRunModel,
    processes: Sequence[TaskProcessModel],
    *,
    reason: str,
    status: RunStatus,
) -> TaskRunAttemptModel:
    """
    Snapshot the terminal attempt and reopen the task run.

    Callers decide which processes the new attempt archives; archived
    processes and their artifacts stay in place for inspection.
    """
    if not task_run.status.is_terminal:
        raise illegal_transition('task run', task_run.id, task_run.status.value, reason)

    now = utcnow()
    attempt = await snapshot_attempt(
        session, task_run, await current_processes(session, task_run.id), reason, now
    )
    archive_processes(processes, now)

    previous = task_run.status
    task_run.attempt_number += 1
    task_run.output_artifact_ids = []
    clear_terminal_timestamps(task_run)
    if status == RunStatus.PENDING:
        task_run.started_at = None
    task_run.status = status
    record_status_change(
        session,
        team_id=task_run.team_id,
        entity_type='task_run',
        entity_id=task_run.id,
        old_status=previous,
        new_status=status,
        data={'reason': reason, 'attempt': task_run.attempt_number, 'previous_attempt_id': attempt.id},
    )

    if task_run.workflow_run_id is not None:
        from agentflow.core.workflows.engine import reopen_workflow_run

        await reopen_workflow_run(session, ctx, task_run)
    return attempt


async def rerun_task_run(
    session: AsyncSession,
    ctx: RunContext,
    runtime: Runtime,
    task_run_id: str,
    *,
    reason: str = 'rerun',
) -> TaskRunModel:
    """
    Re-execute a terminal task run from the same inputs.

    The previous attempt is kept as a TaskRunAttemptModel and its
    processes are archived; new processes are planned from scratch.
    """
    task_run = await lock_task_run(session, ctx, task_run_id)
    processes = await current_processes(session, task_run.id)
    await begin_new_attempt(
        session, ctx, task_run, processes, reason=reason, status=RunStatus.PENDING
    )
    logger.info(
        f"Task run '{task_run.name}' ({task_run.id[:8]}) rerun as attempt {task_run.attempt_number}"
    )
    return await start_task_run(session, ctx, runtime, task_run)


async def stop_task_run(
    session: AsyncSession,
    ctx: RunContext,
    runtime: Runtime,
    task_run_id: str,
) -> TaskRunModel:
    """Stop every unfinished process; the run settles as Stopped (or Failed/Timeout)."""
    task_run = await lock_task_run(session, ctx, task_run_id)
    if task_run.status.is_terminal:
        logger.debug(f'Task run {task_run.id[:8]} already {task_run.status.value}')
        return task_run

    now = utcnow()
    processes = await current_processes(session, task_run.id)
    stopped = [process for process in processes if _stop(session, process, now)]
    logger.info(f"Task run '{task_run.name}' ({task_run.id[:8]}) stopping {len(stopped)} process(es)")

    queue_types = {process.queue_type for process in stopped}
    for queue_type in sorted(queue_types):
        await dispatch_pending_processes(session, ctx, runtime, queue_type)

    if not processes:
        previous = apply_status(task_run, RunStatus.STOPPED, now)
        record_status_change(
            session,
            team_id=task_run.team_id,
            entity_type='task_run',
            entity_id=task_run.id,
            old_status=previous,
            new_status=RunStatus.STOPPED,
        )
        if task_run.workflow_run_id is not None:
            from agentflow.core.workflows.engine import on_task_run_terminal

            await on_task_run_terminal(session, ctx, runtime, task_run)
        return task_run

    await refresh_task_run(session, ctx, runtime, task_run)
    return task_run


async def resume_task_run(
    session: AsyncSession,
    ctx: RunContext,
    runtime: Runtime,
    task_run_id: str,
) -> TaskRunModel:
    """
    Continue a Stopped, Failed or Timeout task run in place.

    Completed processes keep their outputs; every other process goes back
    to Pending with its stop/failure timestamps cleared and is dispatched
    again. Retry counters are kept.
    """
    task_run = await lock_task_run(session, ctx, task_run_id)
    if task_run.status not in (RunStatus.STOPPED, RunStatus.FAILED, RunStatus.TIMEOUT):
        raise illegal_transition('task run', task_run.id, task_run.status.value, 'resume')

    processes = await current_processes(session, task_run.id)
    resumed = 0
    for process in processes:
        if process.status == RunStatus.COMPLETED:
            continue
        ensure_transition('task process', process.id, process.status, RunStatus.PENDING)
        previous = process.status
        process.status = RunStatus.PENDING
        process.job_dispatch_id = None
        process.dispatched_at = None
        process.started_at = None
        process.timeout_at = None
        process.error = None
        clear_terminal_timestamps(process)
        _audit_process(session, process, previous, {'resumed': True})
        resumed += 1

    previous = task_run.status
    clear_terminal_timestamps(task_run)
    task_run.status = RunStatus.RUNNING
    record_status_change(
        session,
        team_id=task_run.team_id,
        entity_type='task_run',
        entity_id=task_run.id,
        old_status=previous,
        new_status=RunStatus.RUNNING,
        data={'resumed_processes': resumed},
    )
    logger.info(f"Task run '{task_run.name}' ({task_run.id[:8]}) resumed {resumed} process(es)")

    if task_run.workflow_run_id is not None:
        from agentflow.core.workflows.engine import reopen_workflow_run

        await reopen_workflow_run(session, ctx, task_run)

    definition = await _definition_of(session, task_run)
    await dispatch_pending_processes(session, ctx, runtime, definition.queue_type)
    await refresh_task_run(session, ctx, runtime, task_run)
    return task_run


async def mark_timed_out_processes(
    session: AsyncSession,
    ctx: RunContext,
    runtime: Runtime,
    now: Optional[datetime] = None,
) -> int:
    """
    Sweep running processes past their timeout_at (any team).

    Covers workers that died without reporting. Returns the number of
    processes moved to Timeout.
    """
    now = now or utcnow()
    result = await session.execute(
        select(TaskProcessModel)
        .where(TaskProcessModel.status == RunStatus.RUNNING)
        .where(TaskProcessModel.timeout_at.is_not(None))
        .where(TaskProcessModel.timeout_at <= now)
        .where(TaskProcessModel.archived_at.is_(None))
        .order_by(TaskProcessModel.timeout_at.asc())
        .with_for_update(skip_locked=True)
    )
    processes = list(result.scalars())
    for process in processes:
        team_ctx = ctx if ctx.team_id == process.team_id else RunContext(
            team_id=process.team_id, config=ctx.config
        )
        await timeout_process(session, team_ctx, runtime, process, now=now)
    if processes:
        logger.warning(f'Timed out {len(processes)} stale process(es)')
    return len(processes)
