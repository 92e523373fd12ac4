"""
Workflow run lifecycle: start, level advance, short-circuit, completion.

Every entry point locks the workflow run row and re-derives what to do
from stored state, so advancing and finishing are idempotent when sibling
task runs complete concurrently: a second caller finds the dependent
task runs already created, or the run already terminal, and does nothing.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from agentflow.core.artifacts.store import get_artifacts
from agentflow.core.audit import record_event, record_status_change
from agentflow.core.errors import illegal_transition, not_found
from agentflow.core.logging import get_logger
from agentflow.core.models.app import RunContext
from agentflow.core.models.artifact_pg import ArtifactModel
from agentflow.core.models.base import utcnow
from agentflow.core.models.task_pg import TaskDefinitionModel, TaskProcessModel, TaskRunModel
from agentflow.core.models.workflow_pg import WorkflowDefinitionModel, WorkflowRunModel
from agentflow.core.tasks.runner import (
    create_task_run,
    resume_task_run,
    start_task_run,
    stop_task_run,
)
from agentflow.core.tasks.state import aggregate_status, apply_status, clear_terminal_timestamps
from agentflow.core.types.status import RunStatus
from agentflow.core.usage import refresh_usage_from_task_runs
from agentflow.core.workflows.definition import WorkflowGraph, load_graph
from agentflow.core.workflows.levels import eligible_nodes, unreachable_nodes
from agentflow.core.workflows.listeners import notify_listeners

if TYPE_CHECKING:
    from agentflow.core.runtime import Runtime

logger = get_logger('workflow.engine')


async def get_workflow_run(
    session: AsyncSession, ctx: RunContext, workflow_run_id: str, *, lock: bool = False
) -> WorkflowRunModel:
    stmt = (
        select(WorkflowRunModel)
        .where(WorkflowRunModel.id == workflow_run_id)
        .where(WorkflowRunModel.team_id == ctx.team_id)
        .execution_options(populate_existing=True)
    )
    if lock:
        stmt = stmt.with_for_update()
    workflow_run = (await session.execute(stmt)).scalar_one_or_none()
    if workflow_run is None:
        raise not_found('workflow run', workflow_run_id)
    return workflow_run


async def lock_workflow_run(
    session: AsyncSession, ctx: RunContext, workflow_run_id: str
) -> WorkflowRunModel:
    """Lock a workflow run after the processes and task runs under it, in that order."""
    task_run_ids = select(TaskRunModel.id).where(TaskRunModel.workflow_run_id == workflow_run_id)
    await session.execute(
        select(TaskProcessModel)
        .where(TaskProcessModel.task_run_id.in_(task_run_ids))
        .where(TaskProcessModel.team_id == ctx.team_id)
        .where(TaskProcessModel.archived_at.is_(None))
        .order_by(TaskProcessModel.id.asc())
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    await session.execute(
        select(TaskRunModel)
        .where(TaskRunModel.workflow_run_id == workflow_run_id)
        .where(TaskRunModel.team_id == ctx.team_id)
        .order_by(TaskRunModel.id.asc())
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return await get_workflow_run(session, ctx, workflow_run_id, lock=True)


async def graph_of(session: AsyncSession, workflow_run: WorkflowRunModel) -> WorkflowGraph:
    definition = await session.get(WorkflowDefinitionModel, workflow_run.workflow_definition_id)
    if definition is None:
        raise not_found('workflow definition', workflow_run.workflow_definition_id)
    return await load_graph(session, definition)


async def task_runs_by_node(
    session: AsyncSession, workflow_run_id: str
) -> dict[str, TaskRunModel]:
    result = await session.execute(
        select(TaskRunModel).where(TaskRunModel.workflow_run_id == workflow_run_id)
    )
    return {
        run.workflow_node_id: run
        for run in result.scalars()
        if run.workflow_node_id is not None
    }


def _audit_workflow(
    session: AsyncSession,
    workflow_run: WorkflowRunModel,
    previous: RunStatus,
    data: Optional[dict[str, Any]] = None,
) -> None:
    record_status_change(
        session,
        team_id=workflow_run.team_id,
        entity_type='workflow_run',
        entity_id=workflow_run.id,
        old_status=previous,
        new_status=workflow_run.status,
        data=data,
    )


# =============================================================================
# Creation and start
# =============================================================================


async def create_workflow_run(
    session: AsyncSession,
    ctx: RunContext,
    definition: WorkflowDefinitionModel,
    input_artifact_ids: Sequence[str] = (),
    *,
    name: Optional[str] = None,
) -> WorkflowRunModel:
    if definition.team_id != ctx.team_id:
        raise not_found('workflow definition', definition.id)
    workflow_run = WorkflowRunModel(
        team_id=ctx.team_id,
        workflow_definition_id=definition.id,
        name=name or definition.name,
        status=RunStatus.PENDING,
        input_artifact_ids=list(input_artifact_ids),
    )
    session.add(workflow_run)
    await session.flush()
    record_event(
        session,
        team_id=ctx.team_id,
        entity_type='workflow_run',
        entity_id=workflow_run.id,
        event='created',
        new_status=RunStatus.PENDING.value,
        data={'definition': definition.name, 'inputs': len(workflow_run.input_artifact_ids)},
    )
    return workflow_run


async def start_workflow_run(
    session: AsyncSession,
    ctx: RunContext,
    runtime: Runtime,
    workflow_run: WorkflowRunModel,
) -> list[TaskRunModel]:
    """Pending -> Running and instantiate the starting nodes."""
    workflow_run = await get_workflow_run(session, ctx, workflow_run.id, lock=True)
    if workflow_run.status != RunStatus.PENDING:
        raise illegal_transition(
            'workflow run', workflow_run.id, workflow_run.status.value, 'start'
        )
    previous = apply_status(workflow_run, RunStatus.RUNNING, utcnow())
    _audit_workflow(session, workflow_run, previous)
    logger.info(f"Workflow run '{workflow_run.name}' ({workflow_run.id[:8]}) started")

    created = await advance_workflow(session, ctx, runtime, workflow_run)
    await check_workflow_completion(session, ctx, runtime, workflow_run)
    return created


# =============================================================================
# Advance and short-circuit
# =============================================================================


async def advance_workflow(
    session: AsyncSession,
    ctx: RunContext,
    runtime: Runtime,
    workflow_run: WorkflowRunModel,
) -> list[TaskRunModel]:
    """
    Instantiate every eligible node that has no task run yet.

    Eligibility is re-derived from stored task runs each time, so calling
    this again after a sibling already advanced creates nothing.
    """
    if workflow_run.status != RunStatus.RUNNING:
        return []

    graph = await graph_of(session, workflow_run)
    runs = await task_runs_by_node(session, workflow_run.id)
    completed = {node for node, run in runs.items() if run.status == RunStatus.COMPLETED}
    eligible = eligible_nodes(
        graph.node_ids,
        graph.edges,
        completed=completed,
        instantiated=set(runs),
        blocked=workflow_run.short_circuited_node_ids,
    )

    created: list[TaskRunModel] = []
    for node_id in eligible:
        node = graph.nodes[node_id]
        definition = await session.get(TaskDefinitionModel, node.task_definition_id)
        if definition is None:
            raise not_found('task definition', node.task_definition_id)
        created.append(
            await create_task_run(session, ctx, definition, workflow_run=workflow_run, node=node)
        )
    if created:
        logger.info(
            f'Workflow run {workflow_run.id[:8]} advanced: '
            f'{[run.name for run in created]}'
        )

    for task_run in created:
        await start_task_run(session, ctx, runtime, task_run)
    return created


def short_circuit(
    session: AsyncSession,
    workflow_run: WorkflowRunModel,
    graph: WorkflowGraph,
    failed_node_id: str,
    instantiated: set[str],
) -> list[str]:
    """Mark every transitive dependent of a failed node Failed without instantiating it."""
    marked = list(workflow_run.short_circuited_node_ids)
    added = [
        node
        for node in graph.dependents_of(failed_node_id)
        if node not in marked and node not in instantiated
    ]
    if not added:
        return []
    workflow_run.short_circuited_node_ids = marked + added
    record_event(
        session,
        team_id=workflow_run.team_id,
        entity_type='workflow_run',
        entity_id=workflow_run.id,
        event='short_circuit',
        data={'failed_node_id': failed_node_id, 'nodes': added},
    )
    logger.info(
        f'Workflow run {workflow_run.id[:8]}: {len(added)} node(s) short-circuited by '
        f"'{graph.nodes[failed_node_id].name}'"
    )
    return added


async def on_task_run_terminal(
    session: AsyncSession,
    ctx: RunContext,
    runtime: Runtime,
    task_run: TaskRunModel,
) -> None:
    """
    React to a task run of this workflow reaching a terminal status.

    Completed advances dependents; Failed/Timeout short-circuits them;
    Stopped leaves them unreachable. Then the run's completion is checked.
    """
    if task_run.workflow_run_id is None:
        return
    workflow_run = await get_workflow_run(session, ctx, task_run.workflow_run_id, lock=True)
    await refresh_usage_from_task_runs(session, workflow_run)

    if task_run.status == RunStatus.COMPLETED:
        await advance_workflow(session, ctx, runtime, workflow_run)
    elif task_run.status.is_failure and task_run.workflow_node_id is not None:
        graph = await graph_of(session, workflow_run)
        runs = await task_runs_by_node(session, workflow_run.id)
        short_circuit(session, workflow_run, graph, task_run.workflow_node_id, set(runs))

    await check_workflow_completion(session, ctx, runtime, workflow_run)


# =============================================================================
# Completion
# =============================================================================


async def node_statuses(
    session: AsyncSession, workflow_run: WorkflowRunModel, graph: WorkflowGraph
) -> dict[str, Optional[RunStatus]]:
    """
    Effective status per node.

    task run status when instantiated, FAILED when short-circuited, None
    when unreachable behind a stopped (or otherwise unfinished) ancestor,
    PENDING when it can still be reached.
    """
    runs = await task_runs_by_node(session, workflow_run.id)
    short = set(workflow_run.short_circuited_node_ids)
    dead_ends = [
        node
        for node, run in runs.items()
        if run.status.is_terminal and run.status != RunStatus.COMPLETED
    ]
    unreachable = set(unreachable_nodes(graph.node_ids, graph.edges, dead_ends))

    statuses: dict[str, Optional[RunStatus]] = {}
    for node in graph.node_ids:
        if node in runs:
            statuses[node] = runs[node].status
        elif node in short:
            statuses[node] = RunStatus.FAILED
        elif node in unreachable:
            statuses[node] = None
        else:
            statuses[node] = RunStatus.PENDING
    return statuses


async def check_workflow_completion(
    session: AsyncSession,
    ctx: RunContext,
    runtime: Runtime,
    workflow_run: WorkflowRunModel,
) -> RunStatus:
    """
    Finalize the run once every node is settled.

    Status precedence over nodes: anything unsettled -> Running; else
    Failed (including short-circuited nodes), Timeout, Stopped, and
    Completed only when every reachable node completed. On the terminal
    transition usage is rolled up and listeners are delivered.
    """
    if workflow_run.status == RunStatus.PENDING:
        return workflow_run.status

    graph = await graph_of(session, workflow_run)
    statuses = await node_statuses(session, workflow_run, graph)
    status = aggregate_status(s for s in statuses.values() if s is not None)

    if status == workflow_run.status or not status.is_terminal:
        if not status.is_terminal:
            logger.debug(f'Workflow run {workflow_run.id[:8]} still running')
        return workflow_run.status

    previous = apply_status(workflow_run, status, utcnow())
    counts = {
        value.value: sum(1 for s in statuses.values() if s == value)
        for value in RunStatus
        if any(s == value for s in statuses.values())
    }
    _audit_workflow(session, workflow_run, previous, {'nodes': counts})
    await refresh_usage_from_task_runs(session, workflow_run)
    logger.info(
        f"Workflow run '{workflow_run.name}' ({workflow_run.id[:8]}) {status.value}: {counts}"
    )

    await notify_listeners(session, runtime.listeners, workflow_run)
    return status


# =============================================================================
# Stop, resume, reopen
# =============================================================================


async def reopen_workflow_run(
    session: AsyncSession, ctx: RunContext, task_run: TaskRunModel
) -> WorkflowRunModel:
    """
    Put the workflow back to Running after one of its task runs reopened.

    Short-circuit marks downstream of the reopened node are cleared so
    those nodes become eligible again once it completes. Listeners that
    were already delivered are not delivered again.
    """
    workflow_run = await get_workflow_run(session, ctx, task_run.workflow_run_id or '', lock=True)
    if task_run.workflow_node_id is not None:
        graph = await graph_of(session, workflow_run)
        cleared = set(graph.dependents_of(task_run.workflow_node_id)) | {task_run.workflow_node_id}
        workflow_run.short_circuited_node_ids = [
            node for node in workflow_run.short_circuited_node_ids if node not in cleared
        ]

    if workflow_run.status != RunStatus.RUNNING:
        previous = workflow_run.status
        clear_terminal_timestamps(workflow_run)
        workflow_run.status = RunStatus.RUNNING
        _audit_workflow(session, workflow_run, previous, {'reopened_by': task_run.id})
        logger.info(
            f"Workflow run '{workflow_run.name}' ({workflow_run.id[:8]}) reopened by "
            f"task run '{task_run.name}'"
        )
    return workflow_run


async def stop_workflow_run(
    session: AsyncSession,
    ctx: RunContext,
    runtime: Runtime,
    workflow_run_id: str,
) -> WorkflowRunModel:
    """Stop every active task run; the run settles as Stopped unless something already failed."""
    workflow_run = await lock_workflow_run(session, ctx, workflow_run_id)
    if workflow_run.status.is_terminal:
        return workflow_run

    runs = await task_runs_by_node(session, workflow_run.id)
    for task_run in runs.values():
        if not task_run.status.is_terminal:
            await stop_task_run(session, ctx, runtime, task_run.id)

    if workflow_run.status == RunStatus.PENDING or not runs:
        previous = apply_status(workflow_run, RunStatus.STOPPED, utcnow())
        _audit_workflow(session, workflow_run, previous)
        await notify_listeners(session, runtime.listeners, workflow_run)
    logger.info(
        f"Workflow run '{workflow_run.name}' ({workflow_run.id[:8]}) stop requested: "
        f'{workflow_run.status.value}'
    )
    return workflow_run


async def resume_workflow_run(
    session: AsyncSession,
    ctx: RunContext,
    runtime: Runtime,
    workflow_run_id: str,
) -> WorkflowRunModel:
    """Resume every Stopped, Failed or Timeout task run and advance again."""
    workflow_run = await lock_workflow_run(session, ctx, workflow_run_id)
    if workflow_run.status == RunStatus.COMPLETED or workflow_run.status == RunStatus.PENDING:
        raise illegal_transition(
            'workflow run', workflow_run.id, workflow_run.status.value, 'resume'
        )

    runs = await task_runs_by_node(session, workflow_run.id)
    resumable = [
        run
        for run in runs.values()
        if run.status in (RunStatus.STOPPED, RunStatus.FAILED, RunStatus.TIMEOUT)
    ]
    for task_run in resumable:
        await resume_task_run(session, ctx, runtime, task_run.id)

    if workflow_run.status != RunStatus.RUNNING:
        previous = workflow_run.status
        clear_terminal_timestamps(workflow_run)
        workflow_run.status = RunStatus.RUNNING
        _audit_workflow(session, workflow_run, previous, {'resumed': True})

    await advance_workflow(session, ctx, runtime, workflow_run)
    await check_workflow_completion(session, ctx, runtime, workflow_run)
    return workflow_run


# =============================================================================
# Read side
# =============================================================================


async def workflow_progress(
    session: AsyncSession, ctx: RunContext, workflow_run_id: str
) -> dict[str, Any]:
    """
    Node counts and percent complete.

    Unreachable and short-circuited nodes count as done: they will never
    run, so a finished run always reports 100.
    """
    workflow_run = await get_workflow_run(session, ctx, workflow_run_id)
    graph = await graph_of(session, workflow_run)
    statuses = await node_statuses(session, workflow_run, graph)
    short = set(workflow_run.short_circuited_node_ids)

    done = sum(1 for status in statuses.values() if status is None or status.is_terminal)
    total = len(statuses)
    return {
        'workflow_run_id': workflow_run.id,
        'status': workflow_run.status.value,
        'total_nodes': total,
        'completed': sum(1 for s in statuses.values() if s == RunStatus.COMPLETED),
        'failed': sum(
            1 for node, s in statuses.items() if s == RunStatus.FAILED and node not in short
        ),
        'short_circuited': len(short),
        'unreachable': sum(1 for s in statuses.values() if s is None),
        'running': sum(1 for s in statuses.values() if s == RunStatus.RUNNING),
        'pending': sum(1 for s in statuses.values() if s == RunStatus.PENDING),
        'percent_complete': round(100.0 * done / total, 1) if total else 100.0,
        'levels': graph.levels(),
    }


async def final_output_artifacts(
    session: AsyncSession, ctx: RunContext, workflow_run_id: str
) -> list[ArtifactModel]:
    """Outputs of the completed sink nodes, in node order."""
    workflow_run = await get_workflow_run(session, ctx, workflow_run_id)
    graph = await graph_of(session, workflow_run)
    runs = await task_runs_by_node(session, workflow_run.id)
    ids: list[str] = []
    for node in graph.sink_nodes():
        run = runs.get(node)
        if run is not None and run.status == RunStatus.COMPLETED:
            ids.extend(run.output_artifact_ids)
    return await get_artifacts(session, ids)
