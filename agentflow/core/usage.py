"""Bottom-up usage roll-ups: processes -> task run -> workflow run."""

from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from agentflow.core.logging import get_logger
from agentflow.core.models.task_pg import TaskProcessModel, TaskRunModel
from agentflow.core.models.usage import UsageSummary
from agentflow.core.models.workflow_pg import WorkflowRunModel

logger = get_logger('usage')


async def refresh_usage_from_processes(
    session: AsyncSession, task_run: TaskRunModel
) -> UsageSummary:
    """Set the task run's usage to the sum of its processes' usage.

    Archived processes of superseded attempts still count: the tokens
    were spent. Processes without usage count as zero.
    """
    result = await session.execute(
        select(TaskProcessModel.usage_summary).where(
            TaskProcessModel.task_run_id == task_run.id
        )
    )
    summary = UsageSummary.total(UsageSummary.from_json(row) for row in result.scalars())
    new_value = summary.to_json()
    if task_run.usage_summary != new_value:
        task_run.usage_summary = new_value
        logger.debug(f'Task run {task_run.id[:8]} usage refreshed: {summary.total_cost:.6f}')
    return summary


async def refresh_usage_from_task_runs(
    session: AsyncSession, workflow_run: WorkflowRunModel
) -> UsageSummary:
    """Set the workflow run's usage to the sum of its task runs' usage."""
    result = await session.execute(
        select(TaskRunModel.usage_summary).where(
            TaskRunModel.workflow_run_id == workflow_run.id
        )
    )
    summary = UsageSummary.total(UsageSummary.from_json(row) for row in result.scalars())
    new_value = summary.to_json()
    if workflow_run.usage_summary != new_value:
        workflow_run.usage_summary = new_value
        logger.debug(
            f'Workflow run {workflow_run.id[:8]} usage refreshed: {summary.total_cost:.6f}'
        )
    return summary
