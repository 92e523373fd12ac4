"""Task definition creation and lookup, validated at save time."""

from __future__ import annotations

from typing import Any, Mapping, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from agentflow.core.defaults import DEFAULT_TIMEOUT_AFTER_SECONDS
from agentflow.core.errors import (
    AgentflowError,
    ErrorCode,
    TaskDefinitionError,
    ValidationReport,
    not_found,
    raise_collected,
)
from agentflow.core.models.app import RunContext
from agentflow.core.models.retry import ProcessRetryPolicy
from agentflow.core.models.runner_config import decode_runner_config, encode_runner_config
from agentflow.core.models.task_pg import TaskDefinitionModel
from agentflow.core.types.status import ArtifactMode


def _validate_levels(report: ValidationReport, field_name: str, levels: Optional[Sequence[int]]) -> None:
    if levels is None:
        return
    if not levels or any(not isinstance(level, int) or level < 0 for level in levels):
        report.add(
            TaskDefinitionError(
                message=f'{field_name} must be a non-empty list of non-negative integers',
                code=ErrorCode.TASK_INVALID_ARTIFACT_LEVELS,
                notes=[f'got {field_name}={list(levels)!r}'],
                help_text='[0] selects the artifacts themselves, [1] their children',
            )
        )


async def create_task_definition(
    session: AsyncSession,
    ctx: RunContext,
    *,
    name: str,
    runner_kind: str,
    task_runner_config: Optional[Mapping[str, Any]] = None,
    description: Optional[str] = None,
    agent_binding: Optional[str] = None,
    schema_definition_id: Optional[str] = None,
    input_artifact_mode: ArtifactMode = ArtifactMode.SINGLE,
    input_artifact_levels: Optional[Sequence[int]] = None,
    output_artifact_mode: ArtifactMode = ArtifactMode.SINGLE,
    output_artifact_levels: Optional[Sequence[int]] = None,
    timeout_after_seconds: int = DEFAULT_TIMEOUT_AFTER_SECONDS,
    queue_type: Optional[str] = None,
    retry_policy: Optional[ProcessRetryPolicy] = None,
) -> TaskDefinitionModel:
    """
    Validate and store a task definition.

    The runner config is decoded into its tagged variant here, so a bad
    config fails at save time instead of when a worker picks it up.
    All independent problems are reported together.
    """
    report = ValidationReport('task definition')
    queue_type = queue_type or ctx.config.default_queue

    config: Any = None
    try:
        config = decode_runner_config(runner_kind, task_runner_config)
    except AgentflowError as exc:
        report.add(exc)

    if timeout_after_seconds <= 0:
        report.add(
            TaskDefinitionError(
                message='timeout_after_seconds must be positive',
                code=ErrorCode.TASK_INVALID_TIMEOUT,
                notes=[f'got timeout_after_seconds={timeout_after_seconds}'],
            )
        )
    if ctx.config.queue(queue_type) is None:
        report.add(
            TaskDefinitionError(
                message=f"queue_type '{queue_type}' is not configured",
                code=ErrorCode.TASK_INVALID_QUEUE,
                notes=[f'configured queues: {[q.name for q in ctx.config.queues]}'],
                help_text='add the queue to AppConfig.queues or pick a configured one',
            )
        )
    _validate_levels(report, 'input_artifact_levels', input_artifact_levels)
    _validate_levels(report, 'output_artifact_levels', output_artifact_levels)
    raise_collected(report)

    definition = TaskDefinitionModel(
        team_id=ctx.team_id,
        name=name,
        description=description,
        runner_kind=runner_kind,
        agent_binding=agent_binding,
        schema_definition_id=schema_definition_id,
        input_artifact_mode=input_artifact_mode,
        input_artifact_levels=list(input_artifact_levels) if input_artifact_levels else None,
        output_artifact_mode=output_artifact_mode,
        output_artifact_levels=list(output_artifact_levels) if output_artifact_levels else None,
        timeout_after_seconds=timeout_after_seconds,
        queue_type=queue_type,
        task_runner_config=encode_runner_config(config),
        retry_policy=(retry_policy or ProcessRetryPolicy()).model_dump(mode='json'),
    )
    session.add(definition)
    await session.flush()
    return definition


async def get_task_definition(
    session: AsyncSession, ctx: RunContext, definition_id: str
) -> TaskDefinitionModel:
    definition = await session.get(TaskDefinitionModel, definition_id)
    if definition is None or definition.team_id != ctx.team_id:
        raise not_found('task definition', definition_id)
    return definition


async def find_task_definition(
    session: AsyncSession, ctx: RunContext, name: str
) -> Optional[TaskDefinitionModel]:
    result = await session.execute(
        select(TaskDefinitionModel)
        .where(TaskDefinitionModel.team_id == ctx.team_id)
        .where(TaskDefinitionModel.name == name)
    )
    return result.scalar_one_or_none()
