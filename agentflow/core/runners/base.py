"""Task runners: how a task definition expands into task processes."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Sequence

from agentflow.core.artifacts.grouping import group_artifacts
from agentflow.core.models.artifact_pg import ArtifactModel
from agentflow.core.types.status import ArtifactMode

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from agentflow.core.models.app import RunContext
    from agentflow.core.models.task_pg import (
        TaskDefinitionModel,
        TaskProcessModel,
        TaskRunModel,
    )

DEFAULT_OPERATION = 'default'


@dataclass(frozen=True)
class ProcessPlan:
    """A task process to create: its inputs, step name and runner metadata."""

    input_artifact_ids: list[str]
    operation: str = DEFAULT_OPERATION
    name: str = ''
    meta: dict[str, Any] = field(default_factory=dict)
    is_intermediate: bool = False


class TaskRunner:
    """
    Expands a task run's inputs into processes per input_artifact_mode.

    - single: one process per upstream batch
    - split: one process per grouping key (runner_config.group_by)
    - merge: exactly one process over every input artifact

    Subclasses add runner-specific metadata or follow-up processes.
    """

    kind = 'default'

    def process_meta(self, definition: TaskDefinitionModel) -> dict[str, Any]:
        return {}

    def plan_processes(
        self,
        definition: TaskDefinitionModel,
        batches: Sequence[Sequence[ArtifactModel]],
    ) -> list[ProcessPlan]:
        config = definition.runner_config()
        mode = definition.input_artifact_mode

        if mode == ArtifactMode.MERGE:
            groups = [[artifact for batch in batches for artifact in batch]]
        elif mode == ArtifactMode.SPLIT:
            flat = [artifact for batch in batches for artifact in batch]
            groups = group_artifacts(flat, mode, config.group_by)
        else:
            groups = [list(batch) for batch in batches]

        meta = self.process_meta(definition)
        return [
            ProcessPlan(
                input_artifact_ids=[artifact.id for artifact in group],
                name=f'{definition.name} #{index + 1}',
                meta=dict(meta),
            )
            for index, group in enumerate(groups)
        ]

    async def after_process_terminal(
        self,
        session: AsyncSession,
        ctx: RunContext,
        task_run: TaskRunModel,
        definition: TaskDefinitionModel,
        process: TaskProcessModel,
        processes: Sequence[TaskProcessModel],
    ) -> list[ProcessPlan]:
        """Follow-up processes to create once `process` reached a terminal status."""
        return []


class AgentTaskRunner(TaskRunner):
    kind = 'agent'

    def process_meta(self, definition: TaskDefinitionModel) -> dict[str, Any]:
        config = definition.runner_config()
        return {'agent_binding': definition.agent_binding, 'model': config.model}


class ApiTaskRunner(TaskRunner):
    kind = 'api'

    def process_meta(self, definition: TaskDefinitionModel) -> dict[str, Any]:
        return {'tool_id': definition.runner_config().tool_id}
