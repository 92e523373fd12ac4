"""What a process handler receives and returns."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Optional, Sequence

from agentflow.core.artifacts.store import ArtifactDraft, get_artifacts
from agentflow.core.models.artifact_pg import ArtifactModel
from agentflow.core.models.task_pg import TaskProcessModel
from agentflow.core.models.usage import UsageSummary
from agentflow.core.types.status import RunStatus

if TYPE_CHECKING:
    from agentflow.core.models.app import RunContext
    from agentflow.core.models.task_pg import TaskDefinitionModel
    from agentflow.core.store import Store


@dataclass
class ProcessOutput:
    """
    Result of one process attempt.

    artifacts: drafts persisted as the process outputs, in order
    usage: tokens/cost spent by this attempt
    meta: merged into the process meta
    agent_thread_id: conversation id on the agent side, if any
    """

    artifacts: list[ArtifactDraft] = field(default_factory=list)
    usage: Optional[UsageSummary] = None
    meta: dict[str, Any] = field(default_factory=dict)
    agent_thread_id: Optional[str] = None


@dataclass
class ProcessContext:
    """Read-only view of the process a handler is executing."""

    store: Store
    run_context: RunContext
    process_id: str
    task_run_id: str
    operation: str
    attempt: int
    meta: dict[str, Any]
    definition: TaskDefinitionModel
    runner_config: Any
    input_artifacts: list[ArtifactModel]

    @property
    def team_id(self) -> str:
        return self.run_context.team_id

    async def load_artifacts(self, artifact_ids: Sequence[str]) -> list[ArtifactModel]:
        async with self.store.session() as session:
            return await get_artifacts(session, artifact_ids)

    async def is_stopped(self) -> bool:
        """Cooperative cancellation check for long-running handlers."""
        async with self.store.session() as session:
            process = await session.get(TaskProcessModel, self.process_id)
            return process is None or process.status == RunStatus.STOPPED


ProcessHandler = Callable[[ProcessContext], Awaitable[ProcessOutput]]
