"""Feature entry point: start a workflow on behalf of an external entity."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Awaitable, Callable, Mapping, Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from agentflow.core.logging import get_logger
from agentflow.core.models.app import RunContext
from agentflow.core.models.workflow_pg import WorkflowRunModel
from agentflow.core.workflows.definition import (
    get_workflow_definition_by_key,
    validate_workflow_definition,
)
from agentflow.core.workflows.engine import (
    create_workflow_run,
    get_workflow_run,
    start_workflow_run,
)
from agentflow.core.workflows.listeners import ListenerRef, create_for_listener

if TYPE_CHECKING:
    from agentflow.core.runtime import Runtime
    from agentflow.core.store import Store

logger = get_logger('workflow.engine')

InputBuilder = Callable[[AsyncSession, RunContext], Awaitable[Sequence[str]]]
DispatchCallback = Callable[[WorkflowRunModel], Awaitable[None]]


async def run_workflow(
    store: Store,
    ctx: RunContext,
    runtime: Runtime,
    listener: ListenerRef,
    workflow_type: str,
    workflow_definition_key: str,
    input_builder: InputBuilder,
    on_dispatch: Optional[DispatchCallback] = None,
    metadata: Optional[Mapping[str, Any]] = None,
) -> WorkflowRunModel:
    """
    Create a workflow run plus its listener, then start it.

    The run, its input artifacts (built by `input_builder` in the same
    session) and the pending listener are committed together, so a
    listener never exists without its run and vice versa. The run is
    started in a second transaction; `on_dispatch` is awaited after that
    commit, when the first processes are visible to workers.
    """
    async with store.session() as session:
        definition = await get_workflow_definition_by_key(session, ctx, workflow_definition_key)
        await validate_workflow_definition(session, ctx, definition)
        input_ids = list(await input_builder(session, ctx))
        workflow_run = await create_workflow_run(session, ctx, definition, input_ids)
        await create_for_listener(session, ctx, listener, workflow_run, workflow_type, metadata)
        await session.commit()
        logger.info(
            f"Workflow run {workflow_run.id[:8]} of '{definition.name}' created for "
            f'{listener.kind}:{listener.id} ({workflow_type}) with {len(input_ids)} input(s)'
        )

    async with store.session() as session:
        workflow_run = await get_workflow_run(session, ctx, workflow_run.id)
        await start_workflow_run(session, ctx, runtime, workflow_run)
        await session.commit()

    if on_dispatch is not None:
        await on_dispatch(workflow_run)
    return workflow_run
