"""Integration test fixtures: a fresh store, an in-memory queue and a worker per test."""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from typing import Any, AsyncGenerator, Awaitable, Callable, Optional, Sequence

import pytest
import pytest_asyncio
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession

from agentflow.core.artifacts.store import ArtifactDraft, create_artifact
from agentflow.core.dispatch.queue import InMemoryJobQueue
from agentflow.core.models import Base
from agentflow.core.models.app import AppConfig, DatabaseConfig, QueueConfig, RunContext
from agentflow.core.models.retry import ProcessRetryPolicy
from agentflow.core.models.usage import UsageSummary
from agentflow.core.models.workflow_pg import WorkflowListenerModel, WorkflowRunModel
from agentflow.core.registry import Registry
from agentflow.core.runners.file_organization import register_file_organization_handlers
from agentflow.core.runtime import Runtime
from agentflow.core.store import Store
from agentflow.core.tasks.definition import create_task_definition
from agentflow.core.types.status import ArtifactMode
from agentflow.core.worker.context import ProcessContext, ProcessHandler, ProcessOutput
from agentflow.core.worker.worker import ProcessWorker
from agentflow.core.workflows.definition import (
    add_connection,
    add_node,
    create_workflow_definition,
)
from agentflow.core.workflows.listeners import ListenerRef

# In-memory SQLite unless a real database is provided
DB_URL = os.environ.get('AGENTFLOW_TEST_DATABASE_URL', 'sqlite+aiosqlite:///:memory:')
TEAM_ID = 'team-test'
TOKENS_PER_CALL = 10


@pytest.fixture
def app_config() -> AppConfig:
    """One worker slot per queue, so dispatch order is deterministic."""
    return AppConfig(
        database=DatabaseConfig(database_url=DB_URL),
        queues=[
            QueueConfig(name='default', max_workers=1),
            QueueConfig(name='llm', max_workers=1),
        ],
    )


@pytest.fixture
def ctx(app_config: AppConfig) -> RunContext:
    return RunContext(team_id=TEAM_ID, config=app_config)


@pytest_asyncio.fixture
async def store(app_config: AppConfig) -> AsyncGenerator[Store, None]:
    """Store with an empty schema."""
    st = Store(app_config.database)
    if app_config.database.is_postgres:
        async with st.async_engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)
    await st.ensure_schema_initialized()
    yield st
    await st.close_async()


@pytest.fixture
def queue() -> InMemoryJobQueue:
    return InMemoryJobQueue()


@pytest.fixture
def runtime(queue: InMemoryJobQueue) -> Runtime:
    return Runtime(queue=queue)


@pytest.fixture
def behaviors() -> dict[str, ProcessHandler]:
    """task definition name -> handler; tests fill it before draining the worker."""
    return {}


@pytest.fixture
def handlers(behaviors: dict[str, ProcessHandler]) -> Registry[ProcessHandler]:
    registry: Registry[ProcessHandler] = Registry('process handler')

    async def by_definition(context: ProcessContext) -> ProcessOutput:
        handler = behaviors.get(context.definition.name, echo_handler())
        return await handler(context)

    registry.register('agent', by_definition)
    registry.register('api', by_definition)
    register_file_organization_handlers(registry, window_handler=by_definition)
    return registry


@pytest.fixture
def worker(
    store: Store,
    runtime: Runtime,
    handlers: Registry[ProcessHandler],
    app_config: AppConfig,
) -> ProcessWorker:
    return ProcessWorker(store, runtime, handlers, app_config)


# =============================================================================
# Handlers
# =============================================================================


def usage_for_call() -> UsageSummary:
    return UsageSummary.for_request(input_tokens=TOKENS_PER_CALL, output_tokens=2)


def echo_handler(*, usage: bool = True) -> ProcessHandler:
    """One output per input, copying its JSON content."""

    async def echo(context: ProcessContext) -> ProcessOutput:
        return ProcessOutput(
            artifacts=[
                ArtifactDraft(name=f'echo {artifact.name}', json_content=artifact.json_content)
                for artifact in context.input_artifacts
            ],
            usage=usage_for_call() if usage else None,
        )

    return echo


def fan_out_handler(count: int) -> ProcessHandler:
    """Emit `count` artifacts regardless of the inputs, without usage."""

    async def fan_out(context: ProcessContext) -> ProcessOutput:
        return ProcessOutput(
            artifacts=[ArtifactDraft(name=f'item {i}', json_content={'n': i}) for i in range(count)]
        )

    return fan_out


def summarize_handler() -> ProcessHandler:
    """One output counting the inputs."""

    async def summarize(context: ProcessContext) -> ProcessOutput:
        return ProcessOutput(
            artifacts=[
                ArtifactDraft(
                    name='summary',
                    json_content={'count': len(context.input_artifacts)},
                )
            ],
            usage=usage_for_call(),
        )

    return summarize


def failing_handler(calls: list[int]) -> ProcessHandler:
    """Always raises; records the attempt number of every call."""

    async def fail(context: ProcessContext) -> ProcessOutput:
        calls.append(context.attempt)
        raise RuntimeError('upstream service unavailable')

    return fail


def window_handler(groups: Callable[[int], str], confidence: int = 5) -> ProcessHandler:
    """Comparison window that names every page through `groups(page_number)`."""

    async def compare(context: ProcessContext) -> ProcessOutput:
        files = [
            {
                'page_number': page['page_number'],
                'group_name': groups(page['page_number']),
                'group_name_confidence': confidence,
                'belongs_to_previous': 0,
            }
            for page in context.meta['files']
        ]
        return ProcessOutput(
            artifacts=[ArtifactDraft(name=f"window {context.meta['window_index']}", json_content={'files': files})],
            usage=usage_for_call(),
        )

    return compare


# =============================================================================
# Listeners
# =============================================================================


@dataclass
class RecordingListener:
    """Listener binding that records every callback it receives."""

    calls: list[tuple[str, str, str]] = field(default_factory=list)
    fail_on_success: bool = False

    async def load(self, session: AsyncSession, ref: ListenerRef) -> ListenerRef:
        return ref

    async def on_success(
        self,
        session: AsyncSession,
        entity: ListenerRef,
        workflow_run: WorkflowRunModel,
        listener: WorkflowListenerModel,
    ) -> None:
        self.calls.append(('success', entity.id, workflow_run.id))
        if self.fail_on_success:
            raise ValueError('feature rejected the result')

    async def on_failure(
        self,
        session: AsyncSession,
        entity: ListenerRef,
        workflow_run: WorkflowRunModel,
        listener: WorkflowListenerModel,
    ) -> None:
        self.calls.append(('failure', entity.id, workflow_run.id))

    def bind(self, runtime: Runtime, kind: str = 'Order') -> RecordingListener:
        runtime.listeners.bind(
            kind, self.load, on_success=self.on_success, on_failure=self.on_failure
        )
        return self


# =============================================================================
# Builders
# =============================================================================


async def make_artifacts(
    store: Store, ctx: RunContext, count: int, *, pages: bool = False
) -> list[str]:
    """Root artifacts doc-1..doc-N (optionally carrying page numbers)."""
    async with store.session() as session:
        ids = []
        for i in range(1, count + 1):
            artifact = await create_artifact(
                session,
                ctx.team_id,
                name=f'doc-{i}',
                position=i,
                json_content={'n': i},
                files=[{'page_number': i}] if pages else None,
            )
            ids.append(artifact.id)
        await session.commit()
    return ids


async def make_task_definition(
    store: Store,
    ctx: RunContext,
    name: str,
    *,
    runner_kind: str = 'agent',
    config: Optional[dict[str, Any]] = None,
    input_mode: ArtifactMode = ArtifactMode.SINGLE,
    output_mode: ArtifactMode = ArtifactMode.SINGLE,
    max_retries: int = 0,
    timeout_after_seconds: int = 60,
) -> str:
    async with store.session() as session:
        definition = await create_task_definition(
            session,
            ctx,
            name=name,
            runner_kind=runner_kind,
            task_runner_config=config,
            input_artifact_mode=input_mode,
            output_artifact_mode=output_mode,
            timeout_after_seconds=timeout_after_seconds,
            retry_policy=ProcessRetryPolicy(max_retries=max_retries, intervals=[0]),
        )
        await session.commit()
        return definition.id


async def make_workflow(
    store: Store,
    ctx: RunContext,
    name: str,
    nodes: dict[str, str],
    edges: Sequence[tuple[str, str]],
) -> tuple[str, dict[str, str]]:
    """Create a workflow definition; returns its id and node name -> node id."""
    from agentflow.core.tasks.definition import get_task_definition

    async with store.session() as session:
        definition = await create_workflow_definition(session, ctx, name)
        node_ids: dict[str, str] = {}
        node_models = {}
        for node_name, task_definition_id in nodes.items():
            task_definition = await get_task_definition(session, ctx, task_definition_id)
            node = await add_node(session, ctx, definition, node_name, task_definition)
            node_ids[node_name] = node.id
            node_models[node_name] = node
        for source, target in edges:
            await add_connection(session, ctx, definition, node_models[source], node_models[target])
        await session.commit()
        return definition.id, node_ids


InputBuilder = Callable[[AsyncSession, RunContext], Awaitable[Sequence[str]]]


def fixed_inputs(ids: Sequence[str]) -> InputBuilder:
    async def build(session: AsyncSession, ctx: RunContext) -> Sequence[str]:
        return list(ids)

    return build


# =============================================================================
# SQL capture
# =============================================================================


async def selects_during(
    store: Store, operation: Callable[[AsyncSession], Awaitable[object]]
) -> list[str]:
    """SELECT statements issued while `operation` runs in its own transaction."""
    statements: list[str] = []

    def record(conn, cursor, statement, parameters, context, executemany) -> None:
        if statement.lstrip().upper().startswith('SELECT'):
            statements.append(statement)

    engine = store.async_engine.sync_engine
    event.listen(engine, 'before_cursor_execute', record)
    try:
        async with store.session() as session:
            await operation(session)
            await session.commit()
    finally:
        event.remove(engine, 'before_cursor_execute', record)
    return statements


def first_from(statements: Sequence[str], table: str) -> int:
    """Index of the first statement loading rows of `table` (subqueries do not count)."""
    return next(i for i, sql in enumerate(statements) if re.match(rf'\s*SELECT {table}\.', sql))
