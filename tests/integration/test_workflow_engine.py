"""Integration tests for workflow execution driven by the process worker."""

from __future__ import annotations

import pytest

from agentflow.core.models.app import AppConfig, QueueConfig, RunContext
from agentflow.core.registry import Registry
from agentflow.core.runtime import Runtime
from agentflow.core.store import Store
from agentflow.core.tasks.runner import current_processes
from agentflow.core.types.status import ArtifactMode, ListenerStatus, RunStatus
from agentflow.core.usage import refresh_usage_from_processes, refresh_usage_from_task_runs
from agentflow.core.worker.context import ProcessHandler
from agentflow.core.worker.worker import ProcessWorker
from agentflow.core.workflows.engine import (
    final_output_artifacts,
    get_workflow_run,
    resume_workflow_run,
    stop_workflow_run,
    task_runs_by_node,
    workflow_progress,
)
from agentflow.core.workflows.lifecycle import run_workflow
from agentflow.core.workflows.listeners import (
    ListenerRef,
    create_for_listener,
    find_for_workflow_run,
    notify_listeners,
)

from .conftest import (
    TEAM_ID,
    TOKENS_PER_CALL,
    RecordingListener,
    echo_handler,
    failing_handler,
    fan_out_handler,
    first_from,
    fixed_inputs,
    make_artifacts,
    make_task_definition,
    make_workflow,
    selects_during,
    summarize_handler,
)

ORDER = ListenerRef('Order', 'order-1')


async def _linear_workflow(store: Store, ctx: RunContext, *, retries: int = 0) -> dict[str, str]:
    """extract (1 -> 5 artifacts) -> classify (split) -> summarize (merge)."""
    extract = await make_task_definition(store, ctx, 'extract')
    classify = await make_task_definition(
        store, ctx, 'classify', input_mode=ArtifactMode.SPLIT, max_retries=retries
    )
    summarize = await make_task_definition(store, ctx, 'summarize', input_mode=ArtifactMode.MERGE)
    _, nodes = await make_workflow(
        store,
        ctx,
        'linear',
        {'A': extract, 'B': classify, 'C': summarize},
        [('A', 'B'), ('B', 'C')],
    )
    return nodes


async def _start(store: Store, ctx: RunContext, runtime: Runtime, key: str) -> str:
    inputs = await make_artifacts(store, ctx, 1)
    workflow_run = await run_workflow(
        store, ctx, runtime, ORDER, 'extract_data', key, fixed_inputs(inputs)
    )
    return workflow_run.id


@pytest.mark.integration
class TestLinearWorkflow:
    """A produces 5 artifacts, B splits them, C merges the results."""

    @pytest.mark.asyncio
    async def test_linear_workflow_completes(
        self,
        store: Store,
        ctx: RunContext,
        runtime: Runtime,
        worker: ProcessWorker,
        behaviors: dict,
    ) -> None:
        nodes = await _linear_workflow(store, ctx)
        behaviors.update(
            extract=fan_out_handler(5), classify=echo_handler(), summarize=summarize_handler()
        )
        listener = RecordingListener().bind(runtime)

        run_id = await _start(store, ctx, runtime, 'linear')
        await worker.run_until_idle()

        async with store.session() as session:
            workflow_run = await get_workflow_run(session, ctx, run_id)
            assert workflow_run.status == RunStatus.COMPLETED
            assert workflow_run.completed_at is not None

            runs = await task_runs_by_node(session, run_id)
            assert {node: run.status for node, run in runs.items()} == {
                nodes['A']: RunStatus.COMPLETED,
                nodes['B']: RunStatus.COMPLETED,
                nodes['C']: RunStatus.COMPLETED,
            }

            b_processes = await current_processes(session, runs[nodes['B']].id)
            assert len(b_processes) == 5
            assert all(len(p.input_artifact_ids) == 1 for p in b_processes)
            assert len(runs[nodes['B']].output_artifact_ids) == 5

            c_processes = await current_processes(session, runs[nodes['C']].id)
            assert len(c_processes) == 1
            assert len(c_processes[0].input_artifact_ids) == 5

            # extract reports no usage: 5 classify calls + 1 summarize call
            assert workflow_run.usage.input_tokens == 6 * TOKENS_PER_CALL
            assert runs[nodes['B']].usage.input_tokens == 5 * TOKENS_PER_CALL
            assert runs[nodes['C']].usage.count == 1

            outputs = await final_output_artifacts(session, ctx, run_id)
            assert [artifact.json_content for artifact in outputs] == [{'count': 5}]

        assert listener.calls == [('success', 'order-1', run_id)]

    @pytest.mark.asyncio
    async def test_progress_reports_every_node_done(
        self,
        store: Store,
        ctx: RunContext,
        runtime: Runtime,
        worker: ProcessWorker,
        behaviors: dict,
    ) -> None:
        await _linear_workflow(store, ctx)
        behaviors.update(extract=fan_out_handler(2))
        RecordingListener().bind(runtime)

        run_id = await _start(store, ctx, runtime, 'linear')

        async with store.session() as session:
            progress = await workflow_progress(session, ctx, run_id)
            assert progress['status'] == RunStatus.RUNNING.value
            assert progress['total_nodes'] == 3
            assert progress['completed'] == 0
            assert progress['percent_complete'] < 100

        await worker.run_until_idle()

        async with store.session() as session:
            progress = await workflow_progress(session, ctx, run_id)
            assert progress['completed'] == 3
            assert progress['percent_complete'] == 100.0
            assert len(progress['levels']) == 3

    @pytest.mark.asyncio
    async def test_usage_refresh_is_idempotent(
        self,
        store: Store,
        ctx: RunContext,
        runtime: Runtime,
        worker: ProcessWorker,
        behaviors: dict,
    ) -> None:
        await _linear_workflow(store, ctx)
        behaviors.update(extract=fan_out_handler(3))
        RecordingListener().bind(runtime)
        run_id = await _start(store, ctx, runtime, 'linear')
        await worker.run_until_idle()

        async with store.session() as session:
            workflow_run = await get_workflow_run(session, ctx, run_id)
            before = dict(workflow_run.usage_summary)
            runs = list((await task_runs_by_node(session, run_id)).values())
            stored = {run.id: dict(run.usage_summary) for run in runs}

            for _ in range(2):
                for run in runs:
                    summary = await refresh_usage_from_processes(session, run)
                    assert summary.to_json() == stored[run.id]
                total = await refresh_usage_from_task_runs(session, workflow_run)
                assert total.to_json() == before

            assert not session.dirty
            assert workflow_run.usage.input_tokens == 4 * TOKENS_PER_CALL


@pytest.mark.integration
class TestRetryExhaustion:
    """B's only process fails twice with max_retries=1."""

    @pytest.mark.asyncio
    async def test_failed_node_fails_workflow(
        self,
        store: Store,
        ctx: RunContext,
        runtime: Runtime,
        worker: ProcessWorker,
        behaviors: dict,
    ) -> None:
        nodes = await _linear_workflow(store, ctx, retries=1)
        calls: list[int] = []
        behaviors.update(extract=fan_out_handler(1), classify=failing_handler(calls))
        listener = RecordingListener().bind(runtime)

        run_id = await _start(store, ctx, runtime, 'linear')
        await worker.run_until_idle()

        assert calls == [0, 1]
        async with store.session() as session:
            workflow_run = await get_workflow_run(session, ctx, run_id)
            assert workflow_run.status == RunStatus.FAILED
            assert nodes['C'] in workflow_run.short_circuited_node_ids

            runs = await task_runs_by_node(session, run_id)
            assert runs[nodes['B']].status == RunStatus.FAILED
            assert nodes['C'] not in runs

            (process,) = await current_processes(session, runs[nodes['B']].id)
            assert process.status == RunStatus.FAILED
            assert process.attempt_count == 1
            assert process.error['type'] == 'RuntimeError'

            (row,) = await find_for_workflow_run(session, run_id)
            assert row.status == ListenerStatus.FAILED

        assert listener.calls == [('failure', 'order-1', run_id)]

    @pytest.mark.asyncio
    async def test_listener_is_not_delivered_twice(
        self,
        store: Store,
        ctx: RunContext,
        runtime: Runtime,
        worker: ProcessWorker,
        behaviors: dict,
    ) -> None:
        await _linear_workflow(store, ctx)
        behaviors.update(extract=fan_out_handler(1), classify=failing_handler([]))
        listener = RecordingListener().bind(runtime)

        run_id = await _start(store, ctx, runtime, 'linear')
        await worker.run_until_idle()

        async with store.session() as session:
            workflow_run = await get_workflow_run(session, ctx, run_id)
            assert await notify_listeners(session, runtime.listeners, workflow_run) == 0
            await session.commit()

        assert len(listener.calls) == 1


@pytest.mark.integration
class TestDiamondShortCircuit:
    """A -> (B, C) -> D: B fails, C still runs, D is never instantiated."""

    @pytest.mark.asyncio
    async def test_independent_branch_continues(
        self,
        store: Store,
        ctx: RunContext,
        runtime: Runtime,
        worker: ProcessWorker,
        behaviors: dict,
    ) -> None:
        a = await make_task_definition(store, ctx, 'root')
        b = await make_task_definition(store, ctx, 'left')
        c = await make_task_definition(store, ctx, 'right')
        d = await make_task_definition(store, ctx, 'join', input_mode=ArtifactMode.MERGE)
        _, nodes = await make_workflow(
            store,
            ctx,
            'diamond',
            {'A': a, 'B': b, 'C': c, 'D': d},
            [('A', 'B'), ('A', 'C'), ('B', 'D'), ('C', 'D')],
        )
        behaviors.update(left=failing_handler([]))
        listener = RecordingListener().bind(runtime)

        run_id = await _start(store, ctx, runtime, 'diamond')
        await worker.run_until_idle()

        async with store.session() as session:
            workflow_run = await get_workflow_run(session, ctx, run_id)
            assert workflow_run.status == RunStatus.FAILED
            assert workflow_run.short_circuited_node_ids == [nodes['D']]

            runs = await task_runs_by_node(session, run_id)
            assert runs[nodes['B']].status == RunStatus.FAILED
            assert runs[nodes['C']].status == RunStatus.COMPLETED
            assert nodes['D'] not in runs

            progress = await workflow_progress(session, ctx, run_id)
            assert progress['failed'] == 1
            assert progress['short_circuited'] == 1
            assert progress['completed'] == 2
            assert progress['percent_complete'] == 100.0

            assert await final_output_artifacts(session, ctx, run_id) == []

        assert [call[0] for call in listener.calls] == ['failure']


@pytest.mark.integration
class TestListenerFailures:
    @pytest.mark.asyncio
    async def test_callback_error_is_recorded_on_listener(
        self,
        store: Store,
        ctx: RunContext,
        runtime: Runtime,
        worker: ProcessWorker,
        behaviors: dict,
    ) -> None:
        await _linear_workflow(store, ctx)
        behaviors.update(extract=fan_out_handler(1))
        listener = RecordingListener(fail_on_success=True).bind(runtime)

        run_id = await _start(store, ctx, runtime, 'linear')
        await worker.run_until_idle()

        async with store.session() as session:
            workflow_run = await get_workflow_run(session, ctx, run_id)
            # The workflow outcome is independent of its listeners
            assert workflow_run.status == RunStatus.COMPLETED
            (row,) = await find_for_workflow_run(session, run_id)
            assert row.status == ListenerStatus.COMPLETED
            assert 'feature rejected the result' in row.metadata_['callback_error']
            assert [entry['event'] for entry in row.metadata_['history']] == [
                'created',
                'running',
                'completed',
            ]

        assert listener.calls == [('success', 'order-1', run_id)]

    @pytest.mark.asyncio
    async def test_unbound_listener_type_stays_pending(
        self,
        store: Store,
        ctx: RunContext,
        runtime: Runtime,
        worker: ProcessWorker,
        behaviors: dict,
    ) -> None:
        await _linear_workflow(store, ctx)
        behaviors.update(extract=fan_out_handler(1))

        run_id = await _start(store, ctx, runtime, 'linear')
        await worker.run_until_idle()

        async with store.session() as session:
            workflow_run = await get_workflow_run(session, ctx, run_id)
            assert workflow_run.status == RunStatus.COMPLETED
            (row,) = await find_for_workflow_run(session, run_id)
            assert row.status == ListenerStatus.PENDING

    @pytest.mark.asyncio
    async def test_every_listener_is_delivered_once(
        self,
        store: Store,
        ctx: RunContext,
        runtime: Runtime,
        worker: ProcessWorker,
        behaviors: dict,
    ) -> None:
        await _linear_workflow(store, ctx)
        behaviors.update(extract=fan_out_handler(2))
        orders = RecordingListener().bind(runtime)
        invoices = RecordingListener().bind(runtime, kind='Invoice')

        run_id = await _start(store, ctx, runtime, 'linear')
        async with store.session() as session:
            workflow_run = await get_workflow_run(session, ctx, run_id)
            await create_for_listener(
                session, ctx, ListenerRef('Order', 'order-2'), workflow_run, 'extract_data'
            )
            await create_for_listener(
                session, ctx, ListenerRef('Invoice', 'inv-1'), workflow_run, 'extract_data'
            )
            # Same (entity, run, type) as the listener run_workflow created
            again = await create_for_listener(session, ctx, ORDER, workflow_run, 'extract_data')
            await session.commit()

        await worker.run_until_idle()

        async with store.session() as session:
            rows = await find_for_workflow_run(session, run_id)
            assert len(rows) == 3
            assert again.id in {row.id for row in rows}
            assert all(row.status == ListenerStatus.COMPLETED for row in rows)

            workflow_run = await get_workflow_run(session, ctx, run_id)
            assert await notify_listeners(session, runtime.listeners, workflow_run) == 0
            await session.commit()

        assert sorted(orders.calls) == [
            ('success', 'order-1', run_id),
            ('success', 'order-2', run_id),
        ]
        assert invoices.calls == [('success', 'inv-1', run_id)]


@pytest.mark.integration
class TestConcurrentWorkerSlots:
    """Sibling processes finish in the same worker pass."""

    @pytest.fixture
    def wide_config(self, app_config: AppConfig) -> AppConfig:
        return AppConfig(
            database=app_config.database,
            queues=[
                QueueConfig(name='default', max_workers=5),
                QueueConfig(name='llm', max_workers=5),
            ],
        )

    @pytest.mark.asyncio
    async def test_split_siblings_complete_the_workflow_once(
        self,
        store: Store,
        runtime: Runtime,
        handlers: Registry[ProcessHandler],
        behaviors: dict,
        wide_config: AppConfig,
    ) -> None:
        ctx = RunContext(team_id=TEAM_ID, config=wide_config)
        worker = ProcessWorker(store, runtime, handlers, wide_config)
        a = await make_task_definition(store, ctx, 'extract')
        b = await make_task_definition(
            store,
            ctx,
            'classify',
            input_mode=ArtifactMode.SPLIT,
            output_mode=ArtifactMode.MERGE,
        )
        c = await make_task_definition(store, ctx, 'summarize', input_mode=ArtifactMode.MERGE)
        _, nodes = await make_workflow(
            store, ctx, 'wide', {'A': a, 'B': b, 'C': c}, [('A', 'B'), ('B', 'C')]
        )
        behaviors.update(
            extract=fan_out_handler(5), classify=echo_handler(), summarize=summarize_handler()
        )
        listener = RecordingListener().bind(runtime)

        run_id = await _start(store, ctx, runtime, 'wide')
        await worker.run_until_idle()

        async with store.session() as session:
            workflow_run = await get_workflow_run(session, ctx, run_id)
            assert workflow_run.status == RunStatus.COMPLETED

            runs = await task_runs_by_node(session, run_id)
            assert {node: run.status for node, run in runs.items()} == {
                nodes['A']: RunStatus.COMPLETED,
                nodes['B']: RunStatus.COMPLETED,
                nodes['C']: RunStatus.COMPLETED,
            }
            b_processes = await current_processes(session, runs[nodes['B']].id)
            assert len(b_processes) == 5
            assert all(p.status == RunStatus.COMPLETED for p in b_processes)
            # One merged wrapper for the five split results
            assert len(runs[nodes['B']].output_artifact_ids) == 1
            assert workflow_run.usage.input_tokens == 6 * TOKENS_PER_CALL

        assert listener.calls == [('success', 'order-1', run_id)]


@pytest.mark.integration
class TestStopAndResumeWorkflow:
    @pytest.mark.asyncio
    async def test_stop_then_resume(
        self,
        store: Store,
        ctx: RunContext,
        runtime: Runtime,
        worker: ProcessWorker,
        behaviors: dict,
    ) -> None:
        nodes = await _linear_workflow(store, ctx)
        behaviors.update(extract=fan_out_handler(2))
        listener = RecordingListener().bind(runtime)
        run_id = await _start(store, ctx, runtime, 'linear')

        async with store.session() as session:
            workflow_run = await stop_workflow_run(session, ctx, runtime, run_id)
            assert workflow_run.status == RunStatus.STOPPED
            runs = await task_runs_by_node(session, run_id)
            assert runs[nodes['A']].status == RunStatus.STOPPED
            assert nodes['B'] not in runs
            await session.commit()

        # The stopped process's job is stale and ignored
        await worker.run_until_idle()
        assert listener.calls == [('failure', 'order-1', run_id)]

        async with store.session() as session:
            await resume_workflow_run(session, ctx, runtime, run_id)
            await session.commit()
        await worker.run_until_idle()

        async with store.session() as session:
            workflow_run = await get_workflow_run(session, ctx, run_id)
            assert workflow_run.status == RunStatus.COMPLETED
            runs = await task_runs_by_node(session, run_id)
            assert all(run.status == RunStatus.COMPLETED for run in runs.values())
            assert len(runs) == 3

        # Already delivered listeners are not delivered again
        assert listener.calls == [('failure', 'order-1', run_id)]

    @pytest.mark.asyncio
    async def test_stop_locks_rows_bottom_up(
        self,
        store: Store,
        ctx: RunContext,
        runtime: Runtime,
    ) -> None:
        await _linear_workflow(store, ctx)
        RecordingListener().bind(runtime)
        run_id = await _start(store, ctx, runtime, 'linear')

        statements = await selects_during(
            store, lambda session: stop_workflow_run(session, ctx, runtime, run_id)
        )

        processes = first_from(statements, 'agentflow_task_processes')
        task_runs = first_from(statements, 'agentflow_task_runs')
        workflow_runs = first_from(statements, 'agentflow_workflow_runs')
        assert processes < task_runs < workflow_runs
