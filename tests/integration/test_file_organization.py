"""Integration tests for the file organization runner and its maintenance operations."""

from __future__ import annotations

from typing import Callable, Optional

import pytest

from agentflow.core.artifacts.store import get_children
from agentflow.core.errors import StateTransitionError
from agentflow.core.inspection import list_task_processes
from agentflow.core.models.app import RunContext
from agentflow.core.runners.file_organization import (
    OP_DEDUP,
    OP_MERGE,
    OP_WINDOW,
    rerun_dedup,
    rerun_merge,
    reset_from_windows,
    show_mismatches,
)
from agentflow.core.runtime import Runtime
from agentflow.core.store import Store
from agentflow.core.tasks.definition import get_task_definition
from agentflow.core.tasks.runner import current_processes, get_task_run, output_artifacts, run_task
from agentflow.core.types.status import RunStatus
from agentflow.core.worker.worker import ProcessWorker

from .conftest import make_artifacts, make_task_definition, window_handler


def invoice_then_medical(page: int) -> str:
    return 'Invoice' if page <= 2 else 'Medical Record'


async def _organize(
    store: Store,
    ctx: RunContext,
    runtime: Runtime,
    behaviors: dict,
    groups: Callable[[int], str],
    *,
    pages: int = 5,
    config: Optional[dict] = None,
) -> str:
    behaviors['organize'] = window_handler(groups)
    definition_id = await make_task_definition(
        store,
        ctx,
        'organize',
        runner_kind='file_organization',
        config=config or {'window_size': 3, 'window_overlap': 1},
    )
    inputs = await make_artifacts(store, ctx, pages, pages=True)
    async with store.session() as session:
        definition = await get_task_definition(session, ctx, definition_id)
        task_run = await run_task(session, ctx, runtime, definition, inputs)
        await session.commit()
        return task_run.id


async def _groups(store: Store, ctx: RunContext, task_run_id: str) -> list[tuple[str, list[str]]]:
    async with store.session() as session:
        task_run = await get_task_run(session, ctx, task_run_id)
        return [
            (group.name, [child.name for child in await get_children(session, group.id)])
            for group in await output_artifacts(session, task_run)
        ]


@pytest.mark.integration
class TestWindowsAndMerge:
    @pytest.mark.asyncio
    async def test_pages_grouped_into_documents(
        self,
        store: Store,
        ctx: RunContext,
        runtime: Runtime,
        worker: ProcessWorker,
        behaviors: dict,
    ) -> None:
        task_run_id = await _organize(store, ctx, runtime, behaviors, invoice_then_medical)
        await worker.run_until_idle()

        async with store.session() as session:
            task_run = await get_task_run(session, ctx, task_run_id)
            assert task_run.status == RunStatus.COMPLETED

            processes = await current_processes(session, task_run_id)
            assert [p.operation for p in processes] == [OP_WINDOW, OP_WINDOW, OP_MERGE]
            assert [p.name for p in processes[:2]] == ['Compare Files 1-3', 'Compare Files 3-5']
            assert all(p.is_intermediate for p in processes[:2])
            merge = processes[2]
            assert merge.meta['groups_for_deduplication'] == []
            assert [g['files'] for g in merge.meta['merge_result']['groups']] == [[1, 2], [3, 4, 5]]

            # Two window calls were charged; the merge itself is free
            assert task_run.usage.count == 2

        assert await _groups(store, ctx, task_run_id) == [
            ('Invoice', ['doc-1', 'doc-2']),
            ('Medical Record', ['doc-3', 'doc-4', 'doc-5']),
        ]

    @pytest.mark.asyncio
    async def test_group_children_trace_back_to_pages(
        self,
        store: Store,
        ctx: RunContext,
        runtime: Runtime,
        worker: ProcessWorker,
        behaviors: dict,
    ) -> None:
        task_run_id = await _organize(store, ctx, runtime, behaviors, invoice_then_medical, pages=3)
        await worker.run_until_idle()

        async with store.session() as session:
            task_run = await get_task_run(session, ctx, task_run_id)
            page_ids = set(task_run.input_artifact_ids)
            for group in await output_artifacts(session, task_run):
                assert group.json_content['description'].startswith(group.name)
                for child in await get_children(session, group.id):
                    assert child.original_artifact_id in page_ids
                    assert child.is_locked

    @pytest.mark.asyncio
    async def test_show_mismatches(
        self,
        store: Store,
        ctx: RunContext,
        runtime: Runtime,
        worker: ProcessWorker,
        behaviors: dict,
    ) -> None:
        seen: dict[int, int] = {}

        def disagree_on_page_three(page: int) -> str:
            # The second window to see page 3 names it differently
            seen[page] = seen.get(page, 0) + 1
            if page == 3 and seen[page] > 1:
                return 'Medical Record'
            return 'Invoice' if page <= 3 else 'Medical Record'

        task_run_id = await _organize(store, ctx, runtime, behaviors, disagree_on_page_three)
        await worker.run_until_idle()

        async with store.session() as session:
            mismatches = await show_mismatches(session, ctx, task_run_id)

        assert list(mismatches) == [3]
        assert [vote['group_name'] for vote in mismatches[3]] == ['Invoice', 'Medical Record']
        assert [vote['window'] for vote in mismatches[3]] == ['1-3', '3-5']


@pytest.mark.integration
class TestDeduplication:
    @pytest.mark.asyncio
    async def test_location_variants_are_merged(
        self,
        store: Store,
        ctx: RunContext,
        runtime: Runtime,
        worker: ProcessWorker,
        behaviors: dict,
    ) -> None:
        def variants(page: int) -> str:
            return 'ABC Medical' if page <= 2 else 'ABC Medical (Northglenn)'

        task_run_id = await _organize(store, ctx, runtime, behaviors, variants)
        await worker.run_until_idle()

        async with store.session() as session:
            task_run = await get_task_run(session, ctx, task_run_id)
            assert task_run.status == RunStatus.COMPLETED
            processes = await current_processes(session, task_run_id)
            assert [p.operation for p in processes] == [OP_WINDOW, OP_WINDOW, OP_MERGE, OP_DEDUP]
            merge, dedup = processes[2], processes[3]
            assert merge.output_artifact_ids == []
            assert dedup.meta['merge_decisions'] == [
                {'from': 'ABC Medical', 'into': 'ABC Medical (Northglenn)'}
            ]

        assert await _groups(store, ctx, task_run_id) == [
            ('ABC Medical (Northglenn)', ['doc-1', 'doc-2', 'doc-3', 'doc-4', 'doc-5']),
        ]

    @pytest.mark.asyncio
    async def test_rerun_dedup_replaces_resolution_only(
        self,
        store: Store,
        ctx: RunContext,
        runtime: Runtime,
        worker: ProcessWorker,
        behaviors: dict,
    ) -> None:
        def variants(page: int) -> str:
            return 'ABC Medical' if page <= 2 else 'ABC Medical (Northglenn)'

        task_run_id = await _organize(store, ctx, runtime, behaviors, variants)
        await worker.run_until_idle()
        before = await _groups(store, ctx, task_run_id)

        async with store.session() as session:
            process = await rerun_dedup(session, ctx, runtime, task_run_id)
            assert process.operation == OP_DEDUP
            await session.commit()
        await worker.run_until_idle()

        async with store.session() as session:
            task_run = await get_task_run(session, ctx, task_run_id)
            assert task_run.status == RunStatus.COMPLETED
            assert task_run.attempt_number == 2
            archived = [
                p
                for p in await list_task_processes(
                    session, ctx, task_run_id=task_run_id, include_archived=True
                )
                if p.archived_at is not None
            ]
            assert [p.operation for p in archived] == [OP_DEDUP]

        assert await _groups(store, ctx, task_run_id) == before

    @pytest.mark.asyncio
    async def test_rerun_dedup_requires_candidates(
        self,
        store: Store,
        ctx: RunContext,
        runtime: Runtime,
        worker: ProcessWorker,
        behaviors: dict,
    ) -> None:
        task_run_id = await _organize(store, ctx, runtime, behaviors, invoice_then_medical)
        await worker.run_until_idle()

        async with store.session() as session:
            with pytest.raises(StateTransitionError):
                await rerun_dedup(session, ctx, runtime, task_run_id)


@pytest.mark.integration
class TestMaintenance:
    @pytest.mark.asyncio
    async def test_rerun_merge_is_deterministic(
        self,
        store: Store,
        ctx: RunContext,
        runtime: Runtime,
        worker: ProcessWorker,
        behaviors: dict,
    ) -> None:
        task_run_id = await _organize(store, ctx, runtime, behaviors, invoice_then_medical)
        await worker.run_until_idle()
        before = await _groups(store, ctx, task_run_id)

        async with store.session() as session:
            task_run = await get_task_run(session, ctx, task_run_id)
            first_outputs = list(task_run.output_artifact_ids)
            (old_merge,) = [
                p for p in await current_processes(session, task_run_id) if p.operation == OP_MERGE
            ]
            new_merge = await rerun_merge(session, ctx, runtime, task_run_id)
            assert new_merge.input_artifact_ids == old_merge.input_artifact_ids
            await session.commit()

        await worker.run_until_idle()

        async with store.session() as session:
            task_run = await get_task_run(session, ctx, task_run_id)
            assert task_run.status == RunStatus.COMPLETED
            assert task_run.attempt_number == 2
            assert set(task_run.output_artifact_ids).isdisjoint(first_outputs)
            operations = [p.operation for p in await current_processes(session, task_run_id)]
            # Windows are kept, only the merge ran again
            assert operations == [OP_WINDOW, OP_WINDOW, OP_MERGE]
            assert task_run.usage.count == 2

        assert await _groups(store, ctx, task_run_id) == before

    @pytest.mark.asyncio
    async def test_reset_from_windows(
        self,
        store: Store,
        ctx: RunContext,
        runtime: Runtime,
        worker: ProcessWorker,
        behaviors: dict,
    ) -> None:
        task_run_id = await _organize(store, ctx, runtime, behaviors, invoice_then_medical)
        await worker.run_until_idle()
        before = await _groups(store, ctx, task_run_id)

        async with store.session() as session:
            await reset_from_windows(session, ctx, runtime, task_run_id)
            await session.commit()
        await worker.run_until_idle()

        async with store.session() as session:
            task_run = await get_task_run(session, ctx, task_run_id)
            assert task_run.status == RunStatus.COMPLETED
            everything = await list_task_processes(
                session, ctx, task_run_id=task_run_id, include_archived=True
            )
            assert [p.operation for p in everything if p.archived_at is not None] == [OP_MERGE]
            assert len(everything) == 4

        assert await _groups(store, ctx, task_run_id) == before

    @pytest.mark.asyncio
    async def test_maintenance_refused_for_other_runners(
        self,
        store: Store,
        ctx: RunContext,
        runtime: Runtime,
        worker: ProcessWorker,
    ) -> None:
        definition_id = await make_task_definition(store, ctx, 'classify')
        inputs = await make_artifacts(store, ctx, 1)
        async with store.session() as session:
            definition = await get_task_definition(session, ctx, definition_id)
            task_run = await run_task(session, ctx, runtime, definition, inputs)
            await session.commit()
        await worker.run_until_idle()

        async with store.session() as session:
            with pytest.raises(StateTransitionError):
                await rerun_merge(session, ctx, runtime, task_run.id)
