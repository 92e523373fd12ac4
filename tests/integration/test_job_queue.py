"""Integration tests for the database job queue and worker deliveries through it."""

from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy import select, update

from agentflow.core.dispatch.queue import DatabaseJobQueue, Job
from agentflow.core.models.app import AppConfig, RunContext
from agentflow.core.models.base import utcnow
from agentflow.core.models.jobs_pg import JobModel
from agentflow.core.registry import Registry
from agentflow.core.runtime import Runtime
from agentflow.core.store import Store
from agentflow.core.tasks.definition import get_task_definition
from agentflow.core.tasks.runner import current_processes, get_task_run, run_task
from agentflow.core.types.status import ArtifactMode, RunStatus
from agentflow.core.worker.context import ProcessHandler
from agentflow.core.worker.worker import ProcessWorker

from .conftest import TEAM_ID, make_artifacts, make_task_definition


def _job(queue_type: str = 'default', **kwargs) -> Job:
    return Job(queue_type=queue_type, team_id=TEAM_ID, task_process_id='process-1', **kwargs)


@pytest.mark.integration
class TestDatabaseJobQueue:
    @pytest.mark.asyncio
    async def test_claim_and_ack(self, store: Store) -> None:
        queue = DatabaseJobQueue()
        async with store.session() as session:
            job_id = await queue.enqueue(session, _job(payload={'attempt': 0}))
            await session.commit()

        async with store.session() as session:
            claimed = await queue.claim(session, 'default')
            assert claimed is not None
            assert claimed.id == job_id
            assert claimed.delivery_count == 1
            assert claimed.payload == {'attempt': 0}
            # Claimed jobs are invisible until acked or stale
            assert await queue.claim(session, 'default') is None
            await queue.ack(session, job_id)
            await session.commit()

        async with store.session() as session:
            row = await session.get(JobModel, job_id)
            assert row.acked_at is not None
            assert await queue.claim(session, 'default') is None

    @pytest.mark.asyncio
    async def test_claim_is_per_queue_type(self, store: Store) -> None:
        queue = DatabaseJobQueue()
        async with store.session() as session:
            await queue.enqueue(session, _job('llm'))
            await session.commit()
            assert await queue.claim(session, 'default') is None
            assert (await queue.claim(session, 'llm')) is not None

    @pytest.mark.asyncio
    async def test_delayed_job_waits(self, store: Store) -> None:
        queue = DatabaseJobQueue()
        async with store.session() as session:
            await queue.enqueue(session, _job(available_at=utcnow() + timedelta(minutes=5)))
            await session.commit()
            assert await queue.claim(session, 'default') is None

    @pytest.mark.asyncio
    async def test_stale_claim_is_redelivered(self, store: Store) -> None:
        queue = DatabaseJobQueue(stale_claim_seconds=60)
        async with store.session() as session:
            job_id = await queue.enqueue(session, _job())
            await session.commit()

        async with store.session() as session:
            assert (await queue.claim(session, 'default')).delivery_count == 1
            await session.commit()

        # The worker holding it died two minutes ago
        async with store.session() as session:
            await session.execute(
                update(JobModel)
                .where(JobModel.id == job_id)
                .values(claimed_at=utcnow() - timedelta(seconds=120))
            )
            await session.commit()

        async with store.session() as session:
            redelivered = await queue.claim(session, 'default')
            assert redelivered is not None
            assert redelivered.id == job_id
            assert redelivered.delivery_count == 2
            await session.commit()


@pytest.mark.integration
class TestWorkerOnDatabaseQueue:
    @pytest.mark.asyncio
    async def test_run_completes_and_acks_every_job(
        self,
        store: Store,
        ctx: RunContext,
        handlers: Registry[ProcessHandler],
        app_config: AppConfig,
    ) -> None:
        runtime = Runtime(queue=DatabaseJobQueue())
        worker = ProcessWorker(store, runtime, handlers, app_config)
        definition_id = await make_task_definition(
            store, ctx, 'classify', input_mode=ArtifactMode.SPLIT
        )
        inputs = await make_artifacts(store, ctx, 3)
        async with store.session() as session:
            definition = await get_task_definition(session, ctx, definition_id)
            task_run = await run_task(session, ctx, runtime, definition, inputs)
            await session.commit()

        assert await worker.run_until_idle() == 3

        async with store.session() as session:
            task_run = await get_task_run(session, ctx, task_run.id)
            assert task_run.status == RunStatus.COMPLETED
            jobs = list((await session.execute(select(JobModel))).scalars())
            assert len(jobs) == 3
            assert all(job.acked_at is not None for job in jobs)

    @pytest.mark.asyncio
    async def test_redelivery_after_completion_is_ignored(
        self,
        store: Store,
        ctx: RunContext,
        handlers: Registry[ProcessHandler],
        app_config: AppConfig,
    ) -> None:
        runtime = Runtime(queue=DatabaseJobQueue(stale_claim_seconds=60))
        worker = ProcessWorker(store, runtime, handlers, app_config)
        definition_id = await make_task_definition(store, ctx, 'classify')
        inputs = await make_artifacts(store, ctx, 1)
        async with store.session() as session:
            definition = await get_task_definition(session, ctx, definition_id)
            task_run = await run_task(session, ctx, runtime, definition, inputs)
            await session.commit()

        await worker.run_until_idle()

        # Simulate an at-least-once duplicate of the finished job
        async with store.session() as session:
            (process,) = await current_processes(session, task_run.id)
            outputs = list(process.output_artifact_ids)
            await session.execute(
                update(JobModel)
                .where(JobModel.id == process.job_dispatch_id)
                .values(acked_at=None, claimed_at=utcnow() - timedelta(seconds=120))
            )
            await session.commit()

        async with store.session() as session:
            job = await runtime.queue.claim(session, 'default')
            await session.commit()
        assert job is not None
        assert await worker.handle_job(job) is False

        async with store.session() as session:
            (process,) = await current_processes(session, task_run.id)
            assert process.status == RunStatus.COMPLETED
            assert process.output_artifact_ids == outputs
            row = await session.get(JobModel, job.id)
            assert row.acked_at is not None
