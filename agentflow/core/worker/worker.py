"""
Process worker: claims dispatched jobs and runs their handlers.

A job moves through two short transactions around the handler call:

    claim + mark Running  ->  COMMIT  ->  handler (no transaction open)
    lock process, re-check dispatch  ->  complete / fail / timeout + ack  ->  COMMIT

The second transaction discards the result when the process was stopped,
archived or re-dispatched while the handler ran.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from agentflow.core.artifacts.store import get_artifacts
from agentflow.core.dispatch.queue import Job
from agentflow.core.logging import get_logger
from agentflow.core.models.app import AppConfig, RunContext
from agentflow.core.models.task_pg import TaskDefinitionModel, TaskProcessModel, TaskRunModel
from agentflow.core.registry import Registry
from agentflow.core.runtime import Runtime
from agentflow.core.store import Store
from agentflow.core.tasks.runner import (
    complete_process,
    fail_process,
    mark_process_running,
    mark_timed_out_processes,
    timeout_process,
)
from agentflow.core.types.status import RunStatus
from agentflow.core.utils.db import is_transient_db_error
from agentflow.core.worker.context import ProcessContext, ProcessHandler, ProcessOutput

logger = get_logger('worker')


@dataclass
class _Backoff:
    initial_seconds: float = 0.5
    max_seconds: float = 30.0
    attempts: int = 0

    def reset(self) -> None:
        self.attempts = 0

    def next_delay_seconds(self) -> float:
        self.attempts += 1
        return min(self.max_seconds, self.initial_seconds * (2 ** (self.attempts - 1)))


@dataclass
class _Outcome:
    output: Optional[ProcessOutput] = None
    error: Optional[dict[str, Any]] = None
    timed_out: bool = False


def error_payload(exc: BaseException) -> dict[str, Any]:
    return {'type': type(exc).__name__, 'message': str(exc)}


async def _lock_process(session: AsyncSession, process_id: str) -> Optional[TaskProcessModel]:
    result = await session.execute(
        select(TaskProcessModel)
        .where(TaskProcessModel.id == process_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


class ProcessWorker:
    """
    Pulls jobs for a set of queue types and executes them.

    handlers: '<runner kind>:<operation>' or '<runner kind>' -> handler
    queues: queue types to serve (defaults to every configured queue)

    Up to max_workers jobs per queue type run concurrently in one pass.
    """

    def __init__(
        self,
        store: Store,
        runtime: Runtime,
        handlers: Registry[ProcessHandler],
        config: AppConfig,
        queues: Optional[Sequence[str]] = None,
        poll_interval_seconds: float = 1.0,
    ):
        self.store = store
        self.runtime = runtime
        self.handlers = handlers
        self.config = config
        self.queues = list(queues or [queue.name for queue in config.queues])
        self.poll_interval_seconds = poll_interval_seconds
        self._stop = asyncio.Event()

    def request_stop(self) -> None:
        """Request the worker loop to stop after the current pass."""
        self._stop.set()

    def resolve_handler(self, runner_kind: str, operation: str) -> ProcessHandler:
        """Operation-specific handler first, then the runner kind's default."""
        key = f'{runner_kind}:{operation}'
        if key in self.handlers:
            return self.handlers[key]
        return self.handlers[runner_kind]

    # ------------------------------------------------------------------
    # Job handling
    # ------------------------------------------------------------------

    async def _start(self, job: Job) -> Optional[ProcessContext]:
        """Mark the process Running for this delivery; None when the job is stale."""
        ctx = RunContext(team_id=job.team_id, config=self.config)
        async with self.store.session() as session:
            process = await _lock_process(session, job.task_process_id)
            task_run = (
                await session.get(TaskRunModel, process.task_run_id) if process else None
            )
            definition = (
                await session.get(TaskDefinitionModel, task_run.task_definition_id)
                if task_run
                else None
            )
            if (
                process is None
                or definition is None
                or not mark_process_running(
                    session, process, job.id, definition.timeout_after_seconds
                )
            ):
                logger.debug(f'Ignoring stale job {job.id[:8]} for process {job.task_process_id[:8]}')
                await self.runtime.queue.ack(session, job.id)
                await session.commit()
                return None

            inputs = await get_artifacts(session, process.input_artifact_ids)
            context = ProcessContext(
                store=self.store,
                run_context=ctx,
                process_id=process.id,
                task_run_id=process.task_run_id,
                operation=process.operation,
                attempt=process.attempt_count,
                meta=dict(process.meta),
                definition=definition,
                runner_config=definition.runner_config(),
                input_artifacts=inputs,
            )
            await session.commit()
        logger.debug(f"Process '{process.name}' ({process.id[:8]}) running")
        return context

    async def _execute(self, context: ProcessContext) -> _Outcome:
        definition = context.definition
        loop = asyncio.get_running_loop()
        deadline = loop.time() + definition.timeout_after_seconds
        try:
            handler = self.resolve_handler(definition.runner_kind, context.operation)
            output = await asyncio.wait_for(
                handler(context), timeout=definition.timeout_after_seconds
            )
        except asyncio.TimeoutError as exc:
            if loop.time() < deadline:
                # Raised by the handler itself (e.g. a socket read), not our deadline
                logger.exception(f'Handler failed for process {context.process_id[:8]}')
                return _Outcome(error=error_payload(exc))
            logger.warning(
                f'Process {context.process_id[:8]} exceeded {definition.timeout_after_seconds}s'
            )
            return _Outcome(timed_out=True)
        except Exception as exc:
            logger.exception(f'Handler failed for process {context.process_id[:8]}')
            return _Outcome(error=error_payload(exc))
        return _Outcome(output=output)

    async def _finalize(self, job: Job, outcome: _Outcome) -> None:
        ctx = RunContext(team_id=job.team_id, config=self.config)
        async with self.store.session() as session:
            process = await _lock_process(session, job.task_process_id)
            if (
                process is None
                or process.archived_at is not None
                or process.status != RunStatus.RUNNING
                or process.job_dispatch_id != job.id
            ):
                logger.info(
                    f'Discarding result of process {job.task_process_id[:8]}: '
                    f'{process.status.value if process else "missing"}'
                )
            elif outcome.timed_out:
                await timeout_process(session, ctx, self.runtime, process)
            elif outcome.error is not None:
                await fail_process(session, ctx, self.runtime, process, outcome.error)
            elif outcome.output is not None:
                await complete_process(session, ctx, self.runtime, process, outcome.output)
            await self.runtime.queue.ack(session, job.id)
            await session.commit()

    async def _fail_after_finalize_error(self, job: Job, exc: Exception) -> None:
        ctx = RunContext(team_id=job.team_id, config=self.config)
        async with self.store.session() as session:
            process = await _lock_process(session, job.task_process_id)
            if process is not None and process.status == RunStatus.RUNNING:
                await fail_process(session, ctx, self.runtime, process, error_payload(exc))
            await self.runtime.queue.ack(session, job.id)
            await session.commit()

    async def handle_job(self, job: Job) -> bool:
        """Run one delivery end to end. Returns False when the job was stale."""
        context = await self._start(job)
        if context is None:
            return False

        outcome = await self._execute(context)
        try:
            await self._finalize(job, outcome)
        except Exception as exc:
            # e.g. a handler emitting artifacts the store refuses
            logger.exception(f'Finalizing process {job.task_process_id[:8]} failed')
            await self._fail_after_finalize_error(job, exc)
        return True

    # ------------------------------------------------------------------
    # Loops
    # ------------------------------------------------------------------

    async def _claim(self, queue_type: str) -> Optional[Job]:
        async with self.store.session() as session:
            job = await self.runtime.queue.claim(session, queue_type)
            await session.commit()
        return job

    async def run_once(self, queue_type: str) -> int:
        """Claim up to max_workers jobs of one queue type and run them concurrently."""
        jobs: list[Job] = []
        for _ in range(self.config.max_workers(queue_type)):
            job = await self._claim(queue_type)
            if job is None:
                break
            jobs.append(job)
        if not jobs:
            return 0
        await asyncio.gather(*(self.handle_job(job) for job in jobs))
        return len(jobs)

    async def run_until_idle(self, max_passes: int = 1000) -> int:
        """Drain every served queue; jobs delayed into the future are left alone."""
        handled = 0
        for _ in range(max_passes):
            count = 0
            for queue_type in self.queues:
                count += await self.run_once(queue_type)
            handled += count
            if count == 0:
                break
        return handled

    async def sweep_timeouts(self) -> int:
        """Time out Running processes whose worker never reported back."""
        ctx = RunContext(team_id='', config=self.config)
        async with self.store.session() as session:
            count = await mark_timed_out_processes(session, ctx, self.runtime)
            await session.commit()
        return count

    async def _sleep_with_stop(self, delay_seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=delay_seconds)
        except asyncio.TimeoutError:
            pass

    async def run_forever(self) -> None:
        """Poll the served queues until request_stop().

        Transient database errors back off exponentially; anything else
        propagates.
        """
        logger.info(f'Worker started on queues {self.queues}')
        backoff = _Backoff()
        while not self._stop.is_set():
            try:
                handled = await self.run_until_idle()
                await self.sweep_timeouts()
                backoff.reset()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                if not is_transient_db_error(exc):
                    raise
                delay = backoff.next_delay_seconds()
                logger.error(f'Worker loop error: {exc}. Retrying in {delay:.1f}s')
                await self._sleep_with_stop(delay)
                continue
            if handled == 0:
                await self._sleep_with_stop(self.poll_interval_seconds)
        logger.info('Worker stopped')
