"""At-least-once job queues that carry task process dispatches to workers."""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Optional, Protocol

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from agentflow.core.defaults import DEFAULT_STALE_CLAIM_SECONDS
from agentflow.core.logging import get_logger
from agentflow.core.models.base import new_id, utcnow
from agentflow.core.models.jobs_pg import JobModel

logger = get_logger('queue')


@dataclass
class Job:
    """One delivery of a task process dispatch."""

    queue_type: str
    team_id: str
    task_process_id: str
    payload: dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=new_id)
    available_at: Optional[datetime] = None
    delivery_count: int = 0


class JobQueue(Protocol):
    """
    Queue contract the engine dispatches through.

    enqueue() runs inside the caller's transaction so a database-backed
    queue commits the job together with the process update. claim() and
    ack() are called by workers with their own sessions.
    """

    async def enqueue(self, session: AsyncSession, job: Job) -> str: ...

    async def claim(self, session: AsyncSession, queue_type: str) -> Optional[Job]: ...

    async def ack(self, session: AsyncSession, dispatch_id: str) -> None: ...


class DatabaseJobQueue:
    """
    Job queue stored in the agentflow_jobs table.

    A claimed job that is not acknowledged within `stale_claim_seconds`
    becomes claimable again, so a crashed worker's jobs are redelivered.
    Rows are locked with FOR UPDATE SKIP LOCKED on Postgres so concurrent
    workers never claim the same job at the same time.
    """

    def __init__(self, stale_claim_seconds: int = DEFAULT_STALE_CLAIM_SECONDS) -> None:
        self.stale_claim_seconds = stale_claim_seconds

    async def enqueue(self, session: AsyncSession, job: Job) -> str:
        session.add(
            JobModel(
                id=job.id,
                queue_type=job.queue_type,
                team_id=job.team_id,
                task_process_id=job.task_process_id,
                payload=dict(job.payload),
                available_at=job.available_at or utcnow(),
            )
        )
        await session.flush()
        logger.debug(f'Enqueued job {job.id[:8]} on {job.queue_type}')
        return job.id

    async def claim(self, session: AsyncSession, queue_type: str) -> Optional[Job]:
        now = utcnow()
        stale_before = now - timedelta(seconds=self.stale_claim_seconds)
        result = await session.execute(
            select(JobModel)
            .where(JobModel.queue_type == queue_type)
            .where(JobModel.acked_at.is_(None))
            .where(JobModel.available_at <= now)
            .where(
                (JobModel.claimed_at.is_(None)) | (JobModel.claimed_at < stale_before)
            )
            .order_by(JobModel.available_at.asc(), JobModel.created_at.asc())
            .limit(1)
            .with_for_update(skip_locked=True)
        )
        row = result.scalar_one_or_none()
        if row is None:
            return None

        if row.claimed_at is not None:
            logger.warning(
                f'Redelivering stale job {row.id[:8]} (delivery {row.delivery_count + 1})'
            )
        row.claimed_at = now
        row.delivery_count += 1
        await session.flush()
        return Job(
            id=row.id,
            queue_type=row.queue_type,
            team_id=row.team_id,
            task_process_id=row.task_process_id,
            payload=dict(row.payload or {}),
            available_at=row.available_at,
            delivery_count=row.delivery_count,
        )

    async def ack(self, session: AsyncSession, dispatch_id: str) -> None:
        row = await session.get(JobModel, dispatch_id)
        if row is not None and row.acked_at is None:
            row.acked_at = utcnow()
            await session.flush()


class InMemoryJobQueue:
    """
    Process-local queue for embedding and tests.

    Jobs become visible as soon as they are enqueued, so workers should
    be driven after the dispatching transaction has committed.
    `redeliver()` pushes an already delivered job again to exercise
    at-least-once handling.
    """

    def __init__(self) -> None:
        self._jobs: dict[str, deque[Job]] = {}
        self._in_flight: dict[str, Job] = {}
        self.acked: list[str] = []

    async def enqueue(self, session: AsyncSession, job: Job) -> str:
        self._jobs.setdefault(job.queue_type, deque()).append(job)
        logger.debug(f'Enqueued job {job.id[:8]} on {job.queue_type}')
        return job.id

    async def claim(self, session: AsyncSession, queue_type: str) -> Optional[Job]:
        jobs = self._jobs.get(queue_type)
        if not jobs:
            return None
        now = utcnow()
        for _ in range(len(jobs)):
            job = jobs.popleft()
            if job.available_at is not None and job.available_at > now:
                jobs.append(job)
                continue
            job.delivery_count += 1
            self._in_flight[job.id] = job
            return job
        return None

    async def ack(self, session: AsyncSession, dispatch_id: str) -> None:
        if self._in_flight.pop(dispatch_id, None) is not None:
            self.acked.append(dispatch_id)

    def redeliver(self, job: Job) -> None:
        self._jobs.setdefault(job.queue_type, deque()).append(job)

    def pending(self, queue_type: Optional[str] = None) -> int:
        if queue_type is not None:
            return len(self._jobs.get(queue_type, ()))
        return sum(len(jobs) for jobs in self._jobs.values())
