from datetime import datetime
from typing import Optional
from uuid import UUID

from sqlalchemy import select, update, func
from sqlalchemy.ext.asyncio import AsyncSession

from jobqueue.db.models import Job, JobEventLog
from jobqueue.domain.models import JobView, QueueCounts, JobEvent, utcnow
from jobqueue.domain.states import JobState, JobEventKind
from jobqueue.domain.errors import JobNotFound

async def get_job(session: AsyncSession, queue_name: str, job_id: UUID, now: Optional[datetime] = None) -> JobView:
    job = await session.scalar(
        select(Job).where(Job.id == job_id, Job.queue_name == queue_name)
    )
    if not job:
        raise JobNotFound(job_id)
    return JobView.from_record(job, now)

async def get_counts(session: AsyncSession, queue_name: str, now: Optional[datetime] = None) -> QueueCounts:
    """
    Job counts per state for one queue.
    DELAYED jobs whose not_before already passed are reported as waiting.
    """
    now = now or utcnow()

    stmt = (
        select(Job.state, func.count(Job.seq))
        .where(Job.queue_name == queue_name)
        .group_by(Job.state)
    )
    rows = (await session.execute(stmt)).all()

    counts = QueueCounts()
    for state, count in rows:
        setattr(counts, JobState(state).value, count)

    if counts.delayed:
        elapsed = await session.scalar(
            select(func.count(Job.seq)).where(
                Job.queue_name == queue_name,
                Job.state == JobState.DELAYED,
                Job.not_before <= now,
            )
        )
        counts.delayed -= elapsed
        counts.waiting += elapsed
    return counts

async def list_jobs(
    session: AsyncSession,
    queue_name: str,
    state: Optional[JobState] = None,
    limit: int = 50,
    now: Optional[datetime] = None,
) -> list[JobView]:
    """Newest-first views of a queue's jobs, optionally filtered by stored state."""
    now = now or utcnow()

    stmt = select(Job).where(Job.queue_name == queue_name)
    if state == JobState.WAITING:
        stmt = stmt.where(
            (Job.state == JobState.WAITING)
            | ((Job.state == JobState.DELAYED) & (Job.not_before <= now))
        )
    elif state == JobState.DELAYED:
        stmt = stmt.where(Job.state == JobState.DELAYED, Job.not_before > now)
    elif state is not None:
        stmt = stmt.where(Job.state == state)

    stmt = stmt.order_by(Job.created_at.desc(), Job.seq.desc()).limit(limit)
    jobs = (await session.scalars(stmt)).all()
    return [JobView.from_record(job, now) for job in jobs]

async def get_events(session: AsyncSession, queue_name: str, job_id: UUID) -> list[JobEvent]:
    """Persisted audit trail of a job, oldest first."""
    exists = await session.scalar(
        select(Job.seq).where(Job.id == job_id, Job.queue_name == queue_name)
    )
    if exists is None:
        raise JobNotFound(job_id)

    stmt = select(JobEventLog).where(JobEventLog.job_id == job_id).order_by(JobEventLog.id.asc())
    rows = (await session.scalars(stmt)).all()
    return [
        JobEvent(
            job_id=row.job_id,
            queue_name=row.queue_name,
            kind=JobEventKind(row.event_type),
            timestamp=row.timestamp,
            data=row.meta or {},
        )
        for row in rows
    ]

async def promote_delayed_jobs(session: AsyncSession, now: Optional[datetime] = None) -> int:
    """
    Moves DELAYED jobs whose not_before elapsed back to WAITING.
    Dispatch does not depend on it; it keeps stored states accurate.
    """
    now = now or utcnow()
    res = await session.execute(
        update(Job)
        .where(Job.state == JobState.DELAYED, Job.not_before <= now)
        .values(state=JobState.WAITING)
        .execution_options(synchronize_session=False)
    )
    return res.rowcount or 0
