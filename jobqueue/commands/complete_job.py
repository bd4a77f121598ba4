from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from jobqueue.db.models import Job, JobEventLog
from jobqueue.domain.models import utcnow
from jobqueue.domain.states import JobState, JobEventKind
from jobqueue.domain.errors import LeaseLost
from jobqueue.commands.retention import expire_after
from jobqueue.api.v1.metrics import JOB_DURATION, JOB_COMPLETE_TOTAL

async def complete_job(
    session: AsyncSession,
    job_id: UUID,
    lease_token: UUID,
    result_data: Any,
    ttl: Optional[float] = None,
    now: Optional[datetime] = None,
) -> Job:
    """
    Marks an ACTIVE job as COMPLETED and saves its result.
    Only the holder of the current lease may complete it; progress is forced to 100.
    Raises LeaseLost when the attempt was already recovered or finished elsewhere.
    """
    now = now or utcnow()

    stmt = (
        update(Job)
        .where(
            Job.id == job_id,
            Job.state == JobState.ACTIVE,
            Job.lease_token == lease_token,
        )
        .values(
            state=JobState.COMPLETED,
            result=result_data,
            progress=100,
            completed_at=now,
            updated_at=now,
            lease_token=None,
            lease_expires_at=None,
        )
        .execution_options(synchronize_session=False)
    )
    res = await session.execute(stmt)
    if res.rowcount != 1:
        raise LeaseLost(job_id)

    if ttl is not None:
        await expire_after(session, job_id, ttl, now=now)

    job = await session.scalar(
        select(Job).where(Job.id == job_id).execution_options(populate_existing=True)
    )

    if job.started_at:
        duration = (now - job.started_at).total_seconds()
        if duration >= 0:
            JOB_DURATION.labels(queue=job.queue_name).observe(duration)
    JOB_COMPLETE_TOTAL.labels(queue=job.queue_name, job_type=job.job_type).inc()

    session.add(JobEventLog(
        job_id=job.id,
        queue_name=job.queue_name,
        event_type=JobEventKind.COMPLETED,
        timestamp=now,
        meta={"attempt": job.attempts_made},
    ))
    await session.flush()
    return job
