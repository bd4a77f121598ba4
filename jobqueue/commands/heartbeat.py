from datetime import datetime, timedelta
from typing import Optional
from uuid import UUID

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from jobqueue.db.models import Job, JobEventLog
from jobqueue.domain.models import utcnow
from jobqueue.domain.states import JobState, JobEventKind
from jobqueue.domain.errors import LeaseLost

async def renew_lease(
    session: AsyncSession,
    job_id: UUID,
    lease_token: UUID,
    extend_seconds: float,
    now: Optional[datetime] = None,
) -> datetime:
    """
    Pushes out the lease deadline of the attempt holding `lease_token`.
    Raises LeaseLost if the job is no longer ACTIVE under that token.
    Returns new lease_expires_at.
    """
    now = now or utcnow()
    new_expires_at = now + timedelta(seconds=extend_seconds)

    res = await session.execute(
        update(Job)
        .where(
            Job.id == job_id,
            Job.state == JobState.ACTIVE,
            Job.lease_token == lease_token,
        )
        .values(lease_expires_at=new_expires_at, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    if res.rowcount != 1:
        raise LeaseLost(job_id)

    return new_expires_at

async def update_progress(
    session: AsyncSession,
    job_id: UUID,
    lease_token: UUID,
    queue_name: str,
    progress: int,
    now: Optional[datetime] = None,
) -> bool:
    """
    Best-effort progress write for the current attempt.
    Never lowers the stored value, so out-of-order writes keep progress monotonic.
    Returns False when nothing was written (stale lease or lower value).
    """
    now = now or utcnow()

    res = await session.execute(
        update(Job)
        .where(
            Job.id == job_id,
            Job.state == JobState.ACTIVE,
            Job.lease_token == lease_token,
            Job.progress <= progress,
        )
        .values(progress=progress, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    if res.rowcount != 1:
        return False

    session.add(JobEventLog(
        job_id=job_id,
        queue_name=queue_name,
        event_type=JobEventKind.PROGRESS,
        timestamp=now,
        meta={"progress": progress},
    ))
    await session.flush()
    return True
