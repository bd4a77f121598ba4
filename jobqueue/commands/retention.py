from datetime import datetime, timedelta
from typing import Optional
from uuid import UUID

from sqlalchemy import select, update, delete
from sqlalchemy.ext.asyncio import AsyncSession

from jobqueue.db.models import Job, JobEventLog
from jobqueue.domain.models import utcnow
from jobqueue.domain.states import TERMINAL_STATES
from jobqueue.api.v1.metrics import PURGED_JOBS

async def expire_after(
    session: AsyncSession,
    job_id: UUID,
    ttl: float,
    now: Optional[datetime] = None,
) -> datetime:
    """Marks a job for removal once `ttl` seconds have passed."""
    now = now or utcnow()
    expires_at = now + timedelta(seconds=ttl)
    await session.execute(
        update(Job)
        .where(Job.id == job_id)
        .values(expires_at=expires_at)
        .execution_options(synchronize_session=False)
    )
    return expires_at

async def purge_expired_jobs(session: AsyncSession, limit: int = 500, now: Optional[datetime] = None) -> int:
    """
    Deletes terminal jobs whose retention deadline has passed, with their events.
    Returns number of jobs purged.
    """
    now = now or utcnow()

    stmt = select(Job.seq, Job.id).where(
        Job.expires_at.is_not(None),
        Job.expires_at <= now,
        Job.state.in_(TERMINAL_STATES),
    ).limit(limit)
    rows = (await session.execute(stmt)).all()

    if not rows:
        return 0

    seqs = [seq for seq, _ in rows]
    job_ids = [job_id for _, job_id in rows]

    await session.execute(delete(JobEventLog).where(JobEventLog.job_id.in_(job_ids)))
    await session.execute(delete(Job).where(Job.seq.in_(seqs)))
    await session.flush()

    PURGED_JOBS.inc(len(rows))
    return len(rows)
