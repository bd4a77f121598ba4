from datetime import datetime
from typing import Optional
import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from jobqueue.db.models import Job, JobEventLog
from jobqueue.domain.models import utcnow
from jobqueue.domain.states import JobState, JobEventKind
from jobqueue.domain.errors import LeaseLost
from jobqueue.commands.fail_job import fail_job
from jobqueue.api.v1.metrics import REAPER_RECOVERED_JOBS

logger = logging.getLogger(__name__)

STALLED_ERROR = "Job stalled: lease expired"

async def requeue_expired_jobs(
    session: AsyncSession,
    limit: int = 100,
    ttl_for_queue=None,
    now: Optional[datetime] = None,
) -> list[Job]:
    """
    Finds ACTIVE jobs whose lease expired (worker crashed or hung without
    heartbeats) and treats each as a failed attempt: retried with backoff
    while attempts remain, FAILED otherwise.
    Returns the recovered jobs in their new state.

    ttl_for_queue, when given, maps a queue name to its failed-job TTL.
    """
    now = now or utcnow()

    stmt = select(Job.id, Job.lease_token, Job.queue_name).where(
        Job.state == JobState.ACTIVE,
        Job.lease_expires_at < now,
    ).limit(limit).with_for_update(skip_locked=True)

    rows = (await session.execute(stmt)).all()

    recovered = []
    for job_id, lease_token, queue_name in rows:
        try:
            job = await fail_job(
                session,
                job_id=job_id,
                lease_token=lease_token,
                error=STALLED_ERROR,
                ttl=ttl_for_queue(queue_name) if ttl_for_queue else None,
                now=now,
            )
        except LeaseLost:
            # Finished by its worker after we read it
            continue

        session.add(JobEventLog(
            job_id=job_id,
            queue_name=queue_name,
            event_type=JobEventKind.STALLED,
            timestamp=now,
            meta={"reason": "lease_expired", "lease_token": str(lease_token), "state": job.state},
        ))
        logger.warning(f"Recovered stalled job {job_id} on queue {queue_name}; now {job.state}")
        REAPER_RECOVERED_JOBS.labels(queue=queue_name).inc()
        recovered.append(job)

    await session.flush()
    return recovered
