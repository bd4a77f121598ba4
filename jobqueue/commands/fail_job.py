from datetime import datetime, timedelta
from typing import Optional
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from jobqueue.db.models import Job, JobEventLog
from jobqueue.domain.models import BackoffPolicy, utcnow
from jobqueue.domain.states import JobState, JobEventKind
from jobqueue.domain.retry import decide_after_failure
from jobqueue.domain.errors import LeaseLost
from jobqueue.commands.retention import expire_after
from jobqueue.api.v1.metrics import JOB_FAILURES

def backoff_policy_for(job: Job) -> BackoffPolicy:
    return BackoffPolicy(
        kind=job.backoff_kind,
        base_delay=timedelta(seconds=job.backoff_delay),
        max_delay=timedelta(seconds=job.backoff_max_delay) if job.backoff_max_delay is not None else None,
        jitter=job.backoff_jitter,
    )

async def fail_job(
    session: AsyncSession,
    job_id: UUID,
    lease_token: UUID,
    error: str,
    retryable: bool = True,
    ttl: Optional[float] = None,
    failure_type: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Job:
    """
    Records a failed attempt of an ACTIVE job.

    While attempts remain the job goes to DELAYED with not_before pushed out
    by its backoff policy; otherwise it becomes FAILED (terminal).
    Non-retryable failures are dead-lettered: FAILED at once.

    The decision and the write happen in one guarded UPDATE, so a restart
    never loses whether the job will be retried.
    """
    now = now or utcnow()

    stmt = select(Job).where(
        Job.id == job_id,
        Job.state == JobState.ACTIVE,
        Job.lease_token == lease_token,
    ).with_for_update().execution_options(populate_existing=True)
    job = await session.scalar(stmt)

    if not job:
        raise LeaseLost(job_id)

    decision = decide_after_failure(
        attempts_made=job.attempts_made,
        max_attempts=job.max_attempts,
        policy=backoff_policy_for(job),
        now=now,
        retryable=retryable,
    )

    values = dict(
        state=decision.state,
        last_error=error,
        updated_at=now,
        lease_token=None,
        lease_expires_at=None,
    )
    if decision.will_retry:
        values["not_before"] = decision.not_before
        next_event = JobEventKind.RETRY_SCHEDULED
    else:
        values["failed_at"] = now
        values["dead_lettered"] = not retryable
        next_event = JobEventKind.FAILED

    res = await session.execute(
        update(Job)
        .where(Job.id == job_id, Job.lease_token == lease_token)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if res.rowcount != 1:
        raise LeaseLost(job_id)

    if not decision.will_retry and ttl is not None:
        await expire_after(session, job_id, ttl, now=now)

    job = await session.scalar(
        select(Job).where(Job.id == job_id).execution_options(populate_existing=True)
    )

    if failure_type is None:
        failure_type = "retryable" if decision.will_retry else "final"
    JOB_FAILURES.labels(queue=job.queue_name, type=failure_type).inc()

    session.add(JobEventLog(
        job_id=job.id,
        queue_name=job.queue_name,
        event_type=next_event,
        timestamp=now,
        meta={
            "error": error,
            "attempt": job.attempts_made,
            "max": job.max_attempts,
            "not_before": job.not_before.isoformat() if decision.will_retry else None,
            "dead_lettered": job.dead_lettered,
        },
    ))

    await session.flush()
    return job
