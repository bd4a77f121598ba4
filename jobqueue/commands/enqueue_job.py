from datetime import datetime
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from jobqueue.db.models import Job, JobEventLog
from jobqueue.domain.models import JobOptions, utcnow
from jobqueue.domain.states import JobState, JobEventKind
from jobqueue.api.v1.metrics import JOB_ENQUEUED_TOTAL

async def enqueue_job(
    session: AsyncSession,
    queue_name: str,
    job_type: str,
    payload: Any,
    options: Optional[JobOptions] = None,
    now: Optional[datetime] = None,
) -> Job:
    """
    Pushes a new job into the store.
    Starts WAITING, or DELAYED when the options carry a positive delay.
    """
    options = options or JobOptions()
    now = now or utcnow()

    delayed = options.delay.total_seconds() > 0
    backoff = options.backoff

    job = Job(
        queue_name=queue_name,
        job_type=job_type,
        payload=payload,
        state=JobState.DELAYED if delayed else JobState.WAITING,
        priority=options.priority,
        not_before=now + options.delay,
        attempts_made=0,
        max_attempts=options.max_attempts,
        backoff_kind=backoff.kind,
        backoff_delay=backoff.base_delay.total_seconds(),
        backoff_max_delay=backoff.max_delay.total_seconds() if backoff.max_delay is not None else None,
        backoff_jitter=backoff.jitter,
        timeout=options.timeout.total_seconds() if options.timeout is not None else None,
        progress=0,
        dead_lettered=False,
        created_at=now,
        updated_at=now,
    )
    session.add(job)
    await session.flush()

    session.add(JobEventLog(
        job_id=job.id,
        queue_name=queue_name,
        event_type=JobEventKind.CREATED,
        timestamp=now,
        meta={"job_type": job_type, "priority": options.priority, "delayed": delayed},
    ))
    await session.flush()

    JOB_ENQUEUED_TOTAL.labels(queue=queue_name, job_type=job_type).inc()
    return job
