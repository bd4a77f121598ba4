from datetime import datetime, timedelta
from typing import Collection, Optional
from uuid import uuid4
import logging

from sqlalchemy import select, update, func
from sqlalchemy.ext.asyncio import AsyncSession

from jobqueue.db.models import Job, JobEventLog
from jobqueue.domain.models import ClaimedJob, utcnow
from jobqueue.domain.states import JobState, JobEventKind, DISPATCHABLE_STATES
from jobqueue.api.v1.metrics import JOB_ATTEMPTS_TOTAL, JOB_START_DELAY

logger = logging.getLogger(__name__)

async def claim_job(
    session: AsyncSession,
    queue_name: str,
    job_types: Optional[Collection[str]],
    lease_duration: float,
    now: Optional[datetime] = None,
    max_races: int = 5,
) -> Optional[ClaimedJob]:
    """
    Atomically moves the best eligible job of a queue to ACTIVE.

    Best = highest priority, then earliest created_at, then lowest seq.
    The transition is a compare-and-swap on the job's state, so when several
    dispatchers pick the same candidate exactly one UPDATE matches a row.
    Losers re-run the selection, up to max_races times.

    job_types restricts the claim to types this process can handle
    (None means any type).
    """
    now = now or utcnow()

    if job_types is not None and not job_types:
        return None

    for _ in range(max_races):
        seq = await session.scalar(_build_candidate_query(queue_name, job_types, now))
        if seq is None:
            return None

        lease_token = uuid4()
        stmt = (
            update(Job)
            .where(
                Job.seq == seq,
                Job.state.in_(DISPATCHABLE_STATES),
                Job.not_before <= now,
            )
            .values(
                state=JobState.ACTIVE,
                attempts_made=Job.attempts_made + 1,
                progress=0,
                started_at=now,
                updated_at=now,
                lease_token=lease_token,
                lease_expires_at=now + timedelta(seconds=lease_duration),
            )
            .execution_options(synchronize_session=False)
        )
        result = await session.execute(stmt)

        if result.rowcount != 1:
            # Another dispatcher won this job between select and update
            logger.debug(f"Lost claim race for job seq={seq} on queue {queue_name}")
            continue

        job = await session.get(Job, seq, populate_existing=True)

        JOB_ATTEMPTS_TOTAL.labels(queue=queue_name, job_type=job.job_type).inc()
        delay = (now - job.not_before).total_seconds()
        if delay >= 0:
            JOB_START_DELAY.labels(queue=queue_name).observe(delay)

        session.add(JobEventLog(
            job_id=job.id,
            queue_name=queue_name,
            event_type=JobEventKind.ACTIVE,
            timestamp=now,
            meta={
                "attempt": job.attempts_made,
                "lease_token": str(lease_token),
                "lease_expires_at": job.lease_expires_at.isoformat(),
            },
        ))
        await session.flush()

        return ClaimedJob(
            id=job.id,
            queue_name=job.queue_name,
            job_type=job.job_type,
            payload=job.payload,
            attempts_made=job.attempts_made,
            max_attempts=job.max_attempts,
            lease_token=lease_token,
            started_at=now,
            not_before=job.not_before,
            timeout=job.timeout,
        )

    return None

async def next_eligible_at(
    session: AsyncSession,
    queue_name: str,
    job_types: Optional[Collection[str]],
) -> Optional[datetime]:
    """Earliest not_before among jobs that could be claimed later."""
    stmt = select(func.min(Job.not_before)).where(
        Job.queue_name == queue_name,
        Job.state.in_(DISPATCHABLE_STATES),
    )
    if job_types is not None:
        stmt = stmt.where(Job.job_type.in_(job_types))
    return await session.scalar(stmt)

def _build_candidate_query(queue_name, job_types, now):
    stmt = select(Job.seq).where(
        Job.queue_name == queue_name,
        Job.state.in_(DISPATCHABLE_STATES),
        Job.not_before <= now,
    )
    if job_types is not None:
        stmt = stmt.where(Job.job_type.in_(job_types))
    return stmt.order_by(
        Job.priority.desc(),
        Job.created_at.asc(),
        Job.seq.asc(),
    ).with_for_update(skip_locked=True).limit(1)
