from uuid import UUID

from sqlalchemy import select, delete
from sqlalchemy.ext.asyncio import AsyncSession

from jobqueue.db.models import Job, JobEventLog
from jobqueue.domain.states import JobState
from jobqueue.domain.errors import JobNotFound, InvalidState

async def remove_job(session: AsyncSession, queue_name: str, job_id: UUID) -> None:
    """
    Deletes a job that is not currently running, together with its events.
    ACTIVE jobs cannot be removed; there is no preemption of running handlers.
    """
    res = await session.execute(
        delete(Job)
        .where(
            Job.id == job_id,
            Job.queue_name == queue_name,
            Job.state != JobState.ACTIVE,
        )
        .execution_options(synchronize_session=False)
    )

    if res.rowcount != 1:
        state = await session.scalar(
            select(Job.state).where(Job.id == job_id, Job.queue_name == queue_name)
        )
        if state is None:
            raise JobNotFound(job_id)
        raise InvalidState(job_id, state, "remove")

    await session.execute(delete(JobEventLog).where(JobEventLog.job_id == job_id))
