import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel

from jobqueue.commands.enqueue_job import enqueue_job
from jobqueue.commands.remove_job import remove_job
from jobqueue.commands import status
from jobqueue.db.session import store_session
from jobqueue.domain.models import JobEvent, JobOptions, JobView, QueueCounts
from jobqueue.domain.states import JobState, JobEventKind
from jobqueue.worker.handlers import HandlerFn, HandlerRegistry

logger = logging.getLogger(__name__)

@dataclass
class QueueConfig:
    concurrency: int = 1
    execution_timeout: Optional[float] = None
    completed_ttl: Optional[float] = None
    failed_ttl: Optional[float] = None

class Queue:
    """
    One named work category: producer operations, status queries and the
    handlers this process runs for it. Holds no job state; the store does.
    """

    def __init__(self, name: str, registry, config: QueueConfig):
        self.name = name
        self.config = config
        self.handlers = HandlerRegistry()
        self._registry = registry
        self._wakeup = asyncio.Event()

    @property
    def sessionmaker(self):
        return self._registry.sessionmaker

    @property
    def events(self):
        return self._registry.events

    def register_handler(self, job_type: str, fn: HandlerFn, schema: Optional[type[BaseModel]] = None):
        self.handlers.register(job_type, fn, schema=schema)
        logger.info(f"Registered handler for {self.name}/{job_type}")

    async def enqueue(self, job_type: str, payload: Any = None, options: Optional[JobOptions] = None) -> UUID:
        payload = self.handlers.prepare_payload(job_type, payload)
        options = options or JobOptions()

        async with store_session(self.sessionmaker) as session:
            job = await enqueue_job(session, self.name, job_type, payload, options)
            job_id = job.id
            state = job.state

        logger.debug(f"Enqueued job {job_id} ({job_type}) on {self.name} as {state}")
        self.events.publish(JobEvent(
            job_id=job_id,
            queue_name=self.name,
            kind=JobEventKind.CREATED,
            data={"job_type": job_type, "state": str(state), "priority": options.priority},
        ))
        self.notify()
        return job_id

    async def get_job(self, job_id: UUID) -> JobView:
        async with store_session(self.sessionmaker) as session:
            return await status.get_job(session, self.name, job_id)

    async def get_counts(self) -> QueueCounts:
        async with store_session(self.sessionmaker) as session:
            return await status.get_counts(session, self.name)

    async def list_jobs(self, state: Optional[JobState] = None, limit: int = 50) -> list[JobView]:
        async with store_session(self.sessionmaker) as session:
            return await status.list_jobs(session, self.name, state=state, limit=limit)

    async def get_events(self, job_id: UUID) -> list[JobEvent]:
        async with store_session(self.sessionmaker) as session:
            return await status.get_events(session, self.name, job_id)

    async def remove_job(self, job_id: UUID) -> None:
        async with store_session(self.sessionmaker) as session:
            await remove_job(session, self.name, job_id)

        self.events.publish(JobEvent(job_id=job_id, queue_name=self.name, kind=JobEventKind.REMOVED))

    def notify(self):
        """Wakes this process's dispatcher for the queue."""
        self._wakeup.set()

    def clear_wakeup(self):
        self._wakeup.clear()

    async def wait_for_wakeup(self, timeout: float) -> bool:
        try:
            await asyncio.wait_for(self._wakeup.wait(), timeout)
            return True
        except asyncio.TimeoutError:
            return False
