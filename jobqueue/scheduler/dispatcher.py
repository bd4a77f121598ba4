import asyncio
import logging
from typing import Optional

from jobqueue.commands.claim_job import claim_job, next_eligible_at
from jobqueue.db.session import store_session
from jobqueue.domain.models import ClaimedJob, utcnow
from jobqueue.domain.errors import QueueError
from jobqueue.worker.pool import WorkerPool

logger = logging.getLogger(__name__)

class Dispatcher:
    """
    Feeds one queue's worker pool.

    Loop: wait for a free slot, claim the best eligible job, hand it over.
    With nothing eligible it sleeps until the earliest pending not_before,
    an enqueue wakeup from this process, or poll_interval, whichever comes
    first. poll_interval bounds the latency for work enqueued by other
    processes.
    """

    def __init__(self, queue, pool: WorkerPool, lease_duration: float, poll_interval: float):
        self.queue = queue
        self.pool = pool
        self.lease_duration = lease_duration
        self.poll_interval = poll_interval
        self._running = False
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._running

    async def start(self):
        self._running = True
        self._task = asyncio.create_task(self._loop(), name=f"dispatcher-{self.queue.name}")
        logger.info(f"Dispatcher for queue {self.queue.name} started (concurrency={self.pool.concurrency})")

    async def stop(self):
        """Stops claiming new jobs. In-flight jobs are left to the pool."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info(f"Dispatcher for queue {self.queue.name} stopped.")

    async def dispatch_once(self) -> Optional[ClaimedJob]:
        """Claims the next eligible job, or returns None when there is none."""
        async with store_session(self.queue.sessionmaker) as session:
            return await claim_job(
                session,
                queue_name=self.queue.name,
                job_types=self.queue.handlers.job_types(),
                lease_duration=self.lease_duration,
            )

    async def _loop(self):
        while self._running:
            await self.pool.acquire()
            # Cleared before the claim so an enqueue racing with it still wakes us
            self.queue.clear_wakeup()

            try:
                job = await self.dispatch_once()
            except asyncio.CancelledError:
                self.pool.release()
                raise
            except QueueError as e:
                self.pool.release()
                logger.error(f"Dispatcher for {self.queue.name} could not claim: {e}")
                await asyncio.sleep(self.poll_interval)
                continue
            except Exception as e:
                self.pool.release()
                logger.error(f"Error in dispatcher loop for {self.queue.name}: {e}", exc_info=True)
                await asyncio.sleep(self.poll_interval)
                continue

            if job is None:
                self.pool.release()
                await self._wait_for_work()
                continue

            logger.info(f"Dispatching job {job.id} ({job.job_type}) attempt {job.attempts_made}/{job.max_attempts}")
            self.pool.submit(job)

    async def _wait_for_work(self):
        timeout = self.poll_interval
        try:
            async with store_session(self.queue.sessionmaker) as session:
                next_at = await next_eligible_at(session, self.queue.name, self.queue.handlers.job_types())
        except QueueError as e:
            logger.warning(f"Dispatcher for {self.queue.name} could not read next eligible time: {e}")
            next_at = None

        if next_at is not None:
            until_next = (next_at - utcnow()).total_seconds()
            timeout = min(timeout, max(until_next, 0.0))

        await self.queue.wait_for_wakeup(timeout)
