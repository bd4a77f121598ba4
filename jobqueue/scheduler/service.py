import asyncio
import logging

from jobqueue.db.session import store_session
from jobqueue.domain.models import JobEvent
from jobqueue.domain.states import JobState, JobEventKind
from jobqueue.scheduler.ticker import run_ticker, TickReport

logger = logging.getLogger(__name__)

class SchedulerService:
    """Runs the maintenance ticker every `interval` seconds."""

    def __init__(self, registry, interval: float = 1.0, purge_batch_size: int = 500):
        self.registry = registry
        self.interval = interval
        self.purge_batch_size = purge_batch_size
        self._running = False
        self._task = None

    async def start(self):
        self._running = True
        self._task = asyncio.create_task(self._loop(), name="jobqueue-ticker")
        logger.info("Scheduler service started.")

    async def stop(self):
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Scheduler service stopped.")

    async def tick(self) -> TickReport:
        async with store_session(self.registry.sessionmaker) as session:
            report = await run_ticker(
                session,
                queue_names=self.registry.queue_names(),
                failed_ttl_for=self.registry.failed_ttl_for,
                purge_batch_size=self.purge_batch_size,
            )

        # Published after commit
        for job in report.recovered:
            kind = JobEventKind.RETRY_SCHEDULED if job.state == JobState.DELAYED else JobEventKind.FAILED
            self.registry.events.publish(JobEvent(
                job_id=job.id,
                queue_name=job.queue_name,
                kind=kind,
                data={"error": job.last_error, "attempt": job.attempts_made, "stalled": True},
            ))
            queue = self.registry.find_queue(job.queue_name)
            if queue is not None:
                queue.notify()

        if report.promoted or report.purged:
            logger.debug(f"Ticker promoted {report.promoted} and purged {report.purged} job(s)")
        return report

    async def _loop(self):
        while self._running:
            try:
                await self.tick()
            except Exception as e:
                logger.error(f"Error in scheduler ticker: {e}", exc_info=True)

            await asyncio.sleep(self.interval)
