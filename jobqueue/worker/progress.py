import asyncio
import logging

from jobqueue.commands.heartbeat import update_progress
from jobqueue.db.session import store_session
from jobqueue.domain.models import ClaimedJob, JobEvent
from jobqueue.domain.states import JobEventKind
from jobqueue.domain.errors import QueueError

logger = logging.getLogger(__name__)

class ProgressReporter:
    """
    Callable handed to handlers as their second argument.

        progress(40)

    Fire-and-forget: the call returns at once and the value is written in the
    background. Values lower than one already reported are ignored, and
    bursts are coalesced so at most one write per job is in flight.
    Safe to call from the event loop or from a handler's worker thread.
    """

    def __init__(self, queue, job: ClaimedJob, loop: asyncio.AbstractEventLoop):
        self._queue = queue
        self._job = job
        self._loop = loop
        self._latest = 0
        self._written = 0
        self._writer: asyncio.Task | None = None

    @property
    def value(self) -> int:
        return self._latest

    def __call__(self, percent: int) -> None:
        if isinstance(percent, bool) or not isinstance(percent, int):
            raise TypeError(f"progress must be an int, got {type(percent).__name__}")
        if not 0 <= percent <= 100:
            raise ValueError(f"progress must be between 0 and 100, got {percent}")

        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None

        if running is self._loop:
            self._offer(percent)
        else:
            try:
                self._loop.call_soon_threadsafe(self._offer, percent)
            except RuntimeError:
                # Loop closed under an abandoned thread handler
                logger.debug(f"Progress {percent} for job {self._job.id} dropped; event loop is closed")

    def _offer(self, percent: int):
        if percent <= self._latest:
            return
        self._latest = percent
        if self._writer is None or self._writer.done():
            self._writer = self._loop.create_task(self._write_loop())

    async def _write_loop(self):
        while self._written < self._latest:
            target = self._latest
            try:
                async with store_session(self._queue.sessionmaker) as session:
                    written = await update_progress(
                        session,
                        job_id=self._job.id,
                        lease_token=self._job.lease_token,
                        queue_name=self._job.queue_name,
                        progress=target,
                    )
            except QueueError as e:
                # Lost progress is an observability gap, not a failure
                logger.warning(f"Progress update for job {self._job.id} dropped: {e}")
                return

            self._written = target
            if not written:
                return
            self._queue.events.publish(JobEvent(
                job_id=self._job.id,
                queue_name=self._job.queue_name,
                kind=JobEventKind.PROGRESS,
                data={"progress": target},
            ))

    async def close(self):
        """Waits for the in-flight write so it cannot land after the final state."""
        if self._writer is not None and not self._writer.done():
            try:
                await self._writer
            except Exception as e:
                logger.warning(f"Progress writer for job {self._job.id} failed: {e}")
