import asyncio
import logging
from typing import Any, Optional

from pydantic import BaseModel

from jobqueue.commands.complete_job import complete_job
from jobqueue.commands.fail_job import fail_job
from jobqueue.commands.heartbeat import renew_lease
from jobqueue.db.session import store_session
from jobqueue.domain.models import ClaimedJob, JobEvent
from jobqueue.domain.states import JobState, JobEventKind
from jobqueue.domain.errors import (
    HandlerTimeout,
    LeaseLost,
    PayloadValidationError,
    PoisonPayload,
    QueueError,
)
from jobqueue.worker.handlers import Handler, ensure_json
from jobqueue.worker.progress import ProgressReporter
from jobqueue.api.v1.metrics import JOBS_INFLIGHT

logger = logging.getLogger(__name__)

class WorkerPool:
    """
    Bounded set of execution slots for one queue.

    The dispatcher takes a slot with acquire() before claiming a job and
    hands the claimed job to submit(); the slot is given back when the
    attempt has been recorded. A claim that finds nothing must release().

    Execution timeouts are enforced with asyncio.wait_for. Coroutine handlers
    are cancelled; handlers running in a worker thread cannot be stopped, so
    on timeout the slot is reclaimed while the thread keeps running until the
    function returns on its own. Such threads still hold a thread of the
    default executor.
    """

    def __init__(
        self,
        queue,
        concurrency: int,
        lease_duration: float,
        execution_timeout: Optional[float] = None,
    ):
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self.queue = queue
        self.concurrency = concurrency
        self.lease_duration = lease_duration
        self.execution_timeout = execution_timeout
        self._slots = asyncio.Semaphore(concurrency)
        self._tasks: set[asyncio.Task] = set()

    @property
    def inflight(self) -> int:
        return len(self._tasks)

    async def acquire(self):
        await self._slots.acquire()

    def release(self):
        self._slots.release()

    def submit(self, job: ClaimedJob) -> asyncio.Task:
        task = asyncio.create_task(self._run(job), name=f"job-{job.id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def drain(self, timeout: Optional[float] = None):
        """
        Waits for in-flight attempts. Attempts still running after `timeout`
        are cancelled and recorded as failed attempts.
        """
        tasks = set(self._tasks)
        if not tasks:
            return
        logger.info(f"Draining {len(tasks)} in-flight job(s) on queue {self.queue.name}")
        _, pending = await asyncio.wait(tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    async def _run(self, job: ClaimedJob):
        JOBS_INFLIGHT.labels(queue=self.queue.name).inc()
        self.queue.events.publish(JobEvent(
            job_id=job.id,
            queue_name=job.queue_name,
            kind=JobEventKind.ACTIVE,
            data={"attempt": job.attempts_made, "job_type": job.job_type},
        ))

        heartbeat_task = asyncio.create_task(self._heartbeat_loop(job))
        reporter = ProgressReporter(self.queue, job, asyncio.get_running_loop())

        try:
            handler = self.queue.handlers.get(job.job_type)
            payload = handler.parse(job.payload)
            timeout = job.timeout if job.timeout is not None else self.execution_timeout
            result = await self._invoke(handler, payload, reporter, timeout)
            result = self._serialize_result(result)

        except PoisonPayload as e:
            logger.error(f"Job {job.id} has an unusable payload, dead-lettering: {e}")
            await self._settle(self._record_failure(job, reporter, f"PoisonPayload: {e}", retryable=False, failure_type="poison"))

        except HandlerTimeout as e:
            logger.error(f"Job {job.id} timed out: {e}")
            await self._settle(self._record_failure(job, reporter, f"HandlerTimeout: {e}", failure_type="timeout"))

        except asyncio.CancelledError:
            logger.warning(f"Job {job.id} cancelled during shutdown")
            await self._settle(self._record_failure(job, reporter, "Worker shut down before the handler finished"))
            raise

        except Exception as e:
            error_msg = f"{type(e).__name__}: {e}"
            logger.error(f"Job {job.id} attempt {job.attempts_made}/{job.max_attempts} failed: {error_msg}")
            await self._settle(self._record_failure(job, reporter, error_msg))

        else:
            await self._settle(self._record_success(job, reporter, result))

        finally:
            heartbeat_task.cancel()
            try:
                await heartbeat_task
            except asyncio.CancelledError:
                pass
            JOBS_INFLIGHT.labels(queue=self.queue.name).dec()
            self.release()
            self.queue.notify()

    async def _settle(self, write):
        """
        Runs the write that records an attempt's outcome to the end, even when
        the task is cancelled meanwhile (shutdown drain). The cancel is
        re-raised once the outcome is stored.
        """
        task = asyncio.ensure_future(write)
        try:
            await asyncio.shield(task)
        except asyncio.CancelledError:
            await task
            raise

    async def _invoke(self, handler: Handler, payload: Any, reporter: ProgressReporter, timeout: Optional[float]):
        if handler.is_async:
            call = handler.fn(payload, reporter)
        else:
            call = asyncio.to_thread(handler.fn, payload, reporter)

        if timeout is None:
            return await call
        try:
            return await asyncio.wait_for(call, timeout)
        except asyncio.TimeoutError:
            raise HandlerTimeout(timeout) from None

    @staticmethod
    def _serialize_result(result: Any) -> Any:
        if isinstance(result, BaseModel):
            return result.model_dump(mode="json")
        try:
            return ensure_json(result, "handler result")
        except PayloadValidationError as e:
            raise TypeError(str(e)) from e

    async def _record_success(self, job: ClaimedJob, reporter: ProgressReporter, result: Any):
        await reporter.close()
        try:
            async with store_session(self.queue.sessionmaker) as session:
                await complete_job(
                    session,
                    job_id=job.id,
                    lease_token=job.lease_token,
                    result_data=result,
                    ttl=self.queue.config.completed_ttl,
                )
        except LeaseLost:
            logger.warning(
                f"Job {job.id} handler succeeded but its lease was lost; "
                "the attempt was already recovered elsewhere"
            )
            return
        except QueueError as e:
            # Lease will expire and the stalled-job sweep retries the job
            logger.error(f"Could not record completion of job {job.id}: {e}")
            return

        logger.info(f"Job {job.id} completed")
        self.queue.events.publish(JobEvent(
            job_id=job.id,
            queue_name=job.queue_name,
            kind=JobEventKind.COMPLETED,
            data={"result": result, "attempt": job.attempts_made},
        ))

    async def _record_failure(
        self,
        job: ClaimedJob,
        reporter: ProgressReporter,
        error: str,
        retryable: bool = True,
        failure_type: Optional[str] = None,
    ):
        await reporter.close()
        try:
            async with store_session(self.queue.sessionmaker) as session:
                updated = await fail_job(
                    session,
                    job_id=job.id,
                    lease_token=job.lease_token,
                    error=error,
                    retryable=retryable,
                    ttl=self.queue.config.failed_ttl,
                    failure_type=failure_type,
                )
                state = JobState(updated.state)
                not_before = updated.not_before
                dead_lettered = updated.dead_lettered
        except LeaseLost:
            logger.warning(f"Job {job.id} failed but its lease was already lost")
            return
        except QueueError as e:
            logger.error(f"Could not record failure of job {job.id}: {e}")
            return

        if state == JobState.DELAYED:
            logger.info(f"Job {job.id} will retry at {not_before.isoformat()}")
            self.queue.events.publish(JobEvent(
                job_id=job.id,
                queue_name=job.queue_name,
                kind=JobEventKind.RETRY_SCHEDULED,
                data={"error": error, "attempt": job.attempts_made, "not_before": not_before.isoformat()},
            ))
        else:
            logger.warning(f"Job {job.id} failed permanently after {job.attempts_made} attempt(s)")
            self.queue.events.publish(JobEvent(
                job_id=job.id,
                queue_name=job.queue_name,
                kind=JobEventKind.FAILED,
                data={"error": error, "attempt": job.attempts_made, "dead_lettered": dead_lettered},
            ))

    async def _heartbeat_loop(self, job: ClaimedJob):
        interval = max(self.lease_duration / 3, 0.01)
        try:
            while True:
                await asyncio.sleep(interval)
                logger.debug(f"Renewing lease for {job.id}")
                try:
                    async with store_session(self.queue.sessionmaker) as session:
                        await renew_lease(session, job.id, job.lease_token, self.lease_duration)
                except LeaseLost:
                    logger.warning(f"Lease for job {job.id} lost while its handler is still running")
                    break
                except QueueError as e:
                    logger.warning(f"Heartbeat failed for {job.id}: {e}")
        except asyncio.CancelledError:
            pass
