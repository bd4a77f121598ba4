import logging
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncEngine

from jobqueue.db.session import create_store_engine, create_sessionmaker, create_schema
from jobqueue.domain.errors import ConfigurationError
from jobqueue.domain.models import JobEvent, JobOptions, JobView, QueueCounts
from jobqueue.domain.states import JobState
from jobqueue.events import EventBus
from jobqueue.queue import Queue, QueueConfig
from jobqueue.scheduler.dispatcher import Dispatcher
from jobqueue.scheduler.service import SchedulerService
from jobqueue.settings import settings
from jobqueue.worker.handlers import HandlerFn
from jobqueue.worker.pool import WorkerPool

logger = logging.getLogger(__name__)

class QueueRegistry:
    """
    Explicit container for every queue of an application.

    Lifecycle:
        registry = QueueRegistry("sqlite+aiosqlite:///jobs.db")
        registry.register_handler("email", "welcome-email", send_welcome)
        await registry.init()      # engine + schema
        await registry.start()     # dispatchers + maintenance ticker
        ...
        await registry.shutdown()  # stop claiming, drain in-flight jobs

    Producers that never run workers only need init().
    Keyword arguments left as None fall back to jobqueue.settings.
    """

    def __init__(
        self,
        database_url: Optional[str] = None,
        *,
        poll_interval: Optional[float] = None,
        ticker_interval: Optional[float] = None,
        lease_duration: Optional[float] = None,
        default_concurrency: Optional[int] = None,
        execution_timeout: Optional[float] = None,
        completed_ttl: Optional[float] = None,
        failed_ttl: Optional[float] = None,
        shutdown_grace: Optional[float] = None,
        create_tables: bool = True,
    ):
        self.database_url = database_url or settings.DATABASE_URL
        self.poll_interval = _or(poll_interval, settings.POLL_INTERVAL_SECONDS)
        self.ticker_interval = _or(ticker_interval, settings.TICKER_INTERVAL_SECONDS)
        self.lease_duration = _or(lease_duration, settings.LEASE_DURATION_SECONDS)
        self.default_concurrency = _or(default_concurrency, settings.DEFAULT_CONCURRENCY)
        self.execution_timeout = _or(execution_timeout, settings.DEFAULT_EXECUTION_TIMEOUT_SECONDS)
        self.completed_ttl = _or(completed_ttl, settings.COMPLETED_JOB_TTL_SECONDS)
        self.failed_ttl = _or(failed_ttl, settings.FAILED_JOB_TTL_SECONDS)
        self.shutdown_grace = _or(shutdown_grace, settings.SHUTDOWN_GRACE_SECONDS)
        self.create_tables = create_tables

        self.events = EventBus()
        self.engine: Optional[AsyncEngine] = None
        self._sessionmaker = None
        self._queues: dict[str, Queue] = {}
        self._dispatchers: dict[str, Dispatcher] = {}
        self._scheduler: Optional[SchedulerService] = None

    # Lifecycle

    async def init(self):
        if self.engine is not None:
            return
        self.engine = create_store_engine(self.database_url)
        self._sessionmaker = create_sessionmaker(self.engine)
        if self.create_tables:
            await create_schema(self.engine)
        logger.info(f"Queue registry connected to {self.engine.url.render_as_string(hide_password=True)}")

    async def start(self, with_scheduler: bool = True):
        """Starts a dispatcher for every queue with handlers, plus the ticker."""
        await self.init()
        for queue in self._queues.values():
            if len(queue.handlers):
                await self._start_dispatcher(queue)

        if with_scheduler and self._scheduler is None:
            self._scheduler = SchedulerService(
                self,
                interval=self.ticker_interval,
                purge_batch_size=settings.PURGE_BATCH_SIZE,
            )
            await self._scheduler.start()

    async def shutdown(self, grace: Optional[float] = None):
        """
        Stops claiming work, waits up to `grace` seconds for running handlers,
        cancels the rest (recorded as failed attempts), then closes the store.
        """
        grace = self.shutdown_grace if grace is None else grace

        for dispatcher in self._dispatchers.values():
            await dispatcher.stop()
        for dispatcher in self._dispatchers.values():
            await dispatcher.pool.drain(timeout=grace)
        self._dispatchers.clear()

        if self._scheduler is not None:
            await self._scheduler.stop()
            self._scheduler = None

        await self.events.drain()

        if self.engine is not None:
            await self.engine.dispose()
            self.engine = None
            self._sessionmaker = None
        logger.info("Queue registry shut down.")

    async def __aenter__(self):
        await self.init()
        return self

    async def __aexit__(self, *exc):
        await self.shutdown()

    @property
    def sessionmaker(self):
        if self._sessionmaker is None:
            raise ConfigurationError("QueueRegistry.init() has not been called")
        return self._sessionmaker

    @property
    def scheduler(self) -> Optional[SchedulerService]:
        return self._scheduler

    # Queues

    def queue(
        self,
        name: str,
        *,
        concurrency: Optional[int] = None,
        execution_timeout: Optional[float] = None,
        completed_ttl: Optional[float] = None,
        failed_ttl: Optional[float] = None,
    ) -> Queue:
        """Returns the named queue, creating it on first use."""
        if not name:
            raise ConfigurationError("queue name must be a non-empty string")

        queue = self._queues.get(name)
        if queue is None:
            queue = self._new_queue(name)
            self._queues[name] = queue

        overrides = dict(
            concurrency=concurrency,
            execution_timeout=execution_timeout,
            completed_ttl=completed_ttl,
            failed_ttl=failed_ttl,
        )
        overrides = {k: v for k, v in overrides.items() if v is not None}
        if overrides:
            if name in self._dispatchers:
                raise ConfigurationError(f"Queue {name} is already running; configure it before start()")
            if overrides.get("concurrency", 1) < 1:
                raise ConfigurationError("concurrency must be at least 1")
            for key, value in overrides.items():
                setattr(queue.config, key, value)
        return queue

    def find_queue(self, name: str) -> Optional[Queue]:
        return self._queues.get(name)

    def _lookup(self, name: str) -> Queue:
        # Status reads never register a queue
        queue = self._queues.get(name)
        return queue if queue is not None else self._new_queue(name)

    def _new_queue(self, name: str) -> Queue:
        return Queue(name, self, QueueConfig(
            concurrency=self.default_concurrency,
            execution_timeout=self.execution_timeout,
            completed_ttl=self.completed_ttl,
            failed_ttl=self.failed_ttl,
        ))

    def queue_names(self) -> list[str]:
        return list(self._queues)

    def failed_ttl_for(self, queue_name: str) -> Optional[float]:
        queue = self._queues.get(queue_name)
        return queue.config.failed_ttl if queue is not None else self.failed_ttl

    def dispatcher(self, queue_name: str) -> Optional[Dispatcher]:
        return self._dispatchers.get(queue_name)

    async def _start_dispatcher(self, queue: Queue):
        if queue.name in self._dispatchers:
            return
        pool = WorkerPool(
            queue,
            concurrency=queue.config.concurrency,
            lease_duration=self.lease_duration,
            execution_timeout=queue.config.execution_timeout,
        )
        dispatcher = Dispatcher(queue, pool, lease_duration=self.lease_duration, poll_interval=self.poll_interval)
        self._dispatchers[queue.name] = dispatcher
        await dispatcher.start()

    # Boundary operations

    def register_handler(
        self,
        queue_name: str,
        job_type: str,
        fn: HandlerFn,
        schema: Optional[type[BaseModel]] = None,
    ):
        """
        Registers the handler for a job type. Queues are frozen once their
        dispatcher runs; register every handler before start().
        """
        if queue_name in self._dispatchers:
            raise ConfigurationError(f"Queue {queue_name} is already running; register handlers before start()")
        queue = self.queue(queue_name)
        queue.register_handler(job_type, fn, schema=schema)

    async def enqueue(
        self,
        queue_name: str,
        job_type: str,
        payload: Any = None,
        options: Optional[JobOptions] = None,
    ) -> UUID:
        return await self.queue(queue_name).enqueue(job_type, payload, options)

    async def get_job(self, queue_name: str, job_id: UUID) -> JobView:
        return await self._lookup(queue_name).get_job(job_id)

    async def get_counts(self, queue_name: str) -> QueueCounts:
        return await self._lookup(queue_name).get_counts()

    async def remove_job(self, queue_name: str, job_id: UUID) -> None:
        await self._lookup(queue_name).remove_job(job_id)

    async def list_jobs(self, queue_name: str, state: Optional[JobState] = None, limit: int = 50) -> list[JobView]:
        return await self._lookup(queue_name).list_jobs(state=state, limit=limit)

    async def get_events(self, queue_name: str, job_id: UUID) -> list[JobEvent]:
        return await self._lookup(queue_name).get_events(job_id)

def _or(value, default):
    return default if value is None else value
