"""
Pytest configuration and fixtures for jobqueue tests.

Every test gets its own SQLite file so several registries (standing in for
several worker processes) can share one store.
"""

import asyncio

import pytest
import pytest_asyncio

from jobqueue import QueueRegistry, JobState
from jobqueue.domain.errors import JobNotFound

@pytest.fixture
def database_url(tmp_path):
    return f"sqlite+aiosqlite:///{tmp_path / 'jobs.db'}"

@pytest.fixture
def make_registry(database_url):
    """Factory for registries on the shared test store, with fast timings."""
    def factory(**overrides):
        options = dict(
            poll_interval=0.05,
            ticker_interval=0.05,
            lease_duration=5.0,
            shutdown_grace=2.0,
        )
        options.update(overrides)
        return QueueRegistry(database_url, **options)

    return factory

@pytest_asyncio.fixture
async def registry(make_registry):
    registry = make_registry()
    await registry.init()
    yield registry
    await registry.shutdown()

@pytest.fixture
def wait_for_job():
    """Polls get_job until the job reaches one of `states`."""

    async def wait(registry, queue_name, job_id, states=(JobState.COMPLETED, JobState.FAILED), timeout=5.0):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            try:
                view = await registry.get_job(queue_name, job_id)
            except JobNotFound:
                view = None
            if view is not None and view.state in states:
                return view
            if loop.time() > deadline:
                raise AssertionError(f"job {job_id} did not reach {states}; last seen {view}")
            await asyncio.sleep(0.02)

    return wait
