import asyncio
from datetime import timedelta
from uuid import uuid4

import pytest
from pydantic import BaseModel

from jobqueue import (
    ConfigurationError,
    InvalidState,
    JobNotFound,
    JobOptions,
    JobState,
    PayloadValidationError,
    StoreUnavailable,
)
from jobqueue.commands.claim_job import claim_job
from jobqueue.db.session import store_session

class WelcomeEmail(BaseModel):
    email: str
    name: str = "friend"

async def noop(payload, progress):
    return None

async def test_enqueue_starts_waiting(registry):
    job_id = await registry.enqueue("email", "welcome", {"email": "a@example.com"})

    job = await registry.get_job("email", job_id)
    assert job.state == JobState.WAITING
    assert job.attempts_made == 0
    assert job.progress == 0
    assert job.max_attempts == 1
    assert job.started_at is None

async def test_delayed_job_counts(registry):
    await registry.enqueue("email", "welcome", {}, JobOptions(delay=timedelta(milliseconds=500)))

    counts = await registry.get_counts("email")
    assert counts.delayed == 1
    assert counts.waiting == 0

    await asyncio.sleep(0.6)

    # Eligible now, reported as waiting even though nothing promoted it yet
    counts = await registry.get_counts("email")
    assert counts.delayed == 0
    assert counts.waiting == 1

async def test_counts_are_per_queue(registry):
    await registry.enqueue("email", "welcome", {})
    await registry.enqueue("email", "welcome", {})
    await registry.enqueue("reports", "daily", {})

    assert (await registry.get_counts("email")).waiting == 2
    assert (await registry.get_counts("reports")).waiting == 1
    assert (await registry.get_counts("unused")).model_dump() == {
        "waiting": 0, "active": 0, "completed": 0, "failed": 0, "delayed": 0,
    }

async def test_get_unknown_job(registry):
    with pytest.raises(JobNotFound):
        await registry.get_job("email", uuid4())

async def test_job_is_scoped_to_its_queue(registry):
    job_id = await registry.enqueue("email", "welcome", {})
    with pytest.raises(JobNotFound):
        await registry.get_job("reports", job_id)

async def test_remove_waiting_job(registry):
    job_id = await registry.enqueue("email", "welcome", {})
    await registry.remove_job("email", job_id)

    with pytest.raises(JobNotFound):
        await registry.get_job("email", job_id)
    with pytest.raises(JobNotFound):
        await registry.remove_job("email", job_id)

async def test_remove_active_job_is_rejected(registry):
    job_id = await registry.enqueue("email", "welcome", {})
    async with store_session(registry.sessionmaker) as session:
        claimed = await claim_job(session, "email", None, lease_duration=30)
    assert claimed.id == job_id

    with pytest.raises(InvalidState) as exc_info:
        await registry.remove_job("email", job_id)
    assert exc_info.value.current_state == JobState.ACTIVE

    job = await registry.get_job("email", job_id)
    assert job.state == JobState.ACTIVE

async def test_schema_validated_at_enqueue(registry):
    registry.register_handler("email", "welcome", noop, schema=WelcomeEmail)

    with pytest.raises(PayloadValidationError):
        await registry.enqueue("email", "welcome", {"name": "no address"})

    job_id = await registry.enqueue("email", "welcome", WelcomeEmail(email="a@example.com"))
    job = await registry.get_job("email", job_id)
    assert job.state == JobState.WAITING

async def test_payload_must_be_json(registry):
    with pytest.raises(PayloadValidationError):
        await registry.enqueue("email", "welcome", {"when": object()})

async def test_duplicate_handler_rejected(registry):
    registry.register_handler("email", "welcome", noop)
    with pytest.raises(ConfigurationError):
        registry.register_handler("email", "welcome", noop)

async def test_running_queue_is_frozen(registry):
    registry.register_handler("email", "welcome", noop)
    await registry.start(with_scheduler=False)

    with pytest.raises(ConfigurationError):
        registry.register_handler("email", "digest", noop)
    with pytest.raises(ConfigurationError):
        registry.queue("email", concurrency=4)

def test_concurrency_must_be_positive(make_registry):
    with pytest.raises(ConfigurationError):
        make_registry().queue("email", concurrency=0)

async def test_list_jobs_filters_by_state(registry):
    first = await registry.enqueue("email", "welcome", {})
    second = await registry.enqueue("email", "welcome", {}, JobOptions(delay=timedelta(seconds=60)))

    all_jobs = await registry.list_jobs("email")
    assert [job.id for job in all_jobs] == [second, first]

    waiting = await registry.list_jobs("email", state=JobState.WAITING)
    assert [job.id for job in waiting] == [first]

    delayed = await registry.list_jobs("email", state=JobState.DELAYED)
    assert [job.id for job in delayed] == [second]

async def test_store_unavailable(make_registry, tmp_path):
    registry = make_registry(create_tables=False)
    registry.database_url = f"sqlite+aiosqlite:///{tmp_path / 'missing' / 'jobs.db'}"
    await registry.init()
    try:
        with pytest.raises(StoreUnavailable):
            await registry.enqueue("email", "welcome", {})
        with pytest.raises(StoreUnavailable):
            await registry.get_counts("email")
    finally:
        await registry.shutdown()

async def test_status_reads_do_not_register_queues(registry):
    job_id = await registry.enqueue("email", "welcome", {})
    assert registry.queue_names() == ["email"]

    for n in range(5):
        assert (await registry.get_counts(f"unknown-{n}")).waiting == 0
        assert await registry.list_jobs(f"unknown-{n}") == []
        with pytest.raises(JobNotFound):
            await registry.get_job(f"ghost-{n}", job_id)
        with pytest.raises(JobNotFound):
            await registry.get_events(f"ghost-{n}", job_id)
        with pytest.raises(JobNotFound):
            await registry.remove_job(f"ghost-{n}", uuid4())

    assert registry.queue_names() == ["email"]
    assert (await registry.get_job("email", job_id)).state == JobState.WAITING
