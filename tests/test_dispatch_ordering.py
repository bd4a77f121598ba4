import asyncio
from datetime import timedelta

from jobqueue import JobOptions, JobState
from jobqueue.commands.claim_job import claim_job
from jobqueue.commands.complete_job import complete_job
from jobqueue.db.session import store_session

async def claim(registry, queue_name="work", job_types=None, lease_duration=30):
    async with store_session(registry.sessionmaker) as session:
        return await claim_job(session, queue_name, job_types, lease_duration=lease_duration)

async def test_highest_priority_first(registry):
    low = await registry.enqueue("work", "task", {"n": 1}, JobOptions(priority=0))
    high = await registry.enqueue("work", "task", {"n": 2}, JobOptions(priority=10))
    mid = await registry.enqueue("work", "task", {"n": 3}, JobOptions(priority=5))

    order = [(await claim(registry)).id for _ in range(3)]
    assert order == [high, mid, low]

async def test_equal_priority_is_fifo(registry):
    ids = [await registry.enqueue("work", "task", {"n": n}) for n in range(5)]
    order = [(await claim(registry)).id for _ in range(5)]
    assert order == ids

async def test_selection_is_stable(registry):
    for n in range(3):
        await registry.enqueue("work", "task", {"n": n}, JobOptions(priority=n % 2))

    picks = []
    for _ in range(2):
        async with registry.sessionmaker() as session:
            claimed = await claim_job(session, "work", None, lease_duration=30)
            picks.append(claimed.id)
            await session.rollback()
    assert picks[0] == picks[1]

async def test_delayed_job_not_claimed_early(registry):
    job_id = await registry.enqueue("work", "task", {}, JobOptions(delay=timedelta(milliseconds=300)))

    assert await claim(registry) is None

    await asyncio.sleep(0.35)
    claimed = await claim(registry)
    assert claimed.id == job_id
    assert claimed.started_at >= claimed.not_before

async def test_terminal_jobs_never_claimed(registry):
    job_id = await registry.enqueue("work", "task", {})

    claimed = await claim(registry)
    assert claimed.id == job_id
    assert await claim(registry) is None

    async with store_session(registry.sessionmaker) as session:
        await complete_job(session, job_id=job_id, lease_token=claimed.lease_token, result_data={"ok": True})

    assert await claim(registry) is None
    job = await registry.get_job("work", job_id)
    assert job.state == JobState.COMPLETED
    assert job.progress == 100
    assert job.result == {"ok": True}

async def test_claim_respects_job_types(registry):
    await registry.enqueue("work", "resize", {})
    other = await registry.enqueue("work", "thumbnail", {})

    assert await claim(registry, job_types={"unknown"}) is None
    claimed = await claim(registry, job_types={"thumbnail"})
    assert claimed.id == other

async def test_claim_increments_attempts(registry):
    job_id = await registry.enqueue("work", "task", {}, JobOptions(max_attempts=3))
    claimed = await claim(registry)

    job = await registry.get_job("work", job_id)
    assert claimed.attempts_made == 1
    assert job.attempts_made == 1
    assert job.state == JobState.ACTIVE
    assert job.started_at is not None
