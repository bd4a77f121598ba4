import asyncio

import pytest

from jobqueue import JobEventKind, JobNotFound, JobOptions
from jobqueue.domain.models import JobEvent, utcnow
from jobqueue.events import EventBus

async def collect_until(stream, job_id, final_kinds, timeout=5.0):
    kinds = []
    while True:
        event = await stream.get(timeout=timeout)
        if event.job_id != job_id:
            continue
        kinds.append(event.kind)
        if event.kind in final_kinds:
            return kinds

async def test_success_lifecycle_events(registry):
    async def work(payload, progress):
        return 1

    registry.register_handler("work", "task", work)

    async with registry.events.open_stream() as stream:
        job_id = await registry.enqueue("work", "task", {})
        await registry.start()
        kinds = await collect_until(stream, job_id, {JobEventKind.COMPLETED})

    assert kinds == [JobEventKind.CREATED, JobEventKind.ACTIVE, JobEventKind.COMPLETED]

    persisted = [event.kind for event in await registry.get_events("work", job_id)]
    assert persisted == kinds

async def test_retry_lifecycle_events(registry):
    async def broken(payload, progress):
        raise ValueError("bad input")

    registry.register_handler("work", "broken", broken)

    async with registry.events.open_stream() as stream:
        job_id = await registry.enqueue("work", "broken", {}, JobOptions(max_attempts=2))
        await registry.start()
        kinds = await collect_until(stream, job_id, {JobEventKind.FAILED})

    assert kinds == [
        JobEventKind.CREATED,
        JobEventKind.ACTIVE,
        JobEventKind.RETRY_SCHEDULED,
        JobEventKind.ACTIVE,
        JobEventKind.FAILED,
    ]

    events = await registry.get_events("work", job_id)
    assert events[-1].data["error"] == "ValueError: bad input"
    assert events[-1].data["attempt"] == 2

async def test_remove_publishes_event(registry):
    seen = []
    registry.events.subscribe(seen.append)

    job_id = await registry.enqueue("work", "task", {})
    await registry.remove_job("work", job_id)

    assert [event.kind for event in seen] == [JobEventKind.CREATED, JobEventKind.REMOVED]
    with pytest.raises(JobNotFound):
        await registry.get_events("work", job_id)

async def test_async_observer_and_unsubscribe():
    bus = EventBus()
    seen = []

    async def observer(event):
        await asyncio.sleep(0)
        seen.append(event.kind)

    unsubscribe = bus.subscribe(observer)
    event = JobEvent(job_id=None, queue_name="work", kind=JobEventKind.CREATED, timestamp=utcnow())
    bus.publish(event)
    await bus.drain()
    assert seen == [JobEventKind.CREATED]

    unsubscribe()
    bus.publish(event)
    await bus.drain()
    assert seen == [JobEventKind.CREATED]

async def test_failing_observer_does_not_break_publish():
    bus = EventBus()
    seen = []

    def broken(event):
        raise RuntimeError("observer bug")

    bus.subscribe(broken)
    bus.subscribe(seen.append)

    bus.publish(JobEvent(job_id=None, queue_name="work", kind=JobEventKind.CREATED))
    assert len(seen) == 1

async def test_full_stream_drops_events():
    bus = EventBus()
    stream = bus.open_stream(maxsize=2)

    for _ in range(5):
        bus.publish(JobEvent(job_id=None, queue_name="work", kind=JobEventKind.PROGRESS))

    assert stream.dropped == 3
    await stream.get(timeout=1)
    await stream.get(timeout=1)
    with pytest.raises(asyncio.TimeoutError):
        await stream.get(timeout=0.05)

    stream.close()
    bus.publish(JobEvent(job_id=None, queue_name="work", kind=JobEventKind.PROGRESS))
    assert stream.dropped == 3
