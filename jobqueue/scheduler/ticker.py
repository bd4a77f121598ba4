from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Iterable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from jobqueue.commands.requeue_expired import requeue_expired_jobs
from jobqueue.commands.retention import purge_expired_jobs
from jobqueue.commands.status import get_counts, promote_delayed_jobs
from jobqueue.db.models import Job
from jobqueue.domain.models import utcnow
from jobqueue.api.v1.metrics import QUEUE_DEPTH

@dataclass
class TickReport:
    recovered: list[Job] = field(default_factory=list)
    promoted: int = 0
    purged: int = 0

async def run_ticker(
    session: AsyncSession,
    queue_names: Iterable[str],
    failed_ttl_for: Optional[Callable[[str], Optional[float]]] = None,
    purge_batch_size: int = 500,
    now: Optional[datetime] = None,
) -> TickReport:
    """
    Periodic maintenance tasks:
    1. Recover ACTIVE jobs with expired leases (stalled workers)
    2. Advance DELAYED jobs to WAITING if not_before <= now
    3. Purge terminal jobs past their retention TTL
    4. Refresh queue depth gauges

    Every step is a guarded update, so several processes may tick at once.
    """
    now = now or utcnow()
    report = TickReport()

    report.recovered = await requeue_expired_jobs(session, ttl_for_queue=failed_ttl_for, now=now)
    report.promoted = await promote_delayed_jobs(session, now=now)
    report.purged = await purge_expired_jobs(session, limit=purge_batch_size, now=now)

    # We do this periodically here instead of real-time increment/decrement to be robust.
    for queue_name in queue_names:
        counts = await get_counts(session, queue_name, now=now)
        for state, count in counts.model_dump().items():
            QUEUE_DEPTH.labels(queue=queue_name, state=state).set(count)

    return report
