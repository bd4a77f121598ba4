from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional, Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from jobqueue.domain.states import BackoffKind, JobState, JobEventKind

def utcnow() -> datetime:
    return datetime.now(timezone.utc)

class BackoffPolicy(BaseModel):
    kind: BackoffKind = BackoffKind.FIXED
    base_delay: timedelta = timedelta(0)
    max_delay: Optional[timedelta] = None
    # Fraction of the computed delay added as random jitter (0 disables it)
    jitter: float = Field(default=0.0, ge=0.0, le=1.0)

    model_config = ConfigDict(frozen=True)

class JobOptions(BaseModel):
    priority: int = 0
    delay: timedelta = timedelta(0)
    max_attempts: int = Field(default=1, ge=1)
    backoff: BackoffPolicy = Field(default_factory=BackoffPolicy)
    timeout: Optional[timedelta] = None

    model_config = ConfigDict(frozen=True)

class JobView(BaseModel):
    """Serializable projection of a job record for producers and operators."""
    id: UUID
    queue_name: str
    job_type: str
    state: JobState
    priority: int
    progress: int
    attempts_made: int
    max_attempts: int
    result: Optional[Any] = None
    last_error: Optional[str] = None
    dead_lettered: bool = False
    not_before: datetime
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None

    @classmethod
    def from_record(cls, job, now: Optional[datetime] = None) -> "JobView":
        now = now or utcnow()
        state = JobState(job.state)
        if state == JobState.DELAYED and job.not_before <= now:
            state = JobState.WAITING
        progress = 100 if state == JobState.COMPLETED else job.progress
        return cls(
            id=job.id,
            queue_name=job.queue_name,
            job_type=job.job_type,
            state=state,
            priority=job.priority,
            progress=progress,
            attempts_made=job.attempts_made,
            max_attempts=job.max_attempts,
            result=job.result,
            last_error=job.last_error,
            dead_lettered=job.dead_lettered,
            not_before=job.not_before,
            created_at=job.created_at,
            started_at=job.started_at,
            completed_at=job.completed_at,
            failed_at=job.failed_at,
        )

class QueueCounts(BaseModel):
    waiting: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    delayed: int = 0

@dataclass(frozen=True)
class JobEvent:
    job_id: UUID
    queue_name: str
    kind: JobEventKind
    timestamp: datetime = field(default_factory=utcnow)
    data: dict[str, Any] = field(default_factory=dict)

@dataclass(frozen=True)
class ClaimedJob:
    """Snapshot handed to a worker slot; writes re-validate lease_token."""
    id: UUID
    queue_name: str
    job_type: str
    payload: Any
    attempts_made: int
    max_attempts: int
    lease_token: UUID
    started_at: datetime
    not_before: datetime
    timeout: Optional[float] = None
