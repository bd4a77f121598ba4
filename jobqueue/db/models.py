from datetime import datetime, timezone
from typing import Optional, Any
from uuid import UUID, uuid4

from sqlalchemy import String, Integer, Float, Boolean, DateTime, Index, JSON, Uuid
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.types import TypeDecorator

from jobqueue.db.session import Base
from jobqueue.domain.states import JobState, BackoffKind, JobEventKind

JSONType = JSON().with_variant(JSONB(), "postgresql")

class UTCDateTime(TypeDecorator):
    """
    Stores aware datetimes as UTC and always hands back aware UTC values.
    SQLite has no timezone support, so there the value is stored naive.
    """
    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: Optional[datetime], dialect) -> Optional[datetime]:
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError("naive datetime cannot be stored; use an aware UTC value")
        value = value.astimezone(timezone.utc)
        if dialect.name == "sqlite":
            value = value.replace(tzinfo=None)
        return value

    def process_result_value(self, value: Optional[datetime], dialect) -> Optional[datetime]:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

class Job(Base):
    __tablename__ = "jobs"

    # Store-assigned sequence, breaks created_at ties in FIFO order
    seq: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    id: Mapped[UUID] = mapped_column(Uuid, unique=True, index=True, default=uuid4)

    queue_name: Mapped[str] = mapped_column(String, nullable=False)
    job_type: Mapped[str] = mapped_column(String, nullable=False)
    payload: Mapped[Any] = mapped_column(JSONType, nullable=True)

    # Core dispatch fields
    state: Mapped[JobState] = mapped_column(String, default=JobState.WAITING, nullable=False)
    priority: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    not_before: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    # Retry logic
    attempts_made: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    max_attempts: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    backoff_kind: Mapped[BackoffKind] = mapped_column(String, default=BackoffKind.FIXED, nullable=False)
    backoff_delay: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    backoff_max_delay: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    backoff_jitter: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    timeout: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    # Execution
    progress: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    result: Mapped[Optional[Any]] = mapped_column(JSONType, nullable=True)
    last_error: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    dead_lettered: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    # Lease of the current attempt
    lease_token: Mapped[Optional[UUID]] = mapped_column(Uuid, nullable=True)
    lease_expires_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    started_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    failed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)

    # Retention
    expires_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True, index=True)

    __table_args__ = (
        # The "poll" query: queue + state + not_before, ordered by priority
        Index("ix_jobs_poll", "queue_name", "state", "priority", "created_at"),
        # Stalled-lease sweep
        Index("ix_jobs_lease", "state", "lease_expires_at"),
    )

class JobEventLog(Base):
    __tablename__ = "job_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[UUID] = mapped_column(Uuid, index=True, nullable=False)
    queue_name: Mapped[str] = mapped_column(String, nullable=False)

    event_type: Mapped[JobEventKind] = mapped_column(String, nullable=False)
    timestamp: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    # Context (e.g. attempt number, error message, next run)
    meta: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)
