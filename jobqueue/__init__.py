from .domain.errors import (
    ConfigurationError,
    HandlerError,
    HandlerTimeout,
    InvalidState,
    JobNotFound,
    PayloadValidationError,
    PoisonPayload,
    QueueError,
    StoreUnavailable,
    UnknownJobType,
)
from .domain.models import BackoffPolicy, JobEvent, JobOptions, JobView, QueueCounts
from .domain.states import BackoffKind, JobEventKind, JobState
from .queue import Queue
from .registry import QueueRegistry

__all__ = [
    "BackoffKind",
    "BackoffPolicy",
    "ConfigurationError",
    "HandlerError",
    "HandlerTimeout",
    "InvalidState",
    "JobEvent",
    "JobEventKind",
    "JobNotFound",
    "JobOptions",
    "JobState",
    "JobView",
    "PayloadValidationError",
    "PoisonPayload",
    "Queue",
    "QueueCounts",
    "QueueError",
    "QueueRegistry",
    "StoreUnavailable",
    "UnknownJobType",
]
