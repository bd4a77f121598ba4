from enum import StrEnum, auto

class JobState(StrEnum):
    WAITING = auto()    # Eligible once not_before has passed
    ACTIVE = auto()     # Claimed by exactly one worker slot
    COMPLETED = auto()  # Handler returned
    FAILED = auto()     # Attempts exhausted or payload unusable
    DELAYED = auto()    # Waiting on a delay or a retry backoff

TERMINAL_STATES = frozenset({JobState.COMPLETED, JobState.FAILED})
DISPATCHABLE_STATES = frozenset({JobState.WAITING, JobState.DELAYED})

class BackoffKind(StrEnum):
    FIXED = auto()
    EXPONENTIAL = auto()

class JobEventKind(StrEnum):
    CREATED = auto()
    ACTIVE = auto()
    PROGRESS = auto()
    COMPLETED = auto()
    RETRY_SCHEDULED = auto()
    FAILED = auto()
    STALLED = auto()
    REMOVED = auto()
