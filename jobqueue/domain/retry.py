import random
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from jobqueue.domain.models import BackoffPolicy
from jobqueue.domain.states import BackoffKind, JobState

@dataclass(frozen=True)
class RetryDecision:
    state: JobState
    not_before: Optional[datetime] = None

    @property
    def will_retry(self) -> bool:
        return self.state == JobState.DELAYED

def compute_backoff_delay(policy: BackoffPolicy, attempts_made: int) -> timedelta:
    """
    Delay before the next attempt after `attempts_made` failed attempts.

    Formula:
        FIXED:       delay = base
        EXPONENTIAL: delay = base * 2 ^ (attempts_made - 1)
        delay = min(delay, max_delay) when a cap is set
        delay += random_uniform(0, jitter * delay)

    So with a 100ms exponential base the gaps are 100ms, 200ms, 400ms...
    """
    base = policy.base_delay.total_seconds()

    if policy.kind == BackoffKind.EXPONENTIAL:
        # 2^30 * base overflows any useful delay; the cap keeps float math sane
        exponent = min(max(attempts_made - 1, 0), 30)
        delay = base * (2 ** exponent)
    else:
        delay = base

    if policy.max_delay is not None:
        delay = min(delay, policy.max_delay.total_seconds())

    if policy.jitter:
        delay += random.uniform(0, delay * policy.jitter)

    return timedelta(seconds=max(delay, 0.0))

def decide_after_failure(
    attempts_made: int,
    max_attempts: int,
    policy: BackoffPolicy,
    now: datetime,
    retryable: bool = True,
) -> RetryDecision:
    """
    DELAYED with a new not_before while attempts remain, otherwise FAILED.
    Non-retryable failures (poison payloads) go straight to FAILED.
    """
    if not retryable or attempts_made >= max_attempts:
        return RetryDecision(state=JobState.FAILED)

    return RetryDecision(
        state=JobState.DELAYED,
        not_before=now + compute_backoff_delay(policy, attempts_made),
    )
