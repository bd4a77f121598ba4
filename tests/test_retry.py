from datetime import timedelta

import pytest
from pydantic import ValidationError

from jobqueue.domain.models import BackoffPolicy, JobOptions, utcnow
from jobqueue.domain.retry import compute_backoff_delay, decide_after_failure
from jobqueue.domain.states import BackoffKind, JobState

def test_fixed_backoff_ignores_attempt_number():
    policy = BackoffPolicy(kind=BackoffKind.FIXED, base_delay=timedelta(milliseconds=100))
    delays = [compute_backoff_delay(policy, n) for n in (1, 2, 5)]
    assert delays == [timedelta(milliseconds=100)] * 3

def test_exponential_backoff_doubles_from_base():
    policy = BackoffPolicy(kind=BackoffKind.EXPONENTIAL, base_delay=timedelta(milliseconds=100))
    delays = [compute_backoff_delay(policy, n) for n in (1, 2, 3)]
    assert delays == [
        timedelta(milliseconds=100),
        timedelta(milliseconds=200),
        timedelta(milliseconds=400),
    ]

def test_max_delay_caps_exponential_growth():
    policy = BackoffPolicy(
        kind=BackoffKind.EXPONENTIAL,
        base_delay=timedelta(seconds=1),
        max_delay=timedelta(seconds=5),
    )
    assert compute_backoff_delay(policy, 3) == timedelta(seconds=4)
    assert compute_backoff_delay(policy, 4) == timedelta(seconds=5)
    assert compute_backoff_delay(policy, 200) == timedelta(seconds=5)

def test_jitter_stays_within_fraction():
    policy = BackoffPolicy(kind=BackoffKind.FIXED, base_delay=timedelta(seconds=1), jitter=0.5)
    for _ in range(50):
        delay = compute_backoff_delay(policy, 1)
        assert timedelta(seconds=1) <= delay <= timedelta(seconds=1.5)

def test_zero_base_delay_retries_immediately():
    now = utcnow()
    decision = decide_after_failure(1, 3, BackoffPolicy(), now)
    assert decision.state == JobState.DELAYED
    assert decision.not_before == now

def test_retry_while_attempts_remain():
    now = utcnow()
    policy = BackoffPolicy(kind=BackoffKind.FIXED, base_delay=timedelta(seconds=2))
    decision = decide_after_failure(attempts_made=2, max_attempts=3, policy=policy, now=now)
    assert decision.will_retry
    assert decision.not_before == now + timedelta(seconds=2)

def test_failed_when_attempts_exhausted():
    decision = decide_after_failure(attempts_made=3, max_attempts=3, policy=BackoffPolicy(), now=utcnow())
    assert decision.state == JobState.FAILED
    assert decision.not_before is None
    assert not decision.will_retry

def test_non_retryable_fails_on_first_attempt():
    decision = decide_after_failure(
        attempts_made=1, max_attempts=10, policy=BackoffPolicy(), now=utcnow(), retryable=False
    )
    assert decision.state == JobState.FAILED

def test_job_options_reject_zero_attempts():
    with pytest.raises(ValidationError):
        JobOptions(max_attempts=0)

def test_backoff_jitter_bounds():
    with pytest.raises(ValidationError):
        BackoffPolicy(jitter=1.5)
