from prometheus_client import Counter, Gauge, Histogram, generate_latest, CONTENT_TYPE_LATEST
from fastapi import APIRouter, Response

router = APIRouter()

# Metrics Definitions
QUEUE_DEPTH = Gauge('jobqueue_depth', 'Number of jobs per state', ['queue', 'state'])
JOBS_INFLIGHT = Gauge('jobqueue_inflight', 'Number of jobs currently executing in this process', ['queue'])

JOB_ENQUEUED_TOTAL = Counter('jobqueue_enqueued_total', 'Total jobs enqueued', ['queue', 'job_type'])
JOB_ATTEMPTS_TOTAL = Counter('jobqueue_attempts_total', 'Total execution attempts started', ['queue', 'job_type'])
JOB_COMPLETE_TOTAL = Counter('jobqueue_completed_total', 'Total jobs completed', ['queue', 'job_type'])
JOB_FAILURES = Counter('jobqueue_failures_total', 'Total failed attempts', ['queue', 'type'])  # type=retryable|final|poison|timeout

JOB_START_DELAY = Histogram(
    'jobqueue_start_delay_seconds',
    'Time from not_before to claim',
    ['queue'],
    buckets=[0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 10.0, 30.0, 60.0],
)
JOB_DURATION = Histogram(
    'jobqueue_duration_seconds',
    'Time from claim to completion',
    ['queue'],
    buckets=[0.1, 0.5, 1.0, 5.0, 10.0, 60.0, 120.0],
)

REAPER_RECOVERED_JOBS = Counter(
    "jobqueue_stalled_recovered_total",
    "Total number of active jobs recovered after their lease expired",
    ['queue'],
)

PURGED_JOBS = Counter(
    "jobqueue_purged_total",
    "Total number of terminal jobs removed after their retention TTL",
)

@router.get("/metrics")
async def metrics():
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
