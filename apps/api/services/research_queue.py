"""Research job trigger queue (Redis/RQ)."""

from __future__ import annotations

from redis import Redis
from rq import Queue, Retry
from rq.job import Job

from config import settings


RESEARCH_QUEUE_NAME = "research_jobs"
RESEARCH_JOB_TIMEOUT_SECONDS = 3600


def get_redis_connection() -> Redis:
    """Build Redis connection used by RQ."""
    return Redis.from_url(settings.REDIS_URL)


def get_research_queue() -> Queue:
    """Return the configured research trigger queue."""
    return Queue(
        name=RESEARCH_QUEUE_NAME,
        connection=get_redis_connection(),
        default_timeout=RESEARCH_JOB_TIMEOUT_SECONDS,
    )


def enqueue_research_processing(research_job_id: str) -> Job:
    """Ask a worker to claim and process the next pending research job.

    The worker claims by priority and age, so the job it runs is not
    necessarily ``research_job_id``; the id only keys the trigger.
    """
    queue = get_research_queue()
    return queue.enqueue(
        "services.research_jobs.process_next_research_job_sync",
        job_id=f"research:{research_job_id}",
        retry=Retry(max=2, interval=[15, 60]),
        job_timeout=RESEARCH_JOB_TIMEOUT_SECONDS,
        result_ttl=86400,
        failure_ttl=86400,
    )
