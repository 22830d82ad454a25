from __future__ import annotations

import asyncio
import time

from loguru import logger

from vcopilot.errors import JobFailedError, JobTimeoutError, JobVanishedError, WatcherDeadError
from vcopilot.interactive.jobs import JOB_COMPLETED, JOB_ERROR, JOB_WATCHING, JobStore

POLL_INTERVAL_SECONDS = 1.0
POLL_TIMEOUT_SECONDS = 300.0
HEARTBEAT_STALE_SECONDS = 30.0
PROGRESS_LOG_SECONDS = 10.0


async def poll_for_completion(
    job_store: JobStore,
    job_id: str,
    *,
    interval: float = POLL_INTERVAL_SECONDS,
    timeout: float = POLL_TIMEOUT_SECONDS,
    stale_after: float = HEARTBEAT_STALE_SECONDS,
    progress_every: float = PROGRESS_LOG_SECONDS,
) -> str:
    """Wait for the watcher to finish the job and return the reply text."""
    started = time.monotonic()
    last_progress = started

    while True:
        elapsed = time.monotonic() - started
        if elapsed > timeout:
            raise JobTimeoutError(f"Timed out after {timeout:.0f}s waiting for the reply (job {job_id})")

        job = job_store.read(job_id)
        if job is None:
            raise JobVanishedError(f"Job file disappeared: {job_id}")

        if job.status == JOB_COMPLETED and job.response is not None:
            logger.info(f"Response ready ({job.response_length or len(job.response)} chars)")
            return job.response

        if job.status == JOB_ERROR:
            raise JobFailedError(f"Interactive job failed: {job.error or 'unknown error'}")

        if job.status == JOB_WATCHING:
            age = job.heartbeat_age()
            if age is not None and age > stale_after:
                raise WatcherDeadError(
                    f"Watcher appears dead (no heartbeat for {age:.0f}s). "
                    f"Job {job_id} stuck at status '{job.status}'."
                )

        now = time.monotonic()
        if now - last_progress >= progress_every:
            logger.info(f"Still waiting... {elapsed:.0f}s elapsed (status: {job.status})")
            last_progress = now

        await asyncio.sleep(interval)
