import logging
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Callable

from .errors import JobFailedError, JobNotFound, JobTimeoutError
from .models import JobStatus
from .schemas import JobSnapshot

log = logging.getLogger("quillqueue.polling")

StatusFn = Callable[[str], JobSnapshot]

def wait_for_job(
    status_fn: StatusFn,
    job_id: str,
    *,
    interval: float = 0.5,
    timeout: float = 10.0,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> JobSnapshot:
    """Poll ``status_fn(job_id)`` every ``interval`` seconds until the job is terminal.

    Returns the snapshot once COMPLETED. FAILED stops polling at once and raises
    JobFailedError. Raises JobTimeoutError when ``timeout`` elapses first.
    Transient errors from ``status_fn`` are logged and polling continues;
    JobNotFound is raised straight away.
    """
    deadline = clock() + timeout
    polls = 0
    while True:
        polls += 1
        try:
            snap = status_fn(job_id)
        except JobNotFound:
            raise
        except Exception as e:
            log.warning(f"error polling job: {e}", extra={"job_id": job_id, "event": "poll_error"})
            snap = None

        if snap is not None:
            if snap.status == JobStatus.completed:
                log.info(f"job completed after {polls} polls", extra={"job_id": job_id, "event": "poll_completed"})
                return snap
            if snap.status == JobStatus.failed:
                raise JobFailedError(job_id, snap.error)

        remaining = deadline - clock()
        if remaining <= 0:
            raise JobTimeoutError(job_id, timeout)
        sleep(min(interval, remaining))

def wait_for_jobs(
    status_fn: StatusFn,
    job_ids: list[str],
    *,
    interval: float = 0.5,
    timeout: float = 10.0,
) -> list[JobSnapshot]:
    """Wait for several jobs in parallel; the first failure or timeout is raised."""
    if not job_ids:
        return []
    with ThreadPoolExecutor(max_workers=min(len(job_ids), 16)) as pool:
        futures = [
            pool.submit(wait_for_job, status_fn, job_id, interval=interval, timeout=timeout) for job_id in job_ids
        ]
        return [f.result() for f in futures]
