import logging
import signal
import threading
import time
from datetime import timedelta
from typing import Callable, Iterable

from .ai_client import AIClient
from .errors import AIClientError, AITimeoutError, UnusableResponse
from .models import JobStatus, utcnow
from .observers import LoggingObserver, WorkerObserver
from .queues import StageQueue
from .retry import RetryPolicy
from .schemas import JobSnapshot, WorkItem
from .stages import Stage
from .store import ClaimResult, JobStore

log = logging.getLogger("quillqueue.worker")

HandOff = Callable[[JobSnapshot], None]

MAX_ERROR_LEN = 500

def describe_error(exc: BaseException) -> str:
    """Short, caller-safe reason for a failed attempt."""
    if isinstance(exc, (UnusableResponse, AIClientError)):
        msg = str(exc)
    else:
        msg = f"{type(exc).__name__}: {exc}"
    return msg[:MAX_ERROR_LEN]

class StageWorker:
    """Consumes one stage queue with a bounded pool of threads.

    Per item: claim the job, call the AI client under a timeout, build the
    stage result, then complete it and hand off to the next stage, or release
    it for a delayed retry, or fail it once the retry policy is exhausted.
    No exception from an item escapes to the loop.
    """

    def __init__(
        self,
        stage: Stage,
        queue: StageQueue,
        store: JobStore,
        ai_client: AIClient,
        policy: RetryPolicy,
        *,
        concurrency: int = 1,
        ai_timeout: float = 120.0,
        poll_seconds: float = 0.5,
        stall_seconds: float | None = None,
        observers: Iterable[WorkerObserver] | None = None,
        hand_off: HandOff | None = None,
    ):
        self.stage = stage
        self.queue = queue
        self.store = store
        self.ai_client = ai_client
        self.policy = policy
        self.concurrency = max(1, concurrency)
        self.ai_timeout = ai_timeout
        self.poll_seconds = poll_seconds
        self.stall_seconds = stall_seconds
        self.observers = list(observers) if observers is not None else [LoggingObserver()]
        self.hand_off = hand_off

        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []
        self._sweep_lock = threading.Lock()
        self._next_sweep = 0.0

    @property
    def name(self) -> str:
        return self.stage.job_type.value

    def _notify(self, hook: str, *args) -> None:
        for obs in self.observers:
            try:
                getattr(obs, hook)(*args)
            except Exception:
                log.error(f"observer {type(obs).__name__}.{hook} raised", extra={"stage": self.name}, exc_info=True)

    def _call_ai(self, payload: dict) -> str | None:
        # one thread per call; the timeout counts from when the call starts
        outcome: dict = {}

        def run():
            try:
                outcome["value"] = self.stage.call_ai(self.ai_client, payload)
            except Exception as e:
                outcome["error"] = e

        t = threading.Thread(target=run, name=f"ai-{self.name}", daemon=True)
        t.start()
        t.join(self.ai_timeout)
        if t.is_alive():
            raise AITimeoutError(f"AI call timed out after {self.ai_timeout:g}s")
        if "error" in outcome:
            raise outcome["error"]
        return outcome.get("value")

    def handle_item(self, item: WorkItem) -> JobStatus | None:
        """Process one delivery. Returns the job's new status, or None for a dropped duplicate."""
        claim = self.store.transition_to_processing(item.job_id)
        if claim != ClaimResult.claimed:
            self._notify("on_duplicate", item, claim.value)
            return None

        snap = self.store.get(item.job_id)
        attempt = snap.attempts if snap else 0
        self._notify("on_claimed", item, attempt)

        try:
            raw = self._call_ai(item.payload)
            result = self.stage.build_result(raw, item.payload)
            self.store.complete(item.job_id, result)
        except Exception as e:
            return self._handle_failure(item, e)

        self._notify("on_completed", item, attempt)

        if self.hand_off is not None:
            # the job is already COMPLETED; a hand-off problem must not touch it
            try:
                done = self.store.get(item.job_id)
                if done is not None:
                    self.hand_off(done)
            except Exception:
                log.error(
                    "next-stage hand-off failed",
                    extra={"job_id": item.job_id, "stage": self.name, "event": "handoff_failed"},
                    exc_info=True,
                )
        return JobStatus.completed

    def _handle_failure(self, item: WorkItem, exc: Exception) -> JobStatus:
        reason = describe_error(exc)
        snap = self.store.get(item.job_id)
        if snap is None or snap.status != JobStatus.processing:
            # settled elsewhere (operator stop, stalled-job sweep)
            log.warning(
                f"attempt failed but job is no longer processing: {reason}",
                extra={"job_id": item.job_id, "stage": self.name, "event": "job_attempt_orphaned"},
            )
            return snap.status if snap else JobStatus.failed
        attempts = snap.attempts

        if not snap.retries_disabled and self.policy.should_retry(attempts):
            delay = self.policy.delay_for(attempts)
            if self.store.release(item.job_id, reason):
                self.queue.push_delayed(item, delay)
                self._notify("on_retry_scheduled", item, attempts, delay, reason)
                return JobStatus.pending

        message = f"{self.stage.label} failed after {attempts} attempt(s): {reason}"
        self.store.fail(item.job_id, message)
        self.queue.dead_letter(item)
        self._notify("on_failed", item, attempts, message)
        return JobStatus.failed

    def sweep_stalled(self) -> int:
        """Recover jobs whose worker died mid-attempt and enqueue them again."""
        cutoff = utcnow() - timedelta(seconds=self.stall_seconds or 0.0)
        jobs = self.store.recover_stalled(self.stage.job_type, cutoff)
        if jobs:
            self.queue.push_many(WorkItem(job_id=j.id, job_type=j.type, payload=j.payload) for j in jobs)
            log.warning(f"requeued {len(jobs)} stalled jobs", extra={"stage": self.name, "event": "stalled_requeued"})
        return len(jobs)

    def _maybe_sweep(self) -> None:
        if self.stall_seconds is None:
            return
        now = time.monotonic()
        with self._sweep_lock:
            if now < self._next_sweep:
                return
            self._next_sweep = now + min(60.0, self.stall_seconds / 2)
        try:
            self.sweep_stalled()
        except Exception:
            log.error("stalled-job sweep failed", extra={"stage": self.name, "event": "sweep_error"}, exc_info=True)

    def process_one(self, timeout: float | None = None) -> bool:
        """Pop and handle at most one item. Returns False when nothing was available."""
        self._maybe_sweep()
        moved = self.queue.promote_due()
        if moved:
            log.info(f"moved {moved} delayed jobs", extra={"stage": self.name, "event": "delayed_moved"})

        item = self.queue.pop(timeout=self.poll_seconds if timeout is None else timeout)
        if item is None:
            return False

        try:
            self.handle_item(item)
        except Exception:
            log.error(
                "unexpected error while handling job",
                extra={"job_id": item.job_id, "stage": self.name, "event": "job_handler_error"},
                exc_info=True,
            )
        finally:
            self.queue.ack(item)
        return True

    def drain(self, max_items: int = 1000) -> int:
        """Handle items until the queue has nothing due. Used by tests and one-shot runs."""
        handled = 0
        while handled < max_items and self.process_one(timeout=0):
            handled += 1
        return handled

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                self.process_one()
            except Exception:
                log.error("worker loop error", extra={"stage": self.name, "event": "worker_loop_error"}, exc_info=True)
                self._stop.wait(2)

    def start(self) -> None:
        if self._threads:
            return
        self._stop.clear()
        for i in range(self.concurrency):
            t = threading.Thread(target=self._run, name=f"worker-{self.name}-{i}", daemon=True)
            t.start()
            self._threads.append(t)
        log.info(
            f"worker pool started with {self.concurrency} threads",
            extra={"stage": self.name, "event": "worker_start"},
        )

    def stop(self, timeout: float = 10.0) -> None:
        self._stop.set()
        for t in self._threads:
            t.join(timeout)
        self._threads.clear()
        log.info("worker pool stopped", extra={"stage": self.name, "event": "worker_stop"})

def main():
    from .coordinator import build_pipeline
    from .logging_utils import setup_logging
    from .settings import settings

    setup_logging(settings.log_level)
    pipeline = build_pipeline(settings)
    if settings.queue_backend == "memory":
        log.warning("memory queue backend: this worker only sees jobs submitted in this process")

    stopping = threading.Event()

    def _shutdown(signum, frame):
        log.info(f"received signal {signum}, stopping", extra={"event": "worker_shutdown"})
        stopping.set()

    signal.signal(signal.SIGTERM, _shutdown)
    signal.signal(signal.SIGINT, _shutdown)

    pipeline.start_workers()
    log.info("worker started", extra={"event": "worker_start"})
    try:
        stopping.wait()
    finally:
        pipeline.stop_workers()

if __name__ == "__main__":
    main()
