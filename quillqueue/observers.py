import logging

from .schemas import WorkItem

class WorkerObserver:
    """Lifecycle callbacks attached to a StageWorker at construction.

    Subclass and override what you need; every hook defaults to a no-op.
    """

    def on_claimed(self, item: WorkItem, attempt: int) -> None:
        pass

    def on_completed(self, item: WorkItem, attempt: int) -> None:
        pass

    def on_retry_scheduled(self, item: WorkItem, attempt: int, delay: float, error: str) -> None:
        pass

    def on_failed(self, item: WorkItem, attempt: int, error: str) -> None:
        pass

    def on_duplicate(self, item: WorkItem, reason: str) -> None:
        pass

class LoggingObserver(WorkerObserver):
    def __init__(self, logger: logging.Logger | None = None):
        self.log = logger or logging.getLogger("quillqueue.worker")

    def _extra(self, item: WorkItem, event: str, attempt: int | None = None) -> dict:
        extra = {"job_id": item.job_id, "stage": item.job_type.value, "event": event}
        if attempt is not None:
            extra["attempt"] = attempt
        return extra

    def on_claimed(self, item, attempt):
        self.log.info("job processing", extra=self._extra(item, "job_processing", attempt))

    def on_completed(self, item, attempt):
        self.log.info("job completed", extra=self._extra(item, "job_completed", attempt))

    def on_retry_scheduled(self, item, attempt, delay, error):
        self.log.warning(
            f"job failed, retry scheduled in {delay:g}s: {error}",
            extra=self._extra(item, "job_retry_scheduled", attempt),
        )

    def on_failed(self, item, attempt, error):
        self.log.error(f"job failed: {error}", extra=self._extra(item, "job_failed", attempt))

    def on_duplicate(self, item, reason):
        self.log.info(f"dropping duplicate delivery ({reason})", extra=self._extra(item, "job_duplicate"))

class RecordingObserver(WorkerObserver):
    """Keeps (event, job_id, ...) tuples in memory; handy in tests and shells."""

    def __init__(self):
        self.events: list[tuple] = []

    def on_claimed(self, item, attempt):
        self.events.append(("claimed", item.job_id, attempt))

    def on_completed(self, item, attempt):
        self.events.append(("completed", item.job_id, attempt))

    def on_retry_scheduled(self, item, attempt, delay, error):
        self.events.append(("retry_scheduled", item.job_id, attempt, delay))

    def on_failed(self, item, attempt, error):
        self.events.append(("failed", item.job_id, attempt, error))

    def on_duplicate(self, item, reason):
        self.events.append(("duplicate", item.job_id, reason))

    def names(self) -> list[str]:
        return [e[0] for e in self.events]
