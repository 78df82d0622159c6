"""Pipeline Coordinator: the composition root.

External callers (the HTTP layer, polling clients, scripts) only talk to
``PipelineCoordinator``. It creates job records, puts work items on the stage
queues and reports job status. AI calls never happen here; they all run
inside the stage workers.
"""

import logging
from typing import Any, Iterable

from pydantic import BaseModel
from sqlalchemy.orm import sessionmaker

from .ai_client import AIClient
from .errors import InvalidSelection, InvalidTransition, JobNotFound
from .models import JobStatus, JobType
from .observers import LoggingObserver, WorkerObserver
from .queues import StageQueue, build_queues
from .retry import RetryPolicy
from .schemas import PAYLOAD_SCHEMAS, BlogJobCreate, JobSnapshot, OutlineJobCreate, WorkItem
from .settings import Settings
from .stages import STAGES
from .store import JobStore
from .worker import StageWorker

log = logging.getLogger("quillqueue.coordinator")

class PipelineCoordinator:
    def __init__(
        self,
        store: JobStore,
        queues: dict[JobType, StageQueue],
        policies: dict[JobType, RetryPolicy] | None = None,
    ):
        self.store = store
        self.queues = queues
        self.policies = policies or {t: RetryPolicy() for t in JobType}
        self.workers: dict[JobType, StageWorker] = {}

    def _validate(self, job_type: JobType, payload: dict[str, Any] | BaseModel) -> dict[str, Any]:
        schema = PAYLOAD_SCHEMAS[job_type]
        if isinstance(payload, schema):
            model = payload
        elif isinstance(payload, BaseModel):
            model = schema.model_validate(payload.model_dump())
        else:
            model = schema.model_validate(payload)
        return model.model_dump(mode="json")

    def submit(self, job_type: JobType | str, payload: dict[str, Any] | BaseModel) -> str:
        """Create a PENDING job and enqueue it. Raises pydantic.ValidationError on bad payloads."""
        job_type = JobType(job_type)
        data = self._validate(job_type, payload)
        job_id = self.store.create(job_type, data, max_attempts=self.policies[job_type].max_attempts)
        self.queues[job_type].push(WorkItem(job_id=job_id, job_type=job_type, payload=data))
        log.info("job queued", extra={"job_id": job_id, "stage": job_type.value, "event": "job_queued"})
        return job_id

    def status(self, job_id: str) -> JobSnapshot:
        snap = self.store.get(job_id)
        if snap is None:
            raise JobNotFound(job_id)
        return snap

    def list_jobs(
        self,
        job_type: JobType | None = None,
        status: JobStatus | None = None,
        source_job_id: str | None = None,
        limit: int = 50,
    ) -> list[JobSnapshot]:
        return self.store.list_jobs(job_type=job_type, status=status, source_job_id=source_job_id, limit=limit)

    def _require_completed(self, job_id: str, job_type: JobType) -> JobSnapshot:
        snap = self.status(job_id)
        if snap.type != job_type:
            raise InvalidSelection(f"job {job_id} is a {snap.type.value} job, expected {job_type.value}")
        if snap.status != JobStatus.completed:
            raise InvalidTransition(job_id, "advance", snap.status.value)
        return snap

    def _enqueue_children(self, job_type: JobType, source_job_id: str, payloads: list[dict[str, Any]]) -> list[str]:
        ids = self.store.create_many(
            job_type,
            payloads,
            max_attempts=self.policies[job_type].max_attempts,
            source_job_id=source_job_id,
        )
        self.queues[job_type].push_many(
            WorkItem(job_id=job_id, job_type=job_type, payload=p) for job_id, p in zip(ids, payloads)
        )
        log.info(
            f"fanned out {len(ids)} {job_type.value} jobs",
            extra={"job_id": source_job_id, "stage": job_type.value, "event": "jobs_fanned_out"},
        )
        return ids

    def advance_titles(
        self, title_job_id: str, titles: Iterable[str], instructions: str | None = None
    ) -> list[str]:
        """Fan out a completed title job: one outline job per selected title."""
        source = self._require_completed(title_job_id, JobType.title_generation)
        available = set(source.result or [])

        selected: list[str] = []
        for t in titles:
            t = t.strip()
            if t not in available:
                raise InvalidSelection(f"title {t!r} is not a result of job {title_job_id}")
            if t not in selected:
                selected.append(t)
        if not selected:
            raise InvalidSelection("no titles selected")

        keywords = source.payload.get("keywords", [])
        payloads = [
            OutlineJobCreate(title=t, keywords=keywords, instructions=instructions).model_dump(mode="json")
            for t in selected
        ]
        return self._enqueue_children(JobType.outline_generation, title_job_id, payloads)

    def advance_outline(self, outline_job_id: str, instructions: str | None = None) -> str:
        """Start the blog stage from a completed outline job."""
        source = self._require_completed(outline_job_id, JobType.outline_generation)
        outline = source.result or {}
        payload = BlogJobCreate(
            title=outline.get("title") or source.payload["title"],
            outline=outline,
            keywords=source.payload.get("keywords", []),
            instructions=instructions if instructions is not None else source.payload.get("instructions"),
        ).model_dump(mode="json")
        return self._enqueue_children(JobType.blog_generation, outline_job_id, [payload])[0]

    def stop_retries(self, job_id: str) -> JobSnapshot:
        """Operator request: no further retries for this job.

        A job waiting for its next attempt fails now. An attempt in flight runs
        to its own timeout and fails instead of being retried.
        """
        snap = self.store.disable_retries(job_id)
        if snap.is_terminal:
            return snap
        if snap.status == JobStatus.pending and snap.attempts > 0:
            try:
                self.store.fail(
                    job_id,
                    f"retries stopped by operator after {snap.attempts} attempt(s)",
                    allowed=(JobStatus.pending,),
                )
            except InvalidTransition:
                # a worker claimed it in between; that attempt will not be retried
                pass
            snap = self.status(job_id)
        log.info("retries disabled", extra={"job_id": job_id, "event": "retries_disabled"})
        return snap

    def _auto_advance_titles(self, done: JobSnapshot) -> None:
        if done.payload.get("auto_advance") and done.result:
            self.advance_titles(done.id, done.result)

    def _auto_advance_outline(self, done: JobSnapshot) -> None:
        self.advance_outline(done.id)

    def attach_workers(
        self,
        ai_client: AIClient,
        *,
        concurrency: dict[JobType, int] | None = None,
        ai_timeout: float = 120.0,
        poll_seconds: float = 0.5,
        stall_seconds: float | None = None,
        observers: Iterable[WorkerObserver] | None = None,
        auto_advance_outlines: bool = True,
    ) -> dict[JobType, StageWorker]:
        concurrency = concurrency or {}
        observers = list(observers) if observers is not None else [LoggingObserver()]
        hand_offs = {
            JobType.title_generation: self._auto_advance_titles,
            JobType.outline_generation: self._auto_advance_outline if auto_advance_outlines else None,
            JobType.blog_generation: None,
        }
        for job_type, stage in STAGES.items():
            self.workers[job_type] = StageWorker(
                stage,
                self.queues[job_type],
                self.store,
                ai_client,
                self.policies[job_type],
                concurrency=concurrency.get(job_type, 1),
                ai_timeout=ai_timeout,
                poll_seconds=poll_seconds,
                stall_seconds=stall_seconds,
                observers=observers,
                hand_off=hand_offs[job_type],
            )
        return self.workers

    def start_workers(self) -> None:
        for w in self.workers.values():
            w.start()

    def stop_workers(self) -> None:
        for w in self.workers.values():
            w.stop()

    def drain(self, max_rounds: int = 100) -> int:
        """Run every stage until no queue has due work. Single-threaded; for tests and scripts."""
        total = 0
        for _ in range(max_rounds):
            handled = sum(w.drain() for w in self.workers.values())
            total += handled
            if not handled:
                break
        return total

def build_pipeline(
    s: Settings,
    *,
    ai_client: AIClient | None = None,
    session_factory: sessionmaker | None = None,
    queues: dict[JobType, StageQueue] | None = None,
    observers: Iterable[WorkerObserver] | None = None,
    with_workers: bool = True,
) -> PipelineCoordinator:
    if session_factory is None:
        from .db import SessionLocal, engine, init_db

        init_db(engine)
        session_factory = SessionLocal

    policy = RetryPolicy.from_settings(s)
    coordinator = PipelineCoordinator(
        JobStore(session_factory),
        queues if queues is not None else build_queues(s),
        {t: policy for t in JobType},
    )
    if with_workers:
        if ai_client is None:
            from .ai_client import GeminiClient

            ai_client = GeminiClient.from_settings(s)
        coordinator.attach_workers(
            ai_client,
            concurrency={
                JobType.title_generation: s.title_concurrency,
                JobType.outline_generation: s.outline_concurrency,
                JobType.blog_generation: s.blog_concurrency,
            },
            ai_timeout=s.ai_timeout_seconds,
            poll_seconds=s.worker_poll_seconds,
            stall_seconds=max(s.stall_seconds, s.ai_timeout_seconds * 2),
            observers=observers,
            auto_advance_outlines=s.auto_advance_outlines,
        )
    return coordinator
