"""Job Record Store.

The only place job rows are written. Every status change is a conditional
UPDATE on the current status, so concurrent workers cannot both win a
transition and terminal rows are never touched again.
"""

import enum
import uuid
from datetime import datetime
from typing import Any, Iterable

from sqlalchemy import and_, or_, select, text, update
from sqlalchemy.orm import Session, sessionmaker

from .errors import InvalidTransition, JobNotFound
from .models import Job, JobStatus, JobType, utcnow
from .schemas import JobSnapshot

class ClaimResult(str, enum.Enum):
    claimed = "claimed"
    already_processing = "already_processing"
    finished = "finished"
    not_found = "not_found"

class JobStore:
    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def _new_job(self, job_type: JobType, payload: dict[str, Any], max_attempts: int, source_job_id: str | None) -> Job:
        now = utcnow()
        return Job(
            id=str(uuid.uuid4()),
            type=job_type,
            status=JobStatus.pending,
            payload=payload,
            attempts=0,
            max_attempts=max_attempts,
            retries_disabled=False,
            source_job_id=source_job_id,
            created_at=now,
            updated_at=now,
        )

    def create(
        self,
        job_type: JobType,
        payload: dict[str, Any],
        *,
        max_attempts: int,
        source_job_id: str | None = None,
    ) -> str:
        job = self._new_job(job_type, payload, max_attempts, source_job_id)
        with self._session_factory() as db:
            db.add(job)
            db.commit()
        return job.id

    def create_many(
        self,
        job_type: JobType,
        payloads: Iterable[dict[str, Any]],
        *,
        max_attempts: int,
        source_job_id: str | None = None,
    ) -> list[str]:
        jobs = [self._new_job(job_type, p, max_attempts, source_job_id) for p in payloads]
        if not jobs:
            return []
        with self._session_factory() as db:
            db.add_all(jobs)
            db.commit()
        return [j.id for j in jobs]

    def get(self, job_id: str) -> JobSnapshot | None:
        with self._session_factory() as db:
            job = db.get(Job, job_id)
            return JobSnapshot.from_job(job) if job else None

    def list_jobs(
        self,
        job_type: JobType | None = None,
        status: JobStatus | None = None,
        source_job_id: str | None = None,
        limit: int = 50,
    ) -> list[JobSnapshot]:
        stmt = select(Job).order_by(Job.created_at.desc()).limit(limit)
        if job_type is not None:
            stmt = stmt.where(Job.type == job_type)
        if status is not None:
            stmt = stmt.where(Job.status == status)
        if source_job_id is not None:
            stmt = stmt.where(Job.source_job_id == source_job_id)
        with self._session_factory() as db:
            return [JobSnapshot.from_job(j) for j in db.scalars(stmt)]

    def _conditional_update(self, db: Session, job_id: str, allowed: tuple[JobStatus, ...], **values) -> bool:
        stmt = (
            update(Job)
            .where(Job.id == job_id, Job.status.in_(allowed))
            .values(updated_at=utcnow(), **values)
            .execution_options(synchronize_session=False)
        )
        res = db.execute(stmt)
        db.commit()
        return res.rowcount == 1

    def _raise_for(self, db: Session, job_id: str, action: str):
        job = db.get(Job, job_id)
        if job is None:
            raise JobNotFound(job_id)
        raise InvalidTransition(job_id, action, job.status.value)

    def transition_to_processing(self, job_id: str) -> ClaimResult:
        """Claim gate: pending -> processing, counting the attempt in the same UPDATE."""
        with self._session_factory() as db:
            now = utcnow()
            if self._conditional_update(
                db,
                job_id,
                (JobStatus.pending,),
                status=JobStatus.processing,
                attempts=Job.attempts + 1,
                started_at=now,
            ):
                return ClaimResult.claimed

            job = db.get(Job, job_id)
            if job is None:
                return ClaimResult.not_found
            if job.status == JobStatus.processing:
                return ClaimResult.already_processing
            return ClaimResult.finished

    def complete(self, job_id: str, result: Any) -> None:
        with self._session_factory() as db:
            ok = self._conditional_update(
                db,
                job_id,
                (JobStatus.processing,),
                status=JobStatus.completed,
                result=result,
                error=None,
                finished_at=utcnow(),
            )
            if not ok:
                self._raise_for(db, job_id, "complete")

    def fail(
        self,
        job_id: str,
        error: str,
        *,
        allowed: tuple[JobStatus, ...] = (JobStatus.processing, JobStatus.pending),
    ) -> None:
        # pending is allowed so an operator can stop a job that is waiting for a retry
        with self._session_factory() as db:
            ok = self._conditional_update(
                db,
                job_id,
                allowed,
                status=JobStatus.failed,
                error=error or "unknown error",
                finished_at=utcnow(),
            )
            if not ok:
                self._raise_for(db, job_id, "fail")

    def release(self, job_id: str, error: str) -> bool:
        """processing -> pending so a scheduled retry can claim it again.

        Returns False, leaving the job in processing, when retries were disabled
        for it; the caller is expected to fail it instead.
        """
        with self._session_factory() as db:
            stmt = (
                update(Job)
                .where(Job.id == job_id, Job.status == JobStatus.processing, Job.retries_disabled.is_(False))
                .values(status=JobStatus.pending, last_error=error, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            res = db.execute(stmt)
            db.commit()
            if res.rowcount == 1:
                return True

            job = db.get(Job, job_id)
            if job is None:
                raise JobNotFound(job_id)
            if job.status == JobStatus.processing and job.retries_disabled:
                return False
            raise InvalidTransition(job_id, "release", job.status.value)

    def disable_retries(self, job_id: str) -> JobSnapshot:
        """Set the no-more-retries flag. Terminal jobs are returned unchanged."""
        with self._session_factory() as db:
            db.execute(
                update(Job)
                .where(Job.id == job_id, Job.status.in_((JobStatus.pending, JobStatus.processing)))
                .values(retries_disabled=True, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            db.commit()
            job = db.get(Job, job_id)
            if job is None:
                raise JobNotFound(job_id)
            return JobSnapshot.from_job(job)

    def recover_stalled(self, job_type: JobType, cutoff: datetime) -> list[JobSnapshot]:
        """Settle jobs a crashed worker left behind, returning the ones to enqueue again.

        A PROCESSING row whose attempt started before ``cutoff`` goes back to
        PENDING, or to FAILED when it has no attempts or retries left. A PENDING
        row that already ran and has not moved since ``cutoff`` lost its retry
        item; it is returned so it can be pushed again.
        """
        stmt = select(Job).where(
            Job.type == job_type,
            or_(
                and_(Job.status == JobStatus.processing, Job.started_at < cutoff),
                and_(Job.status == JobStatus.pending, Job.attempts > 0, Job.updated_at < cutoff),
            ),
        )
        requeue: list[str] = []
        with self._session_factory() as db:
            for job in db.scalars(stmt).all():
                if job.status == JobStatus.pending:
                    guard = (Job.status == JobStatus.pending, Job.updated_at == job.updated_at)
                    values = {}
                elif job.retries_disabled or job.attempts >= job.max_attempts:
                    guard = (Job.status == JobStatus.processing, Job.started_at == job.started_at)
                    values = {
                        "status": JobStatus.failed,
                        "error": f"worker lost the job after {job.attempts} attempt(s)",
                        "finished_at": utcnow(),
                    }
                else:
                    guard = (Job.status == JobStatus.processing, Job.started_at == job.started_at)
                    values = {"status": JobStatus.pending, "last_error": "worker lost the job while processing"}

                res = db.execute(
                    update(Job)
                    .where(Job.id == job.id, *guard)
                    .values(updated_at=utcnow(), **values)
                    .execution_options(synchronize_session=False)
                )
                db.commit()
                if res.rowcount == 1 and values.get("status") != JobStatus.failed:
                    requeue.append(job.id)
            if not requeue:
                return []
            return [JobSnapshot.from_job(j) for j in db.scalars(select(Job).where(Job.id.in_(requeue)))]

    def ping(self) -> None:
        with self._session_factory() as db:
            db.execute(text("SELECT 1"))
