import threading
from datetime import timedelta

import pytest

from quillqueue.errors import InvalidTransition, JobNotFound
from quillqueue.models import JobStatus, JobType, utcnow
from quillqueue.store import ClaimResult

PAYLOAD = {"keywords": ["wellness"], "tone": "warm", "target_audience": "professionals", "count": 3}

def _new(store, **kw):
    return store.create(JobType.title_generation, PAYLOAD, max_attempts=3, **kw)

def test_create_starts_pending(store):
    job_id = _new(store)
    job = store.get(job_id)
    assert job.status == JobStatus.pending
    assert job.type == JobType.title_generation
    assert job.payload == PAYLOAD
    assert job.attempts == 0
    assert job.result is None and job.error is None
    assert job.created_at is not None and job.updated_at is not None

def test_get_unknown_returns_none(store):
    assert store.get("nope") is None

def test_claim_increments_attempts(store):
    job_id = _new(store)
    assert store.transition_to_processing(job_id) == ClaimResult.claimed
    job = store.get(job_id)
    assert job.status == JobStatus.processing
    assert job.attempts == 1
    assert job.started_at is not None

def test_second_claim_is_rejected(store):
    job_id = _new(store)
    assert store.transition_to_processing(job_id) == ClaimResult.claimed
    assert store.transition_to_processing(job_id) == ClaimResult.already_processing
    assert store.get(job_id).attempts == 1

def test_concurrent_claims_yield_exactly_one_winner(store):
    for _ in range(5):
        job_id = _new(store)
        barrier = threading.Barrier(2)
        results = []

        def claim():
            barrier.wait()
            results.append(store.transition_to_processing(job_id))

        threads = [threading.Thread(target=claim) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sorted(r.value for r in results) == ["already_processing", "claimed"]
        assert store.get(job_id).attempts == 1

def test_claim_unknown_and_finished(store):
    assert store.transition_to_processing("missing") == ClaimResult.not_found
    job_id = _new(store)
    store.transition_to_processing(job_id)
    store.complete(job_id, ["A"])
    assert store.transition_to_processing(job_id) == ClaimResult.finished

def test_complete_sets_result(store):
    job_id = _new(store)
    store.transition_to_processing(job_id)
    store.complete(job_id, ["A", "B"])
    job = store.get(job_id)
    assert job.status == JobStatus.completed
    assert job.result == ["A", "B"]
    assert job.error is None
    assert job.finished_at is not None

def test_complete_requires_processing(store):
    job_id = _new(store)
    with pytest.raises(InvalidTransition):
        store.complete(job_id, ["A"])
    with pytest.raises(JobNotFound):
        store.complete("missing", ["A"])

def test_fail_sets_error_and_is_terminal(store):
    job_id = _new(store)
    store.transition_to_processing(job_id)
    store.fail(job_id, "boom")
    job = store.get(job_id)
    assert job.status == JobStatus.failed
    assert job.error == "boom"
    assert job.result is None

    with pytest.raises(InvalidTransition):
        store.complete(job_id, ["A"])
    with pytest.raises(InvalidTransition):
        store.fail(job_id, "again")
    assert store.get(job_id).error == "boom"

def test_completed_job_cannot_fail(store):
    job_id = _new(store)
    store.transition_to_processing(job_id)
    store.complete(job_id, ["A"])
    with pytest.raises(InvalidTransition):
        store.fail(job_id, "late")
    assert store.get(job_id).status == JobStatus.completed

def test_release_returns_to_pending_for_retry(store):
    job_id = _new(store)
    store.transition_to_processing(job_id)
    assert store.release(job_id, "overloaded") is True
    job = store.get(job_id)
    assert job.status == JobStatus.pending
    assert job.last_error == "overloaded"
    assert job.error is None
    assert store.transition_to_processing(job_id) == ClaimResult.claimed
    assert store.get(job_id).attempts == 2

def test_release_refused_when_retries_disabled(store):
    job_id = _new(store)
    store.transition_to_processing(job_id)
    store.disable_retries(job_id)
    assert store.release(job_id, "overloaded") is False
    assert store.get(job_id).status == JobStatus.processing

def test_release_requires_processing(store):
    job_id = _new(store)
    with pytest.raises(InvalidTransition):
        store.release(job_id, "x")

def test_disable_retries_leaves_terminal_jobs_alone(store):
    job_id = _new(store)
    store.transition_to_processing(job_id)
    store.complete(job_id, ["A"])
    before = store.get(job_id)
    after = store.disable_retries(job_id)
    assert after.retries_disabled is False
    assert after.updated_at == before.updated_at
    with pytest.raises(JobNotFound):
        store.disable_retries("missing")

def test_create_many_links_source(store):
    parent = _new(store)
    ids = store.create_many(
        JobType.outline_generation,
        [{"title": "A", "keywords": []}, {"title": "B", "keywords": []}],
        max_attempts=3,
        source_job_id=parent,
    )
    assert len(ids) == 2 and len(set(ids)) == 2
    children = store.list_jobs(source_job_id=parent)
    assert {c.payload["title"] for c in children} == {"A", "B"}
    assert all(c.source_job_id == parent and c.status == JobStatus.pending for c in children)

def test_list_jobs_filters(store):
    a = _new(store)
    _new(store)
    store.transition_to_processing(a)
    assert [j.id for j in store.list_jobs(status=JobStatus.processing)] == [a]
    assert len(store.list_jobs(job_type=JobType.title_generation)) == 2
    assert store.list_jobs(job_type=JobType.blog_generation) == []

def test_fail_can_be_restricted_to_pending(store):
    job_id = _new(store)
    store.transition_to_processing(job_id)
    with pytest.raises(InvalidTransition):
        store.fail(job_id, "stopped", allowed=(JobStatus.pending,))
    assert store.get(job_id).status == JobStatus.processing

def _future():
    return utcnow() + timedelta(seconds=5)

def test_recover_stalled_resets_abandoned_attempt(store):
    job_id = _new(store)
    store.transition_to_processing(job_id)
    recovered = store.recover_stalled(JobType.title_generation, _future())
    assert [j.id for j in recovered] == [job_id]
    job = store.get(job_id)
    assert job.status == JobStatus.pending
    assert job.last_error == "worker lost the job while processing"
    assert store.transition_to_processing(job_id) == ClaimResult.claimed
    assert store.get(job_id).attempts == 2

def test_recover_stalled_fails_job_without_attempts_left(store):
    job_id = store.create(JobType.title_generation, PAYLOAD, max_attempts=1)
    store.transition_to_processing(job_id)
    assert store.recover_stalled(JobType.title_generation, _future()) == []
    job = store.get(job_id)
    assert job.status == JobStatus.failed
    assert job.error == "worker lost the job after 1 attempt(s)"

def test_recover_stalled_leaves_recent_and_fresh_jobs(store):
    running = _new(store)
    store.transition_to_processing(running)
    never_ran = _new(store)
    assert store.recover_stalled(JobType.title_generation, utcnow() - timedelta(minutes=10)) == []
    assert store.recover_stalled(JobType.outline_generation, _future()) == []
    assert store.get(running).status == JobStatus.processing
    assert store.get(never_ran).status == JobStatus.pending

def test_recover_stalled_returns_released_job_that_lost_its_retry(store):
    job_id = _new(store)
    store.transition_to_processing(job_id)
    store.release(job_id, "overloaded")
    recovered = store.recover_stalled(JobType.title_generation, _future())
    assert [j.id for j in recovered] == [job_id]
    assert store.get(job_id).status == JobStatus.pending
