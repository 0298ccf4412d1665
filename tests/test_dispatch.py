"""
Dispatch queue tests: FIFO claiming, ack/fail bookkeeping, bounded retries
with backoff, the failure log, and the async worker pool.
"""
import asyncio

import pytest

from config import DispatchPolicy
from conftest import assert_invariants, fetch
from dispatch import DispatchQueue, Dispatcher
from errors import ConcurrencyConflict, RepositoryUnavailable
from models import JobStatus, MatchJob, RequestStatus, RideRequest


class FlakyEngine:
    """Fails the first `failures` calls, then delegates."""

    def __init__(self, engine, failures, exc=RepositoryUnavailable):
        self.engine = engine
        self.failures = failures
        self.exc = exc
        self.calls = 0

    def match(self, request_id):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.exc("database is locked")
        return self.engine.match(request_id)


class FlakyAckQueue(DispatchQueue):
    """Raises on the first `failures` acks, then records them normally."""

    def __init__(self, repository, policy, failures):
        super().__init__(repository, policy)
        self.failures = failures
        self.ack_calls = 0

    def ack(self, job, result=None):
        self.ack_calls += 1
        if self.ack_calls <= self.failures:
            raise RepositoryUnavailable("database is locked")
        return super().ack(job, result)


def jobs(repo):
    with repo.session() as session:
        return session.query(MatchJob).order_by(MatchJob.id).all()


# ────────────────────────── queue bookkeeping ───────────────────────────────

def test_claim_is_fifo(repo, policy):
    queue = DispatchQueue(repo, policy)
    ids = [queue.enqueue(r) for r in (11, 12, 13)]
    claimed = [queue.claim().id for _ in ids]
    assert claimed == ids
    assert queue.claim() is None


def test_claim_marks_running_and_counts_attempts(repo, policy):
    queue = DispatchQueue(repo, policy)
    queue.enqueue(5)
    job = queue.claim()
    assert job.status == JobStatus.RUNNING
    assert job.attempts == 1
    assert not queue.has_ready()


def test_delayed_job_not_ready(repo, policy):
    queue = DispatchQueue(repo, policy)
    queue.enqueue(5, delay_seconds=60)
    assert queue.claim() is None


def test_ack_removes_job(repo, policy):
    queue = DispatchQueue(repo, policy)
    queue.enqueue(5)
    queue.ack(queue.claim())
    assert jobs(repo) == []


def test_fail_requeues_until_attempts_exhausted(repo):
    queue = DispatchQueue(repo, DispatchPolicy(max_attempts=2, backoff_seconds=0.0))
    queue.enqueue(5)
    assert queue.fail(queue.claim(), ConcurrencyConflict("lost race")) == JobStatus.QUEUED
    job = queue.claim()
    assert job.attempts == 2
    assert queue.fail(job, ConcurrencyConflict("lost race again")) == JobStatus.FAILED
    [failed] = queue.failed_jobs()
    assert failed.attempts == 2
    assert failed.last_error == "ConcurrencyConflict: lost race again"


def test_fail_schedules_backoff(repo):
    queue = DispatchQueue(repo, DispatchPolicy(backoff_seconds=30.0))
    queue.enqueue(5)
    queue.fail(queue.claim(), RepositoryUnavailable("down"))
    [job] = jobs(repo)
    assert job.status == JobStatus.QUEUED
    assert (job.next_run_at - job.updated_at).total_seconds() > 25
    assert queue.claim() is None


def test_failure_log_is_bounded(repo):
    queue = DispatchQueue(repo, DispatchPolicy(failed_retention=2))
    for r in range(4):
        queue.enqueue(r)
    for _ in range(4):
        queue.fail(queue.claim(), ValueError("boom"), retryable=False)
    failed = queue.failed_jobs()
    assert len(failed) == 2
    assert {j.request_id for j in failed} == {2, 3}


def test_recover_requeues_running_jobs(repo, policy):
    queue = DispatchQueue(repo, policy)
    queue.enqueue(5)
    queue.claim()
    assert queue.recover() == 1
    assert queue.claim().attempts == 2


# ────────────────────────── worker pool ─────────────────────────────────────

@pytest.mark.asyncio
async def test_drain_matches_request(repo, engine, policy, make_request, make_driver):
    make_driver()
    a = make_request()
    queue = DispatchQueue(repo, policy)
    queue.enqueue(a.id)
    await Dispatcher(queue, engine).drain()
    assert fetch(repo, RideRequest, a.id).status == RequestStatus.MATCHED
    assert jobs(repo) == []


@pytest.mark.asyncio
async def test_no_match_is_success(repo, engine, policy, make_request):
    a = make_request()
    queue = DispatchQueue(repo, policy)
    queue.enqueue(a.id)
    await Dispatcher(queue, engine).drain()
    assert fetch(repo, RideRequest, a.id).status == RequestStatus.PENDING
    assert jobs(repo) == []
    assert queue.failed_jobs() == []


@pytest.mark.asyncio
async def test_unknown_request_fails_without_retry(repo, engine, policy):
    queue = DispatchQueue(repo, policy)
    queue.enqueue(404)
    await Dispatcher(queue, engine).drain()
    [failed] = queue.failed_jobs()
    assert failed.attempts == 1
    assert failed.last_error.startswith("NotFound")


@pytest.mark.asyncio
async def test_transient_errors_are_retried(repo, engine, policy, make_request, make_driver):
    make_driver()
    a = make_request()
    flaky = FlakyEngine(engine, failures=2)
    queue = DispatchQueue(repo, policy)
    queue.enqueue(a.id)
    await Dispatcher(queue, flaky, workers=1).drain()
    assert flaky.calls == 3
    assert fetch(repo, RideRequest, a.id).status == RequestStatus.MATCHED
    assert jobs(repo) == []


@pytest.mark.asyncio
async def test_exhausted_job_lands_in_failure_log(repo, engine, make_request):
    a = make_request()
    flaky = FlakyEngine(engine, failures=100, exc=ConcurrencyConflict)
    queue = DispatchQueue(repo, DispatchPolicy(max_attempts=3, backoff_seconds=0.0))
    queue.enqueue(a.id)
    await Dispatcher(queue, flaky, workers=1).drain()
    assert flaky.calls == 3
    [failed] = queue.failed_jobs()
    assert failed.status == JobStatus.FAILED
    assert failed.attempts == 3


@pytest.mark.asyncio
async def test_unmatched_request_can_be_requeued(repo, engine, make_request):
    a = make_request()
    queue = DispatchQueue(repo, DispatchPolicy(unmatched_retry_seconds=60.0))
    queue.enqueue(a.id)
    await Dispatcher(queue, engine, workers=1).drain()
    [job] = jobs(repo)
    assert job.status == JobStatus.QUEUED
    assert job.attempts == 0
    assert (job.next_run_at - job.updated_at).total_seconds() > 55


@pytest.mark.asyncio
async def test_started_dispatcher_picks_up_new_jobs(repo, engine, policy, make_request, make_driver):
    make_driver()
    queue = DispatchQueue(repo, policy)
    dispatcher = Dispatcher(queue, engine)
    await dispatcher.start()
    try:
        a = make_request()
        queue.enqueue(a.id)
        for _ in range(200):
            if fetch(repo, RideRequest, a.id).status == RequestStatus.MATCHED:
                break
            await asyncio.sleep(0.02)
    finally:
        await dispatcher.stop()
    assert fetch(repo, RideRequest, a.id).status == RequestStatus.MATCHED
    assert_invariants(repo)


@pytest.mark.asyncio
async def test_ack_error_is_retried(repo, engine, policy, make_request, make_driver):
    make_driver()
    a = make_request()
    queue = FlakyAckQueue(repo, policy, failures=1)
    queue.enqueue(a.id)
    assert await Dispatcher(queue, engine, workers=1).process_one()
    assert queue.ack_calls == 2
    assert jobs(repo) == []
    assert fetch(repo, RideRequest, a.id).status == RequestStatus.MATCHED


@pytest.mark.asyncio
async def test_job_is_requeued_when_ack_keeps_failing(repo, engine, policy, make_request, make_driver):
    make_driver()
    a = make_request()
    queue = FlakyAckQueue(repo, policy, failures=100)
    queue.enqueue(a.id)
    assert await Dispatcher(queue, engine, workers=1).process_one()
    [job] = jobs(repo)
    assert job.status == JobStatus.QUEUED
    assert job.attempts == 1
    assert job.last_error == "RepositoryUnavailable: database is locked"
    assert queue.has_ready()

    # once storage recovers the rerun finds the request matched and acks
    queue.failures = 0
    await Dispatcher(queue, engine, workers=1).drain()
    assert jobs(repo) == []
    assert fetch(repo, RideRequest, a.id).status == RequestStatus.MATCHED
    assert_invariants(repo)


@pytest.mark.asyncio
async def test_worker_loop_requires_start(repo, engine, policy):
    dispatcher = Dispatcher(DispatchQueue(repo, policy), engine)
    with pytest.raises(RuntimeError):
        await dispatcher._loop("worker-0")
