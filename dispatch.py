"""
Match job queue and worker pool
===============================

Jobs live in the ``matchjob`` table so they survive restarts. Each job names
one ride request. Workers are asyncio tasks; the blocking repository and
matching calls run in Starlette's threadpool.

Job states
----------
* ``QUEUED``  waiting for ``next_run_at``.
* ``RUNNING`` claimed by a worker; ``attempts`` counts claims.
* ``FAILED``  attempts exhausted or a fatal error; kept in a bounded log.

Successful jobs are deleted. A "no match" outcome is a success. When the ack
itself cannot be written the job is failed and retried instead; a job whose
bookkeeping keeps failing stays RUNNING until ``recover`` runs.
"""

import asyncio
import logging
from datetime import timedelta
from typing import List, Optional

from starlette.concurrency import run_in_threadpool

from config import DispatchPolicy
from db import Repository
from errors import ConcurrencyConflict, NotFound, PoolingError, RepositoryUnavailable
from matching import MatchingEngine, MatchResult
from models import JobStatus, MatchJob, RequestStatus, RideRequest, utcnow

logger = logging.getLogger(__name__)

CLAIM_BATCH = 5
# tries for an ack or fail write before the job is left for recover()
BOOKKEEPING_ATTEMPTS = 5


class DispatchQueue:
    def __init__(self, repository: Repository, policy: Optional[DispatchPolicy] = None):
        self.repository = repository
        self.policy = policy or DispatchPolicy()

    def enqueue(self, request_id: int, delay_seconds: float = 0.0) -> int:
        with self.repository.unit_of_work() as session:
            job = MatchJob(
                request_id=request_id,
                next_run_at=utcnow() + timedelta(seconds=delay_seconds),
            )
            session.add(job)
            session.flush()
            return job.id

    def claim(self) -> Optional[MatchJob]:
        """Move the oldest ready job to RUNNING and return it, or None if nothing is ready."""
        repo = self.repository
        now = utcnow()
        with repo.unit_of_work() as session:
            candidates = (
                session.query(MatchJob)
                .filter(MatchJob.status == JobStatus.QUEUED, MatchJob.next_run_at <= now)
                .order_by(MatchJob.next_run_at, MatchJob.id)
                .limit(CLAIM_BATCH)
                .all()
            )
            for job in candidates:
                # another worker may claim the same row first
                if repo.guarded_update(session, MatchJob, job.id, job.version,
                                       status=JobStatus.RUNNING, attempts=job.attempts + 1):
                    session.refresh(job)
                    return job
        return None

    def has_ready(self) -> bool:
        with self.repository.session() as session:
            return (
                session.query(MatchJob)
                .filter(MatchJob.status == JobStatus.QUEUED, MatchJob.next_run_at <= utcnow())
                .count()
                > 0
            )

    def ack(self, job: MatchJob, result: Optional[MatchResult] = None):
        delay = self.policy.unmatched_retry_seconds
        with self.repository.unit_of_work() as session:
            if result is None and delay is not None and self._still_pending(session, job.request_id):
                # no-match retries do not consume attempts
                self.repository.guarded_update(
                    session, MatchJob, job.id, job.version,
                    status=JobStatus.QUEUED,
                    attempts=job.attempts - 1,
                    next_run_at=utcnow() + timedelta(seconds=delay),
                )
                logger.info("Job %s re-queued in %ss, request %s still pending", job.id, delay, job.request_id)
                return
            session.query(MatchJob).filter(MatchJob.id == job.id).delete(synchronize_session=False)

    def fail(self, job: MatchJob, exc: BaseException, retryable: bool = True) -> JobStatus:
        """Record a failed attempt; returns the job's new status."""
        error = f"{type(exc).__name__}: {exc}"
        retry = retryable and job.attempts < self.policy.max_attempts
        with self.repository.unit_of_work() as session:
            if retry:
                delay = self.policy.backoff(job.attempts)
                self.repository.guarded_update(
                    session, MatchJob, job.id, job.version,
                    status=JobStatus.QUEUED,
                    last_error=error,
                    next_run_at=utcnow() + timedelta(seconds=delay),
                )
                logger.warning("Job %s attempt %s failed (%s), retrying in %.1fs", job.id, job.attempts, error, delay)
                return JobStatus.QUEUED
            self.repository.guarded_update(
                session, MatchJob, job.id, job.version, status=JobStatus.FAILED, last_error=error
            )
            self._prune_failed(session)
        logger.error("Job %s for request %s failed after %s attempts: %s", job.id, job.request_id, job.attempts, error)
        return JobStatus.FAILED

    def failed_jobs(self) -> List[MatchJob]:
        with self.repository.session() as session:
            return (
                session.query(MatchJob)
                .filter(MatchJob.status == JobStatus.FAILED)
                .order_by(MatchJob.updated_at.desc(), MatchJob.id.desc())
                .all()
            )

    def recover(self) -> int:
        """Requeue jobs left RUNNING by a stopped process."""
        with self.repository.unit_of_work() as session:
            count = (
                session.query(MatchJob)
                .filter(MatchJob.status == JobStatus.RUNNING)
                .update(
                    {"status": JobStatus.QUEUED, "version": MatchJob.version + 1, "updated_at": utcnow()},
                    synchronize_session=False,
                )
            )
        if count:
            logger.info("Recovered %s running jobs", count)
        return count

    def _still_pending(self, session, request_id: int) -> bool:
        request = session.get(RideRequest, request_id)
        return request is not None and request.status == RequestStatus.PENDING

    def _prune_failed(self, session):
        stale = (
            session.query(MatchJob.id)
            .filter(MatchJob.status == JobStatus.FAILED)
            .order_by(MatchJob.updated_at.desc(), MatchJob.id.desc())
            .offset(self.policy.failed_retention)
            .all()
        )
        if stale:
            session.query(MatchJob).filter(MatchJob.id.in_([row.id for row in stale])).delete(synchronize_session=False)


class Dispatcher:
    """Bounded pool of worker tasks draining a DispatchQueue."""

    def __init__(self, queue: DispatchQueue, engine: MatchingEngine, workers: Optional[int] = None):
        self.queue = queue
        self.engine = engine
        self.workers = workers or queue.policy.workers
        self._tasks: List[asyncio.Task] = []
        self._stop_event: Optional[asyncio.Event] = None

    async def start(self):
        await run_in_threadpool(self.queue.recover)
        self._stop_event = asyncio.Event()
        self._tasks = [asyncio.create_task(self._loop(f"worker-{i}")) for i in range(self.workers)]
        logger.info("Dispatcher started with %s workers", self.workers)

    async def stop(self):
        if self._stop_event:
            self._stop_event.set()
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = []
        logger.info("Dispatcher stopped")

    async def drain(self):
        """Run the workers until no job is ready, then return."""
        await asyncio.gather(*(self._drain_worker(f"drain-{i}") for i in range(self.workers)))

    async def process_one(self, name: str = "worker") -> bool:
        """Claim and run a single job; False when none was ready."""
        job = await run_in_threadpool(self.queue.claim)
        if job is None:
            return False
        logger.debug("%s picked job %s (request %s, attempt %s)", name, job.id, job.request_id, job.attempts)
        try:
            result = await run_in_threadpool(self.engine.match, job.request_id)
        except NotFound as exc:
            await self._settle(job, self.queue.fail, exc, False)
            return True
        except Exception as exc:
            # conflicts and storage errors are retried with backoff
            await self._settle(job, self.queue.fail, exc, True)
            return True
        try:
            await self._settle(job, self.queue.ack, result)
        except PoolingError as exc:
            # run the job again; match skips requests that already left PENDING
            await self._settle(job, self.queue.fail, exc, True)
            return True
        if result is None:
            logger.info("Job %s: no match yet for request %s", job.id, job.request_id)
        else:
            logger.info("Job %s: request %s %s pool %s", job.id, job.request_id, result.kind.value.lower(), result.pool_id)
        return True

    async def _settle(self, job: MatchJob, call, *args):
        """Run ack or fail for `job`, retrying storage errors with the queue's backoff."""
        for attempt in range(1, BOOKKEEPING_ATTEMPTS + 1):
            try:
                return await run_in_threadpool(call, job, *args)
            except (ConcurrencyConflict, RepositoryUnavailable) as exc:
                if attempt == BOOKKEEPING_ATTEMPTS:
                    logger.error("Job %s bookkeeping gave up after %s tries: %s", job.id, attempt, exc)
                    raise
                logger.warning("Job %s bookkeeping failed (try %s): %s", job.id, attempt, exc)
                await asyncio.sleep(self.queue.policy.backoff(attempt))

    async def _drain_worker(self, name: str):
        while True:
            if await self.process_one(name):
                continue
            if not await run_in_threadpool(self.queue.has_ready):
                return

    async def _loop(self, name: str):
        if self._stop_event is None:
            raise RuntimeError("Dispatcher.start() must run before the worker loop")
        while not self._stop_event.is_set():
            try:
                worked = await self.process_one(name)
            except Exception:
                logger.exception("Unhandled error in %s", name)
                worked = False
            if worked:
                continue
            # wait for the poll interval or until stop is signalled
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.queue.policy.poll_seconds)
            except asyncio.TimeoutError:
                pass
