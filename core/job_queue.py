# core/job_queue.py
"""Typed background job queue with per-kind handlers and bounded retries.

Jobs are addressed by ``(queue_name, job_type)``. Each registered kind gets its
own asyncio worker pool, so concurrency is bounded per queue. Job records are
mirrored into Redis hashes through the cache store so work still queued when
the process stops is picked up again by :meth:`JobQueue.recover`.

State machine::

    queued -> processing -> completed
                         -> queued        (retryable failure, after backoff)
                         -> failed        (attempts exhausted or client error; dead-lettered)

A ``GatewayError`` with a 4xx status fails the same way on every attempt, so it
is dead-lettered at once instead of being retried.
"""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any

import structlog

from core.cache_store import RedisCacheStore, utc_now_iso
from core.exceptions import GatewayError

logger = structlog.get_logger(__name__)

JobHandler = Callable[["Job"], Awaitable[Any]]

EMBEDDING_QUEUE = "embedding-processing"
UPDATE_EMBEDDINGS = "update-embeddings"
WORLD_STATE_QUEUE = "world-state-processing"
UPDATE_WORLD_STATE = "update-world-state"


def is_retryable(error: Exception) -> bool:
    return not (isinstance(error, GatewayError) and error.status_code < 500)


class JobStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class RetryPolicy:
    max_attempts: int = 3
    backoff_seconds: float = 2.0

    def delay_for(self, attempts_made: int) -> float:
        """Exponential backoff: base, 2*base, 4*base, ..."""
        return self.backoff_seconds * (2 ** max(attempts_made - 1, 0))


@dataclass
class Job:
    queue_name: str
    job_type: str
    payload: dict[str, Any]
    max_attempts: int
    backoff_seconds: float
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    status: JobStatus = JobStatus.QUEUED
    attempts_made: int = 0
    error: str | None = None
    result: Any = None
    created_at: str = field(default_factory=utc_now_iso)
    finished_at: str | None = None

    def to_record(self) -> dict[str, Any]:
        record = asdict(self)
        record["status"] = self.status.value
        record.pop("result", None)
        return record

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> Job:
        data = dict(record)
        data["status"] = JobStatus(data.get("status", JobStatus.QUEUED.value))
        return cls(**data)


class JobHandle:
    """Reference to an enqueued job; :meth:`wait` is the completion signal."""

    def __init__(self, job: Job, done: asyncio.Event):
        self.job = job
        self._done = done

    @property
    def id(self) -> str:
        return self.job.id

    @property
    def status(self) -> JobStatus:
        return self.job.status

    async def wait(self, timeout: float | None = None) -> Job:
        """Block until the job completes or fails terminally."""
        await asyncio.wait_for(self._done.wait(), timeout=timeout)
        return self.job


@dataclass
class _Registration:
    handler: JobHandler
    concurrency: int
    policy: RetryPolicy
    queue: asyncio.Queue = field(default_factory=asyncio.Queue)
    workers: list[asyncio.Task] = field(default_factory=list)


class JobQueue:
    """In-process worker pools keyed by job kind."""

    def __init__(
        self,
        cache: RedisCacheStore | None = None,
        default_concurrency: int = 5,
        default_policy: RetryPolicy | None = None,
    ):
        self._cache = cache
        self.default_concurrency = default_concurrency
        self.default_policy = default_policy or RetryPolicy()
        self._registrations: dict[tuple[str, str], _Registration] = {}
        self._pending: dict[tuple[str, str], list[Job]] = {}
        self._done_events: dict[str, asyncio.Event] = {}
        self._jobs: dict[str, Job] = {}
        self._timers: set[asyncio.Task] = set()
        self._running = False
        self._stats = {"enqueued": 0, "completed": 0, "failed": 0, "retried": 0}

    @property
    def is_running(self) -> bool:
        return self._running

    def register_processor(
        self,
        queue_name: str,
        job_type: str,
        handler: JobHandler,
        concurrency: int | None = None,
        policy: RetryPolicy | None = None,
    ) -> None:
        key = (queue_name, job_type)
        if key in self._registrations:
            raise ValueError(f"Processor already registered for {queue_name}/{job_type}")
        registration = _Registration(
            handler=handler,
            concurrency=max(1, concurrency or self.default_concurrency),
            policy=policy or self.default_policy,
        )
        self._registrations[key] = registration
        for job in self._pending.pop(key, []):
            registration.queue.put_nowait(job)
        if self._running:
            self._spawn_workers(key, registration)
        logger.info(
            f"Registered processor for {queue_name}/{job_type}",
            concurrency=registration.concurrency,
            max_attempts=registration.policy.max_attempts,
        )

    async def enqueue(
        self,
        queue_name: str,
        job_type: str,
        payload: dict[str, Any],
        max_attempts: int | None = None,
        backoff_seconds: float | None = None,
    ) -> JobHandle:
        key = (queue_name, job_type)
        registration = self._registrations.get(key)
        policy = registration.policy if registration else self.default_policy
        job = Job(
            queue_name=queue_name,
            job_type=job_type,
            payload=payload,
            max_attempts=max_attempts or policy.max_attempts,
            backoff_seconds=backoff_seconds if backoff_seconds is not None else policy.backoff_seconds,
        )
        handle = self._track(job)
        await self._persist(job)
        self._dispatch(job)
        self._stats["enqueued"] += 1
        logger.debug(f"Enqueued job {job.id}", queue=queue_name, job_type=job_type)
        return handle

    def get_job(self, job_id: str) -> Job | None:
        return self._jobs.get(job_id)

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        for key, registration in self._registrations.items():
            self._spawn_workers(key, registration)
        recovered = await self.recover()
        logger.info(f"Job queue started with {len(self._registrations)} processors", recovered=recovered)

    async def stop(self) -> None:
        self._running = False
        for timer in list(self._timers):
            timer.cancel()
        workers = [w for reg in self._registrations.values() for w in reg.workers]
        for worker in workers:
            worker.cancel()
        await asyncio.gather(*workers, *self._timers, return_exceptions=True)
        for registration in self._registrations.values():
            registration.workers.clear()
        self._timers.clear()
        logger.info("Job queue stopped.")

    async def recover(self) -> int:
        """Re-dispatch persisted jobs that never reached a terminal state."""
        if self._cache is None:
            return 0
        recovered = 0
        for queue_name in {q for q, _ in self._registrations}:
            records = await self._cache.hgetall(self._jobs_key(queue_name))
            for job_id, record in records.items():
                if job_id in self._jobs:
                    continue
                try:
                    job = Job.from_record(record)
                except (TypeError, ValueError) as e:
                    logger.warning(f"Skipping unreadable job record {job_id}: {e}", queue=queue_name)
                    continue
                if job.status in (JobStatus.COMPLETED, JobStatus.FAILED):
                    continue
                job.status = JobStatus.QUEUED
                self._track(job)
                self._dispatch(job)
                recovered += 1
        return recovered

    def get_statistics(self) -> dict[str, Any]:
        return {
            **self._stats,
            "running": self._running,
            "queues": {
                f"{q}/{t}": {"waiting": reg.queue.qsize(), "concurrency": reg.concurrency}
                for (q, t), reg in self._registrations.items()
            },
        }

    # ------------------------------------------------------------------
    # internals
    # ------------------------------------------------------------------

    def _track(self, job: Job) -> JobHandle:
        done = asyncio.Event()
        self._done_events[job.id] = done
        self._jobs[job.id] = job
        return JobHandle(job, done)

    def _dispatch(self, job: Job) -> None:
        key = (job.queue_name, job.job_type)
        registration = self._registrations.get(key)
        if registration is None:
            self._pending.setdefault(key, []).append(job)
            return
        registration.queue.put_nowait(job)

    def _spawn_workers(self, key: tuple[str, str], registration: _Registration) -> None:
        for index in range(registration.concurrency - len(registration.workers)):
            name = f"job-worker:{key[0]}:{key[1]}:{index}"
            registration.workers.append(asyncio.create_task(self._worker(registration), name=name))

    async def _worker(self, registration: _Registration) -> None:
        while True:
            job: Job = await registration.queue.get()
            try:
                await self._run_job(job, registration)
            finally:
                registration.queue.task_done()

    async def _run_job(self, job: Job, registration: _Registration) -> None:
        job.status = JobStatus.PROCESSING
        job.attempts_made += 1
        await self._persist(job)
        try:
            job.result = await registration.handler(job)
        except asyncio.CancelledError:
            job.status = JobStatus.QUEUED
            await self._persist(job)
            raise
        except Exception as e:
            job.error = str(e)
            if job.attempts_made < job.max_attempts and is_retryable(e):
                delay = RetryPolicy(job.max_attempts, job.backoff_seconds).delay_for(job.attempts_made)
                job.status = JobStatus.QUEUED
                await self._persist(job)
                self._stats["retried"] += 1
                logger.warning(
                    f"Job {job.id} failed (attempt {job.attempts_made}/{job.max_attempts}), retrying in {delay:.1f}s: {e}",
                    queue=job.queue_name,
                    job_type=job.job_type,
                )
                self._schedule_retry(job, registration, delay)
            else:
                await self._fail_terminally(job)
            return

        job.status = JobStatus.COMPLETED
        job.error = None
        job.finished_at = utc_now_iso()
        self._stats["completed"] += 1
        if self._cache is not None:
            await self._cache.hdel(self._jobs_key(job.queue_name), job.id)
        self._finish(job)

    def _schedule_retry(self, job: Job, registration: _Registration, delay: float) -> None:
        async def _requeue() -> None:
            await asyncio.sleep(delay)
            registration.queue.put_nowait(job)

        timer = asyncio.create_task(_requeue())
        self._timers.add(timer)
        timer.add_done_callback(self._timers.discard)

    async def _fail_terminally(self, job: Job) -> None:
        job.status = JobStatus.FAILED
        job.finished_at = utc_now_iso()
        self._stats["failed"] += 1
        payload = job.payload
        logger.error(
            f"Job {job.id} failed permanently after {job.attempts_made} attempts: {job.error}",
            queue=job.queue_name,
            job_type=job.job_type,
            entity_type=payload.get("contentType") or payload.get("entityType"),
            entity_id=payload.get("entityId"),
            novel_id=payload.get("novelId"),
        )
        if self._cache is not None:
            await self._cache.hset(self._failed_key(job.queue_name), job.id, job.to_record())
            await self._cache.hdel(self._jobs_key(job.queue_name), job.id)
        self._finish(job)

    def _finish(self, job: Job) -> None:
        done = self._done_events.pop(job.id, None)
        if done is not None:
            done.set()
        self._jobs.pop(job.id, None)

    async def _persist(self, job: Job) -> None:
        if self._cache is not None:
            await self._cache.hset(self._jobs_key(job.queue_name), job.id, job.to_record())

    @staticmethod
    def _jobs_key(queue_name: str) -> str:
        return f"queue:{queue_name}:jobs"

    @staticmethod
    def _failed_key(queue_name: str) -> str:
        return f"queue:{queue_name}:failed"
