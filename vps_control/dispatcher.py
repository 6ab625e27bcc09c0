"""
VPS Control Job Dispatcher
==========================

Named asyncio queues with per-queue concurrency, idempotent enqueue,
exponential-backoff retries and a failure hook per queue.

Flow for one job:
    enqueue -> pending -> active -> completed
                            |
                            +-> delayed -> pending -> active ... (retryable error)
                            +-> failed -> on_failed hook (non-retryable or exhausted)

Unfinished jobs are written through the state store so recover() can put
them back on their queues after a restart.
"""

import asyncio
import logging
from collections import deque
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Set, Tuple

from .config import QueueConfig
from .errors import ValidationError, is_retryable
from .jobs import (
    Job,
    JobPayload,
    JobState,
    PowerPayload,
    ProvisionPayload,
    QueueName,
    RetryPolicy,
    SnapshotPayload,
)
from .models import utcnow
from .store import StateStore

logger = logging.getLogger(__name__)

JobHandler = Callable[[Any], Awaitable[Any]]
FailureHook = Callable[[Job, BaseException], Awaitable[None]]


class _QueueState:
    """Runtime state for one named queue."""

    def __init__(self, name: QueueName, concurrency: int, policy: RetryPolicy, keep_completed: int, keep_failed: int):
        self.name = name
        self.concurrency = concurrency
        self.policy = policy
        self.pending: "asyncio.Queue[Job]" = asyncio.Queue()
        self.handler: Optional[JobHandler] = None
        self.on_failed: Optional[FailureHook] = None
        self.workers: List[asyncio.Task] = []
        self.completed: Deque[Job] = deque(maxlen=keep_completed)
        self.failed: Deque[Job] = deque(maxlen=keep_failed)


class JobDispatcher:
    """Runs typed jobs on their queues."""

    def __init__(
        self,
        store: StateStore,
        queue_config: Optional[QueueConfig] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.store = store
        self._sleep = sleep
        queue_config = queue_config or QueueConfig()

        self._queues: Dict[QueueName, _QueueState] = {}
        for name in QueueName:
            settings = queue_config.settings_for(name.value)
            self._queues[name] = _QueueState(
                name,
                settings.concurrency,
                RetryPolicy.from_settings(settings),
                settings.keep_completed,
                settings.keep_failed,
            )

        # Unfinished jobs by id, and by idempotency key
        self._jobs: Dict[str, Job] = {}
        self._keys: Dict[str, str] = {}
        self._lock = asyncio.Lock()

        self._retry_tasks: Set[asyncio.Task] = set()
        self._outstanding = 0
        self._idle = asyncio.Event()
        self._idle.set()
        self._running = False

    # =========================================
    # REGISTRATION
    # =========================================

    def register(self, queue: QueueName, handler: JobHandler, on_failed: Optional[FailureHook] = None) -> None:
        """Attach the handler (and optional exhaustion hook) for a queue."""
        state = self._queues[queue]
        state.handler = handler
        state.on_failed = on_failed

    @staticmethod
    def queue_for(payload: JobPayload) -> QueueName:
        if isinstance(payload, ProvisionPayload):
            return QueueName.PROVISION
        if isinstance(payload, PowerPayload):
            return QueueName.POWER
        if isinstance(payload, SnapshotPayload):
            return QueueName.SNAPSHOT
        raise ValidationError(f"Unsupported job payload: {type(payload).__name__}")

    # =========================================
    # ENQUEUE
    # =========================================

    async def enqueue(self, payload: JobPayload, idempotency_key: Optional[str] = None) -> Job:
        """
        Queue a job.

        While a job with the same idempotency key is pending, delayed or
        active, the existing job is returned and nothing new is queued.
        """
        job, _ = await self.submit(payload, idempotency_key)
        return job

    async def submit(self, payload: JobPayload, idempotency_key: Optional[str] = None) -> Tuple[Job, bool]:
        """Like enqueue, also reporting whether a new job was created."""
        queue = self.queue_for(payload)
        state = self._queues[queue]

        async with self._lock:
            if idempotency_key and idempotency_key in self._keys:
                existing = self._jobs[self._keys[idempotency_key]]
                logger.info(
                    f"Duplicate {queue.value} job for key {idempotency_key}, returning {existing.id}",
                    extra={"job_id": existing.id, "queue": queue.value},
                )
                return existing, False

            job = Job(queue=queue, payload=payload, policy=state.policy, idempotency_key=idempotency_key)
            await self.store.save_job(job)
            self._track(job)

        state.pending.put_nowait(job)
        logger.info(f"Enqueued {queue.value} job {job.id}", extra={"job_id": job.id, "queue": queue.value})
        return job, True

    def _track(self, job: Job) -> None:
        self._jobs[job.id] = job
        if job.idempotency_key:
            self._keys[job.idempotency_key] = job.id
        self._outstanding += 1
        self._idle.clear()

    async def recover(self) -> int:
        """Re-queue every unfinished job found in the state store."""
        recovered = 0
        async with self._lock:
            for job in await self.store.list_unfinished_jobs():
                if job.id in self._jobs:
                    continue
                if job.idempotency_key and job.idempotency_key in self._keys:
                    continue
                job.state = JobState.PENDING
                self._track(job)
                self._queues[job.queue].pending.put_nowait(job)
                recovered += 1

        if recovered:
            logger.info(f"Recovered {recovered} unfinished jobs")
        return recovered

    # =========================================
    # LOOKUP
    # =========================================

    def get_job(self, job_id: str) -> Optional[Job]:
        """An unfinished job, or one still in the retention window."""
        job = self._jobs.get(job_id)
        if job:
            return job
        for state in self._queues.values():
            for finished in list(state.completed) + list(state.failed):
                if finished.id == job_id:
                    return finished
        return None

    def recent(self, queue: QueueName) -> Dict[str, List[Job]]:
        state = self._queues[queue]
        return {"completed": list(state.completed), "failed": list(state.failed)}

    def stats(self) -> Dict[str, Dict[str, int]]:
        counts: Dict[str, Dict[str, int]] = {}
        for name, state in self._queues.items():
            unfinished = [j for j in self._jobs.values() if j.queue == name]
            counts[name.value] = {
                "pending": sum(1 for j in unfinished if j.state == JobState.PENDING),
                "active": sum(1 for j in unfinished if j.state == JobState.ACTIVE),
                "delayed": sum(1 for j in unfinished if j.state == JobState.DELAYED),
                "completed": len(state.completed),
                "failed": len(state.failed),
            }
        return counts

    # =========================================
    # WORKERS
    # =========================================

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        for state in self._queues.values():
            if state.handler is None:
                logger.warning(f"No handler registered for {state.name.value} queue, not starting workers")
                continue
            for index in range(state.concurrency):
                state.workers.append(
                    asyncio.create_task(self._worker(state), name=f"{state.name.value}-worker-{index}")
                )
        logger.info("Job dispatcher started")

    async def stop(self) -> None:
        """Cancel workers and pending retries. Unfinished jobs stay in the store."""
        tasks: List[asyncio.Task] = list(self._retry_tasks)
        for state in self._queues.values():
            tasks.extend(state.workers)
            state.workers = []
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._retry_tasks.clear()
        self._running = False
        logger.info("Job dispatcher stopped")

    async def drain(self) -> None:
        """Wait until every queued job has finished."""
        await self._idle.wait()

    async def _worker(self, state: _QueueState) -> None:
        while True:
            job = await state.pending.get()
            try:
                await self._run(state, job)
            except Exception:
                logger.exception(f"Unexpected dispatcher failure on job {job.id}", extra={"job_id": job.id})
            finally:
                state.pending.task_done()

    async def _run(self, state: _QueueState, job: Job) -> None:
        """One attempt. The job always ends up completed, delayed or failed."""
        try:
            await self._attempt(state, job)
        except Exception as e:
            logger.exception(f"Dispatcher bookkeeping failed on job {job.id}", extra={"job_id": job.id})
            if job.id in self._jobs and job.state == JobState.ACTIVE:
                job.last_error = str(e) or type(e).__name__
                await self._fail(state, job, e)

    async def _attempt(self, state: _QueueState, job: Job) -> None:
        log_extra = {"job_id": job.id, "queue": job.queue.value}

        job.state = JobState.ACTIVE
        job.attempts += 1
        job.updated_at = utcnow()
        await self._persist(job)
        logger.info(f"Running {job.queue.value} job {job.id} (attempt {job.attempts}/{job.policy.max_attempts})", extra=log_extra)

        try:
            await asyncio.wait_for(state.handler(job.payload), timeout=job.policy.timeout)
        except asyncio.TimeoutError:
            error: BaseException = asyncio.TimeoutError(f"Job exceeded its {job.policy.timeout:.0f}s timeout")
        except Exception as e:
            error = e
        else:
            job.state = JobState.COMPLETED
            job.last_error = None
            await self._finish(state, job)
            logger.info(f"Completed {job.queue.value} job {job.id}", extra=log_extra)
            return

        job.last_error = str(error) or type(error).__name__

        if not is_retryable(error):
            logger.error(f"Job {job.id} failed permanently: {job.last_error}", extra=log_extra)
            await self._fail(state, job, error)
            return

        if job.attempts >= job.policy.max_attempts:
            logger.error(f"Job {job.id} exhausted {job.attempts} attempts: {job.last_error}", extra=log_extra)
            await self._fail(state, job, error)
            return

        delay = job.policy.delay_for(job.attempts)
        job.delays.append(delay)
        job.state = JobState.DELAYED
        job.updated_at = utcnow()
        await self._persist(job)
        logger.warning(f"Job {job.id} attempt {job.attempts} failed, retrying in {delay:.1f}s: {job.last_error}", extra=log_extra)

        task = asyncio.create_task(self._requeue_later(state, job, delay))
        self._retry_tasks.add(task)
        task.add_done_callback(self._retry_tasks.discard)

    async def _requeue_later(self, state: _QueueState, job: Job, delay: float) -> None:
        await self._sleep(delay)
        job.state = JobState.PENDING
        job.updated_at = utcnow()
        await self._persist(job)
        state.pending.put_nowait(job)

    async def _persist(self, job: Job) -> None:
        """Write job state through to the store. The in-memory job stays authoritative."""
        try:
            await self.store.save_job(job)
        except Exception:
            logger.exception(
                f"Could not persist job {job.id} as {job.state.value}",
                extra={"job_id": job.id, "queue": job.queue.value},
            )

    async def _fail(self, state: _QueueState, job: Job, error: BaseException) -> None:
        job.state = JobState.FAILED
        if state.on_failed is not None:
            try:
                await state.on_failed(job, error)
            except Exception:
                logger.exception(f"Failure hook raised for job {job.id}", extra={"job_id": job.id})
        await self._finish(state, job)

    async def _finish(self, state: _QueueState, job: Job) -> None:
        job.finished_at = utcnow()
        job.updated_at = job.finished_at
        try:
            await self.store.delete_job(job.id)
        except Exception:
            logger.exception(f"Could not remove finished job {job.id} from the store", extra={"job_id": job.id})

        async with self._lock:
            self._jobs.pop(job.id, None)
            if job.idempotency_key and self._keys.get(job.idempotency_key) == job.id:
                del self._keys[job.idempotency_key]

        if job.state == JobState.COMPLETED:
            state.completed.append(job)
        else:
            state.failed.append(job)

        self._outstanding -= 1
        if self._outstanding <= 0:
            self._outstanding = 0
            self._idle.set()
