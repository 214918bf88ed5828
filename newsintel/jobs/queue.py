"""
Job queue with one worker pool per job type.

Each type has its own priority queue, concurrency and retry policy. Higher
priority runs first and ties keep enqueue order. A failed attempt is retried
after an exponential backoff until ``max_attempts`` is reached, then the job
is dead-lettered; a ``ValidationError`` dead-letters immediately.

Job records and the index of unfinished jobs are written to a ``JobStore``.
Only unfinished jobs stay in memory; ``recover`` requeues whatever a previous
process left waiting, delayed or running.
"""

import asyncio
import itertools
import time
from collections import Counter
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple, Union

from pydantic import BaseModel
from pydantic import ValidationError as PayloadError

from newsintel.core.config import QueueConfig, QueuePolicy
from newsintel.core.errors import QueueStopped, ValidationError
from newsintel.core.logging import get_logger
from newsintel.core.telemetry import Telemetry
from newsintel.core.time import Clock

from .models import PAYLOAD_MODELS, Job, JobResult, JobState, JobType
from .store import JobStore, MemoryJobStore, pending_score

logger = get_logger(__name__)

Handler = Callable[[Job], Awaitable[Any]]


class JobQueue:
    """Priority queues, worker pools, retries and dead-lettering per job type."""

    def __init__(
        self,
        config: Optional[QueueConfig] = None,
        store: Optional[JobStore] = None,
        telemetry: Optional[Telemetry] = None,
        clock: Optional[Clock] = None,
    ):
        self.config = config or QueueConfig()
        self.store = store or MemoryJobStore(max_finished=self.config.finished_history)
        self.telemetry = telemetry or Telemetry()
        self.clock = clock or Clock()
        self.handlers: Dict[JobType, Handler] = {}
        # unfinished jobs only; finished ones are read back from the store
        self.jobs: Dict[str, Job] = {}
        self.accepting = True
        self._queues: Dict[JobType, asyncio.PriorityQueue] = {}
        self._seq = itertools.count()
        self._workers: List[asyncio.Task] = []
        self._retry_tasks: Set[asyncio.Task] = set()
        self._health_task: Optional[asyncio.Task] = None
        self._waiters: Dict[str, asyncio.Event] = {}
        self._finished: Counter = Counter()
        self._failed_attempts: Counter = Counter()
        self._daily_date = ""
        self._daily: Dict[str, Counter] = {"processed": Counter(), "failed": Counter()}
    # --- setup -----------------------------------------------------------

    def policy(self, job_type: JobType) -> QueuePolicy:
        return self.config.policies.get(job_type.value, QueuePolicy())

    def register(self, job_type: Union[JobType, str], handler: Handler) -> None:
        self.handlers[JobType(job_type)] = handler

    def _queue(self, job_type: JobType) -> asyncio.PriorityQueue:
        if job_type not in self._queues:
            self._queues[job_type] = asyncio.PriorityQueue()
        return self._queues[job_type]

    @property
    def running(self) -> bool:
        return any(not w.done() for w in self._workers)

    def start(self, health_checks: bool = True) -> None:
        """Spawn the worker pools for every registered job type."""
        if self.running:
            return
        for job_type in self.handlers:
            for index in range(self.policy(job_type).concurrency):
                task = asyncio.create_task(self._worker(job_type, index), name=f"{job_type.value}-worker-{index}")
                self._workers.append(task)
        if health_checks and self.config.health_check_interval_seconds > 0:
            self._health_task = asyncio.create_task(self._health_loop(), name="queue-health")
        self.accepting = True
        logger.info(f"Job queue started with {len(self._workers)} workers across {len(self.handlers)} job types")


    async def recover(self) -> int:
        """
        Requeue the unfinished jobs recorded in the store.

        Jobs that were running when the previous process stopped run again;
        delayed retries run without waiting out the rest of their backoff.
        Returns the number of jobs requeued.
        """
        recovered = 0
        for job_type in JobType:
            for job_id in await self.store.pending(job_type.value):
                if job_id in self.jobs:
                    continue
                record = await self.store.load(job_id)
                if record is None:
                    await self.store.clear_pending(job_type.value, job_id)
                    continue
                job = Job.from_dict(record)
                if job.finished:
                    await self.store.clear_pending(job_type.value, job_id)
                    continue
                self.jobs[job.id] = job
                self._waiters[job.id] = asyncio.Event()
                self._put(job)
                recovered += 1
        if recovered:
            logger.info(f"Recovered {recovered} unfinished jobs from the job store")
        return recovered

    # --- enqueue ---------------------------------------------------------

    async def add(
        self,
        job_type: Union[JobType, str],
        payload: Union[BaseModel, Dict[str, Any]],
        priority: int = 0,
        job_id: Optional[str] = None,
    ) -> Job:
        """
        Enqueue a job.

        The payload is validated when a worker picks the job up, so a
        malformed payload ends in the dead letter state rather than raising
        here.

        Raises:
            QueueStopped: the queue is not accepting work
            ValidationError: unknown job type or duplicate job id
        """
        if not self.accepting:
            raise QueueStopped("Job queue is not accepting new jobs")
        try:
            job_type = JobType(job_type)
        except ValueError as e:
            raise ValidationError(f"Unknown job type: {job_type}") from e
        job_id = job_id or f"{job_type.value}_{int(self.clock.now().timestamp() * 1000)}_{next(self._seq)}"
        if job_id in self.jobs:
            raise ValidationError(f"Job {job_id} is already queued")

        job = Job(
            id=job_id,
            type=job_type,
            payload=payload,
            priority=priority,
            max_attempts=self.policy(job_type).max_attempts,
            created_at=self.clock.now(),
        )
        self.jobs[job_id] = job
        self._waiters[job_id] = asyncio.Event()
        self._put(job)
        self.telemetry.increment("queue.jobs.added", tags={"type": job_type.value})
        await self._persist(job, pending=True)
        logger.debug(f"Queued {job_type.value} job {job_id} (priority {priority})")
        return job

    def _put(self, job: Job) -> None:
        job.state = JobState.WAITING
        self._queue(job.type).put_nowait((-job.priority, next(self._seq), job.id))

    # --- processing ------------------------------------------------------

    async def _worker(self, job_type: JobType, index: int) -> None:
        queue = self._queue(job_type)
        while True:
            _, _, job_id = await queue.get()
            try:
                job = self.jobs.get(job_id)
                if job is not None and job.state == JobState.WAITING:
                    await self.process(job)
            except Exception as e:
                logger.error(f"{job_type.value} worker {index} failed on {job_id}: {e}")
            finally:
                queue.task_done()

    def _parse_payload(self, job: Job) -> BaseModel:
        model = PAYLOAD_MODELS[job.type]
        if isinstance(job.payload, model):
            return job.payload
        raw = job.payload.model_dump() if isinstance(job.payload, BaseModel) else job.payload
        try:
            return model.model_validate(raw)
        except PayloadError as e:
            raise ValidationError(f"Invalid {job.type.value} payload: {e.error_count()} error(s)",
                                  details={"errors": e.errors(include_url=False)}) from e

    async def process(self, job: Job) -> JobResult:
        """Run one attempt of ``job`` and apply the retry policy."""
        handler = self.handlers.get(job.type)
        job.state = JobState.ACTIVE
        job.attempts += 1
        job.started_at = self.clock.now()
        start_time = time.time()
        tags = {"type": job.type.value}
        logger.info(f"Processing {job.type.value} job {job.id} (attempt {job.attempts}/{job.max_attempts})")

        try:
            if handler is None:
                raise ValidationError(f"No handler registered for {job.type.value}")
            job.payload = self._parse_payload(job)
            data = await asyncio.wait_for(handler(job), timeout=self.config.job_timeout_seconds)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            processing_time = time.time() - start_time
            if isinstance(e, asyncio.TimeoutError):
                message = f"timed out after {self.config.job_timeout_seconds}s"
            else:
                message = str(e) or type(e).__name__
            job.errors.append(message)
            job.result = JobResult(False, error=message, processing_time=processing_time, timestamp=self.clock.now())
            self._failed_attempts[job.type.value] += 1
            self._count_daily("failed", job.type)
            self.telemetry.increment("queue.jobs.failed", tags=tags)
            retryable = not isinstance(e, ValidationError)
            if retryable and job.attempts < job.max_attempts:
                self._schedule_retry(job)
                await self._persist(job, pending=True)
            else:
                await self._dead_letter(job, message)
            return job.result

        processing_time = time.time() - start_time
        job.state = JobState.COMPLETED
        job.progress = 100
        job.finished_at = self.clock.now()
        job.result = JobResult(True, data=data, processing_time=processing_time, timestamp=job.finished_at)
        self._count_daily("processed", job.type)
        self.telemetry.increment("queue.jobs.completed", tags=tags)
        self.telemetry.timing("queue.processing_time", processing_time, tags=tags)
        logger.info(f"{job.type.value} job {job.id} completed in {processing_time:.2f}s")
        await self._finish(job)
        return job.result

    def backoff_delay(self, job: Job) -> float:
        """Exponential backoff: base * 2^(attempt - 1)."""
        return self.policy(job.type).backoff_base_seconds * (2 ** (job.attempts - 1))

    def _schedule_retry(self, job: Job) -> None:
        job.state = JobState.FAILED
        delay = self.backoff_delay(job)
        logger.warning(f"{job.type.value} job {job.id} failed ({job.errors[-1]}), retrying in {delay:.1f}s")
        task = asyncio.create_task(self._retry_after(job, delay))
        self._retry_tasks.add(task)
        task.add_done_callback(self._retry_tasks.discard)

    async def _retry_after(self, job: Job, delay: float) -> None:
        await asyncio.sleep(delay)
        if job.state != JobState.FAILED:
            return
        if not self.accepting:
            await self._dead_letter(job, "queue stopped before retry")
            return
        self._put(job)

    async def _dead_letter(self, job: Job, reason: str) -> None:
        job.state = JobState.DEAD_LETTER
        job.finished_at = self.clock.now()
        self.telemetry.increment("queue.jobs.dead_lettered", tags={"type": job.type.value})
        logger.error(f"{job.type.value} job {job.id} moved to dead letter after {job.attempts} attempt(s): {reason}")
        await self._finish(job)

    async def _finish(self, job: Job) -> None:
        self._finished[(job.type.value, job.state.value)] += 1
        self.jobs.pop(job.id, None)
        await self._persist(job, pending=False)
        waiter = self._waiters.pop(job.id, None)
        if waiter is not None:
            waiter.set()

    async def _persist(self, job: Job, pending: bool) -> None:
        try:
            if pending:
                await self.store.mark_pending(
                    job.type.value, job.id, pending_score(job.priority, int(job.created_at.timestamp() * 1000))
                )
            else:
                await self.store.clear_pending(job.type.value, job.id)
            await self.store.save(job.to_dict())
        except Exception as e:
            logger.warning(f"Could not record job {job.id}: {e}")

    # --- lookup ----------------------------------------------------------

    async def wait_for(self, job_id: str, timeout: Optional[float] = None) -> Job:
        """
        Wait until a job completes or is dead-lettered.

        Raises:
            asyncio.TimeoutError: still running after ``timeout`` seconds
            KeyError: unknown job id
        """
        job = self.jobs.get(job_id)
        if job is None:
            record = await self.store.load(job_id)
            if record is None:
                raise KeyError(job_id)
            return Job.from_dict(record)
        waiter = self._waiters.get(job_id)
        if waiter is not None and not job.finished:
            await asyncio.wait_for(waiter.wait(), timeout=timeout)
        return job

    async def get_job(self, job_id: str) -> Optional[Dict[str, Any]]:
        if job_id in self.jobs:
            return self.jobs[job_id].to_dict()
        return await self.store.load(job_id)

    # --- statistics and health ---------------------------------------------

    def _count_daily(self, kind: str, job_type: JobType) -> None:
        today = self.clock.now().strftime("%Y-%m-%d")
        if today != self._daily_date:
            self._daily_date = today
            self._daily = {"processed": Counter(), "failed": Counter()}
        self._daily[kind][job_type.value] += 1

    def daily_counts(self) -> Dict[str, Dict[str, int]]:
        if self.clock.now().strftime("%Y-%m-%d") != self._daily_date:
            return {"processed": {}, "failed": {}}
        return {kind: dict(counts) for kind, counts in self._daily.items()}

    def stats(self) -> Dict[str, Dict[str, Any]]:
        live: Dict[Tuple[str, str], int] = Counter(
            (job.type.value, job.state.value) for job in self.jobs.values()
        )
        daily = self.daily_counts()
        stats = {}
        for job_type in JobType:
            name = job_type.value
            stats[name] = {
                "waiting": live[(name, JobState.WAITING.value)],
                "active": live[(name, JobState.ACTIVE.value)],
                "delayed": live[(name, JobState.FAILED.value)],
                "completed": self._finished[(name, JobState.COMPLETED.value)],
                "failed": self._failed_attempts[name],
                "dead_lettered": self._finished[(name, JobState.DEAD_LETTER.value)],
                "daily_processed": daily["processed"].get(name, 0),
                "daily_failed": daily["failed"].get(name, 0),
                "avg_processing_time": self.telemetry.timing_stats("queue.processing_time", tags={"type": name})["avg"],
            }
        return stats

    def waiting_count(self) -> int:
        return sum(1 for job in self.jobs.values() if job.state == JobState.WAITING)

    def health_check(self) -> List[str]:
        """Log an alert for backlogs and failure spikes; never throttles."""
        alerts = []
        for name, s in self.stats().items():
            if s["waiting"] > self.config.backlog_high_water:
                alerts.append(f"{name}: {s['waiting']} jobs waiting")
            if s["failed"] > self.config.failed_alert_threshold:
                alerts.append(f"{name}: {s['failed']} failed attempts")
        for alert in alerts:
            logger.warning(f"Queue health alert - {alert}")
        return alerts

    async def _health_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.health_check_interval_seconds)
            try:
                self.health_check()
            except Exception as e:
                logger.error(f"Queue health check failed: {e}")

    # --- shutdown --------------------------------------------------------

    async def emergency_stop(self) -> int:
        """Stop accepting jobs and clear everything not yet running."""
        self.accepting = False
        cleared = 0
        for job_type, queue in self._queues.items():
            while not queue.empty():
                _, _, job_id = queue.get_nowait()
                queue.task_done()
                job = self.jobs.get(job_id)
                if job is not None and job.state == JobState.WAITING:
                    await self._dead_letter(job, "cleared by emergency stop")
                    cleared += 1
        for task in list(self._retry_tasks):
            task.cancel()
        for job in list(self.jobs.values()):
            if job.state == JobState.FAILED:
                await self._dead_letter(job, "cleared by emergency stop")
                cleared += 1
        logger.warning(f"Emergency stop: cleared {cleared} queued jobs, active jobs will finish")
        return cleared

    def resume(self) -> None:
        self.accepting = True
        logger.info("Job queue accepting jobs again")

    async def close(self, drain_timeout: Optional[float] = 30.0) -> None:
        """
        Stop accepting, let queued work drain, then stop the workers.

        Delayed retries and anything still running stay pending in the store
        for ``recover`` in the next process.
        """
        self.accepting = False
        if self._health_task is not None:
            self._health_task.cancel()
        if self.running and self._queues:
            try:
                await asyncio.wait_for(
                    asyncio.gather(*(q.join() for q in self._queues.values())), timeout=drain_timeout
                )
            except asyncio.TimeoutError:
                logger.warning(f"Job queue did not drain within {drain_timeout}s")
        tasks = list(self._retry_tasks) + self._workers
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        if self.jobs:
            logger.info(f"Left {len(self.jobs)} unfinished jobs in the job store")
        self._workers = []
        logger.info("Job queue closed")
