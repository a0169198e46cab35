"""
Durable job queue with retry and exponential backoff.

Jobs move waiting -> active -> completed, or back to delayed when the handler
raises. After ``max_attempts`` failures a job is parked in the failed set and
kept for inspection. Delayed jobs are promoted by the workers themselves, so
backoff never blocks the caller that enqueued the job.
"""
import asyncio
import heapq
import inspect
import json
import logging
import time
import uuid
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import asdict, dataclass, field
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Tuple

import redis.asyncio as redis

logger = logging.getLogger(__name__)

WAITING = "waiting"
ACTIVE = "active"
DELAYED = "delayed"
COMPLETED = "completed"
FAILED = "failed"

EVENTS = ("completed", "failed", "retrying")


@dataclass
class Job:
    id: str
    data: Dict[str, Any]
    max_attempts: int = 3
    attempts_made: int = 0  # failed attempts so far
    status: str = WAITING
    created_at: float = field(default_factory=time.time)
    failed_reason: Optional[str] = None

    @property
    def attempt_number(self) -> int:
        """1-based number of the attempt currently running"""
        return self.attempts_made + 1

    def to_json(self) -> str:
        return json.dumps(asdict(self))

    @classmethod
    def from_json(cls, raw: str) -> "Job":
        return cls(**json.loads(raw))


JobHandler = Callable[[Job], Awaitable[Any]]


class JobQueue(ABC):
    """
    Worker pool, retry and event logic shared by the queue backends.

    Subclasses only implement storage of jobs and their state transitions.
    """

    def __init__(
        self,
        name: str,
        attempts: int = 3,
        backoff_seconds: float = 1.0,
        poll_interval: float = 0.5,
        clock: Callable[[], float] = time.time,
    ):
        self.name = name
        self.attempts = attempts
        self.backoff_seconds = backoff_seconds
        self.poll_interval = poll_interval
        self._clock = clock
        self._listeners: Dict[str, List[Callable]] = {event: [] for event in EVENTS}
        self._workers: List[asyncio.Task] = []
        self.running = False

    def backoff_delay(self, attempts_made: int) -> float:
        """Delay before the next attempt: base, 2*base, 4*base, ..."""
        return self.backoff_seconds * (2 ** (attempts_made - 1))

    def on(self, event: str, callback: Callable) -> None:
        """
        Register a listener.

        ``completed`` receives (job, result); ``failed`` and ``retrying``
        receive (job, error). Listeners may be plain or async functions.
        """
        if event not in self._listeners:
            raise ValueError(f"Unknown queue event: {event}")
        self._listeners[event].append(callback)

    async def _emit(self, event: str, job: Job, payload: Any = None) -> None:
        for callback in self._listeners[event]:
            try:
                result = callback(job, payload)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"[Queue:{self.name}] {event} listener failed for job {job.id}: {e}")

    async def enqueue(self, data: Dict[str, Any], attempts: Optional[int] = None) -> Job:
        """Add a job and return its handle"""
        job = Job(
            id=uuid.uuid4().hex,
            data=data,
            max_attempts=attempts or self.attempts,
            created_at=self._clock(),
        )
        await self._push(job)
        logger.debug(f"[Queue:{self.name}] Enqueued job {job.id}")
        return job

    def process(self, handler: JobHandler, concurrency: int = 1) -> None:
        """
        Start ``concurrency`` workers running ``handler`` for each job.

        The handler signals failure by raising; the queue then schedules a
        retry or parks the job as failed.
        """
        if self.running:
            raise RuntimeError(f"Queue {self.name} is already processing")

        self.running = True
        self._workers = [
            asyncio.create_task(self._worker_loop(handler, index))
            for index in range(max(1, concurrency))
        ]
        logger.info(f"[Queue:{self.name}] Started {len(self._workers)} worker(s)")

    async def _worker_loop(self, handler: JobHandler, index: int) -> None:
        while self.running:
            try:
                job = await self._reserve()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"[Queue:{self.name}] Worker {index} failed to reserve a job: {e}")
                await asyncio.sleep(self.poll_interval)
                continue

            if job is None:
                await asyncio.sleep(self.poll_interval)
                continue

            try:
                await self._run_job(handler, job)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                # Job stays in active; RedisJobQueue.requeue_active recovers it at startup
                logger.error(f"[Queue:{self.name}] Worker {index} failed to record job {job.id}: {e}")
                await asyncio.sleep(self.poll_interval)

    async def run_once(self, handler: JobHandler) -> bool:
        """
        Process at most one ready job in the current task.

        Returns:
            True if a job was processed
        """
        job = await self._reserve()
        if job is None:
            return False
        await self._run_job(handler, job)
        return True

    async def _run_job(self, handler: JobHandler, job: Job) -> None:
        try:
            result = await handler(job)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            await self._handle_failure(job, e)
            return

        job.status = COMPLETED
        job.failed_reason = None
        await self._complete(job)
        logger.info(f"[Queue:{self.name}] Job {job.id} completed on attempt {job.attempt_number}")
        await self._emit("completed", job, result)

    async def _handle_failure(self, job: Job, error: Exception) -> None:
        job.attempts_made += 1
        job.failed_reason = str(error) or type(error).__name__

        if job.attempts_made < job.max_attempts:
            delay = self.backoff_delay(job.attempts_made)
            job.status = DELAYED
            await self._schedule(job, self._clock() + delay)
            logger.warning(
                f"[Queue:{self.name}] Job {job.id} failed attempt "
                f"{job.attempts_made}/{job.max_attempts}, retrying in {delay:.1f}s: {job.failed_reason}"
            )
            await self._emit("retrying", job, error)
            return

        job.status = FAILED
        await self._park_failed(job)
        logger.error(
            f"[Queue:{self.name}] Job {job.id} failed after {job.attempts_made} attempts: {job.failed_reason}"
        )
        await self._emit("failed", job, error)

    async def close(self) -> None:
        """Stop the workers and release the backend"""
        self.running = False
        for task in self._workers:
            task.cancel()
        for task in self._workers:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._workers = []
        logger.info(f"[Queue:{self.name}] Stopped")

    # Storage primitives
    @abstractmethod
    async def _push(self, job: Job) -> None:
        ...

    @abstractmethod
    async def _reserve(self) -> Optional[Job]:
        """Promote due delayed jobs, then take the oldest waiting job"""

    @abstractmethod
    async def _complete(self, job: Job) -> None:
        ...

    @abstractmethod
    async def _schedule(self, job: Job, ready_at: float) -> None:
        ...

    @abstractmethod
    async def _park_failed(self, job: Job) -> None:
        ...

    @abstractmethod
    async def get_job(self, job_id: str) -> Optional[Job]:
        ...

    @abstractmethod
    async def get_failed(self) -> List[Job]:
        ...

    @abstractmethod
    async def retry_failed(self, job_id: str) -> bool:
        """Move a parked job back to waiting with its attempts reset"""

    @abstractmethod
    async def counts(self) -> Dict[str, int]:
        ...


class InMemoryJobQueue(JobQueue):
    """Process-local queue for development and tests"""

    def __init__(self, name: str = "sms", **kwargs):
        super().__init__(name, **kwargs)
        self._jobs: Dict[str, Job] = {}
        self._waiting: Deque[str] = deque()
        self._delayed: List[Tuple[float, str]] = []
        self._active: set = set()
        self._failed: List[str] = []

    async def _push(self, job: Job) -> None:
        self._jobs[job.id] = job
        self._waiting.append(job.id)

    def _promote_due(self) -> None:
        now = self._clock()
        while self._delayed and self._delayed[0][0] <= now:
            _, job_id = heapq.heappop(self._delayed)
            self._jobs[job_id].status = WAITING
            self._waiting.append(job_id)

    async def _reserve(self) -> Optional[Job]:
        self._promote_due()
        if not self._waiting:
            return None
        job = self._jobs[self._waiting.popleft()]
        job.status = ACTIVE
        self._active.add(job.id)
        return job

    async def _complete(self, job: Job) -> None:
        self._active.discard(job.id)
        self._jobs.pop(job.id, None)

    async def _schedule(self, job: Job, ready_at: float) -> None:
        self._active.discard(job.id)
        heapq.heappush(self._delayed, (ready_at, job.id))

    async def _park_failed(self, job: Job) -> None:
        self._active.discard(job.id)
        self._failed.append(job.id)

    async def get_job(self, job_id: str) -> Optional[Job]:
        return self._jobs.get(job_id)

    async def get_failed(self) -> List[Job]:
        return [self._jobs[job_id] for job_id in self._failed]

    async def retry_failed(self, job_id: str) -> bool:
        if job_id not in self._failed:
            return False
        self._failed.remove(job_id)
        job = self._jobs[job_id]
        job.attempts_made = 0
        job.status = WAITING
        self._waiting.append(job_id)
        return True

    async def counts(self) -> Dict[str, int]:
        return {
            WAITING: len(self._waiting),
            ACTIVE: len(self._active),
            DELAYED: len(self._delayed),
            FAILED: len(self._failed),
        }


# Move due delayed jobs to the waiting list in one step
_PROMOTE_DUE = """
local ids = redis.call('ZRANGEBYSCORE', KEYS[1], '-inf', ARGV[1], 'LIMIT', 0, ARGV[2])
for _, id in ipairs(ids) do
    redis.call('ZREM', KEYS[1], id)
    redis.call('LPUSH', KEYS[2], id)
end
return #ids
"""


class RedisJobQueue(JobQueue):
    """
    Redis-backed queue.

    Keys under ``queue:{name}``: ``waiting`` and ``active`` lists, a
    ``delayed`` sorted set scored by ready time, a ``failed`` list and one
    ``job:{id}`` JSON record per job.
    """

    PROMOTE_BATCH = 100

    def __init__(self, client: "redis.Redis", name: str = "sms", **kwargs):
        super().__init__(name, **kwargs)
        self._redis = client
        self._prefix = f"queue:{name}"
        self._promote_script = client.register_script(_PROMOTE_DUE)

    def _key(self, suffix: str) -> str:
        return f"{self._prefix}:{suffix}"

    def _job_key(self, job_id: str) -> str:
        return self._key(f"job:{job_id}")

    async def _push(self, job: Job) -> None:
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.set(self._job_key(job.id), job.to_json())
            pipe.lpush(self._key("waiting"), job.id)
            await pipe.execute()

    async def _reserve(self) -> Optional[Job]:
        await self._promote_script(
            keys=[self._key("delayed"), self._key("waiting")],
            args=[self._clock(), self.PROMOTE_BATCH],
        )
        job_id = await self._redis.lmove(self._key("waiting"), self._key("active"), "RIGHT", "LEFT")
        if job_id is None:
            return None

        raw = await self._redis.get(self._job_key(job_id))
        if raw is None:
            logger.warning(f"[Queue:{self.name}] Job record {job_id} missing, dropping id")
            await self._redis.lrem(self._key("active"), 1, job_id)
            return None

        job = Job.from_json(raw)
        job.status = ACTIVE
        return job

    async def _complete(self, job: Job) -> None:
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.lrem(self._key("active"), 1, job.id)
            pipe.delete(self._job_key(job.id))
            await pipe.execute()

    async def _schedule(self, job: Job, ready_at: float) -> None:
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.set(self._job_key(job.id), job.to_json())
            pipe.zadd(self._key("delayed"), {job.id: ready_at})
            pipe.lrem(self._key("active"), 1, job.id)
            await pipe.execute()

    async def _park_failed(self, job: Job) -> None:
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.set(self._job_key(job.id), job.to_json())
            pipe.lpush(self._key("failed"), job.id)
            pipe.lrem(self._key("active"), 1, job.id)
            await pipe.execute()

    async def get_job(self, job_id: str) -> Optional[Job]:
        raw = await self._redis.get(self._job_key(job_id))
        return Job.from_json(raw) if raw else None

    async def get_failed(self) -> List[Job]:
        job_ids = await self._redis.lrange(self._key("failed"), 0, -1)
        jobs = []
        for job_id in job_ids:
            job = await self.get_job(job_id)
            if job is not None:
                jobs.append(job)
        return jobs

    async def retry_failed(self, job_id: str) -> bool:
        job = await self.get_job(job_id)
        if job is None or not await self._redis.lrem(self._key("failed"), 1, job_id):
            return False
        job.attempts_made = 0
        job.status = WAITING
        await self._push(job)
        return True

    async def requeue_active(self) -> int:
        """
        Return jobs left in the active list by a crashed worker to waiting.

        Only call at startup, before any worker of this queue is running.
        """
        moved = 0
        while await self._redis.lmove(self._key("active"), self._key("waiting"), "RIGHT", "LEFT"):
            moved += 1
        if moved:
            logger.warning(f"[Queue:{self.name}] Requeued {moved} stalled job(s)")
        return moved

    async def counts(self) -> Dict[str, int]:
        async with self._redis.pipeline(transaction=False) as pipe:
            pipe.llen(self._key("waiting"))
            pipe.llen(self._key("active"))
            pipe.zcard(self._key("delayed"))
            pipe.llen(self._key("failed"))
            waiting, active, delayed, failed = await pipe.execute()
        return {WAITING: waiting, ACTIVE: active, DELAYED: delayed, FAILED: failed}
