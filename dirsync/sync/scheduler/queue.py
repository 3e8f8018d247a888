"""
Work Queues.

Durable delayed job queues keyed by job id, so enqueuing a job that is
already queued or in flight is a no-op. A Redis backend serves multiple
processes; the memory backend has the same semantics for a single
process and tests.
"""

import asyncio
import heapq
import json
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple

import redis.asyncio as redis

logger = logging.getLogger(__name__)


@dataclass
class Job:
    """Queued unit of work; the id is the operation id."""
    id: str
    queue: str
    payload: Dict[str, Any] = field(default_factory=dict)
    available_at: float = 0.0


class WorkQueue(ABC):
    """Abstract delayed work queue."""

    @abstractmethod
    async def enqueue(self, queue_name: str, job_id: str, payload: Dict[str, Any], delay: float = 0.0) -> bool:
        """
        Add a job unless one with the same id is queued or in flight.

        Returns:
            True if the job was added
        """
        pass

    @abstractmethod
    async def dequeue(self, queue_name: str, timeout: float = 1.0) -> Optional[Job]:
        """Take the earliest due job, waiting up to timeout seconds."""
        pass

    @abstractmethod
    async def ack(self, queue_name: str, job_id: str) -> None:
        """Mark a dequeued job finished, releasing its id."""
        pass

    @abstractmethod
    async def discard(self, queue_name: str, job_id: str) -> None:
        """Drop a job whether queued or in flight."""
        pass

    @abstractmethod
    async def size(self, queue_name: str) -> int:
        pass

    async def close(self) -> None:
        pass


class MemoryWorkQueue(WorkQueue):
    """In-process work queue."""

    def __init__(self, poll_interval: float = 0.01):
        self.poll_interval = poll_interval
        self._heaps: Dict[str, List[Tuple[float, int, str]]] = {}
        self._jobs: Dict[str, Dict[str, Job]] = {}
        self._in_flight: Dict[str, Set[str]] = {}
        self._counter = 0

    async def enqueue(self, queue_name: str, job_id: str, payload: Dict[str, Any], delay: float = 0.0) -> bool:
        jobs = self._jobs.setdefault(queue_name, {})
        in_flight = self._in_flight.setdefault(queue_name, set())
        if job_id in jobs or job_id in in_flight:
            return False

        available_at = time.monotonic() + max(0.0, delay)
        jobs[job_id] = Job(job_id, queue_name, dict(payload), available_at)
        self._counter += 1
        heapq.heappush(self._heaps.setdefault(queue_name, []), (available_at, self._counter, job_id))
        return True

    def _pop_due(self, queue_name: str) -> Optional[Job]:
        heap = self._heaps.get(queue_name, [])
        jobs = self._jobs.get(queue_name, {})
        now = time.monotonic()
        while heap and heap[0][0] <= now:
            _, _, job_id = heapq.heappop(heap)
            job = jobs.pop(job_id, None)
            if job is not None:
                self._in_flight.setdefault(queue_name, set()).add(job_id)
                return job
        return None

    async def dequeue(self, queue_name: str, timeout: float = 1.0) -> Optional[Job]:
        deadline = time.monotonic() + timeout
        while True:
            job = self._pop_due(queue_name)
            if job is not None:
                return job
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return None
            await asyncio.sleep(min(self.poll_interval, remaining))

    async def ack(self, queue_name: str, job_id: str) -> None:
        self._in_flight.get(queue_name, set()).discard(job_id)

    async def discard(self, queue_name: str, job_id: str) -> None:
        # Heap entries of discarded jobs are skipped on pop
        self._jobs.get(queue_name, {}).pop(job_id, None)
        self._in_flight.get(queue_name, set()).discard(job_id)

    async def size(self, queue_name: str) -> int:
        return len(self._jobs.get(queue_name, {}))


class RedisWorkQueue(WorkQueue):
    """
    Redis work queue.

    Each queue is a sorted set of job ids scored by due time. The job body
    lives under its own key, created with SET NX, which doubles as the
    dedupe marker until the job is acknowledged.
    """

    def __init__(
        self,
        client: Optional[redis.Redis] = None,
        redis_url: str = "redis://localhost:6379/0",
        key_prefix: str = "dirsync",
        job_ttl_seconds: int = 86400,
        poll_interval: float = 0.2
    ):
        self._redis = client or redis.from_url(redis_url, decode_responses=True)
        self.key_prefix = key_prefix
        self.job_ttl_seconds = job_ttl_seconds
        self.poll_interval = poll_interval

    def _queue_key(self, queue_name: str) -> str:
        return f"{self.key_prefix}:queue:{queue_name}"

    def _job_key(self, queue_name: str, job_id: str) -> str:
        return f"{self.key_prefix}:job:{queue_name}:{job_id}"

    @staticmethod
    def _text(value: Any) -> Any:
        return value.decode() if isinstance(value, bytes) else value

    async def enqueue(self, queue_name: str, job_id: str, payload: Dict[str, Any], delay: float = 0.0) -> bool:
        available_at = time.time() + max(0.0, delay)
        body = json.dumps({"payload": payload, "available_at": available_at}, default=str)
        added = await self._redis.set(self._job_key(queue_name, job_id), body, nx=True, ex=self.job_ttl_seconds)
        if not added:
            return False
        await self._redis.zadd(self._queue_key(queue_name), {job_id: available_at})
        return True

    async def _claim_due(self, queue_name: str) -> Optional[Job]:
        queue_key = self._queue_key(queue_name)
        due = await self._redis.zrangebyscore(queue_key, "-inf", time.time(), start=0, num=1)
        if not due:
            return None

        job_id = self._text(due[0])
        # ZREM decides the winner between competing consumers
        if await self._redis.zrem(queue_key, job_id) != 1:
            return None

        body = await self._redis.get(self._job_key(queue_name, job_id))
        if body is None:
            logger.warning(f"Job body missing for {queue_name}/{job_id}, dropping")
            return None
        data = json.loads(self._text(body))
        return Job(job_id, queue_name, data.get("payload", {}), data.get("available_at", 0.0))

    async def dequeue(self, queue_name: str, timeout: float = 1.0) -> Optional[Job]:
        deadline = time.monotonic() + timeout
        while True:
            job = await self._claim_due(queue_name)
            if job is not None:
                return job
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return None
            await asyncio.sleep(min(self.poll_interval, remaining))

    async def ack(self, queue_name: str, job_id: str) -> None:
        await self._redis.delete(self._job_key(queue_name, job_id))

    async def discard(self, queue_name: str, job_id: str) -> None:
        await self._redis.zrem(self._queue_key(queue_name), job_id)
        await self._redis.delete(self._job_key(queue_name, job_id))

    async def size(self, queue_name: str) -> int:
        return await self._redis.zcard(self._queue_key(queue_name))

    async def close(self) -> None:
        await self._redis.aclose()


JobHandler = Callable[[Job], Awaitable[Any]]


class QueueWorker:
    """
    Consumer pool for one queue.

    The handler returns an OperationOutcome-like object; outcomes whose
    ``retry_delay`` is set are re-enqueued with that delay after the ack.
    Can run inside a task or standalone in another process.
    """

    def __init__(
        self,
        queue: WorkQueue,
        queue_name: str,
        handler: JobHandler,
        concurrency: int = 1,
        poll_timeout: float = 0.5,
        on_outcome: Optional[Callable[[Any], None]] = None
    ):
        self.queue = queue
        self.queue_name = queue_name
        self.handler = handler
        self.concurrency = max(1, concurrency)
        self.poll_timeout = poll_timeout
        self.on_outcome = on_outcome
        self._stop_event = asyncio.Event()
        self._tasks: List[asyncio.Task] = []
        self.processed = 0

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    def start(self) -> None:
        if self.running:
            return
        self._stop_event.clear()
        self._tasks = [
            asyncio.create_task(self._consume(index), name=f"{self.queue_name}-worker-{index}")
            for index in range(self.concurrency)
        ]
        logger.info(f"Started {self.concurrency} workers on queue {self.queue_name}")

    async def stop(self) -> None:
        """Stop consuming; jobs being handled finish first."""
        self._stop_event.set()
        if self._tasks:
            await asyncio.gather(*self._tasks)
        self._tasks = []
        logger.info(f"Stopped workers on queue {self.queue_name} ({self.processed} jobs processed)")

    async def run(self, stop_event: Optional[asyncio.Event] = None) -> None:
        """Consume until stop_event (or stop()) is set."""
        self.start()
        if stop_event is not None:
            await stop_event.wait()
            await self.stop()
        else:
            await asyncio.gather(*self._tasks)

    async def _consume(self, index: int) -> None:
        while not self._stop_event.is_set():
            job = await self.queue.dequeue(self.queue_name, timeout=self.poll_timeout)
            if job is None:
                continue
            await self.process(job)

    async def process(self, job: Job) -> Any:
        try:
            outcome = await self.handler(job)
        except Exception as e:
            logger.error(f"Job {self.queue_name}/{job.id} handler error: {e}")
            await self.queue.ack(self.queue_name, job.id)
            return None

        await self.queue.ack(self.queue_name, job.id)
        self.processed += 1

        retry_delay = getattr(outcome, "retry_delay", None)
        if retry_delay is not None:
            await self.queue.enqueue(self.queue_name, job.id, job.payload, delay=retry_delay)

        if self.on_outcome is not None:
            self.on_outcome(outcome)
        return outcome
