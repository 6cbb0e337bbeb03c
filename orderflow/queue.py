"""
Durable job queue contract plus the in-process backend.

A job id is unique per queue: enqueueing an id that already exists (in any
state, including completed) is a no-op that returns None. Leasing moves one
waiting job to active with a visibility deadline; a lease that expires before
complete/fail is reclaimed back to waiting. Backend for Redis: orderflow.redis_queue.
"""
import asyncio
import time
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, Field

from orderflow.models import utcnow


class QueueName(str, Enum):
    WEBHOOK_PROCESSING = "webhook-processing"
    CHANNEL_SYNC = "channel-sync"
    SHIPMENT_CREATE = "shipment-create"
    SHIPMENT_TRACKING = "shipment-tracking"


class JobType(str, Enum):
    CHANNEL_ORDER_UPSERT = "channel-order-upsert"
    CHANNEL_SYNC = "channel-sync"
    CARRIER_SHIPMENT = "carrier-shipment"
    SHIPMENT_TRACKING = "shipment-tracking"


# Job type -> queue it runs on
JOB_QUEUES: dict[JobType, QueueName] = {
    JobType.CHANNEL_ORDER_UPSERT: QueueName.WEBHOOK_PROCESSING,
    JobType.CHANNEL_SYNC: QueueName.CHANNEL_SYNC,
    JobType.CARRIER_SHIPMENT: QueueName.SHIPMENT_CREATE,
    JobType.SHIPMENT_TRACKING: QueueName.SHIPMENT_TRACKING,
}

JobStatus = Literal["waiting", "active", "delayed", "completed", "dead"]
FailOutcome = Literal["retry", "dead"]


@dataclass(frozen=True)
class QueuePolicy:
    concurrency: int = 1
    max_attempts: int = 3
    backoff_seconds: float = 1.0

    def backoff(self, attempts: int) -> float:
        """Delay before the next attempt once `attempts` attempts have failed."""
        if self.backoff_seconds <= 0:
            return 0.0
        return self.backoff_seconds * 2 ** max(attempts - 1, 0)


def policies_from_settings(settings) -> dict[str, QueuePolicy]:
    return {
        QueueName.WEBHOOK_PROCESSING.value: QueuePolicy(
            settings.webhook_concurrency, settings.webhook_max_attempts, settings.webhook_backoff_seconds
        ),
        QueueName.CHANNEL_SYNC.value: QueuePolicy(
            settings.channel_sync_concurrency, settings.channel_sync_max_attempts, settings.channel_sync_backoff_seconds
        ),
        QueueName.SHIPMENT_CREATE.value: QueuePolicy(
            settings.shipment_create_concurrency,
            settings.shipment_create_max_attempts,
            settings.shipment_create_backoff_seconds,
        ),
        QueueName.SHIPMENT_TRACKING.value: QueuePolicy(
            settings.shipment_tracking_concurrency,
            settings.shipment_tracking_max_attempts,
            settings.shipment_tracking_backoff_seconds,
        ),
    }


class Job(BaseModel):
    id: str
    queue: str
    type: str
    payload: dict[str, Any] = Field(default_factory=dict)
    attempts: int = 0
    max_attempts: int = 3
    status: JobStatus = "waiting"
    last_error: str | None = None
    result: dict[str, Any] | None = None
    created_at: datetime = Field(default_factory=utcnow)


class JobQueue(ABC):
    def __init__(self, policies: dict[str, QueuePolicy] | None = None, visibility_timeout: float = 300):
        self.policies = policies or {}
        self.visibility_timeout = visibility_timeout

    def policy(self, queue: str) -> QueuePolicy:
        return self.policies.get(queue, QueuePolicy())

    @property
    def queue_names(self) -> list[str]:
        return list(self.policies) or [q.value for q in QueueName]

    @abstractmethod
    async def enqueue(self, queue: str, job_type: str, payload: dict, job_id: str, delay: float = 0) -> Job | None:
        """Add a job unless one with the same id exists in the queue. Returns None on duplicate."""

    @abstractmethod
    async def lease(self, queue: str) -> Job | None:
        """Take the oldest waiting job, mark it active and count the attempt."""

    @abstractmethod
    async def complete(self, job: Job, result: dict | None = None) -> None: ...

    @abstractmethod
    async def fail(self, job: Job, error: str, retryable: bool = True) -> FailOutcome:
        """Schedule a retry with backoff, or dead-letter the job when it is not retryable or out of attempts."""

    @abstractmethod
    async def promote_due(self, queue: str) -> int:
        """Move delayed jobs whose time has come back to waiting."""

    @abstractmethod
    async def reclaim_expired(self, queue: str) -> int:
        """Requeue active jobs whose lease expired (worker died mid-attempt)."""

    @abstractmethod
    async def get_job(self, queue: str, job_id: str) -> Job | None: ...

    @abstractmethod
    async def stats(self, queue: str) -> dict[str, int]:
        """Counts of waiting / active / delayed / dead jobs."""

    @abstractmethod
    async def dead_letters(self, queue: str, limit: int = 100) -> list[Job]: ...

    @abstractmethod
    async def replay_dead_letters(self, queue: str, limit: int = 100) -> int:
        """Move up to `limit` dead jobs back to waiting with a fresh attempt budget."""

    async def close(self) -> None:
        pass


class MemoryJobQueue(JobQueue):
    """Single-process queue. Same state machine as the Redis backend."""

    def __init__(self, policies=None, visibility_timeout: float = 300, clock=time.time):
        super().__init__(policies, visibility_timeout)
        self._clock = clock
        self._lock = asyncio.Lock()
        self._jobs: dict[tuple[str, str], Job] = {}
        self._waiting: dict[str, deque[str]] = {}
        self._delayed: dict[str, dict[str, float]] = {}
        self._active: dict[str, dict[str, float]] = {}
        self._dead: dict[str, list[str]] = {}

    def _queues(self, queue: str):
        return (
            self._waiting.setdefault(queue, deque()),
            self._delayed.setdefault(queue, {}),
            self._active.setdefault(queue, {}),
            self._dead.setdefault(queue, []),
        )

    async def enqueue(self, queue, job_type, payload, job_id, delay=0):
        async with self._lock:
            if (queue, job_id) in self._jobs:
                return None
            waiting, delayed, _, _ = self._queues(queue)
            job = Job(
                id=job_id,
                queue=queue,
                type=job_type,
                payload=payload,
                max_attempts=self.policy(queue).max_attempts,
            )
            if delay > 0:
                job.status = "delayed"
                delayed[job_id] = self._clock() + delay
            else:
                waiting.append(job_id)
            self._jobs[(queue, job_id)] = job
            return job.model_copy(deep=True)

    async def lease(self, queue):
        async with self._lock:
            waiting, _, active, dead = self._queues(queue)
            while waiting:
                job = self._jobs[(queue, waiting.popleft())]
                job.attempts += 1
                if job.attempts > job.max_attempts:
                    job.status = "dead"
                    job.last_error = job.last_error or "exceeded max attempts"
                    dead.append(job.id)
                    continue
                job.status = "active"
                active[job.id] = self._clock() + self.visibility_timeout
                return job.model_copy(deep=True)
            return None

    async def complete(self, job, result=None):
        async with self._lock:
            _, _, active, _ = self._queues(job.queue)
            active.pop(job.id, None)
            stored = self._jobs[(job.queue, job.id)]
            stored.status = "completed"
            stored.result = result

    async def fail(self, job, error, retryable=True):
        async with self._lock:
            waiting, delayed, active, dead = self._queues(job.queue)
            active.pop(job.id, None)
            stored = self._jobs[(job.queue, job.id)]
            stored.last_error = error
            if not retryable or stored.attempts >= stored.max_attempts:
                stored.status = "dead"
                dead.append(job.id)
                return "dead"
            delay = self.policy(job.queue).backoff(stored.attempts)
            if delay > 0:
                stored.status = "delayed"
                delayed[job.id] = self._clock() + delay
            else:
                stored.status = "waiting"
                waiting.append(job.id)
            return "retry"

    async def promote_due(self, queue):
        async with self._lock:
            waiting, delayed, _, _ = self._queues(queue)
            now = self._clock()
            due = sorted((t, i) for i, t in delayed.items() if t <= now)
            for _, job_id in due:
                del delayed[job_id]
                self._jobs[(queue, job_id)].status = "waiting"
                waiting.append(job_id)
            return len(due)

    async def reclaim_expired(self, queue):
        async with self._lock:
            waiting, _, active, _ = self._queues(queue)
            now = self._clock()
            expired = [i for i, deadline in active.items() if deadline <= now]
            for job_id in expired:
                del active[job_id]
                job = self._jobs[(queue, job_id)]
                job.status = "waiting"
                job.last_error = job.last_error or "lease expired"
                waiting.append(job_id)
            return len(expired)

    async def get_job(self, queue, job_id):
        job = self._jobs.get((queue, job_id))
        return job.model_copy(deep=True) if job else None

    async def stats(self, queue):
        waiting, delayed, active, dead = self._queues(queue)
        return {"waiting": len(waiting), "active": len(active), "delayed": len(delayed), "dead": len(dead)}

    async def dead_letters(self, queue, limit=100):
        _, _, _, dead = self._queues(queue)
        return [self._jobs[(queue, i)].model_copy(deep=True) for i in dead[:limit]]

    async def replay_dead_letters(self, queue, limit=100):
        async with self._lock:
            waiting, _, _, dead = self._queues(queue)
            replayed = dead[:limit]
            del dead[:limit]
            for job_id in replayed:
                job = self._jobs[(queue, job_id)]
                job.attempts = 0
                job.status = "waiting"
                job.last_error = None
                waiting.append(job_id)
            return len(replayed)
