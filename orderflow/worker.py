"""
Worker: lease jobs from the durable queue and run the handler for their type.
- Per queue, `concurrency` consumer loops: at most that many jobs in flight (backpressure).
- Each attempt runs under a time budget; a timeout counts as a failed attempt.
- Retryable failures back off exponentially; out of attempts or non-retryable -> dead letter.
- Maintenance loop: promote delayed jobs, reclaim expired leases.
- Prometheus /metrics on worker_metrics_port. Graceful shutdown on SIGTERM/SIGINT.
Run: python -m orderflow.worker
"""
import asyncio
import logging
import signal
import sys
import threading
from typing import Awaitable, Callable

from orderflow.config import Settings
from orderflow.context import create_context
from orderflow.errors import DuplicateJob, OrderflowError
from orderflow.metrics import (
    jobs_already_processed_total,
    jobs_dead_lettered_total,
    jobs_failed_total,
    jobs_processed_total,
    refresh_queue_gauges,
)
from orderflow.queue import Job, JobQueue, QueuePolicy

logger = logging.getLogger(__name__)

Handler = Callable[[Job], Awaitable[dict | None]]


class WorkerPool:
    def __init__(
        self,
        queue: JobQueue,
        handlers: dict[str, Handler],
        policies: dict[str, QueuePolicy] | None = None,
        job_timeout: float = 120,
        poll_interval: float = 1.0,
        graceful_shutdown_wait: float = 30,
    ):
        self.queue = queue
        self.handlers = handlers
        self.policies = policies or queue.policies
        self.job_timeout = job_timeout
        self.poll_interval = poll_interval
        self.graceful_shutdown_wait = graceful_shutdown_wait

    @property
    def queue_names(self) -> list[str]:
        return list(self.policies) or self.queue.queue_names

    async def process_one(self, queue_name: str) -> bool:
        """Lease and run one job. False when the queue had nothing waiting."""
        job = await self.queue.lease(queue_name)
        if job is None:
            return False
        await self.execute(job)
        return True

    async def execute(self, job: Job) -> None:
        handler = self.handlers.get(job.type)
        if handler is None:
            await self._fail(job, f"No handler registered for job type {job.type}", retryable=False)
            return
        logger.info("Running job %s (%s) attempt %d/%d", job.id, job.type, job.attempts, job.max_attempts)
        try:
            result = await asyncio.wait_for(handler(job), timeout=self.job_timeout)
        except DuplicateJob as e:
            jobs_already_processed_total.labels(queue=job.queue).inc()
            await self.queue.complete(job, e.result or {"status": "already_processed"})
            logger.info("Job %s already processed, skipped", job.id)
        except asyncio.TimeoutError:
            await self._fail(job, f"Attempt timed out after {self.job_timeout}s", retryable=True)
        except OrderflowError as e:
            await self._fail(job, f"{e.code}: {e.message}", retryable=e.retryable)
        except Exception as e:
            logger.exception("Job %s (%s) raised", job.id, job.type)
            await self._fail(job, f"{type(e).__name__}: {e}", retryable=True)
        else:
            await self.queue.complete(job, result)
            jobs_processed_total.labels(queue=job.queue, job_type=job.type).inc()
            logger.info("Processed job %s (%s)", job.id, job.type)

    async def _fail(self, job: Job, error: str, retryable: bool) -> None:
        jobs_failed_total.labels(queue=job.queue, job_type=job.type).inc()
        outcome = await self.queue.fail(job, error, retryable=retryable)
        if outcome == "dead":
            jobs_dead_lettered_total.labels(queue=job.queue).inc()
            logger.warning("Moved job %s to dead letters after %d attempt(s): %s", job.id, job.attempts, error)
        else:
            logger.info(
                "Job %s failed (attempt %d/%d), retrying in %.1fs: %s",
                job.id,
                job.attempts,
                job.max_attempts,
                self.queue.policy(job.queue).backoff(job.attempts),
                error,
            )

    async def maintain(self) -> None:
        for name in self.queue_names:
            reclaimed = await self.queue.reclaim_expired(name)
            if reclaimed:
                logger.warning("Reclaimed %d expired lease(s) on %s", reclaimed, name)
            await self.queue.promote_due(name)

    async def run_until_idle(self, max_jobs: int = 10_000) -> int:
        """Drain every queue sequentially, promoting due retries between passes. Returns jobs run."""
        processed = 0
        while processed < max_jobs:
            await self.maintain()
            ran = False
            for name in self.queue_names:
                while processed < max_jobs and await self.process_one(name):
                    processed += 1
                    ran = True
            if not ran:
                break
        return processed

    async def _consume(self, queue_name: str, shutdown_event: asyncio.Event) -> None:
        while not shutdown_event.is_set():
            try:
                if await self.process_one(queue_name):
                    continue
            except Exception:
                logger.exception("Consumer on %s failed, backing off", queue_name)
            try:
                await asyncio.wait_for(shutdown_event.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass

    async def _maintenance_loop(self, shutdown_event: asyncio.Event) -> None:
        while not shutdown_event.is_set():
            try:
                await self.maintain()
                await refresh_queue_gauges(self.queue)
            except Exception:
                logger.exception("Queue maintenance failed")
            try:
                await asyncio.wait_for(shutdown_event.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass

    async def run(self, shutdown_event: asyncio.Event) -> None:
        tasks: set[asyncio.Task] = set()
        for name in self.queue_names:
            policy = self.policies.get(name) or self.queue.policy(name)
            concurrency = policy.concurrency
            for _ in range(concurrency):
                tasks.add(asyncio.create_task(self._consume(name, shutdown_event)))
            logger.info("Consuming %s (concurrency=%d, max_attempts=%d)", name, concurrency, policy.max_attempts)
        tasks.add(asyncio.create_task(self._maintenance_loop(shutdown_event)))
        try:
            await shutdown_event.wait()
        finally:
            logger.info("Graceful shutdown: waiting for in-flight job(s) (max %ss) ...", self.graceful_shutdown_wait)
            _, pending = await asyncio.wait(tasks, timeout=self.graceful_shutdown_wait, return_when=asyncio.ALL_COMPLETED)
            for t in pending:
                t.cancel()
            if pending:
                # Cancelled attempts stay leased and are reclaimed after the visibility timeout
                await asyncio.gather(*pending, return_exceptions=True)
            logger.info("Worker pool stopped.")


def _start_metrics_server(port: int) -> None:
    from prometheus_client import start_http_server
    start_http_server(port)


async def run_worker(settings: Settings, shutdown_event: asyncio.Event) -> None:
    context = await create_context(settings)
    pool = WorkerPool(
        context.queue,
        context.jobs.registry(),
        job_timeout=settings.job_timeout_seconds,
        poll_interval=settings.worker_poll_interval,
        graceful_shutdown_wait=settings.graceful_shutdown_wait_sec,
    )
    scheduler = asyncio.create_task(context.scheduler.run(shutdown_event))
    try:
        await pool.run(shutdown_event)
    finally:
        await scheduler
        await context.close()
        logger.info("Worker stopped.")


def main() -> None:
    settings = Settings()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        stream=sys.stdout,
    )
    threading.Thread(target=_start_metrics_server, args=(settings.worker_metrics_port,), daemon=True).start()
    logger.info("Metrics server listening on port %s", settings.worker_metrics_port)

    shutdown_event = asyncio.Event()

    def on_signal():
        shutdown_event.set()

    loop = asyncio.new_event_loop()
    try:
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, on_signal)
    except NotImplementedError:
        signal.signal(signal.SIGTERM, lambda *a: shutdown_event.set())
        signal.signal(signal.SIGINT, lambda *a: shutdown_event.set())

    asyncio.set_event_loop(loop)
    try:
        loop.run_until_complete(run_worker(settings, shutdown_event))
    finally:
        loop.close()


if __name__ == "__main__":
    main()
