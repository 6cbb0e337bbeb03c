import asyncio

import pytest

from orderflow.errors import DuplicateJob, MalformedPayload, RetryableIntegrationFailure
from orderflow.queue import MemoryJobQueue, QueuePolicy
from orderflow.worker import WorkerPool

pytestmark = pytest.mark.asyncio

Q = "shipment-create"


@pytest.fixture
def queue():
    return MemoryJobQueue({Q: QueuePolicy(concurrency=2, max_attempts=3, backoff_seconds=0)})


def make_pool(queue, handlers, **kwargs):
    kwargs.setdefault("job_timeout", 1)
    kwargs.setdefault("poll_interval", 0.01)
    return WorkerPool(queue, handlers, **kwargs)


class TestExecute:
    async def test_success_completes_with_result(self, queue):
        seen = []

        async def handler(job):
            seen.append(job.payload["n"])
            return {"ok": True}

        await queue.enqueue(Q, "work", {"n": 1}, "job-1")
        pool = make_pool(queue, {"work": handler})

        assert await pool.process_one(Q) is True
        assert await pool.process_one(Q) is False

        job = await queue.get_job(Q, "job-1")
        assert (job.status, job.result) == ("completed", {"ok": True})
        assert seen == [1]

    async def test_duplicate_job_completes_with_prior_result(self, queue):
        async def handler(job):
            raise DuplicateJob(job.id, {"order_id": "o-1"})

        await queue.enqueue(Q, "work", {}, "job-1")
        await make_pool(queue, {"work": handler}).run_until_idle()

        job = await queue.get_job(Q, "job-1")
        assert job.status == "completed"
        assert job.result == {"order_id": "o-1"}
        assert job.attempts == 1

    async def test_non_retryable_error_dead_letters_immediately(self, queue):
        calls = 0

        async def handler(job):
            nonlocal calls
            calls += 1
            raise MalformedPayload("line item without sku")

        await queue.enqueue(Q, "work", {}, "job-1")
        await make_pool(queue, {"work": handler}).run_until_idle()

        job = await queue.get_job(Q, "job-1")
        assert calls == 1
        assert job.status == "dead"
        assert job.last_error == "malformed_payload: line item without sku"

    async def test_retryable_error_uses_every_attempt(self, queue):
        calls = 0

        async def handler(job):
            nonlocal calls
            calls += 1
            raise RetryableIntegrationFailure("carrier returned 503", status_code=503)

        await queue.enqueue(Q, "work", {}, "job-1")
        ran = await make_pool(queue, {"work": handler}).run_until_idle()

        assert calls == ran == 3
        assert [j.id for j in await queue.dead_letters(Q)] == ["job-1"]

    async def test_unexpected_exception_is_retried(self, queue):
        calls = 0

        async def handler(job):
            nonlocal calls
            calls += 1
            if calls == 1:
                raise RuntimeError("connection reset")
            return {"ok": True}

        await queue.enqueue(Q, "work", {}, "job-1")
        await make_pool(queue, {"work": handler}).run_until_idle()

        job = await queue.get_job(Q, "job-1")
        assert (job.status, job.attempts) == ("completed", 2)

    async def test_timeout_counts_as_failed_attempt(self, queue):
        async def handler(job):
            await asyncio.sleep(5)

        await queue.enqueue(Q, "work", {}, "job-1")
        await make_pool(queue, {"work": handler}, job_timeout=0.05).run_until_idle()

        job = await queue.get_job(Q, "job-1")
        assert job.status == "dead"
        assert job.attempts == 3
        assert "timed out" in job.last_error

    async def test_missing_handler_dead_letters(self, queue):
        await queue.enqueue(Q, "unknown", {}, "job-1")
        await make_pool(queue, {}).run_until_idle()

        job = await queue.get_job(Q, "job-1")
        assert job.status == "dead"
        assert "No handler" in job.last_error


class TestRun:
    async def test_run_until_idle_drains_all_queues(self):
        queue = MemoryJobQueue({"a": QueuePolicy(), "b": QueuePolicy()})
        done = []

        async def handler(job):
            done.append(job.id)

        for i in range(3):
            await queue.enqueue("a", "work", {}, f"a-{i}")
            await queue.enqueue("b", "work", {}, f"b-{i}")

        ran = await make_pool(queue, {"work": handler}).run_until_idle()

        assert ran == 6
        assert sorted(done) == ["a-0", "a-1", "a-2", "b-0", "b-1", "b-2"]

    async def test_concurrency_limits_jobs_in_flight(self, queue):
        in_flight = 0
        peak = 0
        finished = asyncio.Event()
        done = 0

        async def handler(job):
            nonlocal in_flight, peak, done
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.02)
            in_flight -= 1
            done += 1
            if done == 6:
                finished.set()

        for i in range(6):
            await queue.enqueue(Q, "work", {}, f"job-{i}")

        shutdown = asyncio.Event()
        pool = make_pool(queue, {"work": handler}, graceful_shutdown_wait=1)
        runner = asyncio.create_task(pool.run(shutdown))
        await asyncio.wait_for(finished.wait(), timeout=5)
        shutdown.set()
        await asyncio.wait_for(runner, timeout=5)

        assert peak == 2
        assert (await queue.stats(Q))["waiting"] == 0

    async def test_shutdown_cancels_stuck_attempts(self, queue):
        started = asyncio.Event()

        async def handler(job):
            started.set()
            await asyncio.sleep(60)

        await queue.enqueue(Q, "work", {}, "job-1")
        shutdown = asyncio.Event()
        pool = make_pool(queue, {"work": handler}, job_timeout=120, graceful_shutdown_wait=0.05)
        runner = asyncio.create_task(pool.run(shutdown))
        await asyncio.wait_for(started.wait(), timeout=5)
        shutdown.set()
        await asyncio.wait_for(runner, timeout=5)

        job = await queue.get_job(Q, "job-1")
        assert job.status == "active"
