import asyncio

import pytest

from _helper import ORG, OTHER_ORG, make_channel
from orderflow.errors import NotFound
from orderflow.queue import QueueName
from orderflow.scheduler import Scheduler, channel_sync_job_id

pytestmark = pytest.mark.asyncio

SYNC = QueueName.CHANNEL_SYNC.value


class FakeClock:
    def __init__(self, now: float):
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock():
    return FakeClock(6_000.0)


@pytest.fixture
def scheduler(context, clock):
    return Scheduler(context.storage, context.queue, context.shipping, tracking_interval=900, sync_interval=600, clock=clock)


class TestChannelSyncs:
    async def test_one_job_per_active_channel_per_interval(self, context, scheduler, clock, channel):
        await make_channel(context.storage, ORG, active=False)

        assert await scheduler.enqueue_channel_syncs() == 1
        assert await scheduler.enqueue_channel_syncs() == 0
        assert await context.queue.get_job(SYNC, channel_sync_job_id(channel.id, 10)) is not None

        clock.now += 600
        assert await scheduler.enqueue_channel_syncs() == 1

    async def test_manual_sync(self, context, scheduler, clock, channel):
        job_id = await scheduler.sync_channel_now(channel.id, ORG)

        assert job_id == channel_sync_job_id(channel.id, "manual-6000")
        assert (await context.queue.get_job(SYNC, job_id)).payload == {"channel_id": channel.id, "organization_id": ORG}

    async def test_manual_sync_other_organization(self, scheduler, channel):
        with pytest.raises(NotFound):
            await scheduler.sync_channel_now(channel.id, OTHER_ORG)
        with pytest.raises(NotFound):
            await scheduler.sync_channel_now("missing")


class TestTrackingRefresh:
    async def test_nothing_to_track(self, scheduler):
        assert await scheduler.enqueue_tracking_refresh() == 0


class TestRun:
    async def test_runs_both_producers_and_stops_on_shutdown(self, context, scheduler, channel):
        shutdown = asyncio.Event()
        task = asyncio.create_task(scheduler.run(shutdown))
        for _ in range(100):
            if (await context.queue.stats(SYNC))["waiting"]:
                break
            await asyncio.sleep(0.01)

        shutdown.set()
        await asyncio.wait_for(task, timeout=5)

        assert (await context.queue.stats(SYNC))["waiting"] == 1
