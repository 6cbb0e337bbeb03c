"""
Periodic producers: tracking refresh and channel sync.

Job ids embed a time bucket (now // interval), so several worker processes
running the scheduler at once still enqueue each job only once per interval.
"""
import asyncio
import logging
import time

from orderflow.errors import NotFound
from orderflow.queue import JobQueue, JobType, QueueName
from orderflow.shipping import ShippingService
from orderflow.storage import Storage

logger = logging.getLogger(__name__)


def channel_sync_job_id(channel_id: str, bucket: int | str) -> str:
    return f"channel-sync-{channel_id}-{bucket}"


class Scheduler:
    def __init__(
        self,
        storage: Storage,
        queue: JobQueue,
        shipping: ShippingService,
        tracking_interval: int = 900,
        sync_interval: int = 600,
        clock=time.time,
    ):
        self.storage = storage
        self.queue = queue
        self.shipping = shipping
        self.tracking_interval = tracking_interval
        self.sync_interval = sync_interval
        self._clock = clock

    async def enqueue_tracking_refresh(self) -> int:
        return await self.shipping.schedule_tracking_refresh(int(self._clock() // self.tracking_interval))

    async def _enqueue_sync(self, channel, bucket: int | str) -> bool:
        job = await self.queue.enqueue(
            QueueName.CHANNEL_SYNC.value,
            JobType.CHANNEL_SYNC.value,
            {"channel_id": channel.id, "organization_id": channel.organization_id},
            channel_sync_job_id(channel.id, bucket),
        )
        return job is not None

    async def enqueue_channel_syncs(self) -> int:
        bucket = int(self._clock() // self.sync_interval)
        async with self.storage.transaction() as tx:
            channels = await tx.list_active_channels()
        enqueued = 0
        for channel in channels:
            enqueued += int(await self._enqueue_sync(channel, bucket))
        if enqueued:
            logger.info("Scheduled sync for %d channel(s) (bucket %d)", enqueued, bucket)
        return enqueued

    async def sync_channel_now(self, channel_id: str, organization_id: str | None = None) -> str:
        """Manual trigger. Returns the job id; a second trigger within the same second is absorbed."""
        async with self.storage.transaction() as tx:
            channel = await tx.get_channel(channel_id)
        if channel is None or (organization_id and channel.organization_id != organization_id):
            raise NotFound(f"Channel {channel_id} not found")
        bucket = f"manual-{int(self._clock())}"
        await self._enqueue_sync(channel, bucket)
        logger.info("Manual sync requested for channel %s", channel_id)
        return channel_sync_job_id(channel_id, bucket)

    async def run(self, shutdown_event: asyncio.Event) -> None:
        next_tracking = next_sync = 0.0
        while not shutdown_event.is_set():
            now = self._clock()
            try:
                if now >= next_tracking:
                    await self.enqueue_tracking_refresh()
                    next_tracking = now + self.tracking_interval
                if now >= next_sync:
                    await self.enqueue_channel_syncs()
                    next_sync = now + self.sync_interval
            except Exception:
                logger.exception("Scheduler tick failed, retrying in 30s")
                retry_at = now + 30
                next_tracking = next_tracking if next_tracking > now else retry_at
                next_sync = next_sync if next_sync > now else retry_at
            wait = max(min(next_tracking, next_sync) - self._clock(), 0.1)
            try:
                await asyncio.wait_for(shutdown_event.wait(), timeout=wait)
            except asyncio.TimeoutError:
                pass
        logger.info("Scheduler stopped.")
