"""
Process-wide wiring. Built once at startup and passed to whatever needs storage,
the queue or the integrations; nothing in the package holds connections globally.
"""
import logging
from dataclasses import dataclass

import httpx

from orderflow.carriers import CarrierAdapter, build_carriers
from orderflow.channels import ChannelClient, build_channel_clients
from orderflow.config import Settings
from orderflow.db import PostgresStorage
from orderflow.ingestion import ChannelSecretLookup, EventIngestor
from orderflow.inventory import InventoryLedger
from orderflow.jobs import JobHandlers
from orderflow.labels import LabelStore, build_label_store
from orderflow.memory_store import MemoryStorage
from orderflow.models import CarrierType, ChannelType
from orderflow.orders import OrderService
from orderflow.queue import JobQueue, MemoryJobQueue, policies_from_settings
from orderflow.redis_queue import RedisJobQueue
from orderflow.scheduler import Scheduler
from orderflow.shipping import ShippingService
from orderflow.storage import Storage

logger = logging.getLogger(__name__)


@dataclass
class AppContext:
    settings: Settings
    storage: Storage
    queue: JobQueue
    http: httpx.AsyncClient
    ledger: InventoryLedger
    orders: OrderService
    ingestor: EventIngestor
    shipping: ShippingService
    scheduler: Scheduler
    jobs: JobHandlers
    carriers: dict[CarrierType, CarrierAdapter]
    labels: LabelStore
    channel_clients: dict[ChannelType, ChannelClient]

    async def close(self) -> None:
        await self.queue.close()
        await self.storage.close()
        await self.http.aclose()
        logger.info("Context closed.")


def build_storage(settings: Settings) -> Storage:
    if settings.storage_backend == "memory":
        return MemoryStorage()
    return PostgresStorage(
        settings.database_url,
        min_size=settings.db_pool_min_size,
        max_size=settings.db_pool_max_size,
        command_timeout=settings.db_command_timeout,
    )


def build_queue(settings: Settings) -> JobQueue:
    policies = policies_from_settings(settings)
    if settings.queue_backend == "memory":
        return MemoryJobQueue(policies, visibility_timeout=settings.visibility_timeout_seconds)
    return RedisJobQueue.from_url(
        settings.redis_url,
        policies=policies,
        prefix=settings.queue_prefix,
        visibility_timeout=settings.visibility_timeout_seconds,
    )


async def create_context(
    settings: Settings,
    *,
    storage: Storage | None = None,
    queue: JobQueue | None = None,
    http: httpx.AsyncClient | None = None,
    carriers: dict[CarrierType, CarrierAdapter] | None = None,
    labels: LabelStore | None = None,
    channel_clients: dict[ChannelType, ChannelClient] | None = None,
) -> AppContext:
    """Build every component from settings; any of them can be supplied instead (tests, one-off scripts)."""
    storage = storage or build_storage(settings)
    await storage.init()
    queue = queue or build_queue(settings)
    http = http or httpx.AsyncClient(timeout=settings.carrier_timeout_seconds)
    carriers = carriers or build_carriers(settings, http)
    labels = labels or build_label_store(settings)
    channel_clients = channel_clients or build_channel_clients(http, settings.channel_timeout_seconds)

    ledger = InventoryLedger(storage)
    orders = OrderService(storage, ledger)
    ingestor = EventIngestor(storage, queue, ChannelSecretLookup(storage))
    shipping = ShippingService(storage, queue, orders, labels)
    scheduler = Scheduler(
        storage,
        queue,
        shipping,
        tracking_interval=settings.tracking_refresh_interval,
        sync_interval=settings.channel_sync_interval,
    )
    jobs = JobHandlers(storage, orders, ingestor, carriers, labels, channel_clients)
    logger.info(
        "Context ready: storage=%s queue=%s carriers=%s labels=%s",
        type(storage).__name__,
        type(queue).__name__,
        settings.carrier_mode,
        type(labels).__name__,
    )
    return AppContext(
        settings=settings,
        storage=storage,
        queue=queue,
        http=http,
        ledger=ledger,
        orders=orders,
        ingestor=ingestor,
        shipping=shipping,
        scheduler=scheduler,
        jobs=jobs,
        carriers=carriers,
        labels=labels,
        channel_clients=channel_clients,
    )
