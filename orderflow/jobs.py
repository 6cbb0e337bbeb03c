"""
Job handlers, one per job type.

Contract for every handler:
1. ProcessedJob(job.id) present -> raise DuplicateJob carrying the prior result.
2. Do the work. Business writes are upserts, so a re-run after a crash is safe.
3. Write ProcessedJob in the same transaction as the last business mutation.
4. On failure, raise; the worker applies the queue's retry policy.

External calls (carrier, channel API) happen outside any transaction.
"""
import logging
from typing import Any, Awaitable, Callable

from orderflow.carriers import CarrierAdapter, ShipmentRequest
from orderflow.channels import ChannelClient, is_cancellation, map_channel_order
from orderflow.errors import DuplicateJob, InsufficientStock, NotFound, TerminalIntegrationFailure
from orderflow.ingestion import EventIngestor
from orderflow.labels import LabelStore
from orderflow.models import (
    ActorType,
    CarrierType,
    ChannelType,
    OrderStatus,
    ProcessedJob,
    ShipmentStatus,
    TrackingEvent,
    utcnow,
)
from orderflow.order_state import forward_path, is_terminal
from orderflow.orders import OrderService
from orderflow.queue import Job, JobType
from orderflow.shipping import ORDER_TARGETS
from orderflow.storage import Storage, Transaction

logger = logging.getLogger(__name__)

Handler = Callable[[Job], Awaitable[dict[str, Any]]]


class JobHandlers:
    def __init__(
        self,
        storage: Storage,
        orders: OrderService,
        ingestor: EventIngestor,
        carriers: dict[CarrierType, CarrierAdapter],
        labels: LabelStore,
        channel_clients: dict[ChannelType, ChannelClient],
    ):
        self.storage = storage
        self.orders = orders
        self.ingestor = ingestor
        self.carriers = carriers
        self.labels = labels
        self.channel_clients = channel_clients

    def registry(self) -> dict[str, Handler]:
        return {
            JobType.CHANNEL_ORDER_UPSERT.value: self.channel_order_upsert,
            JobType.CHANNEL_SYNC.value: self.channel_sync,
            JobType.CARRIER_SHIPMENT.value: self.carrier_shipment,
            JobType.SHIPMENT_TRACKING.value: self.shipment_tracking,
        }

    async def _ensure_not_processed(self, job: Job) -> None:
        async with self.storage.transaction() as tx:
            processed = await tx.get_processed_job(job.id)
        if processed is not None:
            raise DuplicateJob(job.id, processed.result)

    async def _mark_processed(self, tx: Transaction, job: Job, result: dict[str, Any]) -> dict[str, Any]:
        await tx.insert_processed_job(ProcessedJob(job_id=job.id, job_type=job.type, result=result))
        return result

    async def channel_order_upsert(self, job: Job) -> dict[str, Any]:
        """
        Upsert the order from the channel payload; cancel it when the event says so,
        otherwise reserve once payment is confirmed. A reservation shortfall leaves the
        order NEW with an inventory_reservation_failed event and completes the job.
        An update that raises the quantities of an order already holding stock, beyond
        what is available, is rolled back, recorded on the timeline and dead-lettered.
        """
        await self._ensure_not_processed(job)
        payload = job.payload
        async with self.storage.transaction() as tx:
            channel = await tx.get_channel(payload["channel_id"])
        if channel is None:
            raise NotFound(f"Channel {payload['channel_id']} not found")
        mapped = map_channel_order(channel.type, payload["order"])
        event_type = payload.get("event_type") or ""
        cancelled = is_cancellation(event_type, mapped)

        try:
            async with self.storage.transaction() as tx:
                order, created = await self.orders.upsert_from_channel(
                    tx, channel, mapped, actor_id=channel.id, rebalance=not cancelled
                )
                result = {"order_id": order.id, "created": created}
                if cancelled:
                    if not is_terminal(order.status):
                        order = await self.orders.apply_transition(
                            tx, order, OrderStatus.CANCELLED, ActorType.CHANNEL, channel.id, "Cancelled in sales channel"
                        )
                    else:
                        logger.info("Order %s already %s, ignoring channel cancellation", order.id, order.status.value)
                    return await self._mark_processed(tx, job, {**result, "status": order.status.value})
                if not (mapped.payment_confirmed and order.status == OrderStatus.NEW):
                    return await self._mark_processed(tx, job, {**result, "status": order.status.value})
        except InsufficientStock as e:
            # The update rolled back; the order keeps its old items until the job is replayed
            await self._record_update_shortfall(channel, mapped.external_order_id, e)
            raise

        # Imported and paid: reserving is a separate transition so the import survives a shortfall
        try:
            async with self.storage.transaction() as tx:
                order = await tx.get_order(order.id, lock=True)
                order = await self.orders.apply_transition(
                    tx, order, OrderStatus.RESERVED, ActorType.CHANNEL, channel.id, "Payment confirmed"
                )
                return await self._mark_processed(tx, job, {**result, "status": order.status.value})
        except InsufficientStock as e:
            logger.warning("Order %s imported but not reserved: %s", order.id, e.message)
            async with self.storage.transaction() as tx:
                order = await tx.get_order(order.id, lock=True)
                await self.orders.append_event(
                    tx,
                    order,
                    "inventory_reservation_failed",
                    ActorType.SYSTEM,
                    e.message,
                    metadata={"sku": e.sku_code, "available": e.available, "requested": e.requested},
                )
                return await self._mark_processed(
                    tx, job, {**result, "status": order.status.value, "reservation_failed": True}
                )

    async def _record_update_shortfall(self, channel, external_order_id: str, error: InsufficientStock) -> None:
        async with self.storage.transaction() as tx:
            order = await tx.find_order_by_external(channel.organization_id, channel.id, external_order_id, lock=True)
            if order is None:
                return
            logger.warning("Channel update for order %s not applied: %s", order.id, error.message)
            await self.orders.append_event(
                tx,
                order,
                "inventory_reservation_failed",
                ActorType.SYSTEM,
                f"Channel update not applied: {error.message}",
                metadata={"sku": error.sku_code, "available": error.available, "requested": error.requested},
            )

    async def carrier_shipment(self, job: Job) -> dict[str, Any]:
        await self._ensure_not_processed(job)
        payload = job.payload
        async with self.storage.transaction() as tx:
            shipment = await tx.get_shipment(payload["shipment_id"], payload["organization_id"])
            if shipment is None:
                raise NotFound(f"Shipment {payload['shipment_id']} not found")
            order = await tx.get_order(shipment.order_id, shipment.organization_id)
            account = await tx.get_shipping_account(shipment.shipping_account_id, shipment.organization_id)
        if order is None or account is None:
            raise NotFound(f"Order or shipping account for shipment {shipment.id} not found")

        adapter = self.carriers[shipment.carrier]
        options = shipment.options
        request = ShipmentRequest(
            order_id=order.id,
            order_number=order.order_number,
            reference=job.id,
            ship_to=order.shipping_address,
            ship_from=options.get("ship_from") or account.credentials.get("ship_from") or {},
            packages=options.get("packages") or [{"weight": 1.0}],
            service_type=options.get("service_type"),
            declared_value=order.total_amount,
            currency=order.currency,
            test_mode=account.test_mode,
        )
        try:
            created = await adapter.create_shipment(account, request, correlation_id=job.id)
        except TerminalIntegrationFailure as e:
            logger.error("Carrier %s rejected shipment %s [correlation_id=%s]: %s", shipment.carrier.value, shipment.id, job.id, e.message)
            async with self.storage.transaction() as tx:
                shipment = await tx.get_shipment(shipment.id, lock=True)
                shipment.status = ShipmentStatus.EXCEPTION
                shipment.last_error = e.message
                shipment.updated_at = utcnow()
                await tx.update_shipment(shipment)
                order = await tx.get_order(order.id, lock=True)
                await self.orders.append_event(
                    tx,
                    order,
                    "shipment_failed",
                    ActorType.CARRIER,
                    f"{shipment.carrier.value} rejected the shipment: {e.message}",
                    metadata={"shipment_id": shipment.id, "carrier": shipment.carrier.value, "job_id": job.id},
                )
            raise

        label_key = None
        if created.label:
            label_key = await self.labels.store(shipment.id, created.label, created.label_content_type)

        async with self.storage.transaction() as tx:
            shipment = await tx.get_shipment(shipment.id, lock=True)
            shipment.status = ShipmentStatus.LABEL_CREATED
            shipment.carrier_shipment_id = created.carrier_shipment_id
            shipment.tracking_number = created.tracking_number
            shipment.cost = created.cost
            shipment.estimated_delivery = created.estimated_delivery
            shipment.label_key = label_key
            shipment.label_content_type = created.label_content_type if label_key else None
            shipment.last_error = None
            shipment.updated_at = utcnow()
            await tx.update_shipment(shipment)

            order = await tx.get_order(order.id, lock=True)
            if forward_path(order.status, OrderStatus.LABEL_CREATED) is not None:
                order = await self.orders.advance(
                    tx, order, OrderStatus.LABEL_CREATED, ActorType.CARRIER, comment=f"{shipment.carrier.value} label created"
                )
            else:
                logger.warning("Order %s is %s, shipment %s created without status change", order.id, order.status.value, shipment.id)
            await self.orders.append_event(
                tx,
                order,
                "shipment_created",
                ActorType.CARRIER,
                f"{shipment.carrier.value} shipment {created.tracking_number} created",
                metadata={
                    "shipment_id": shipment.id,
                    "carrier": shipment.carrier.value,
                    "tracking_number": created.tracking_number,
                },
            )
            logger.info("Shipment %s booked with %s, tracking %s [correlation_id=%s]", shipment.id, shipment.carrier.value, created.tracking_number, job.id)
            return await self._mark_processed(
                tx,
                job,
                {"shipment_id": shipment.id, "tracking_number": created.tracking_number, "label_key": label_key},
            )

    async def shipment_tracking(self, job: Job) -> dict[str, Any]:
        await self._ensure_not_processed(job)
        payload = job.payload
        async with self.storage.transaction() as tx:
            shipment = await tx.get_shipment(payload["shipment_id"], payload["organization_id"])
            if shipment is None:
                raise NotFound(f"Shipment {payload['shipment_id']} not found")
            account = await tx.get_shipping_account(shipment.shipping_account_id, shipment.organization_id)
        if account is None:
            raise NotFound(f"Shipping account {shipment.shipping_account_id} not found")
        if not shipment.tracking_number:
            async with self.storage.transaction() as tx:
                return await self._mark_processed(tx, job, {"shipment_id": shipment.id, "skipped": "no tracking number"})

        tracking = await self.carriers[shipment.carrier].get_tracking(account, shipment.tracking_number, correlation_id=job.id)

        async with self.storage.transaction() as tx:
            shipment = await tx.get_shipment(shipment.id, lock=True)
            stored = 0
            for update in tracking.events:
                inserted = await tx.insert_tracking_event(
                    TrackingEvent(
                        shipment_id=shipment.id,
                        carrier_status=update.carrier_status,
                        mapped_status=update.status,
                        location=update.location,
                        description=update.description,
                        event_time=update.event_time,
                    )
                )
                stored += int(inserted)

            previous = shipment.status
            shipment.status = tracking.status
            if tracking.estimated_delivery:
                shipment.estimated_delivery = tracking.estimated_delivery
            if tracking.delivered_at:
                shipment.actual_delivery = tracking.delivered_at
            shipment.updated_at = utcnow()
            await tx.update_shipment(shipment)

            order = await tx.get_order(shipment.order_id, lock=True)
            target = ORDER_TARGETS.get(tracking.status)
            if tracking.status == ShipmentStatus.EXCEPTION and previous != ShipmentStatus.EXCEPTION:
                await self.orders.append_event(
                    tx,
                    order,
                    "shipment_exception",
                    ActorType.CARRIER,
                    f"{shipment.carrier.value} reported an exception ({tracking.carrier_status})",
                    metadata={"shipment_id": shipment.id, "carrier_status": tracking.carrier_status},
                )
            elif tracking.status == ShipmentStatus.RETURNED and order.status != OrderStatus.DELIVERED:
                # Returned to sender before delivery: the order cannot be walked through DELIVERED
                if previous != ShipmentStatus.RETURNED:
                    await self.orders.append_event(
                        tx,
                        order,
                        "shipment_returned",
                        ActorType.CARRIER,
                        f"{shipment.carrier.value} returned the shipment to sender ({tracking.carrier_status})",
                        metadata={"shipment_id": shipment.id, "carrier_status": tracking.carrier_status},
                    )
            elif target is not None and forward_path(order.status, target):
                order = await self.orders.advance(
                    tx,
                    order,
                    target,
                    ActorType.CARRIER,
                    comment=f"{shipment.carrier.value} status {tracking.carrier_status}",
                    metadata={"shipment_id": shipment.id, "tracking_number": shipment.tracking_number},
                )
            logger.info(
                "Tracking %s: %s -> %s, %d new event(s), order %s [correlation_id=%s]",
                shipment.tracking_number,
                previous.value,
                tracking.status.value,
                stored,
                order.status.value,
                job.id,
            )
            return await self._mark_processed(
                tx,
                job,
                {
                    "shipment_id": shipment.id,
                    "shipment_status": tracking.status.value,
                    "order_status": order.status.value,
                    "new_events": stored,
                },
            )

    async def channel_sync(self, job: Job) -> dict[str, Any]:
        """Page through the channel's order API and feed every order through webhook dedup."""
        await self._ensure_not_processed(job)
        async with self.storage.transaction() as tx:
            channel = await tx.get_channel(job.payload["channel_id"])
        if channel is None:
            raise NotFound(f"Channel {job.payload['channel_id']} not found")
        if not channel.active:
            async with self.storage.transaction() as tx:
                return await self._mark_processed(tx, job, {"channel_id": channel.id, "skipped": "inactive"})

        started = utcnow()
        fetched = enqueued = 0
        client = self.channel_clients[channel.type]
        async for raw in client.fetch_orders(channel, channel.last_synced_at):
            if raw.get("id") in (None, ""):
                logger.warning("Skipping %s order without id during sync of channel %s", channel.type.value, channel.id)
                continue
            marker = raw.get("updated_at") or raw.get("date_modified_gmt") or raw.get("date_modified") or "sync"
            result = await self.ingestor.record_and_enqueue(
                channel, channel.type.value, "orders/updated", f"{raw['id']}-{marker}", raw
            )
            fetched += 1
            enqueued += int(result.status == "enqueued")

        async with self.storage.transaction() as tx:
            await tx.mark_channel_synced(channel.id, started)
            logger.info("Synced channel %s: %d order(s) fetched, %d enqueued", channel.id, fetched, enqueued)
            return await self._mark_processed(tx, job, {"channel_id": channel.id, "fetched": fetched, "enqueued": enqueued})
