"""
Shipments: requesting carrier bookings and scheduling tracking refreshes.
The carrier calls themselves run in the worker (orderflow.jobs).
"""
import logging
from typing import Any

from pydantic import BaseModel

from orderflow.errors import InvalidTransition, NotFound
from orderflow.labels import LabelStore
from orderflow.models import (
    ActorType,
    CarrierType,
    OrderStatus,
    Shipment,
    ShipmentStatus,
    ShippingAccount,
    TrackingEvent,
)
from orderflow.orders import OrderService
from orderflow.queue import JobQueue, JobType, QueueName
from orderflow.storage import Storage

logger = logging.getLogger(__name__)

# Shipment status reported by the carrier -> order status it implies.
# EXCEPTION and CANCELLED are recorded on the timeline only.
ORDER_TARGETS: dict[ShipmentStatus, OrderStatus] = {
    ShipmentStatus.LABEL_CREATED: OrderStatus.LABEL_CREATED,
    ShipmentStatus.IN_TRANSIT: OrderStatus.IN_TRANSIT,
    ShipmentStatus.OUT_FOR_DELIVERY: OrderStatus.OUT_FOR_DELIVERY,
    ShipmentStatus.DELIVERED: OrderStatus.DELIVERED,
    ShipmentStatus.RETURNED: OrderStatus.RETURNED,
}


def shipment_job_id(organization_id: str, order_id: str, carrier: CarrierType) -> str:
    return f"shipment-create-{organization_id}-{order_id}-{carrier.value}"


def tracking_job_id(shipment_id: str, bucket: int | str) -> str:
    return f"shipment-track-{shipment_id}-{bucket}"


class ShipmentRequestResult(BaseModel):
    shipment: Shipment
    job_id: str
    enqueued: bool


class ShipmentDetail(BaseModel):
    shipment: Shipment
    tracking_events: list[TrackingEvent]


class ShippingService:
    def __init__(self, storage: Storage, queue: JobQueue, orders: OrderService, labels: LabelStore):
        self.storage = storage
        self.queue = queue
        self.orders = orders
        self.labels = labels

    async def create_account(
        self,
        organization_id: str,
        carrier: CarrierType,
        name: str = "",
        credentials: dict[str, Any] | None = None,
        test_mode: bool = True,
    ) -> ShippingAccount:
        account = ShippingAccount(
            organization_id=organization_id,
            carrier=carrier,
            name=name or carrier.value,
            credentials=credentials or {},
            test_mode=test_mode,
        )
        async with self.storage.transaction() as tx:
            await tx.insert_shipping_account(account)
        logger.info("Created %s shipping account %s for organization %s", carrier.value, account.id, organization_id)
        return account

    async def request_shipment(
        self,
        order_id: str,
        organization_id: str,
        carrier: CarrierType,
        account_id: str | None = None,
        options: dict[str, Any] | None = None,
        actor_id: str | None = None,
    ) -> ShipmentRequestResult:
        """
        Create (or reuse) the order's shipment for this carrier and enqueue the
        carrier-shipment job. The order must be READY_TO_SHIP. Calling again for
        the same order and carrier returns the existing shipment and enqueues nothing.
        """
        job_id = shipment_job_id(organization_id, order_id, carrier)
        async with self.storage.transaction() as tx:
            order = await tx.get_order(order_id, organization_id, lock=True)
            if order is None:
                raise NotFound(f"Order {order_id} not found")

            shipment = await tx.find_shipment(order_id, carrier)
            if shipment is None:
                if order.status != OrderStatus.READY_TO_SHIP:
                    raise InvalidTransition(
                        order.status.value,
                        OrderStatus.LABEL_CREATED.value,
                        f"Order must be READY_TO_SHIP to request a shipment (is {order.status.value})",
                    )
                if account_id:
                    account = await tx.get_shipping_account(account_id, organization_id)
                    if account is None or not account.active or account.carrier != carrier:
                        raise NotFound(f"Active {carrier.value} shipping account {account_id} not found")
                else:
                    account = await tx.find_active_shipping_account(organization_id, carrier)
                    if account is None:
                        raise NotFound(f"No active {carrier.value} shipping account configured")

                shipment = Shipment(
                    organization_id=organization_id,
                    order_id=order_id,
                    carrier=carrier,
                    shipping_account_id=account.id,
                    options=options or {},
                )
                await tx.insert_shipment(shipment)
                await self.orders.append_event(
                    tx,
                    order,
                    "shipment_requested",
                    ActorType.USER,
                    f"{carrier.value} shipment requested",
                    actor_id=actor_id,
                    metadata={"shipment_id": shipment.id, "carrier": carrier.value, "job_id": job_id},
                )

            job = await self.queue.enqueue(
                QueueName.SHIPMENT_CREATE.value,
                JobType.CARRIER_SHIPMENT.value,
                {"shipment_id": shipment.id, "order_id": order_id, "organization_id": organization_id},
                job_id,
            )
        if job is None:
            logger.info("Shipment job %s already exists for order %s", job_id, order_id)
        else:
            logger.info("Enqueued shipment job %s for order %s via %s", job_id, order_id, carrier.value)
        return ShipmentRequestResult(shipment=shipment, job_id=job_id, enqueued=job is not None)

    async def schedule_tracking_refresh(self, bucket: int | str) -> int:
        """Enqueue one tracking job per trackable shipment. Ids repeat within a bucket."""
        async with self.storage.transaction() as tx:
            shipments = await tx.list_trackable_shipments()
        enqueued = 0
        for shipment in shipments:
            job = await self.queue.enqueue(
                QueueName.SHIPMENT_TRACKING.value,
                JobType.SHIPMENT_TRACKING.value,
                {"shipment_id": shipment.id, "organization_id": shipment.organization_id},
                tracking_job_id(shipment.id, bucket),
            )
            if job is not None:
                enqueued += 1
        if enqueued:
            logger.info("Scheduled tracking refresh for %d shipment(s) (bucket %s)", enqueued, bucket)
        return enqueued

    async def get_shipment_detail(self, shipment_id: str, organization_id: str) -> ShipmentDetail:
        async with self.storage.transaction() as tx:
            shipment = await tx.get_shipment(shipment_id, organization_id)
            if shipment is None:
                raise NotFound(f"Shipment {shipment_id} not found")
            return ShipmentDetail(shipment=shipment, tracking_events=await tx.list_tracking_events(shipment_id))

    async def get_label(self, shipment_id: str, organization_id: str) -> tuple[bytes, str]:
        async with self.storage.transaction() as tx:
            shipment = await tx.get_shipment(shipment_id, organization_id)
        if shipment is None:
            raise NotFound(f"Shipment {shipment_id} not found")
        if not shipment.label_key:
            raise NotFound(f"Shipment {shipment_id} has no label yet")
        content = await self.labels.retrieve(shipment.label_key)
        return content, shipment.label_content_type or "application/pdf"
