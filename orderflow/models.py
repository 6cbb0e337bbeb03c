"""
Domain records: SKUs, orders, reservations, timeline, dedup/idempotency rows,
channels and shipments. Both storage backends read and write these models.
"""
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class OrderStatus(str, Enum):
    NEW = "NEW"
    RESERVED = "RESERVED"
    READY_TO_SHIP = "READY_TO_SHIP"
    LABEL_CREATED = "LABEL_CREATED"
    PICKED_UP = "PICKED_UP"
    IN_TRANSIT = "IN_TRANSIT"
    OUT_FOR_DELIVERY = "OUT_FOR_DELIVERY"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"
    RETURNED = "RETURNED"
    FAILED = "FAILED"


class ActorType(str, Enum):
    SYSTEM = "system"
    USER = "user"
    CHANNEL = "channel"
    CARRIER = "carrier"


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    REFUNDED = "REFUNDED"


class ChannelType(str, Enum):
    SHOPIFY = "shopify"
    WOOCOMMERCE = "woocommerce"


class CarrierType(str, Enum):
    DHL = "DHL"
    FEDEX = "FEDEX"


class ShipmentStatus(str, Enum):
    CREATED = "CREATED"
    LABEL_CREATED = "LABEL_CREATED"
    IN_TRANSIT = "IN_TRANSIT"
    OUT_FOR_DELIVERY = "OUT_FOR_DELIVERY"
    DELIVERED = "DELIVERED"
    EXCEPTION = "EXCEPTION"
    CANCELLED = "CANCELLED"
    RETURNED = "RETURNED"


class Sku(BaseModel):
    id: str = Field(default_factory=new_id)
    organization_id: str
    code: str
    name: str = ""
    quantity_on_hand: int = Field(default=0, ge=0)
    reserved: int = Field(default=0, ge=0)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def available(self) -> int:
        return self.quantity_on_hand - self.reserved


class Channel(BaseModel):
    id: str = Field(default_factory=new_id)
    organization_id: str
    type: ChannelType
    name: str = ""
    webhook_secret: str | None = None
    config: dict[str, Any] = Field(default_factory=dict)
    active: bool = True
    last_synced_at: datetime | None = None


class OrderItem(BaseModel):
    id: str = Field(default_factory=new_id)
    order_id: str
    sku_id: str
    external_item_id: str
    name: str = ""
    quantity: int = Field(gt=0)
    unit_price: Decimal = Decimal("0")
    total_price: Decimal = Decimal("0")


class Order(BaseModel):
    id: str = Field(default_factory=new_id)
    organization_id: str
    channel_id: str
    external_order_id: str
    order_number: str
    status: OrderStatus = OrderStatus.NEW
    payment_status: PaymentStatus = PaymentStatus.PENDING
    currency: str = "SAR"
    subtotal: Decimal = Decimal("0")
    shipping_cost: Decimal = Decimal("0")
    tax_amount: Decimal = Decimal("0")
    discount_amount: Decimal = Decimal("0")
    total_amount: Decimal = Decimal("0")
    shipping_address: dict[str, Any] = Field(default_factory=dict)
    internal_notes: str = ""
    # Milestones: first time each stage was reached
    imported_at: datetime | None = None
    reserved_at: datetime | None = None
    ready_to_ship_at: datetime | None = None
    label_created_at: datetime | None = None
    shipped_at: datetime | None = None
    delivered_at: datetime | None = None
    cancelled_at: datetime | None = None
    returned_at: datetime | None = None
    failed_at: datetime | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    items: list[OrderItem] = Field(default_factory=list)


class InventoryReservation(BaseModel):
    id: str = Field(default_factory=new_id)
    order_id: str
    sku_id: str
    quantity: int = Field(gt=0)
    released: bool = False
    released_at: datetime | None = None
    reason: str | None = None
    created_at: datetime = Field(default_factory=utcnow)


class InventoryAdjustment(BaseModel):
    id: str = Field(default_factory=new_id)
    organization_id: str
    sku_id: str
    kind: str  # reserve | release | adjust
    quantity_change: int
    reason: str = ""
    reference_id: str | None = None
    actor_id: str | None = None
    created_at: datetime = Field(default_factory=utcnow)


class TimelineEvent(BaseModel):
    id: str = Field(default_factory=new_id)
    order_id: str
    organization_id: str
    event_type: str
    actor_type: ActorType
    actor_id: str | None = None
    from_status: OrderStatus | None = None
    to_status: OrderStatus | None = None
    description: str = ""
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)


class ProcessedEvent(BaseModel):
    source: str
    external_event_id: str
    organization_id: str
    channel_id: str
    event_type: str
    job_id: str
    created_at: datetime = Field(default_factory=utcnow)


class ProcessedJob(BaseModel):
    job_id: str
    job_type: str
    result: dict[str, Any] = Field(default_factory=dict)
    processed_at: datetime = Field(default_factory=utcnow)


class ShippingAccount(BaseModel):
    id: str = Field(default_factory=new_id)
    organization_id: str
    carrier: CarrierType
    name: str = ""
    credentials: dict[str, Any] = Field(default_factory=dict)
    test_mode: bool = True
    active: bool = True
    created_at: datetime = Field(default_factory=utcnow)


class Shipment(BaseModel):
    id: str = Field(default_factory=new_id)
    organization_id: str
    order_id: str
    carrier: CarrierType
    shipping_account_id: str
    status: ShipmentStatus = ShipmentStatus.CREATED
    carrier_shipment_id: str | None = None
    tracking_number: str | None = None
    cost: Decimal | None = None
    estimated_delivery: datetime | None = None
    actual_delivery: datetime | None = None
    label_key: str | None = None
    label_content_type: str | None = None
    options: dict[str, Any] = Field(default_factory=dict)
    last_error: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class TrackingEvent(BaseModel):
    id: str = Field(default_factory=new_id)
    shipment_id: str
    carrier_status: str
    mapped_status: ShipmentStatus
    location: str | None = None
    description: str | None = None
    event_time: datetime


class OrderDetail(BaseModel):
    """Read model for "get order with timeline"."""

    order: Order
    timeline: list[TimelineEvent]
    reservations: list[InventoryReservation]
    shipments: list[Shipment]
