"""
In-process storage backend. Transactions are serialised by one asyncio.Lock and
rolled back by restoring a snapshot taken on entry, so every transaction is
isolated and atomic. Transactions must not be nested.
"""
import asyncio
import copy
from contextlib import asynccontextmanager
from dataclasses import dataclass, field

from orderflow.errors import DuplicateJob
from orderflow.models import (
    Channel,
    InventoryAdjustment,
    InventoryReservation,
    Order,
    OrderItem,
    ProcessedEvent,
    ProcessedJob,
    Shipment,
    ShipmentStatus,
    ShippingAccount,
    Sku,
    TimelineEvent,
    TrackingEvent,
    utcnow,
)
from orderflow.storage import Storage, Transaction

_FINAL_SHIPMENT_STATUSES = {ShipmentStatus.DELIVERED, ShipmentStatus.CANCELLED, ShipmentStatus.RETURNED}


@dataclass
class _State:
    orders: dict[str, Order] = field(default_factory=dict)
    items: dict[str, OrderItem] = field(default_factory=dict)
    timeline: list[TimelineEvent] = field(default_factory=list)
    skus: dict[str, Sku] = field(default_factory=dict)
    adjustments: list[InventoryAdjustment] = field(default_factory=list)
    reservations: dict[str, InventoryReservation] = field(default_factory=dict)
    processed_events: dict[tuple[str, str], ProcessedEvent] = field(default_factory=dict)
    processed_jobs: dict[str, ProcessedJob] = field(default_factory=dict)
    channels: dict[str, Channel] = field(default_factory=dict)
    accounts: dict[str, ShippingAccount] = field(default_factory=dict)
    shipments: dict[str, Shipment] = field(default_factory=dict)
    tracking_events: list[TrackingEvent] = field(default_factory=list)
    order_sequences: dict[tuple[str, str], int] = field(default_factory=dict)


def _copy(model):
    return model.model_copy(deep=True) if model is not None else None


class MemoryTransaction(Transaction):
    def __init__(self, state: _State):
        self._s = state

    def _with_items(self, order: Order) -> Order:
        result = order.model_copy(deep=True)
        result.items = [_copy(i) for i in self._s.items.values() if i.order_id == order.id]
        return result

    # --- orders ---
    async def get_order(self, order_id, organization_id=None, *, lock=False):
        order = self._s.orders.get(order_id)
        if order is None or (organization_id is not None and order.organization_id != organization_id):
            return None
        return self._with_items(order)

    async def find_order_by_external(self, organization_id, channel_id, external_order_id, *, lock=False):
        for order in self._s.orders.values():
            if (
                order.organization_id == organization_id
                and order.channel_id == channel_id
                and order.external_order_id == external_order_id
            ):
                return self._with_items(order)
        return None

    async def insert_order(self, order):
        if await self.find_order_by_external(order.organization_id, order.channel_id, order.external_order_id):
            raise ValueError(f"Order {order.external_order_id} already exists for channel {order.channel_id}")
        for existing in self._s.orders.values():
            if (existing.organization_id, existing.channel_id, existing.order_number) == (
                order.organization_id,
                order.channel_id,
                order.order_number,
            ):
                raise ValueError(f"Order number {order.order_number} already used in channel {order.channel_id}")
        stored = order.model_copy(deep=True)
        stored.items = []
        self._s.orders[order.id] = stored

    async def update_order(self, order):
        stored = order.model_copy(deep=True)
        stored.items = []
        self._s.orders[order.id] = stored

    async def delete_order(self, order_id):
        self._s.orders.pop(order_id, None)
        self._s.items = {k: v for k, v in self._s.items.items() if v.order_id != order_id}
        self._s.reservations = {k: v for k, v in self._s.reservations.items() if v.order_id != order_id}
        self._s.timeline = [e for e in self._s.timeline if e.order_id != order_id]

    async def list_orders(self, organization_id, *, status=None, channel_id=None, limit=20, offset=0):
        rows = [
            o
            for o in self._s.orders.values()
            if o.organization_id == organization_id
            and (status is None or o.status == status)
            and (channel_id is None or o.channel_id == channel_id)
        ]
        rows.sort(key=lambda o: o.created_at, reverse=True)
        return [self._with_items(o) for o in rows[offset:offset + limit]]

    async def next_order_sequence(self, organization_id, period):
        key = (organization_id, period)
        self._s.order_sequences[key] = self._s.order_sequences.get(key, 0) + 1
        return self._s.order_sequences[key]

    async def upsert_order_item(self, item):
        for existing in self._s.items.values():
            if existing.order_id == item.order_id and existing.external_item_id == item.external_item_id:
                updated = existing.model_copy(
                    update={
                        "sku_id": item.sku_id,
                        "name": item.name,
                        "quantity": item.quantity,
                        "unit_price": item.unit_price,
                        "total_price": item.total_price,
                    }
                )
                self._s.items[existing.id] = updated
                return _copy(updated)
        self._s.items[item.id] = _copy(item)
        return _copy(item)

    # --- timeline ---
    async def append_timeline(self, event):
        self._s.timeline.append(_copy(event))

    async def list_timeline(self, order_id):
        return [_copy(e) for e in self._s.timeline if e.order_id == order_id]

    # --- skus / ledger ---
    async def insert_sku(self, sku):
        if await self.find_sku_by_code(sku.organization_id, sku.code):
            raise ValueError(f"SKU {sku.code} already exists")
        self._s.skus[sku.id] = _copy(sku)

    async def get_sku(self, sku_id, organization_id=None):
        sku = self._s.skus.get(sku_id)
        if sku is None or (organization_id is not None and sku.organization_id != organization_id):
            return None
        return _copy(sku)

    async def find_sku_by_code(self, organization_id, code):
        for sku in self._s.skus.values():
            if sku.organization_id == organization_id and sku.code == code:
                return _copy(sku)
        return None

    async def try_reserve(self, sku_id, quantity):
        sku = self._s.skus.get(sku_id)
        if sku is None or sku.reserved + quantity > sku.quantity_on_hand:
            return None
        sku.reserved += quantity
        sku.updated_at = utcnow()
        return _copy(sku)

    async def release_reserved(self, sku_id, quantity):
        sku = self._s.skus[sku_id]
        sku.reserved = max(0, sku.reserved - quantity)
        sku.updated_at = utcnow()
        return _copy(sku)

    async def apply_on_hand_delta(self, sku_id, delta):
        sku = self._s.skus.get(sku_id)
        if sku is None:
            return None
        result = sku.quantity_on_hand + delta
        if result < 0 or result < sku.reserved:
            return None
        sku.quantity_on_hand = result
        sku.updated_at = utcnow()
        return _copy(sku)

    async def insert_adjustment(self, adjustment):
        self._s.adjustments.append(_copy(adjustment))

    async def list_adjustments(self, sku_id, limit=50):
        rows = [a for a in self._s.adjustments if a.sku_id == sku_id]
        return [_copy(a) for a in reversed(rows)][:limit]

    async def active_reservations(self, order_id):
        return [_copy(r) for r in self._s.reservations.values() if r.order_id == order_id and not r.released]

    async def active_reservations_for_sku(self, sku_id):
        return [_copy(r) for r in self._s.reservations.values() if r.sku_id == sku_id and not r.released]

    async def list_reservations(self, order_id):
        return [_copy(r) for r in self._s.reservations.values() if r.order_id == order_id]

    async def insert_reservation(self, reservation):
        for r in self._s.reservations.values():
            if r.order_id == reservation.order_id and r.sku_id == reservation.sku_id and not r.released:
                raise ValueError(f"Active reservation already exists for order {r.order_id} sku {r.sku_id}")
        self._s.reservations[reservation.id] = _copy(reservation)

    async def mark_reservation_released(self, reservation_id, reason, at):
        r = self._s.reservations[reservation_id]
        r.released = True
        r.released_at = at
        r.reason = reason

    # --- ingestion / job idempotency ---
    async def get_processed_event(self, source, external_event_id):
        return _copy(self._s.processed_events.get((source, external_event_id)))

    async def insert_processed_event(self, event):
        key = (event.source, event.external_event_id)
        if key in self._s.processed_events:
            return False
        self._s.processed_events[key] = _copy(event)
        return True

    async def get_processed_job(self, job_id):
        return _copy(self._s.processed_jobs.get(job_id))

    async def insert_processed_job(self, processed):
        if processed.job_id in self._s.processed_jobs:
            raise DuplicateJob(processed.job_id)
        self._s.processed_jobs[processed.job_id] = _copy(processed)

    # --- channels ---
    async def insert_channel(self, channel):
        self._s.channels[channel.id] = _copy(channel)

    async def get_channel(self, channel_id):
        return _copy(self._s.channels.get(channel_id))

    async def list_active_channels(self):
        return [_copy(c) for c in self._s.channels.values() if c.active]

    async def mark_channel_synced(self, channel_id, at):
        channel = self._s.channels.get(channel_id)
        if channel is not None:
            channel.last_synced_at = at

    # --- shipping ---
    async def insert_shipping_account(self, account):
        self._s.accounts[account.id] = _copy(account)

    async def get_shipping_account(self, account_id, organization_id):
        account = self._s.accounts.get(account_id)
        if account is None or account.organization_id != organization_id:
            return None
        return _copy(account)

    async def find_active_shipping_account(self, organization_id, carrier):
        rows = [
            a
            for a in self._s.accounts.values()
            if a.organization_id == organization_id and a.carrier == carrier and a.active
        ]
        rows.sort(key=lambda a: a.created_at)
        return _copy(rows[0]) if rows else None

    async def insert_shipment(self, shipment):
        if await self.find_shipment(shipment.order_id, shipment.carrier):
            raise ValueError(f"Shipment already exists for order {shipment.order_id} carrier {shipment.carrier}")
        self._s.shipments[shipment.id] = _copy(shipment)

    async def get_shipment(self, shipment_id, organization_id=None, *, lock=False):
        shipment = self._s.shipments.get(shipment_id)
        if shipment is None or (organization_id is not None and shipment.organization_id != organization_id):
            return None
        return _copy(shipment)

    async def find_shipment(self, order_id, carrier):
        for s in self._s.shipments.values():
            if s.order_id == order_id and s.carrier == carrier:
                return _copy(s)
        return None

    async def list_shipments(self, order_id):
        return [_copy(s) for s in self._s.shipments.values() if s.order_id == order_id]

    async def list_trackable_shipments(self):
        return [
            _copy(s)
            for s in self._s.shipments.values()
            if s.tracking_number and s.status not in _FINAL_SHIPMENT_STATUSES
        ]

    async def update_shipment(self, shipment):
        self._s.shipments[shipment.id] = _copy(shipment)

    async def insert_tracking_event(self, event):
        for e in self._s.tracking_events:
            if (
                e.shipment_id == event.shipment_id
                and e.carrier_status == event.carrier_status
                and e.event_time == event.event_time
            ):
                return False
        self._s.tracking_events.append(_copy(event))
        return True

    async def list_tracking_events(self, shipment_id):
        rows = [e for e in self._s.tracking_events if e.shipment_id == shipment_id]
        rows.sort(key=lambda e: e.event_time)
        return [_copy(e) for e in rows]


class MemoryStorage(Storage):
    def __init__(self):
        self._state = _State()
        self._lock = asyncio.Lock()

    @asynccontextmanager
    async def transaction(self):
        async with self._lock:
            snapshot = copy.deepcopy(self._state)
            try:
                yield MemoryTransaction(self._state)
            except BaseException:
                self._state = snapshot
                raise
