"""
Order service: the lifecycle state machine plus the order read/write paths.

Every status change goes through `apply_transition`, inside one transaction
with the order row locked: status, milestone timestamp, timeline events and the
inventory side effect commit together or not at all.
"""
import logging
from typing import Any

from orderflow.channels import ChannelOrder
from orderflow.errors import InvalidTransition, NotFound, UnknownSku
from orderflow.inventory import InventoryLedger
from orderflow.metrics import order_transitions_rejected_total, order_transitions_total
from orderflow.models import (
    ActorType,
    Channel,
    InventoryReservation,
    Order,
    OrderDetail,
    OrderItem,
    OrderStatus,
    TimelineEvent,
    utcnow,
)
from orderflow.order_state import (
    DELETABLE_STATUSES,
    MANUAL_RELEASE_STATUSES,
    MANUAL_RESERVE_STATUSES,
    MILESTONE_FIELDS,
    forward_path,
    is_terminal,
    is_valid_transition,
    should_release,
    should_reserve,
)
from orderflow.storage import Storage, Transaction

logger = logging.getLogger(__name__)


class OrderService:
    def __init__(self, storage: Storage, ledger: InventoryLedger):
        self.storage = storage
        self.ledger = ledger

    async def transition(
        self,
        order_id: str,
        target: OrderStatus,
        actor: ActorType,
        organization_id: str,
        actor_id: str | None = None,
        comment: str | None = None,
    ) -> Order:
        async with self.storage.transaction() as tx:
            order = await tx.get_order(order_id, organization_id, lock=True)
            if order is None:
                raise NotFound(f"Order {order_id} not found")
            return await self.apply_transition(tx, order, target, actor, actor_id=actor_id, comment=comment)

    async def apply_transition(
        self,
        tx: Transaction,
        order: Order,
        target: OrderStatus,
        actor: ActorType,
        actor_id: str | None = None,
        comment: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Order:
        """Move a locked order to target. Same-status calls return the order unchanged."""
        current = order.status
        if current == target:
            logger.info("Order %s already %s, transition is a no-op", order.id, target.value)
            return order
        if not is_valid_transition(current, target):
            order_transitions_rejected_total.labels(current_status=current.value, target_status=target.value).inc()
            logger.warning("Rejected transition for order %s: %s -> %s", order.id, current.value, target.value)
            raise InvalidTransition(current.value, target.value)

        now = utcnow()
        order.status = target
        field = MILESTONE_FIELDS.get(target)
        if field and getattr(order, field) is None:
            setattr(order, field, now)
        order.updated_at = now
        await tx.update_order(order)
        await tx.append_timeline(
            TimelineEvent(
                order_id=order.id,
                organization_id=order.organization_id,
                event_type="status_changed",
                actor_type=actor,
                actor_id=actor_id,
                from_status=current,
                to_status=target,
                description=comment or f"Status changed from {current.value} to {target.value}",
                metadata=metadata or {},
            )
        )

        if should_reserve(target) and not await tx.active_reservations(order.id):
            reservations = await self.ledger.reserve_in(tx, order, actor_id)
            if reservations:
                await self._append_inventory_event(tx, order, "inventory_reserved", actor, actor_id, reservations)
        elif should_release(target):
            reason = "cancelled" if target == OrderStatus.CANCELLED else "returned"
            released = await self.ledger.release_in(tx, order, reason, actor_id)
            if released:
                await self._append_inventory_event(tx, order, "inventory_released", actor, actor_id, released)

        order_transitions_total.labels(from_status=current.value, to_status=target.value).inc()
        logger.info("Order %s (%s) status %s -> %s by %s", order.id, order.order_number, current.value, target.value, actor.value)
        return order

    async def advance(
        self,
        tx: Transaction,
        order: Order,
        target: OrderStatus,
        actor: ActorType,
        actor_id: str | None = None,
        comment: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Order:
        """Walk a locked order forward to target through every intermediate status."""
        path = forward_path(order.status, target)
        if path is None:
            raise InvalidTransition(order.status.value, target.value)
        for status in path:
            order = await self.apply_transition(tx, order, status, actor, actor_id, comment, metadata)
        return order

    async def _append_inventory_event(self, tx, order, event_type, actor, actor_id, reservations) -> None:
        await tx.append_timeline(
            TimelineEvent(
                order_id=order.id,
                organization_id=order.organization_id,
                event_type=event_type,
                actor_type=actor,
                actor_id=actor_id,
                description=f"{'Reserved' if event_type == 'inventory_reserved' else 'Released'} "
                f"{sum(r.quantity for r in reservations)} unit(s) across {len(reservations)} SKU(s)",
                metadata={"reservations": [{"sku_id": r.sku_id, "quantity": r.quantity} for r in reservations]},
            )
        )

    async def reserve_inventory(
        self, order_id: str, organization_id: str, actor_id: str | None = None
    ) -> list[InventoryReservation]:
        """
        Reserve stock for an order that is NEW or RESERVED without moving it.
        A no-op returning the held reservations when the order already holds stock.
        """
        async with self.storage.transaction() as tx:
            order = await tx.get_order(order_id, organization_id, lock=True)
            if order is None:
                raise NotFound(f"Order {order_id} not found")
            if order.status not in MANUAL_RESERVE_STATUSES:
                raise InvalidTransition(
                    order.status.value,
                    OrderStatus.RESERVED.value,
                    f"Cannot reserve inventory for order in status {order.status.value}",
                )
            held = await tx.active_reservations(order.id)
            if held:
                return held
            reservations = await self.ledger.reserve_in(tx, order, actor_id)
            if reservations:
                await self._append_inventory_event(tx, order, "inventory_reserved", ActorType.USER, actor_id, reservations)
            return reservations

    async def release_inventory(
        self, order_id: str, reason: str, organization_id: str, actor_id: str | None = None
    ) -> list[InventoryReservation]:
        """
        Release the stock held by an order that is NEW, CANCELLED, RETURNED or FAILED.
        Orders being fulfilled must be cancelled instead.
        """
        async with self.storage.transaction() as tx:
            order = await tx.get_order(order_id, organization_id, lock=True)
            if order is None:
                raise NotFound(f"Order {order_id} not found")
            if order.status not in MANUAL_RELEASE_STATUSES:
                raise InvalidTransition(
                    order.status.value,
                    OrderStatus.CANCELLED.value,
                    f"Cannot release inventory of order in status {order.status.value}; cancel the order instead",
                )
            released = await self.ledger.release_in(tx, order, reason, actor_id)
            if released:
                await self._append_inventory_event(tx, order, "inventory_released", ActorType.USER, actor_id, released)
            return released

    async def _rebalance_reservations(self, tx: Transaction, order: Order, actor_id: str | None) -> None:
        """Bring the stock held by an order back in line with its items after they changed."""
        if is_terminal(order.status):
            return
        held = await tx.active_reservations(order.id)
        if not held:
            return
        wanted: dict[str, int] = {}
        for item in order.items:
            wanted[item.sku_id] = wanted.get(item.sku_id, 0) + item.quantity
        before = {r.sku_id: r.quantity for r in held}
        if before == wanted:
            return
        await self.ledger.release_in(tx, order, "items changed", actor_id)
        reservations = await self.ledger.reserve_in(tx, order, actor_id)
        await self.append_event(
            tx,
            order,
            "inventory_rebalanced",
            ActorType.CHANNEL,
            "Reservations updated to match changed items",
            actor_id=actor_id,
            metadata={"before": before, "after": {r.sku_id: r.quantity for r in reservations}},
        )

    async def _next_order_number(self, tx: Transaction, organization_id: str) -> str:
        period = f"{utcnow():%Y%m}"
        value = await tx.next_order_sequence(organization_id, period)
        return f"ORD-{period}-{value:05d}"

    async def upsert_from_channel(
        self,
        tx: Transaction,
        channel: Channel,
        mapped: ChannelOrder,
        actor_id: str | None = None,
        rebalance: bool = True,
    ) -> tuple[Order, bool]:
        """
        Create or update the order keyed by (organization, channel, external order id)
        and reconcile its items by external item id. Returns (order, created).
        Every SKU must already exist. With rebalance, an order already holding stock
        has its reservation brought in line with the new quantities (InsufficientStock
        when they cannot be covered).
        """
        organization_id = channel.organization_id
        sku_ids: dict[str, str] = {}
        for line in mapped.items:
            sku = await tx.find_sku_by_code(organization_id, line.sku)
            if sku is None:
                raise UnknownSku(line.sku)
            sku_ids[line.sku] = sku.id

        order = await tx.find_order_by_external(organization_id, channel.id, mapped.external_order_id, lock=True)
        created = order is None
        totals = {
            "subtotal": mapped.subtotal,
            "shipping_cost": mapped.shipping_cost,
            "tax_amount": mapped.tax_amount,
            "discount_amount": mapped.discount_amount,
            "total_amount": mapped.total_amount,
        }
        if created:
            now = utcnow()
            order = Order(
                organization_id=organization_id,
                channel_id=channel.id,
                external_order_id=mapped.external_order_id,
                order_number=mapped.order_number or await self._next_order_number(tx, organization_id),
                payment_status=mapped.payment_status,
                currency=mapped.currency,
                shipping_address=mapped.shipping_address,
                imported_at=mapped.ordered_at or now,
                **totals,
            )
            await tx.insert_order(order)
        else:
            for key, value in totals.items():
                setattr(order, key, value)
            order.payment_status = mapped.payment_status
            if mapped.shipping_address:
                order.shipping_address = mapped.shipping_address
            order.updated_at = utcnow()
            await tx.update_order(order)

        for line in mapped.items:
            await tx.upsert_order_item(
                OrderItem(
                    order_id=order.id,
                    sku_id=sku_ids[line.sku],
                    external_item_id=line.external_item_id,
                    name=line.name,
                    quantity=line.quantity,
                    unit_price=line.unit_price,
                    total_price=line.total_price,
                )
            )

        await tx.append_timeline(
            TimelineEvent(
                order_id=order.id,
                organization_id=organization_id,
                event_type="order_created" if created else "order_updated",
                actor_type=ActorType.CHANNEL,
                actor_id=actor_id,
                to_status=OrderStatus.NEW if created else None,
                description=f"Order {'imported' if created else 'updated'} from {channel.name or channel.type.value}",
                metadata={"external_order_id": mapped.external_order_id, "channel": channel.name},
            )
        )
        if rebalance and not created:
            # Item quantities may have changed under an existing reservation
            await self._rebalance_reservations(tx, await tx.get_order(order.id), actor_id)
        logger.info("Order %s %s from channel %s (external id %s)", order.order_number, "created" if created else "updated", channel.id, mapped.external_order_id)
        return await tx.get_order(order.id), created

    async def append_event(
        self,
        tx: Transaction,
        order: Order,
        event_type: str,
        actor: ActorType,
        description: str = "",
        actor_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> TimelineEvent:
        event = TimelineEvent(
            order_id=order.id,
            organization_id=order.organization_id,
            event_type=event_type,
            actor_type=actor,
            actor_id=actor_id,
            description=description,
            metadata=metadata or {},
        )
        await tx.append_timeline(event)
        logger.info("Timeline event %s on order %s", event_type, order.id)
        return event

    async def add_note(self, order_id: str, organization_id: str, note: str, actor_id: str | None = None) -> TimelineEvent:
        async with self.storage.transaction() as tx:
            order = await tx.get_order(order_id, organization_id, lock=True)
            if order is None:
                raise NotFound(f"Order {order_id} not found")
            order.internal_notes = f"{order.internal_notes}\n{note}".strip()
            order.updated_at = utcnow()
            await tx.update_order(order)
            return await self.append_event(tx, order, "note_added", ActorType.USER, note, actor_id=actor_id)

    async def get_order_detail(self, order_id: str, organization_id: str) -> OrderDetail:
        async with self.storage.transaction() as tx:
            order = await tx.get_order(order_id, organization_id)
            if order is None:
                raise NotFound(f"Order {order_id} not found")
            return OrderDetail(
                order=order,
                timeline=await tx.list_timeline(order_id),
                reservations=await tx.list_reservations(order_id),
                shipments=await tx.list_shipments(order_id),
            )

    async def list_orders(
        self,
        organization_id: str,
        status: OrderStatus | None = None,
        channel_id: str | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> list[Order]:
        async with self.storage.transaction() as tx:
            return await tx.list_orders(organization_id, status=status, channel_id=channel_id, limit=limit, offset=offset)

    async def delete_order(self, order_id: str, organization_id: str) -> None:
        """Only NEW or CANCELLED orders without an active reservation can be deleted."""
        async with self.storage.transaction() as tx:
            order = await tx.get_order(order_id, organization_id, lock=True)
            if order is None:
                raise NotFound(f"Order {order_id} not found")
            if order.status not in DELETABLE_STATUSES:
                raise InvalidTransition(order.status.value, "DELETED", f"Cannot delete order in status {order.status.value}")
            if await tx.active_reservations(order_id):
                raise InvalidTransition(order.status.value, "DELETED", "Cannot delete order holding reserved inventory")
            await tx.delete_order(order_id)
        logger.info("Order %s (%s) deleted", order_id, order.order_number)
