"""
Inventory ledger: per-SKU on-hand / reserved counters.

Reserve is all-or-nothing across an order's items and a no-op when the order
already holds active reservations. Release is a no-op when nothing is held.
Both run inside the caller's transaction (`reserve_in` / `release_in`): the
order service owns the order lock, the status checks and the timeline event.
"""
import logging

from pydantic import BaseModel

from orderflow.errors import AlreadyExists, InsufficientStock, NegativeInventory, NotFound
from orderflow.metrics import inventory_reservations_failed_total
from orderflow.models import InventoryAdjustment, InventoryReservation, Order, Sku, utcnow
from orderflow.storage import Storage, Transaction

logger = logging.getLogger(__name__)


class SkuDetail(BaseModel):
    sku: Sku
    available: int
    active_reservations: list[InventoryReservation]
    adjustments: list[InventoryAdjustment]


class InventoryLedger:
    def __init__(self, storage: Storage):
        self.storage = storage

    async def create_sku(self, organization_id: str, code: str, name: str = "", quantity_on_hand: int = 0) -> Sku:
        sku = Sku(organization_id=organization_id, code=code, name=name, quantity_on_hand=quantity_on_hand)
        async with self.storage.transaction() as tx:
            if await tx.find_sku_by_code(organization_id, code) is not None:
                raise AlreadyExists(f"SKU {code} already exists")
            await tx.insert_sku(sku)
            if quantity_on_hand:
                await tx.insert_adjustment(
                    InventoryAdjustment(
                        organization_id=organization_id,
                        sku_id=sku.id,
                        kind="adjust",
                        quantity_change=quantity_on_hand,
                        reason="Initial stock",
                    )
                )
        logger.info("Created SKU %s (%s) on_hand=%d", code, sku.id, quantity_on_hand)
        return sku

    async def reserve_in(self, tx: Transaction, order: Order, actor_id: str | None = None) -> list[InventoryReservation]:
        existing = await tx.active_reservations(order.id)
        if existing:
            logger.info("Order %s already holds %d reservation(s), skipping reserve", order.id, len(existing))
            return existing

        wanted: dict[str, int] = {}
        for item in order.items:
            wanted[item.sku_id] = wanted.get(item.sku_id, 0) + item.quantity

        reservations = []
        # Ascending SKU id order so concurrent reservations lock rows in the same order
        for sku_id in sorted(wanted):
            quantity = wanted[sku_id]
            sku = await tx.try_reserve(sku_id, quantity)
            if sku is None:
                current = await tx.get_sku(sku_id)
                inventory_reservations_failed_total.inc()
                logger.warning(
                    "Insufficient stock for order %s: sku=%s requested=%d available=%s",
                    order.id,
                    sku_id,
                    quantity,
                    current.available if current else None,
                )
                raise InsufficientStock(
                    current.code if current else sku_id,
                    current.available if current else 0,
                    quantity,
                )
            reservation = InventoryReservation(order_id=order.id, sku_id=sku_id, quantity=quantity)
            await tx.insert_reservation(reservation)
            await tx.insert_adjustment(
                InventoryAdjustment(
                    organization_id=order.organization_id,
                    sku_id=sku_id,
                    kind="reserve",
                    quantity_change=-quantity,
                    reason=f"Reserved for order {order.order_number}",
                    reference_id=order.id,
                    actor_id=actor_id,
                )
            )
            reservations.append(reservation)
            logger.info("Reserved %d of %s for order %s (reserved now %d/%d)", quantity, sku.code, order.id, sku.reserved, sku.quantity_on_hand)
        return reservations

    async def release_in(
        self, tx: Transaction, order: Order, reason: str, actor_id: str | None = None
    ) -> list[InventoryReservation]:
        active = await tx.active_reservations(order.id)
        if not active:
            logger.info("Order %s has no active reservations, nothing to release", order.id)
            return []
        now = utcnow()
        released = []
        for reservation in sorted(active, key=lambda r: r.sku_id):
            await tx.release_reserved(reservation.sku_id, reservation.quantity)
            await tx.mark_reservation_released(reservation.id, reason, now)
            await tx.insert_adjustment(
                InventoryAdjustment(
                    organization_id=order.organization_id,
                    sku_id=reservation.sku_id,
                    kind="release",
                    quantity_change=reservation.quantity,
                    reason=f"Released from order {order.order_number} ({reason})",
                    reference_id=order.id,
                    actor_id=actor_id,
                )
            )
            released.append(
                reservation.model_copy(update={"released": True, "released_at": now, "reason": reason})
            )
            logger.info("Released %d of sku %s from order %s (%s)", reservation.quantity, reservation.sku_id, order.id, reason)
        return released

    async def adjust(
        self,
        sku_id: str,
        delta: int,
        reason: str,
        organization_id: str,
        actor_id: str | None = None,
        reference_id: str | None = None,
    ) -> Sku:
        """Apply a signed change to quantity_on_hand. On hand may never drop below zero or below reserved."""
        async with self.storage.transaction() as tx:
            sku = await tx.get_sku(sku_id, organization_id)
            if sku is None:
                raise NotFound(f"SKU {sku_id} not found")
            updated = await tx.apply_on_hand_delta(sku_id, delta)
            if updated is None:
                raise NegativeInventory(
                    f"Adjustment of {delta} on SKU {sku.code} would leave on hand at "
                    f"{sku.quantity_on_hand + delta} with {sku.reserved} reserved"
                )
            await tx.insert_adjustment(
                InventoryAdjustment(
                    organization_id=organization_id,
                    sku_id=sku_id,
                    kind="adjust",
                    quantity_change=delta,
                    reason=reason,
                    reference_id=reference_id,
                    actor_id=actor_id,
                )
            )
        logger.info("Adjusted SKU %s by %d (%s): on_hand=%d", sku.code, delta, reason, updated.quantity_on_hand)
        return updated

    async def get_sku_detail(self, sku_id: str, organization_id: str, adjustments_limit: int = 50) -> SkuDetail:
        async with self.storage.transaction() as tx:
            sku = await tx.get_sku(sku_id, organization_id)
            if sku is None:
                raise NotFound(f"SKU {sku_id} not found")
            return SkuDetail(
                sku=sku,
                available=sku.available,
                active_reservations=await tx.active_reservations_for_sku(sku_id),
                adjustments=await tx.list_adjustments(sku_id, adjustments_limit),
            )
