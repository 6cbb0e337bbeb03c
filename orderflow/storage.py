"""
Storage contract. Every business mutation runs inside `Storage.transaction()`;
leaving the block with an exception rolls all of it back.

Backends: `orderflow.db.PostgresStorage` (asyncpg) and
`orderflow.memory_store.MemoryStorage` (in-process, serialised).
"""
from abc import ABC, abstractmethod
from contextlib import AbstractAsyncContextManager
from datetime import datetime

from orderflow.models import (
    CarrierType,
    Channel,
    InventoryAdjustment,
    InventoryReservation,
    Order,
    OrderItem,
    OrderStatus,
    ProcessedEvent,
    ProcessedJob,
    Shipment,
    ShippingAccount,
    Sku,
    TimelineEvent,
    TrackingEvent,
)


class Transaction(ABC):
    # --- orders ---
    @abstractmethod
    async def get_order(self, order_id: str, organization_id: str | None = None, *, lock: bool = False) -> Order | None:
        """Order with its items. lock=True holds the order row until commit."""

    @abstractmethod
    async def find_order_by_external(
        self, organization_id: str, channel_id: str, external_order_id: str, *, lock: bool = False
    ) -> Order | None: ...

    @abstractmethod
    async def insert_order(self, order: Order) -> None: ...

    @abstractmethod
    async def update_order(self, order: Order) -> None:
        """Persist the scalar fields of an existing order (items are written separately)."""

    @abstractmethod
    async def delete_order(self, order_id: str) -> None: ...

    @abstractmethod
    async def list_orders(
        self,
        organization_id: str,
        *,
        status: OrderStatus | None = None,
        channel_id: str | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> list[Order]: ...

    @abstractmethod
    async def next_order_sequence(self, organization_id: str, period: str) -> int:
        """Next order number in (organization, period), starting at 1."""

    @abstractmethod
    async def upsert_order_item(self, item: OrderItem) -> OrderItem:
        """Insert or update by (order_id, external_item_id); returns the stored row."""

    # --- timeline ---
    @abstractmethod
    async def append_timeline(self, event: TimelineEvent) -> None: ...

    @abstractmethod
    async def list_timeline(self, order_id: str) -> list[TimelineEvent]:
        """Oldest first."""

    # --- skus / ledger ---
    @abstractmethod
    async def insert_sku(self, sku: Sku) -> None: ...

    @abstractmethod
    async def get_sku(self, sku_id: str, organization_id: str | None = None) -> Sku | None: ...

    @abstractmethod
    async def find_sku_by_code(self, organization_id: str, code: str) -> Sku | None: ...

    @abstractmethod
    async def try_reserve(self, sku_id: str, quantity: int) -> Sku | None:
        """Atomically add quantity to reserved if it still fits under quantity_on_hand; None if it does not."""

    @abstractmethod
    async def release_reserved(self, sku_id: str, quantity: int) -> Sku: ...

    @abstractmethod
    async def apply_on_hand_delta(self, sku_id: str, delta: int) -> Sku | None:
        """Atomically add delta to quantity_on_hand unless the result would drop below reserved (or zero)."""

    @abstractmethod
    async def insert_adjustment(self, adjustment: InventoryAdjustment) -> None: ...

    @abstractmethod
    async def list_adjustments(self, sku_id: str, limit: int = 50) -> list[InventoryAdjustment]: ...

    @abstractmethod
    async def active_reservations(self, order_id: str) -> list[InventoryReservation]: ...

    @abstractmethod
    async def active_reservations_for_sku(self, sku_id: str) -> list[InventoryReservation]: ...

    @abstractmethod
    async def list_reservations(self, order_id: str) -> list[InventoryReservation]: ...

    @abstractmethod
    async def insert_reservation(self, reservation: InventoryReservation) -> None: ...

    @abstractmethod
    async def mark_reservation_released(self, reservation_id: str, reason: str, at: datetime) -> None: ...

    # --- ingestion / job idempotency ---
    @abstractmethod
    async def get_processed_event(self, source: str, external_event_id: str) -> ProcessedEvent | None: ...

    @abstractmethod
    async def insert_processed_event(self, event: ProcessedEvent) -> bool:
        """False if (source, external_event_id) was already recorded."""

    @abstractmethod
    async def get_processed_job(self, job_id: str) -> ProcessedJob | None: ...

    @abstractmethod
    async def insert_processed_job(self, processed: ProcessedJob) -> None:
        """Raises DuplicateJob if the job id is already recorded."""

    # --- channels ---
    @abstractmethod
    async def insert_channel(self, channel: Channel) -> None: ...

    @abstractmethod
    async def get_channel(self, channel_id: str) -> Channel | None: ...

    @abstractmethod
    async def list_active_channels(self) -> list[Channel]: ...

    @abstractmethod
    async def mark_channel_synced(self, channel_id: str, at: datetime) -> None: ...

    # --- shipping ---
    @abstractmethod
    async def insert_shipping_account(self, account: ShippingAccount) -> None: ...

    @abstractmethod
    async def get_shipping_account(self, account_id: str, organization_id: str) -> ShippingAccount | None: ...

    @abstractmethod
    async def find_active_shipping_account(self, organization_id: str, carrier: CarrierType) -> ShippingAccount | None:
        """Oldest active account for the carrier."""

    @abstractmethod
    async def insert_shipment(self, shipment: Shipment) -> None: ...

    @abstractmethod
    async def get_shipment(self, shipment_id: str, organization_id: str | None = None, *, lock: bool = False) -> Shipment | None: ...

    @abstractmethod
    async def find_shipment(self, order_id: str, carrier: CarrierType) -> Shipment | None: ...

    @abstractmethod
    async def list_shipments(self, order_id: str) -> list[Shipment]: ...

    @abstractmethod
    async def list_trackable_shipments(self) -> list[Shipment]:
        """Shipments with a tracking number that are not yet in a final status."""

    @abstractmethod
    async def update_shipment(self, shipment: Shipment) -> None: ...

    @abstractmethod
    async def insert_tracking_event(self, event: TrackingEvent) -> bool:
        """False if an identical (shipment, carrier_status, event_time) event is already stored."""

    @abstractmethod
    async def list_tracking_events(self, shipment_id: str) -> list[TrackingEvent]: ...


class Storage(ABC):
    @abstractmethod
    def transaction(self) -> AbstractAsyncContextManager[Transaction]: ...

    async def init(self) -> None:
        """Create schema / warm up connections."""

    async def close(self) -> None:
        """Release connections."""
