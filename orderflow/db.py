"""
Async Postgres backend (asyncpg).

One transaction per unit of work: the caller opens `storage.transaction()`, and
every statement in the block runs on the same connection inside BEGIN/COMMIT.
Order rows are locked with SELECT ... FOR UPDATE; SKU counters only move
through conditional UPDATEs so the reserved <= on_hand check and the increment
happen in one statement under the row lock.
"""
import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from enum import Enum

import asyncpg
from asyncpg.exceptions import UniqueViolationError

from orderflow.errors import DuplicateJob
from orderflow.models import (
    CarrierType,
    Channel,
    InventoryAdjustment,
    InventoryReservation,
    Order,
    OrderItem,
    ProcessedEvent,
    ProcessedJob,
    Shipment,
    ShippingAccount,
    Sku,
    TimelineEvent,
    TrackingEvent,
)
from orderflow.storage import Storage, Transaction

logger = logging.getLogger(__name__)

SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS skus (
        id TEXT PRIMARY KEY,
        organization_id TEXT NOT NULL,
        code TEXT NOT NULL,
        name TEXT NOT NULL DEFAULT '',
        quantity_on_hand INT NOT NULL DEFAULT 0,
        reserved INT NOT NULL DEFAULT 0,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        UNIQUE (organization_id, code),
        CHECK (quantity_on_hand >= 0),
        CHECK (reserved >= 0 AND reserved <= quantity_on_hand)
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS channels (
        id TEXT PRIMARY KEY,
        organization_id TEXT NOT NULL,
        type VARCHAR(30) NOT NULL,
        name TEXT NOT NULL DEFAULT '',
        webhook_secret TEXT,
        config JSONB NOT NULL DEFAULT '{}',
        active BOOLEAN NOT NULL DEFAULT TRUE,
        last_synced_at TIMESTAMPTZ
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS orders (
        id TEXT PRIMARY KEY,
        organization_id TEXT NOT NULL,
        channel_id TEXT NOT NULL,
        external_order_id TEXT NOT NULL,
        order_number TEXT NOT NULL,
        status VARCHAR(30) NOT NULL,
        payment_status VARCHAR(20) NOT NULL,
        currency VARCHAR(3) NOT NULL,
        subtotal NUMERIC(12, 2) NOT NULL DEFAULT 0,
        shipping_cost NUMERIC(12, 2) NOT NULL DEFAULT 0,
        tax_amount NUMERIC(12, 2) NOT NULL DEFAULT 0,
        discount_amount NUMERIC(12, 2) NOT NULL DEFAULT 0,
        total_amount NUMERIC(12, 2) NOT NULL DEFAULT 0,
        shipping_address JSONB NOT NULL DEFAULT '{}',
        internal_notes TEXT NOT NULL DEFAULT '',
        imported_at TIMESTAMPTZ,
        reserved_at TIMESTAMPTZ,
        ready_to_ship_at TIMESTAMPTZ,
        label_created_at TIMESTAMPTZ,
        shipped_at TIMESTAMPTZ,
        delivered_at TIMESTAMPTZ,
        cancelled_at TIMESTAMPTZ,
        returned_at TIMESTAMPTZ,
        failed_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        UNIQUE (organization_id, channel_id, external_order_id)
    );
    """,
    "CREATE INDEX IF NOT EXISTS idx_orders_org_status ON orders(organization_id, status);",
    """
    CREATE UNIQUE INDEX IF NOT EXISTS uq_orders_number
    ON orders(organization_id, channel_id, order_number);
    """,
    """
    CREATE TABLE IF NOT EXISTS order_number_sequences (
        organization_id TEXT NOT NULL,
        period VARCHAR(6) NOT NULL,
        last_value INT NOT NULL,
        PRIMARY KEY (organization_id, period)
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS order_items (
        id TEXT PRIMARY KEY,
        order_id TEXT NOT NULL REFERENCES orders(id) ON DELETE CASCADE,
        sku_id TEXT NOT NULL REFERENCES skus(id),
        external_item_id TEXT NOT NULL,
        name TEXT NOT NULL DEFAULT '',
        quantity INT NOT NULL CHECK (quantity > 0),
        unit_price NUMERIC(12, 2) NOT NULL DEFAULT 0,
        total_price NUMERIC(12, 2) NOT NULL DEFAULT 0,
        UNIQUE (order_id, external_item_id)
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS inventory_reservations (
        id TEXT PRIMARY KEY,
        order_id TEXT NOT NULL REFERENCES orders(id) ON DELETE CASCADE,
        sku_id TEXT NOT NULL REFERENCES skus(id),
        quantity INT NOT NULL CHECK (quantity > 0),
        released BOOLEAN NOT NULL DEFAULT FALSE,
        released_at TIMESTAMPTZ,
        reason TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    );
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS uq_reservations_active
    ON inventory_reservations(order_id, sku_id) WHERE NOT released;
    """,
    """
    CREATE TABLE IF NOT EXISTS inventory_adjustments (
        id TEXT PRIMARY KEY,
        organization_id TEXT NOT NULL,
        sku_id TEXT NOT NULL REFERENCES skus(id),
        kind VARCHAR(20) NOT NULL,
        quantity_change INT NOT NULL,
        reason TEXT NOT NULL DEFAULT '',
        reference_id TEXT,
        actor_id TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    );
    """,
    "CREATE INDEX IF NOT EXISTS idx_adjustments_sku ON inventory_adjustments(sku_id, created_at);",
    """
    CREATE TABLE IF NOT EXISTS order_timeline_events (
        seq BIGSERIAL PRIMARY KEY,
        id TEXT NOT NULL UNIQUE,
        order_id TEXT NOT NULL REFERENCES orders(id) ON DELETE CASCADE,
        organization_id TEXT NOT NULL,
        event_type VARCHAR(50) NOT NULL,
        actor_type VARCHAR(20) NOT NULL,
        actor_id TEXT,
        from_status VARCHAR(30),
        to_status VARCHAR(30),
        description TEXT NOT NULL DEFAULT '',
        metadata JSONB NOT NULL DEFAULT '{}',
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    );
    """,
    "CREATE INDEX IF NOT EXISTS idx_timeline_order ON order_timeline_events(order_id, seq);",
    """
    CREATE TABLE IF NOT EXISTS processed_events (
        source VARCHAR(50) NOT NULL,
        external_event_id TEXT NOT NULL,
        organization_id TEXT NOT NULL,
        channel_id TEXT NOT NULL,
        event_type VARCHAR(100) NOT NULL,
        job_id TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        PRIMARY KEY (source, external_event_id)
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS processed_jobs (
        job_id TEXT PRIMARY KEY,
        job_type VARCHAR(50) NOT NULL,
        result JSONB NOT NULL DEFAULT '{}',
        processed_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS shipping_accounts (
        id TEXT PRIMARY KEY,
        organization_id TEXT NOT NULL,
        carrier VARCHAR(20) NOT NULL,
        name TEXT NOT NULL DEFAULT '',
        credentials JSONB NOT NULL DEFAULT '{}',
        test_mode BOOLEAN NOT NULL DEFAULT TRUE,
        active BOOLEAN NOT NULL DEFAULT TRUE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS shipments (
        id TEXT PRIMARY KEY,
        organization_id TEXT NOT NULL,
        order_id TEXT NOT NULL REFERENCES orders(id) ON DELETE CASCADE,
        carrier VARCHAR(20) NOT NULL,
        shipping_account_id TEXT NOT NULL REFERENCES shipping_accounts(id),
        status VARCHAR(30) NOT NULL,
        carrier_shipment_id TEXT,
        tracking_number TEXT,
        cost NUMERIC(12, 2),
        estimated_delivery TIMESTAMPTZ,
        actual_delivery TIMESTAMPTZ,
        label_key TEXT,
        label_content_type TEXT,
        options JSONB NOT NULL DEFAULT '{}',
        last_error TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        UNIQUE (order_id, carrier)
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS shipment_tracking_events (
        id TEXT PRIMARY KEY,
        shipment_id TEXT NOT NULL REFERENCES shipments(id) ON DELETE CASCADE,
        carrier_status TEXT NOT NULL,
        mapped_status VARCHAR(30) NOT NULL,
        location TEXT,
        description TEXT,
        event_time TIMESTAMPTZ NOT NULL,
        UNIQUE (shipment_id, carrier_status, event_time)
    );
    """,
]

_ORDER_COLUMNS = [
    "id", "organization_id", "channel_id", "external_order_id", "order_number", "status",
    "payment_status", "currency", "subtotal", "shipping_cost", "tax_amount", "discount_amount",
    "total_amount", "shipping_address", "internal_notes", "imported_at", "reserved_at",
    "ready_to_ship_at", "label_created_at", "shipped_at", "delivered_at", "cancelled_at",
    "returned_at", "failed_at", "created_at", "updated_at",
]

_SHIPMENT_COLUMNS = [
    "id", "organization_id", "order_id", "carrier", "shipping_account_id", "status",
    "carrier_shipment_id", "tracking_number", "cost", "estimated_delivery", "actual_delivery",
    "label_key", "label_content_type", "options", "last_error", "created_at", "updated_at",
]


def _values(model, columns: list[str]) -> list:
    data = model.model_dump(include=set(columns))
    return [data[c].value if isinstance(data[c], Enum) else data[c] for c in columns]


def _insert_sql(table: str, columns: list[str]) -> str:
    placeholders = ", ".join(f"${i}" for i in range(1, len(columns) + 1))
    return f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders})"


def _update_sql(table: str, columns: list[str]) -> str:
    # columns[0] is the primary key
    sets = ", ".join(f"{c} = ${i}" for i, c in enumerate(columns[1:], start=2))
    return f"UPDATE {table} SET {sets} WHERE {columns[0]} = $1"


async def _init_connection(conn: asyncpg.Connection) -> None:
    await conn.set_type_codec("jsonb", encoder=json.dumps, decoder=json.loads, schema="pg_catalog")


class PostgresTransaction(Transaction):
    def __init__(self, conn: asyncpg.Connection):
        self.conn = conn

    # --- orders ---
    async def _load_items(self, orders: list[Order]) -> list[Order]:
        if not orders:
            return orders
        rows = await self.conn.fetch(
            "SELECT * FROM order_items WHERE order_id = ANY($1::text[]) ORDER BY external_item_id;",
            [o.id for o in orders],
        )
        by_order: dict[str, list[OrderItem]] = {}
        for r in rows:
            by_order.setdefault(r["order_id"], []).append(OrderItem(**dict(r)))
        for order in orders:
            order.items = by_order.get(order.id, [])
        return orders

    async def get_order(self, order_id, organization_id=None, *, lock=False):
        sql = "SELECT * FROM orders WHERE id = $1"
        args = [order_id]
        if organization_id is not None:
            sql += " AND organization_id = $2"
            args.append(organization_id)
        if lock:
            sql += " FOR UPDATE"
        row = await self.conn.fetchrow(sql, *args)
        if row is None:
            return None
        return (await self._load_items([Order(**dict(row))]))[0]

    async def find_order_by_external(self, organization_id, channel_id, external_order_id, *, lock=False):
        sql = """
            SELECT * FROM orders
            WHERE organization_id = $1 AND channel_id = $2 AND external_order_id = $3
        """
        if lock:
            sql += " FOR UPDATE"
        row = await self.conn.fetchrow(sql, organization_id, channel_id, external_order_id)
        if row is None:
            return None
        return (await self._load_items([Order(**dict(row))]))[0]

    async def insert_order(self, order):
        await self.conn.execute(_insert_sql("orders", _ORDER_COLUMNS), *_values(order, _ORDER_COLUMNS))

    async def update_order(self, order):
        await self.conn.execute(_update_sql("orders", _ORDER_COLUMNS), *_values(order, _ORDER_COLUMNS))

    async def delete_order(self, order_id):
        await self.conn.execute("DELETE FROM orders WHERE id = $1;", order_id)

    async def list_orders(self, organization_id, *, status=None, channel_id=None, limit=20, offset=0):
        rows = await self.conn.fetch(
            """
            SELECT * FROM orders
            WHERE organization_id = $1
              AND ($2::text IS NULL OR status = $2)
              AND ($3::text IS NULL OR channel_id = $3)
            ORDER BY created_at DESC
            LIMIT $4 OFFSET $5;
            """,
            organization_id,
            status.value if status else None,
            channel_id,
            limit,
            offset,
        )
        return await self._load_items([Order(**dict(r)) for r in rows])

    async def next_order_sequence(self, organization_id, period):
        # Row lock on the counter serialises concurrent creates in one organization
        return await self.conn.fetchval(
            """
            INSERT INTO order_number_sequences (organization_id, period, last_value)
            VALUES ($1, $2, 1)
            ON CONFLICT (organization_id, period)
            DO UPDATE SET last_value = order_number_sequences.last_value + 1
            RETURNING last_value;
            """,
            organization_id,
            period,
        )

    async def upsert_order_item(self, item):
        row = await self.conn.fetchrow(
            """
            INSERT INTO order_items (id, order_id, sku_id, external_item_id, name, quantity, unit_price, total_price)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
            ON CONFLICT (order_id, external_item_id) DO UPDATE SET
                sku_id = EXCLUDED.sku_id,
                name = EXCLUDED.name,
                quantity = EXCLUDED.quantity,
                unit_price = EXCLUDED.unit_price,
                total_price = EXCLUDED.total_price
            RETURNING *;
            """,
            item.id,
            item.order_id,
            item.sku_id,
            item.external_item_id,
            item.name,
            item.quantity,
            item.unit_price,
            item.total_price,
        )
        return OrderItem(**dict(row))

    # --- timeline ---
    async def append_timeline(self, event):
        await self.conn.execute(
            """
            INSERT INTO order_timeline_events
                (id, order_id, organization_id, event_type, actor_type, actor_id,
                 from_status, to_status, description, metadata, created_at)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11);
            """,
            event.id,
            event.order_id,
            event.organization_id,
            event.event_type,
            event.actor_type.value,
            event.actor_id,
            event.from_status.value if event.from_status else None,
            event.to_status.value if event.to_status else None,
            event.description,
            event.metadata,
            event.created_at,
        )

    async def list_timeline(self, order_id):
        rows = await self.conn.fetch(
            "SELECT * FROM order_timeline_events WHERE order_id = $1 ORDER BY seq;",
            order_id,
        )
        return [TimelineEvent(**{k: v for k, v in r.items() if k != "seq"}) for r in rows]

    # --- skus / ledger ---
    async def insert_sku(self, sku):
        cols = ["id", "organization_id", "code", "name", "quantity_on_hand", "reserved", "updated_at"]
        await self.conn.execute(_insert_sql("skus", cols), *_values(sku, cols))

    async def get_sku(self, sku_id, organization_id=None):
        if organization_id is None:
            row = await self.conn.fetchrow("SELECT * FROM skus WHERE id = $1;", sku_id)
        else:
            row = await self.conn.fetchrow(
                "SELECT * FROM skus WHERE id = $1 AND organization_id = $2;", sku_id, organization_id
            )
        return Sku(**dict(row)) if row else None

    async def find_sku_by_code(self, organization_id, code):
        row = await self.conn.fetchrow(
            "SELECT * FROM skus WHERE organization_id = $1 AND code = $2;", organization_id, code
        )
        return Sku(**dict(row)) if row else None

    async def try_reserve(self, sku_id, quantity):
        row = await self.conn.fetchrow(
            """
            UPDATE skus SET reserved = reserved + $2, updated_at = NOW()
            WHERE id = $1 AND reserved + $2 <= quantity_on_hand
            RETURNING *;
            """,
            sku_id,
            quantity,
        )
        return Sku(**dict(row)) if row else None

    async def release_reserved(self, sku_id, quantity):
        row = await self.conn.fetchrow(
            """
            UPDATE skus SET reserved = GREATEST(reserved - $2, 0), updated_at = NOW()
            WHERE id = $1
            RETURNING *;
            """,
            sku_id,
            quantity,
        )
        return Sku(**dict(row))

    async def apply_on_hand_delta(self, sku_id, delta):
        row = await self.conn.fetchrow(
            """
            UPDATE skus SET quantity_on_hand = quantity_on_hand + $2, updated_at = NOW()
            WHERE id = $1 AND quantity_on_hand + $2 >= reserved AND quantity_on_hand + $2 >= 0
            RETURNING *;
            """,
            sku_id,
            delta,
        )
        return Sku(**dict(row)) if row else None

    async def insert_adjustment(self, adjustment):
        cols = ["id", "organization_id", "sku_id", "kind", "quantity_change", "reason", "reference_id", "actor_id", "created_at"]
        await self.conn.execute(_insert_sql("inventory_adjustments", cols), *_values(adjustment, cols))

    async def list_adjustments(self, sku_id, limit=50):
        rows = await self.conn.fetch(
            "SELECT * FROM inventory_adjustments WHERE sku_id = $1 ORDER BY created_at DESC LIMIT $2;",
            sku_id,
            limit,
        )
        return [InventoryAdjustment(**dict(r)) for r in rows]

    async def active_reservations(self, order_id):
        rows = await self.conn.fetch(
            "SELECT * FROM inventory_reservations WHERE order_id = $1 AND NOT released ORDER BY sku_id;",
            order_id,
        )
        return [InventoryReservation(**dict(r)) for r in rows]

    async def active_reservations_for_sku(self, sku_id):
        rows = await self.conn.fetch(
            "SELECT * FROM inventory_reservations WHERE sku_id = $1 AND NOT released ORDER BY created_at;",
            sku_id,
        )
        return [InventoryReservation(**dict(r)) for r in rows]

    async def list_reservations(self, order_id):
        rows = await self.conn.fetch(
            "SELECT * FROM inventory_reservations WHERE order_id = $1 ORDER BY created_at;",
            order_id,
        )
        return [InventoryReservation(**dict(r)) for r in rows]

    async def insert_reservation(self, reservation):
        cols = ["id", "order_id", "sku_id", "quantity", "released", "released_at", "reason", "created_at"]
        await self.conn.execute(_insert_sql("inventory_reservations", cols), *_values(reservation, cols))

    async def mark_reservation_released(self, reservation_id, reason, at: datetime):
        await self.conn.execute(
            "UPDATE inventory_reservations SET released = TRUE, released_at = $2, reason = $3 WHERE id = $1;",
            reservation_id,
            at,
            reason,
        )

    # --- ingestion / job idempotency ---
    async def get_processed_event(self, source, external_event_id):
        row = await self.conn.fetchrow(
            "SELECT * FROM processed_events WHERE source = $1 AND external_event_id = $2;",
            source,
            external_event_id,
        )
        return ProcessedEvent(**dict(row)) if row else None

    async def insert_processed_event(self, event):
        inserted = await self.conn.fetchval(
            """
            INSERT INTO processed_events (source, external_event_id, organization_id, channel_id, event_type, job_id, created_at)
            VALUES ($1, $2, $3, $4, $5, $6, $7)
            ON CONFLICT (source, external_event_id) DO NOTHING
            RETURNING source;
            """,
            event.source,
            event.external_event_id,
            event.organization_id,
            event.channel_id,
            event.event_type,
            event.job_id,
            event.created_at,
        )
        return inserted is not None

    async def get_processed_job(self, job_id):
        row = await self.conn.fetchrow("SELECT * FROM processed_jobs WHERE job_id = $1;", job_id)
        return ProcessedJob(**dict(row)) if row else None

    async def insert_processed_job(self, processed):
        try:
            await self.conn.execute(
                "INSERT INTO processed_jobs (job_id, job_type, result, processed_at) VALUES ($1, $2, $3, $4);",
                processed.job_id,
                processed.job_type,
                processed.result,
                processed.processed_at,
            )
        except UniqueViolationError:
            raise DuplicateJob(processed.job_id)

    # --- channels ---
    async def insert_channel(self, channel):
        cols = ["id", "organization_id", "type", "name", "webhook_secret", "config", "active", "last_synced_at"]
        await self.conn.execute(_insert_sql("channels", cols), *_values(channel, cols))

    async def get_channel(self, channel_id):
        row = await self.conn.fetchrow("SELECT * FROM channels WHERE id = $1;", channel_id)
        return Channel(**dict(row)) if row else None

    async def list_active_channels(self):
        rows = await self.conn.fetch("SELECT * FROM channels WHERE active ORDER BY id;")
        return [Channel(**dict(r)) for r in rows]

    async def mark_channel_synced(self, channel_id, at):
        await self.conn.execute("UPDATE channels SET last_synced_at = $2 WHERE id = $1;", channel_id, at)

    # --- shipping ---
    async def insert_shipping_account(self, account):
        cols = ["id", "organization_id", "carrier", "name", "credentials", "test_mode", "active", "created_at"]
        await self.conn.execute(_insert_sql("shipping_accounts", cols), *_values(account, cols))

    async def get_shipping_account(self, account_id, organization_id):
        row = await self.conn.fetchrow(
            "SELECT * FROM shipping_accounts WHERE id = $1 AND organization_id = $2;", account_id, organization_id
        )
        return ShippingAccount(**dict(row)) if row else None

    async def find_active_shipping_account(self, organization_id, carrier: CarrierType):
        row = await self.conn.fetchrow(
            """
            SELECT * FROM shipping_accounts
            WHERE organization_id = $1 AND carrier = $2 AND active
            ORDER BY created_at LIMIT 1;
            """,
            organization_id,
            carrier.value,
        )
        return ShippingAccount(**dict(row)) if row else None

    async def insert_shipment(self, shipment):
        await self.conn.execute(_insert_sql("shipments", _SHIPMENT_COLUMNS), *_values(shipment, _SHIPMENT_COLUMNS))

    async def get_shipment(self, shipment_id, organization_id=None, *, lock=False):
        sql = "SELECT * FROM shipments WHERE id = $1"
        args = [shipment_id]
        if organization_id is not None:
            sql += " AND organization_id = $2"
            args.append(organization_id)
        if lock:
            sql += " FOR UPDATE"
        row = await self.conn.fetchrow(sql, *args)
        return Shipment(**dict(row)) if row else None

    async def find_shipment(self, order_id, carrier: CarrierType):
        row = await self.conn.fetchrow(
            "SELECT * FROM shipments WHERE order_id = $1 AND carrier = $2;", order_id, carrier.value
        )
        return Shipment(**dict(row)) if row else None

    async def list_shipments(self, order_id):
        rows = await self.conn.fetch("SELECT * FROM shipments WHERE order_id = $1 ORDER BY created_at;", order_id)
        return [Shipment(**dict(r)) for r in rows]

    async def list_trackable_shipments(self):
        rows = await self.conn.fetch(
            """
            SELECT * FROM shipments
            WHERE tracking_number IS NOT NULL
              AND status NOT IN ('DELIVERED', 'CANCELLED', 'RETURNED')
            ORDER BY updated_at;
            """
        )
        return [Shipment(**dict(r)) for r in rows]

    async def update_shipment(self, shipment):
        await self.conn.execute(_update_sql("shipments", _SHIPMENT_COLUMNS), *_values(shipment, _SHIPMENT_COLUMNS))

    async def insert_tracking_event(self, event):
        inserted = await self.conn.fetchval(
            """
            INSERT INTO shipment_tracking_events (id, shipment_id, carrier_status, mapped_status, location, description, event_time)
            VALUES ($1, $2, $3, $4, $5, $6, $7)
            ON CONFLICT (shipment_id, carrier_status, event_time) DO NOTHING
            RETURNING id;
            """,
            event.id,
            event.shipment_id,
            event.carrier_status,
            event.mapped_status.value,
            event.location,
            event.description,
            event.event_time,
        )
        return inserted is not None

    async def list_tracking_events(self, shipment_id):
        rows = await self.conn.fetch(
            "SELECT * FROM shipment_tracking_events WHERE shipment_id = $1 ORDER BY event_time;", shipment_id
        )
        return [TrackingEvent(**dict(r)) for r in rows]


class PostgresStorage(Storage):
    def __init__(self, dsn: str, min_size: int = 1, max_size: int = 10, command_timeout: float = 60):
        self.dsn = dsn
        self.min_size = min_size
        self.max_size = max_size
        self.command_timeout = command_timeout
        self._pool: asyncpg.Pool | None = None

    async def init(self) -> None:
        if self._pool is None:
            self._pool = await asyncpg.create_pool(
                self.dsn,
                min_size=self.min_size,
                max_size=self.max_size,
                command_timeout=self.command_timeout,
                init=_init_connection,
            )
        await self.init_schema()

    async def init_schema(self) -> None:
        async with self._pool.acquire() as conn:
            for statement in SCHEMA:
                await conn.execute(statement)
        logger.info("Schema ready")

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    @asynccontextmanager
    async def transaction(self):
        if self._pool is None:
            raise RuntimeError("PostgresStorage.init() must be awaited before use")
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                yield PostgresTransaction(conn)
