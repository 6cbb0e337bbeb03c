"""
End-to-end pipeline over the in-process backends: signed delivery -> queue ->
worker -> order state, shipment booking and tracking, channel sync.
"""
import asyncio

import httpx
import pytest
import pytest_asyncio

from _helper import ORG, deliver, get_order, make_channel, make_order, move_to, sku_state, timeline
from orderflow.context import create_context
from orderflow.errors import DuplicateJob, RetryableIntegrationFailure, TerminalIntegrationFailure
from orderflow.models import CarrierType, ChannelType, OrderStatus, ShipmentStatus
from orderflow.order_state import is_valid_path
from orderflow.queue import JobType, QueueName
from orderflow.scheduler import channel_sync_job_id
from orderflow.worker import WorkerPool

pytestmark = pytest.mark.asyncio

WEBHOOKS = QueueName.WEBHOOK_PROCESSING.value
SHIPMENTS = QueueName.SHIPMENT_CREATE.value


async def find_order(storage, channel, external_id):
    async with storage.transaction() as tx:
        return await tx.find_order_by_external(ORG, channel.id, str(external_id))


async def get_shipment(storage, shipment_id):
    async with storage.transaction() as tx:
        return await tx.get_shipment(shipment_id)


def event_types(events):
    return [e.event_type for e in events]


class TestChannelOrderUpsert:
    async def test_paid_order_is_imported_and_reserved(self, context, channel, skus, pool):
        await deliver(context, channel, {"id": 42, "sku": "X", "qty": 2, "paid": True})

        assert await pool.run_until_idle() == 1

        order = await find_order(context.storage, channel, 42)
        assert order.status == OrderStatus.RESERVED
        assert await sku_state(context.storage, skus["X"].id) == (3, 2)
        job = await context.queue.get_job(WEBHOOKS, "webhook-shopify-42")
        assert job.status == "completed"
        assert job.result == {"order_id": order.id, "created": True, "status": "RESERVED"}

    async def test_unpaid_order_waits_for_payment_update(self, context, channel, skus, pool):
        await deliver(context, channel, {"id": 50, "sku": "A", "qty": 1})
        await pool.run_until_idle()
        order = await find_order(context.storage, channel, 50)
        assert order.status == OrderStatus.NEW
        assert await sku_state(context.storage, skus["A"].id) == (10, 0)

        await deliver(context, channel, {"id": 50, "sku": "A", "qty": 1, "paid": True, "updated_at": "t2"}, topic="orders/updated")
        await pool.run_until_idle()

        order = await find_order(context.storage, channel, 50)
        assert order.status == OrderStatus.RESERVED
        assert len(order.items) == 1
        assert await sku_state(context.storage, skus["A"].id) == (10, 1)
        assert "order_updated" in event_types(await timeline(context.storage, order.id))

    async def test_shortfall_keeps_order_new_and_completes_job(self, context, channel, skus, pool):
        await deliver(context, channel, {"id": 60, "sku": "X", "qty": 5, "paid": True})
        await pool.run_until_idle()

        order = await find_order(context.storage, channel, 60)
        assert order.status == OrderStatus.NEW
        assert await sku_state(context.storage, skus["X"].id) == (3, 0)
        events = await timeline(context.storage, order.id)
        failed = [e for e in events if e.event_type == "inventory_reservation_failed"]
        assert len(failed) == 1
        assert failed[0].metadata == {"sku": "X", "available": 3, "requested": 5}
        job = await context.queue.get_job(WEBHOOKS, "webhook-shopify-60")
        assert job.status == "completed"
        assert job.result["reservation_failed"] is True

    async def test_update_beyond_stock_on_reserved_order_is_dead_lettered(self, context, channel, skus, pool):
        await deliver(context, channel, {"id": 90, "sku": "X", "qty": 2, "paid": True})
        await pool.run_until_idle()

        update = {"id": 90, "sku": "X", "qty": 4, "paid": True, "updated_at": "t2"}
        await deliver(context, channel, update, topic="orders/updated")
        await pool.run_until_idle()

        job = await context.queue.get_job(WEBHOOKS, "webhook-shopify-90-t2")
        assert job.status == "dead"
        assert job.last_error.startswith("insufficient_stock")
        order = await find_order(context.storage, channel, 90)
        assert order.status == OrderStatus.RESERVED
        assert [i.quantity for i in order.items] == [2]
        assert await sku_state(context.storage, skus["X"].id) == (3, 2)
        failed = [e for e in await timeline(context.storage, order.id) if e.event_type == "inventory_reservation_failed"]
        assert failed[0].metadata == {"sku": "X", "available": 3, "requested": 4}

        await context.ledger.adjust(skus["X"].id, 2, "Restock", ORG)
        assert await context.queue.replay_dead_letters(WEBHOOKS) == 1
        await pool.run_until_idle()

        assert [i.quantity for i in (await find_order(context.storage, channel, 90)).items] == [4]
        assert await sku_state(context.storage, skus["X"].id) == (5, 4)

    async def test_cancellation_event_releases_stock(self, context, channel, skus, pool):
        payload = {"id": 70, "sku": "B", "qty": 2, "paid": True}
        await deliver(context, channel, payload)
        await pool.run_until_idle()
        assert await sku_state(context.storage, skus["B"].id) == (5, 2)

        result = await deliver(context, channel, payload, topic="orders/cancelled")
        await pool.run_until_idle()

        assert result.external_event_id == "70-orders-cancelled"
        order = await find_order(context.storage, channel, 70)
        assert order.status == OrderStatus.CANCELLED
        assert await sku_state(context.storage, skus["B"].id) == (5, 0)

    async def test_unknown_sku_is_dead_lettered(self, context, channel, skus, pool):
        await deliver(context, channel, {"id": 80, "sku": "NOPE", "qty": 1})

        assert await pool.run_until_idle() == 1

        job = await context.queue.get_job(WEBHOOKS, "webhook-shopify-80")
        assert job.status == "dead"
        assert job.last_error.startswith("unknown_sku")
        assert await find_order(context.storage, channel, 80) is None

    async def test_rerunning_a_completed_job_raises_duplicate(self, context, channel, skus, pool):
        await deliver(context, channel, {"id": 42, "sku": "X", "qty": 2, "paid": True})
        await pool.run_until_idle()
        job = await context.queue.get_job(WEBHOOKS, "webhook-shopify-42")

        with pytest.raises(DuplicateJob) as exc:
            await context.jobs.channel_order_upsert(job)

        assert exc.value.result["status"] == "RESERVED"
        assert await sku_state(context.storage, skus["X"].id) == (3, 2)

    async def test_duplicate_and_concurrent_deliveries_create_one_order(self, context, channel, skus, pool):
        payload = {"id": 42, "sku": "X", "qty": 2, "paid": True}

        results = await asyncio.gather(*(deliver(context, channel, payload) for _ in range(3)))
        await deliver(context, channel, payload)
        await pool.run_until_idle()

        assert sorted(r.status for r in results) == ["already_processed", "already_processed", "enqueued"]
        assert len(await context.orders.list_orders(ORG)) == 1
        assert await sku_state(context.storage, skus["X"].id) == (3, 2)

    async def test_woocommerce_order_shape(self, context, skus, pool):
        woo = await make_channel(context.storage, ORG, ChannelType.WOOCOMMERCE)
        payload = {
            "id": 501,
            "number": "501",
            "status": "processing",
            "currency": "SAR",
            "total": "30.00",
            "shipping_total": "0.00",
            "total_tax": "0.00",
            "discount_total": "0.00",
            "date_modified_gmt": "2024-05-01T10:00:00",
            "shipping": {"first_name": "Sara", "city": "Riyadh", "country": "SA"},
            "line_items": [{"id": 9, "sku": "B", "quantity": 3, "price": 10, "total": "30.00"}],
        }

        await deliver(context, woo, payload, topic="order.created")
        await pool.run_until_idle()

        order = await find_order(context.storage, woo, 501)
        assert order.status == OrderStatus.RESERVED
        assert order.order_number == "501"
        assert order.shipping_address["city"] == "Riyadh"
        assert await sku_state(context.storage, skus["B"].id) == (5, 3)


async def ready_order(context, channel, lines=(("A", 1),)):
    order = await make_order(context, channel, list(lines))
    return await move_to(context, order, OrderStatus.RESERVED, OrderStatus.READY_TO_SHIP)


class TestCarrierShipment:
    async def test_shipment_is_booked_and_label_stored(self, context, channel, skus, dhl_account, pool):
        order = await ready_order(context, channel)

        requested = await context.shipping.request_shipment(order.id, ORG, CarrierType.DHL, actor_id="u-1")
        await pool.run_until_idle()

        assert requested.enqueued
        shipment = await get_shipment(context.storage, requested.shipment.id)
        adapter = context.carriers[CarrierType.DHL]
        assert shipment.status == ShipmentStatus.LABEL_CREATED
        assert shipment.tracking_number == adapter.tracking_number_for(requested.job_id)
        assert (await get_order(context.storage, order.id)).status == OrderStatus.LABEL_CREATED
        content, content_type = await context.shipping.get_label(shipment.id, ORG)
        assert content.startswith(b"%PDF")
        assert content_type == "application/pdf"
        events = event_types(await timeline(context.storage, order.id))
        assert "shipment_requested" in events and "shipment_created" in events
        assert adapter.created[0].reference == requested.job_id

    async def test_second_request_reuses_the_shipment(self, context, channel, skus, dhl_account, pool):
        order = await ready_order(context, channel)

        first = await context.shipping.request_shipment(order.id, ORG, CarrierType.DHL)
        await pool.run_until_idle()
        second = await context.shipping.request_shipment(order.id, ORG, CarrierType.DHL)

        assert second.shipment.id == first.shipment.id
        assert second.enqueued is False
        assert len(context.carriers[CarrierType.DHL].created) == 1

    async def test_terminal_carrier_failure(self, context, channel, skus, dhl_account, pool):
        order = await ready_order(context, channel)
        context.carriers[CarrierType.DHL].fail_next(TerminalIntegrationFailure("Invalid postal code", status_code=400))

        requested = await context.shipping.request_shipment(order.id, ORG, CarrierType.DHL)
        await pool.run_until_idle()

        job = await context.queue.get_job(SHIPMENTS, requested.job_id)
        assert job.status == "dead"
        assert job.attempts == 1
        shipment = await get_shipment(context.storage, requested.shipment.id)
        assert shipment.status == ShipmentStatus.EXCEPTION
        assert shipment.last_error == "Invalid postal code"
        assert (await get_order(context.storage, order.id)).status == OrderStatus.READY_TO_SHIP
        assert "shipment_failed" in event_types(await timeline(context.storage, order.id))

    async def test_retryable_failure_then_success(self, context, channel, skus, dhl_account, pool):
        order = await ready_order(context, channel)
        context.carriers[CarrierType.DHL].fail_next(RetryableIntegrationFailure("dhl returned 503", status_code=503), times=2)

        requested = await context.shipping.request_shipment(order.id, ORG, CarrierType.DHL)
        await pool.run_until_idle()

        job = await context.queue.get_job(SHIPMENTS, requested.job_id)
        assert (job.status, job.attempts) == ("completed", 3)
        assert (await get_order(context.storage, order.id)).status == OrderStatus.LABEL_CREATED

    async def test_replayed_dead_letter_books_the_shipment(self, context, channel, skus, dhl_account, pool):
        order = await ready_order(context, channel)
        context.carriers[CarrierType.DHL].fail_next(TerminalIntegrationFailure("Account suspended", status_code=403))
        await context.shipping.request_shipment(order.id, ORG, CarrierType.DHL)
        await pool.run_until_idle()

        assert await context.queue.replay_dead_letters(SHIPMENTS) == 1
        await pool.run_until_idle()

        assert (await get_order(context.storage, order.id)).status == OrderStatus.LABEL_CREATED


class TestShipmentTracking:
    async def book(self, context, channel, pool):
        order = await ready_order(context, channel)
        requested = await context.shipping.request_shipment(order.id, ORG, CarrierType.DHL)
        await pool.run_until_idle()
        return order, requested.shipment.id

    async def test_tracking_walks_the_order_to_delivered(self, context, channel, skus, dhl_account, pool):
        order, shipment_id = await self.book(context, channel, pool)

        seen = []
        for bucket in range(1, 5):
            assert await context.shipping.schedule_tracking_refresh(bucket) == 1
            assert await context.shipping.schedule_tracking_refresh(bucket) == 0
            await pool.run_until_idle()
            seen.append((await get_order(context.storage, order.id)).status)

        assert seen == [
            OrderStatus.LABEL_CREATED,
            OrderStatus.IN_TRANSIT,
            OrderStatus.OUT_FOR_DELIVERY,
            OrderStatus.DELIVERED,
        ]
        detail = await context.shipping.get_shipment_detail(shipment_id, ORG)
        assert detail.shipment.status == ShipmentStatus.DELIVERED
        assert detail.shipment.actual_delivery is not None
        assert len(detail.tracking_events) == 4
        assert await context.shipping.schedule_tracking_refresh(5) == 0

        events = await timeline(context.storage, order.id)
        statuses = [OrderStatus.NEW] + [e.to_status for e in events if e.event_type == "status_changed"]
        assert is_valid_path(statuses)
        assert OrderStatus.PICKED_UP in statuses

    async def test_return_before_delivery_is_recorded_not_applied(self, context, channel, skus, dhl_account, pool):
        context.carriers[CarrierType.DHL].tracking_plan = ["transit", "returned"]
        order, shipment_id = await self.book(context, channel, pool)

        for bucket in (1, 2, 3):
            await context.shipping.schedule_tracking_refresh(bucket)
            await pool.run_until_idle()

        assert (await get_order(context.storage, order.id)).status == OrderStatus.IN_TRANSIT
        assert (await get_shipment(context.storage, shipment_id)).status == ShipmentStatus.RETURNED
        assert event_types(await timeline(context.storage, order.id)).count("shipment_returned") == 1

    async def test_carrier_exception_goes_on_the_timeline(self, context, channel, skus, dhl_account, pool):
        context.carriers[CarrierType.DHL].tracking_plan = ["transit", "exception"]
        order, shipment_id = await self.book(context, channel, pool)

        for bucket in (1, 2, 3):
            await context.shipping.schedule_tracking_refresh(bucket)
            await pool.run_until_idle()

        assert (await get_order(context.storage, order.id)).status == OrderStatus.IN_TRANSIT
        assert event_types(await timeline(context.storage, order.id)).count("shipment_exception") == 1


SHOPIFY_ORDER = {
    "id": 1001,
    "name": "#1001",
    "financial_status": "paid",
    "currency": "SAR",
    "total_price": "20.00",
    "subtotal_price": "20.00",
    "updated_at": "2024-05-01T10:00:00Z",
    "line_items": [{"id": 1, "sku": "A", "quantity": 2, "price": "10.00", "name": "Item A"}],
}


class TestChannelSync:
    @pytest_asyncio.fixture
    async def synced(self, settings):
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200, json={"orders": [SHOPIFY_ORDER]})

        ctx = await create_context(settings, http=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
        await ctx.ledger.create_sku(ORG, "A", quantity_on_hand=10)
        channel = await make_channel(ctx.storage, ORG, config={"shop_domain": "acme.myshopify.com", "access_token": "tok"})
        pool = WorkerPool(ctx.queue, ctx.jobs.registry(), job_timeout=5, poll_interval=0.01)
        yield ctx, channel, pool, requests
        await ctx.close()

    async def sync(self, ctx, channel, pool, bucket):
        job_id = channel_sync_job_id(channel.id, bucket)
        await ctx.queue.enqueue(QueueName.CHANNEL_SYNC.value, JobType.CHANNEL_SYNC.value, {"channel_id": channel.id}, job_id)
        await pool.run_until_idle()
        return await ctx.queue.get_job(QueueName.CHANNEL_SYNC.value, job_id)

    async def test_sync_imports_orders_and_dedups_on_repeat(self, synced):
        ctx, channel, pool, requests = synced

        first = await self.sync(ctx, channel, pool, 1)
        second = await self.sync(ctx, channel, pool, 2)

        assert first.result["fetched"] == 1 and first.result["enqueued"] == 1
        assert second.result["fetched"] == 1 and second.result["enqueued"] == 0
        order = await find_order(ctx.storage, channel, 1001)
        assert order.status == OrderStatus.RESERVED
        assert order.order_number == "#1001"
        assert "updated_at_min" not in requests[0].url.params
        assert "updated_at_min" in requests[1].url.params
        assert requests[0].headers["X-Shopify-Access-Token"] == "tok"

    async def test_sync_dedups_against_update_webhook(self, synced):
        ctx, channel, pool, _ = synced
        webhook = await deliver(ctx, channel, SHOPIFY_ORDER, topic="orders/updated")

        result = await self.sync(ctx, channel, pool, 1)

        assert webhook.external_event_id == "1001-2024-05-01T10:00:00Z"
        assert result.result["enqueued"] == 0
        assert len(await ctx.orders.list_orders(ORG)) == 1

    async def test_inactive_channel_is_skipped(self, synced):
        ctx, _, pool, requests = synced
        inactive = await make_channel(ctx.storage, ORG, active=False, config={"shop_domain": "old.myshopify.com"})

        result = await self.sync(ctx, inactive, pool, 1)

        assert result.result["skipped"] == "inactive"
        assert requests == []

