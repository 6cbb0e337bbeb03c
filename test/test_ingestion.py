import pytest

from _helper import ORG, deliver, make_channel, sign, webhook_body
from orderflow.errors import AuthenticationFailed, MalformedPayload
from orderflow.ingestion import compute_signature, derive_event_id, verify_signature
from orderflow.models import ChannelType
from orderflow.queue import QueueName

pytestmark = pytest.mark.asyncio

WEBHOOKS = QueueName.WEBHOOK_PROCESSING.value


async def processed_event(storage, source, event_id):
    async with storage.transaction() as tx:
        return await tx.get_processed_event(source, event_id)


class TestSignature:
    async def test_compute_and_verify(self):
        body = b'{"id": 1}'
        signature = compute_signature("secret", body)
        assert verify_signature("secret", body, signature)
        assert not verify_signature("secret", body + b" ", signature)
        assert not verify_signature("other", body, signature)
        assert not verify_signature("secret", body, None)
        assert not verify_signature("secret", body, "")


class TestDeriveEventId:
    async def test_create_uses_resource_id(self):
        assert derive_event_id("orders/create", {"id": 42}, b"{}") == "42"

    async def test_update_adds_modification_time(self):
        payload = {"id": 42, "updated_at": "2024-05-01T10:00:00Z"}
        assert derive_event_id("orders/updated", payload, b"{}") == "42-2024-05-01T10:00:00Z"

    async def test_update_without_timestamp_hashes_the_body(self):
        first = derive_event_id("orders/updated", {"id": 42}, b'{"id": 42, "a": 1}')
        second = derive_event_id("orders/updated", {"id": 42}, b'{"id": 42, "a": 2}')
        assert first.startswith("42-")
        assert first != second

    async def test_woocommerce_update_uses_date_modified(self):
        payload = {"id": 7, "date_modified_gmt": "2024-05-01T10:00:00"}
        assert derive_event_id("order.updated", payload, b"{}") == "7-2024-05-01T10:00:00"

    async def test_paid_and_fulfilled_add_modification_time(self):
        payload = {"id": 42, "updated_at": "2024-05-01T11:00:00Z"}
        assert derive_event_id("orders/paid", payload, b"{}") == "42-2024-05-01T11:00:00Z"
        assert derive_event_id("orders/fulfilled", payload, b"{}") == "42-2024-05-01T11:00:00Z"

    async def test_missing_topic_uses_resource_id(self):
        assert derive_event_id("", {"id": 42}, b"{}") == "42"

    async def test_cancel_is_distinct_from_create(self):
        assert derive_event_id("orders/cancelled", {"id": 42}, b"{}") == "42-orders-cancelled"

    async def test_delivery_id_fallback(self):
        assert derive_event_id("orders/create", {"note": "no id"}, b"{}", delivery_id="d-1") == "d-1"

    async def test_no_id_at_all(self):
        with pytest.raises(MalformedPayload):
            derive_event_id("orders/create", {}, b"{}")


class TestIngest:
    async def test_first_delivery_is_recorded_and_enqueued(self, context, channel):
        result = await deliver(context, channel, {"id": 42, "sku": "X", "qty": 2})

        assert result.status == "enqueued"
        assert result.external_event_id == "42"
        assert result.job_id == "webhook-shopify-42"
        job = await context.queue.get_job(WEBHOOKS, "webhook-shopify-42")
        assert job.type == "channel-order-upsert"
        assert job.payload["channel_id"] == channel.id
        assert job.payload["organization_id"] == ORG
        assert job.payload["order"] == {"id": 42, "sku": "X", "qty": 2}
        recorded = await processed_event(context.storage, "shopify", "42")
        assert recorded.job_id == "webhook-shopify-42"

    async def test_duplicate_delivery_is_already_processed(self, context, channel):
        payload = {"id": 42, "sku": "X", "qty": 2}
        await deliver(context, channel, payload)

        second = await deliver(context, channel, payload)

        assert second.status == "already_processed"
        stats = await context.queue.stats(WEBHOOKS)
        assert stats["waiting"] == 1

    async def test_bad_signature_writes_nothing(self, context, channel):
        body = webhook_body({"id": 42, "sku": "X", "qty": 2})

        with pytest.raises(AuthenticationFailed):
            await context.ingestor.ingest("shopify", channel.id, sign("wrong", body), body, "orders/create")

        assert await processed_event(context.storage, "shopify", "42") is None
        assert (await context.queue.stats(WEBHOOKS))["waiting"] == 0

    async def test_signature_is_checked_over_the_raw_body(self, context, channel):
        body = webhook_body({"id": 42, "sku": "X", "qty": 2})
        tampered = body.replace(b"2}", b"20}")

        with pytest.raises(AuthenticationFailed):
            await context.ingestor.ingest("shopify", channel.id, sign(channel.webhook_secret, body), tampered, "orders/create")

    async def test_unknown_or_mismatched_channel(self, context, channel):
        body = webhook_body({"id": 1})
        with pytest.raises(AuthenticationFailed):
            await context.ingestor.ingest("shopify", "missing", sign(channel.webhook_secret, body), body, "orders/create")
        with pytest.raises(AuthenticationFailed):
            await context.ingestor.ingest("woocommerce", channel.id, sign(channel.webhook_secret, body), body, "order.created")

    async def test_inactive_channel_is_rejected(self, context):
        inactive = await make_channel(context.storage, ORG, active=False)
        with pytest.raises(AuthenticationFailed):
            await deliver(context, inactive, {"id": 1, "sku": "A"})

    async def test_invalid_json_after_valid_signature(self, context, channel):
        body = b"not json"
        with pytest.raises(MalformedPayload):
            await context.ingestor.ingest("shopify", channel.id, sign(channel.webhook_secret, body), body, "orders/create")

    async def test_non_order_topics_are_ignored(self, context, channel):
        result = await deliver(context, channel, {"id": 5}, topic="products/update")

        assert result.status == "ignored"
        assert (await context.queue.stats(WEBHOOKS))["waiting"] == 0

    async def test_updates_with_new_timestamp_are_new_events(self, context, channel):
        first = await deliver(context, channel, {"id": 9, "updated_at": "t1"}, topic="orders/updated")
        second = await deliver(context, channel, {"id": 9, "updated_at": "t2"}, topic="orders/updated")
        replay = await deliver(context, channel, {"id": 9, "updated_at": "t2"}, topic="orders/updated")

        assert (first.status, second.status, replay.status) == ("enqueued", "enqueued", "already_processed")
        assert (await context.queue.stats(WEBHOOKS))["waiting"] == 2

    async def test_paid_after_create_is_a_new_event(self, context, channel):
        created = await deliver(context, channel, {"id": 11, "updated_at": "t1"}, topic="orders/create")
        paid = await deliver(context, channel, {"id": 11, "updated_at": "t2"}, topic="orders/paid")

        assert (created.status, paid.status) == ("enqueued", "enqueued")
        assert (await context.queue.stats(WEBHOOKS))["waiting"] == 2

    async def test_same_id_from_two_sources_is_two_events(self, context, channel):
        woo = await make_channel(context.storage, ORG, ChannelType.WOOCOMMERCE)

        a = await deliver(context, channel, {"id": 100, "sku": "A"})
        b = await deliver(context, woo, {"id": 100, "sku": "A"}, topic="order.created")

        assert a.status == b.status == "enqueued"
        assert a.job_id != b.job_id

    async def test_enqueue_is_absorbed_when_the_job_already_exists(self, context, channel):
        # A previous attempt enqueued the job but lost its ProcessedEvent row
        await context.queue.enqueue(WEBHOOKS, "channel-order-upsert", {}, "webhook-shopify-77")

        result = await deliver(context, channel, {"id": 77, "sku": "A"})

        assert result.status == "enqueued"
        assert (await context.queue.stats(WEBHOOKS))["waiting"] == 1
