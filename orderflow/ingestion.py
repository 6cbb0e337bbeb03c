"""
Idempotent event ingestion.

Order of checks: channel + secret lookup, HMAC over the raw body (constant-time
compare), event id derivation, then one transaction that records the
ProcessedEvent and enqueues the job. The job id is derived from the same event
id, so a retried enqueue is absorbed by the queue's own id dedup.
"""
import base64
import hashlib
import hmac
import json
import logging
from typing import Any, Literal

from pydantic import BaseModel

from orderflow.errors import AuthenticationFailed, MalformedPayload
from orderflow.metrics import events_duplicate_total, events_ingested_total, events_rejected_signature_total
from orderflow.models import Channel, ProcessedEvent
from orderflow.queue import JobQueue, JobType, QueueName
from orderflow.storage import Storage

logger = logging.getLogger(__name__)


class IngestResult(BaseModel):
    status: Literal["enqueued", "already_processed", "ignored"]
    external_event_id: str | None = None
    job_id: str | None = None


def compute_signature(secret: str, raw_body: bytes) -> str:
    digest = hmac.new(secret.encode(), raw_body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode()


def verify_signature(secret: str, raw_body: bytes, signature: str | None) -> bool:
    if not signature:
        return False
    expected = compute_signature(secret, raw_body)
    return hmac.compare_digest(expected.encode(), signature.strip().encode())


def is_order_event(event_type: str) -> bool:
    topic = (event_type or "").lower()
    return not topic or topic.startswith("order")


def derive_event_id(event_type: str, payload: Any, raw_body: bytes, delivery_id: str | None = None) -> str:
    """
    Resource id for create-type events; resource id plus topic for cancel/delete;
    resource id plus the payload's own modification time for every other order
    topic (updated, paid, fulfilled, ...), where the same order legitimately
    recurs. Without a resource id, the delivery id.
    """
    topic = (event_type or "").lower()
    resource_id = payload.get("id") if isinstance(payload, dict) else None
    if resource_id not in (None, ""):
        rid = str(resource_id)
        if not topic or "create" in topic:
            return rid
        if "cancel" in topic or "delete" in topic:
            return f"{rid}-{topic.replace('/', '-').replace('.', '-')}"
        marker = (
            payload.get("updated_at")
            or payload.get("date_modified_gmt")
            or payload.get("date_modified")
            or hashlib.sha256(raw_body).hexdigest()[:16]
        )
        return f"{rid}-{marker}"
    if delivery_id:
        return delivery_id
    raise MalformedPayload("Cannot derive an event id: payload has no id and no delivery id was sent")


class ChannelSecretLookup:
    """Resolves the channel an event claims to come from, and its webhook secret."""

    def __init__(self, storage: Storage):
        self.storage = storage

    async def lookup(self, source: str, channel_id: str) -> tuple[Channel, str]:
        async with self.storage.transaction() as tx:
            channel = await tx.get_channel(channel_id)
        if channel is None or not channel.active or channel.type.value != source:
            raise AuthenticationFailed("Channel not configured")
        if not channel.webhook_secret:
            raise AuthenticationFailed("Channel has no webhook secret")
        return channel, channel.webhook_secret


class EventIngestor:
    def __init__(self, storage: Storage, queue: JobQueue, secrets: ChannelSecretLookup):
        self.storage = storage
        self.queue = queue
        self.secrets = secrets

    async def ingest(
        self,
        source: str,
        channel_id: str,
        signature: str | None,
        raw_body: bytes,
        event_type: str,
        payload: Any = None,
        delivery_id: str | None = None,
    ) -> IngestResult:
        """
        Verify and accept one external event. Raises AuthenticationFailed before any
        write when the signature is wrong, MalformedPayload when no event id can be derived.
        """
        channel, secret = await self.secrets.lookup(source, channel_id)
        if not verify_signature(secret, raw_body, signature):
            events_rejected_signature_total.labels(source=source).inc()
            logger.warning("HMAC verification failed for %s event %s on channel %s", source, event_type, channel_id)
            raise AuthenticationFailed("Invalid HMAC signature")

        if payload is None:
            try:
                payload = json.loads(raw_body)
            except ValueError:
                raise MalformedPayload("Body is not valid JSON")

        if not is_order_event(event_type):
            logger.info("Ignoring %s event %s on channel %s", source, event_type, channel_id)
            return IngestResult(status="ignored")

        external_event_id = derive_event_id(event_type, payload, raw_body, delivery_id)
        return await self.record_and_enqueue(channel, source, event_type or "orders/create", external_event_id, payload)

    async def record_and_enqueue(
        self,
        channel: Channel,
        source: str,
        event_type: str,
        external_event_id: str,
        payload: dict,
    ) -> IngestResult:
        """Dedup by (source, external_event_id), then record and enqueue in one transaction."""
        job_id = f"webhook-{source}-{external_event_id}"
        async with self.storage.transaction() as tx:
            if await tx.get_processed_event(source, external_event_id) is None:
                inserted = await tx.insert_processed_event(
                    ProcessedEvent(
                        source=source,
                        external_event_id=external_event_id,
                        organization_id=channel.organization_id,
                        channel_id=channel.id,
                        event_type=event_type,
                        job_id=job_id,
                    )
                )
            else:
                inserted = False
            if inserted:
                job = await self.queue.enqueue(
                    QueueName.WEBHOOK_PROCESSING.value,
                    JobType.CHANNEL_ORDER_UPSERT.value,
                    {
                        "source": source,
                        "channel_id": channel.id,
                        "organization_id": channel.organization_id,
                        "event_type": event_type,
                        "external_event_id": external_event_id,
                        "order": payload,
                    },
                    job_id,
                )
                if job is None:
                    logger.info("Job %s already queued, enqueue skipped", job_id)

        if not inserted:
            events_duplicate_total.labels(source=source).inc()
            logger.info("Event already processed: %s %s (event id %s)", source, event_type, external_event_id)
            return IngestResult(status="already_processed", external_event_id=external_event_id, job_id=job_id)

        events_ingested_total.labels(source=source, event_type=event_type).inc()
        logger.info("Accepted %s event %s (event id %s) -> job %s", source, event_type, external_event_id, job_id)
        return IngestResult(status="enqueued", external_event_id=external_event_id, job_id=job_id)
