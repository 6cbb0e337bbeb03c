from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from orderflow.context import AppContext
from orderflow.errors import NotFound
from orderflow.models import ChannelType
from orderflow.routes.deps import get_context

router = APIRouter(prefix="/webhooks", tags=["webhooks"])

# source -> (signature header, topic header, delivery id header)
SOURCE_HEADERS = {
    ChannelType.SHOPIFY.value: ("X-Shopify-Hmac-Sha256", "X-Shopify-Topic", "X-Shopify-Webhook-Id"),
    ChannelType.WOOCOMMERCE.value: ("X-WC-Webhook-Signature", "X-WC-Webhook-Topic", "X-WC-Webhook-Delivery-ID"),
}
GENERIC_HEADERS = ("X-Signature", "X-Event-Type", "X-Delivery-Id")


@router.post("/{source}/{channel_id}")
async def receive_webhook(
    source: str,
    channel_id: str,
    request: Request,
    context: AppContext = Depends(get_context),
) -> JSONResponse:
    """
    Accept a signed channel event. The HMAC is checked over the raw body before
    anything is parsed or written. New event -> 202 Accepted; same event again ->
    200 already_processed.
    """
    if source not in SOURCE_HEADERS:
        raise NotFound(f"Unknown event source {source}")
    signature_header, topic_header, delivery_header = SOURCE_HEADERS[source]
    headers = request.headers
    raw_body = await request.body()

    result = await context.ingestor.ingest(
        source=source,
        channel_id=channel_id,
        signature=headers.get(signature_header) or headers.get(GENERIC_HEADERS[0]),
        raw_body=raw_body,
        event_type=headers.get(topic_header) or headers.get(GENERIC_HEADERS[1]) or "",
        delivery_id=headers.get(delivery_header) or headers.get(GENERIC_HEADERS[2]),
    )

    if result.status == "enqueued":
        return JSONResponse(
            status_code=202,
            content={"status": "accepted", "event_id": result.external_event_id, "job_id": result.job_id},
        )
    return JSONResponse(
        status_code=200,
        content={"status": result.status, "event_id": result.external_event_id},
    )
