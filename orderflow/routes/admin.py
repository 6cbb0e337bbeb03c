from typing import Any

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from orderflow.context import AppContext
from orderflow.errors import NotFound
from orderflow.models import CarrierType, Channel, ChannelType
from orderflow.routes.deps import get_context, organization_id

router = APIRouter(prefix="/admin", tags=["admin"])


class ChannelBody(BaseModel):
    type: ChannelType
    name: str = ""
    webhook_secret: str = Field(..., min_length=1, description="Shared secret for webhook HMAC verification")
    config: dict[str, Any] = Field(default_factory=dict, description="shop_domain/access_token or store_url/consumer_key/consumer_secret")


class ShippingAccountBody(BaseModel):
    carrier: CarrierType
    name: str = ""
    credentials: dict[str, Any] = Field(default_factory=dict)
    test_mode: bool = True


def _known_queue(context: AppContext, queue: str) -> str:
    if queue not in context.queue.queue_names:
        raise NotFound(f"Unknown queue {queue}")
    return queue


@router.get("/queues")
async def queue_stats(context: AppContext = Depends(get_context)) -> JSONResponse:
    """Waiting / active / delayed / dead counts per queue."""
    stats = {name: await context.queue.stats(name) for name in context.queue.queue_names}
    return JSONResponse(status_code=200, content={"queues": stats})


@router.get("/queues/{queue}/dead")
async def dead_letters(
    queue: str,
    limit: int = Query(default=100, ge=1, le=1000),
    context: AppContext = Depends(get_context),
) -> JSONResponse:
    jobs = await context.queue.dead_letters(_known_queue(context, queue), limit=limit)
    return JSONResponse(status_code=200, content={"jobs": [j.model_dump(mode="json") for j in jobs]})


@router.post("/queues/{queue}/replay")
async def replay_dead_letters(
    queue: str,
    limit: int = Query(default=100, ge=1, le=1000),
    context: AppContext = Depends(get_context),
) -> JSONResponse:
    """
    Move dead-lettered jobs back to waiting with a fresh attempt budget.
    Returns number of jobs replayed.
    """
    replayed = await context.queue.replay_dead_letters(_known_queue(context, queue), limit=limit)
    return JSONResponse(status_code=200, content={"status": "ok", "replayed": replayed})


@router.post("/channels")
async def create_channel(
    body: ChannelBody,
    org: str = Depends(organization_id),
    context: AppContext = Depends(get_context),
) -> JSONResponse:
    channel = Channel(
        organization_id=org,
        type=body.type,
        name=body.name or body.type.value,
        webhook_secret=body.webhook_secret,
        config=body.config,
    )
    async with context.storage.transaction() as tx:
        await tx.insert_channel(channel)
    return JSONResponse(status_code=201, content=channel.model_dump(mode="json", exclude={"webhook_secret"}))


@router.post("/channels/{channel_id}/sync")
async def trigger_channel_sync(
    channel_id: str,
    org: str = Depends(organization_id),
    context: AppContext = Depends(get_context),
) -> JSONResponse:
    job_id = await context.scheduler.sync_channel_now(channel_id, org)
    return JSONResponse(status_code=202, content={"status": "accepted", "job_id": job_id})


@router.post("/shipping-accounts")
async def create_shipping_account(
    body: ShippingAccountBody,
    org: str = Depends(organization_id),
    context: AppContext = Depends(get_context),
) -> JSONResponse:
    account = await context.shipping.create_account(
        org, body.carrier, name=body.name, credentials=body.credentials, test_mode=body.test_mode
    )
    return JSONResponse(status_code=201, content=account.model_dump(mode="json", exclude={"credentials"}))
