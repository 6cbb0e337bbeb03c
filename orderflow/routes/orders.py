from typing import Any

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, Field

from orderflow.context import AppContext
from orderflow.models import ActorType, CarrierType, OrderStatus
from orderflow.routes.deps import get_context, organization_id

router = APIRouter(prefix="/orders", tags=["orders"])


class TransitionBody(BaseModel):
    status: OrderStatus = Field(..., description="Target status")
    comment: str | None = Field(default=None, description="Recorded on the timeline event")
    actor_id: str | None = None


class NoteBody(BaseModel):
    note: str = Field(..., min_length=1)
    actor_id: str | None = None


class ShipmentBody(BaseModel):
    carrier: CarrierType
    shipping_account_id: str | None = Field(default=None, description="Defaults to the oldest active account for the carrier")
    options: dict[str, Any] = Field(default_factory=dict, description="packages, service_type, ship_from")
    actor_id: str | None = None


@router.get("")
async def list_orders(
    status: OrderStatus | None = None,
    channel_id: str | None = None,
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    org: str = Depends(organization_id),
    context: AppContext = Depends(get_context),
) -> JSONResponse:
    orders = await context.orders.list_orders(org, status=status, channel_id=channel_id, limit=limit, offset=offset)
    return JSONResponse(
        status_code=200,
        content={"orders": [o.model_dump(mode="json") for o in orders], "limit": limit, "offset": offset},
    )


@router.get("/{order_id}")
async def get_order(
    order_id: str,
    org: str = Depends(organization_id),
    context: AppContext = Depends(get_context),
) -> JSONResponse:
    """Order with items, timeline (oldest first), reservations and shipments."""
    detail = await context.orders.get_order_detail(order_id, org)
    return JSONResponse(status_code=200, content=detail.model_dump(mode="json"))


@router.post("/{order_id}/transition")
async def transition_order(
    order_id: str,
    body: TransitionBody,
    org: str = Depends(organization_id),
    context: AppContext = Depends(get_context),
) -> JSONResponse:
    order = await context.orders.transition(
        order_id, body.status, ActorType.USER, org, actor_id=body.actor_id, comment=body.comment
    )
    return JSONResponse(status_code=200, content=order.model_dump(mode="json"))


@router.post("/{order_id}/notes")
async def add_note(
    order_id: str,
    body: NoteBody,
    org: str = Depends(organization_id),
    context: AppContext = Depends(get_context),
) -> JSONResponse:
    event = await context.orders.add_note(order_id, org, body.note, actor_id=body.actor_id)
    return JSONResponse(status_code=201, content=event.model_dump(mode="json"))


@router.delete("/{order_id}")
async def delete_order(
    order_id: str,
    org: str = Depends(organization_id),
    context: AppContext = Depends(get_context),
) -> Response:
    await context.orders.delete_order(order_id, org)
    return Response(status_code=204)


@router.post("/{order_id}/shipments")
async def request_shipment(
    order_id: str,
    body: ShipmentBody,
    org: str = Depends(organization_id),
    context: AppContext = Depends(get_context),
) -> JSONResponse:
    """Create the shipment record and enqueue the carrier booking. 202: the label arrives asynchronously."""
    result = await context.shipping.request_shipment(
        order_id, org, body.carrier, account_id=body.shipping_account_id, options=body.options, actor_id=body.actor_id
    )
    return JSONResponse(
        status_code=202 if result.enqueued else 200,
        content={
            "status": "accepted" if result.enqueued else "already_requested",
            "job_id": result.job_id,
            "shipment": result.shipment.model_dump(mode="json"),
        },
    )
