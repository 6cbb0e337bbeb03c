from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from orderflow.context import AppContext
from orderflow.routes.deps import get_context, organization_id

router = APIRouter(prefix="/inventory", tags=["inventory"])


class SkuBody(BaseModel):
    code: str = Field(..., min_length=1)
    name: str = ""
    quantity_on_hand: int = Field(default=0, ge=0)


class AdjustBody(BaseModel):
    delta: int = Field(..., description="Signed change to quantity on hand")
    reason: str = Field(..., min_length=1)
    actor_id: str | None = None
    reference_id: str | None = None


class ReserveBody(BaseModel):
    actor_id: str | None = None


class ReleaseBody(BaseModel):
    reason: str = "manual"
    actor_id: str | None = None


@router.post("/skus")
async def create_sku(
    body: SkuBody,
    org: str = Depends(organization_id),
    context: AppContext = Depends(get_context),
) -> JSONResponse:
    sku = await context.ledger.create_sku(org, body.code, name=body.name, quantity_on_hand=body.quantity_on_hand)
    return JSONResponse(status_code=201, content=sku.model_dump(mode="json"))


@router.get("/skus/{sku_id}")
async def get_sku(
    sku_id: str,
    org: str = Depends(organization_id),
    context: AppContext = Depends(get_context),
) -> JSONResponse:
    """SKU counters with its active reservations and latest adjustments."""
    detail = await context.ledger.get_sku_detail(sku_id, org)
    return JSONResponse(status_code=200, content=detail.model_dump(mode="json"))


@router.post("/skus/{sku_id}/adjust")
async def adjust_sku(
    sku_id: str,
    body: AdjustBody,
    org: str = Depends(organization_id),
    context: AppContext = Depends(get_context),
) -> JSONResponse:
    sku = await context.ledger.adjust(
        sku_id, body.delta, body.reason, org, actor_id=body.actor_id, reference_id=body.reference_id
    )
    return JSONResponse(status_code=200, content=sku.model_dump(mode="json"))


@router.post("/orders/{order_id}/reserve")
async def reserve_order(
    order_id: str,
    body: ReserveBody | None = None,
    org: str = Depends(organization_id),
    context: AppContext = Depends(get_context),
) -> JSONResponse:
    reservations = await context.orders.reserve_inventory(order_id, org, actor_id=body.actor_id if body else None)
    return JSONResponse(status_code=200, content={"reservations": [r.model_dump(mode="json") for r in reservations]})


@router.post("/orders/{order_id}/release")
async def release_order(
    order_id: str,
    body: ReleaseBody,
    org: str = Depends(organization_id),
    context: AppContext = Depends(get_context),
) -> JSONResponse:
    released = await context.orders.release_inventory(order_id, body.reason, org, actor_id=body.actor_id)
    return JSONResponse(status_code=200, content={"released": [r.model_dump(mode="json") for r in released]})
