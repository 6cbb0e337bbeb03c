from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse, Response

from orderflow.context import AppContext
from orderflow.routes.deps import get_context, organization_id

router = APIRouter(prefix="/shipments", tags=["shipments"])


@router.get("/{shipment_id}")
async def get_shipment(
    shipment_id: str,
    org: str = Depends(organization_id),
    context: AppContext = Depends(get_context),
) -> JSONResponse:
    detail = await context.shipping.get_shipment_detail(shipment_id, org)
    return JSONResponse(status_code=200, content=detail.model_dump(mode="json"))


@router.get("/{shipment_id}/label")
async def get_label(
    shipment_id: str,
    org: str = Depends(organization_id),
    context: AppContext = Depends(get_context),
) -> Response:
    content, content_type = await context.shipping.get_label(shipment_id, org)
    return Response(content=content, media_type=content_type)
