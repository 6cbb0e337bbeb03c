import logging
import sys
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response

from orderflow.config import Settings
from orderflow.context import AppContext, create_context
from orderflow.errors import (
    AlreadyExists,
    AuthenticationFailed,
    InsufficientStock,
    InvalidTransition,
    MalformedPayload,
    NegativeInventory,
    NotFound,
    OrderflowError,
    RetryableIntegrationFailure,
    TerminalIntegrationFailure,
)
from orderflow.metrics import get_metrics_bytes, get_metrics_content_type, refresh_queue_gauges
from orderflow.routes import admin, events, inventory, orders, shipments

logger = logging.getLogger(__name__)

STATUS_CODES: dict[type[OrderflowError], int] = {
    NotFound: 404,
    AlreadyExists: 409,
    InvalidTransition: 409,
    InsufficientStock: 409,
    NegativeInventory: 409,
    AuthenticationFailed: 401,
    MalformedPayload: 400,
    RetryableIntegrationFailure: 503,
    TerminalIntegrationFailure: 502,
}


def status_code_for(error: OrderflowError) -> int:
    for cls in type(error).__mro__:
        if cls in STATUS_CODES:
            return STATUS_CODES[cls]
    return 500


async def orderflow_error_handler(request: Request, exc: OrderflowError) -> JSONResponse:
    status_code = status_code_for(exc)
    if status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=status_code, content={"error": exc.code, "detail": exc.message})


def create_app(context: AppContext | None = None) -> FastAPI:
    """
    With a context: serve it as is (tests). Without: build one from the
    environment on startup and close it on shutdown.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = None
        if getattr(app.state, "context", None) is None:
            owned = await create_context(Settings())
            app.state.context = owned
        yield
        if owned is not None:
            await owned.close()
            app.state.context = None

    app = FastAPI(title="Orderflow", lifespan=lifespan)
    app.state.context = context
    app.add_exception_handler(OrderflowError, orderflow_error_handler)
    app.include_router(events.router)
    app.include_router(orders.router)
    app.include_router(inventory.router)
    app.include_router(shipments.router)
    app.include_router(admin.router)

    @app.get("/health")
    async def health() -> dict:
        return {"status": "ok"}

    @app.get("/metrics")
    async def metrics() -> Response:
        """Prometheus scrape endpoint: ingestion/job/transition counters and queue depth."""
        try:
            await refresh_queue_gauges(app.state.context.queue)
        except Exception:
            logger.warning("Could not refresh queue gauges", exc_info=True)
        return Response(
            content=get_metrics_bytes(),
            media_type=get_metrics_content_type(),
        )

    return app


app = create_app()


def serve() -> None:
    import uvicorn

    settings = Settings()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        stream=sys.stdout,
    )
    uvicorn.run("orderflow.main:app", host=settings.api_host, port=settings.api_port)


if __name__ == "__main__":
    serve()
