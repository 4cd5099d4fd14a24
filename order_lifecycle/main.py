import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response

from order_lifecycle.config import settings
from order_lifecycle.dependencies import close_service, get_service
from order_lifecycle.exceptions import InvalidStateTransition, NotFound, PersistenceFailure, Unauthorized
from order_lifecycle.metrics import (
    get_metrics_bytes,
    get_metrics_content_type,
    sqs_queue_messages_in_flight,
    sqs_queue_messages_waiting,
)
from order_lifecycle.redis_client import close_redis, get_redis
from order_lifecycle.routes import admin, orders, payments
from order_lifecycle.sqs_client import get_queue_depth

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    await get_redis()
    await get_service()
    yield
    await close_service()
    await close_redis()


app = FastAPI(title="Order Lifecycle", lifespan=lifespan)
app.include_router(orders.router)
app.include_router(payments.router)
app.include_router(admin.router)


@app.exception_handler(NotFound)
async def not_found_handler(request: Request, exc: NotFound) -> JSONResponse:
    return JSONResponse(status_code=404, content={"error": "not_found", "detail": str(exc), "order_id": exc.order_id})


@app.exception_handler(Unauthorized)
async def unauthorized_handler(request: Request, exc: Unauthorized) -> JSONResponse:
    return JSONResponse(status_code=403, content={"error": "unauthorized", "detail": str(exc)})


@app.exception_handler(InvalidStateTransition)
async def invalid_transition_handler(request: Request, exc: InvalidStateTransition) -> JSONResponse:
    return JSONResponse(
        status_code=409,
        content={
            "error": "invalid_state_transition",
            "detail": str(exc),
            "from_status": exc.from_status.value,
            "to_status": exc.to_status.value,
            "role": exc.role.value,
        },
    )


@app.exception_handler(PersistenceFailure)
async def persistence_failure_handler(request: Request, exc: PersistenceFailure) -> JSONResponse:
    logger.error("Persistence failure on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=503, content={"error": "persistence_failure", "detail": str(exc)})


@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
    return JSONResponse(status_code=400, content={"error": "bad_request", "detail": str(exc)})


@app.get("/health")
async def health() -> dict:
    return {"status": "ok"}


@app.get("/metrics")
async def metrics() -> Response:
    """Prometheus scrape endpoint: order transitions, payment events, SQS queue depth (when using SQS)."""
    if settings.sqs_queue_url:
        try:
            waiting, in_flight = await get_queue_depth()
        except Exception as e:
            logger.warning("Could not read SQS queue depth: %s", e)
        else:
            sqs_queue_messages_waiting.set(waiting)
            sqs_queue_messages_in_flight.set(in_flight)
    return Response(
        content=get_metrics_bytes(),
        media_type=get_metrics_content_type(),
    )


def serve() -> None:
    """Run the API with uvicorn. Host and port come from API_HOST / API_PORT."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    uvicorn.run(app, host=settings.api_host, port=settings.api_port)


if __name__ == "__main__":
    serve()
