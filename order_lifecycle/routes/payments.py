from typing import Literal

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from order_lifecycle.config import settings
from order_lifecycle.dependencies import get_service
from order_lifecycle.metrics import payment_events_ingested_total
from order_lifecycle.queue import push_payment_event
from order_lifecycle.redis_client import check_idempotency, release_idempotency
from order_lifecycle.service import OrderLifecycleService
from order_lifecycle.worker import apply_payment_event

router = APIRouter(prefix="/payments", tags=["payments"])

PaymentOutcome = Literal["completed", "failed"]


class PaymentEventBody(BaseModel):
    event_id: str = Field(..., description="Unique idempotency key for this payment event")
    order_id: str = Field(..., description="Order the payment belongs to")
    outcome: PaymentOutcome = Field(..., description="Result reported by the payment collaborator")
    payment_id: str | None = Field(default=None, description="Payment reference on the collaborator side")
    error: str | None = Field(default=None, description="Failure message when outcome is failed")


@router.post("/events")
async def ingest_payment_event(
    body: PaymentEventBody,
    service: OrderLifecycleService = Depends(get_service),
) -> JSONResponse:
    """
    Accept a payment result for an order. Idempotent: same event_id twice -> 200 (already processed).
    New event -> 202 Accepted; the worker turns it into mark_paid / record_payment_failure.
    With the memory store backend there is no shared state for a worker, so the event is applied
    in-process and the response is 200 (applied).
    """
    idempotency_key = f"idempotency:payment:{body.event_id}"
    is_duplicate = await check_idempotency(idempotency_key)

    if is_duplicate:
        return JSONResponse(
            status_code=200,
            content={"status": "already_processed", "event_id": body.event_id},
        )

    in_process = settings.store_backend == "memory"
    try:
        if in_process:
            await apply_payment_event(service, body.model_dump())
        else:
            await push_payment_event(
                event_id=body.event_id,
                order_id=body.order_id,
                outcome=body.outcome,
                payment_id=body.payment_id,
                error=body.error,
            )
    except Exception:
        # Not queued or applied: let the collaborator retry the same event_id
        await release_idempotency(idempotency_key)
        raise
    payment_events_ingested_total.labels(outcome=body.outcome).inc()
    if in_process:
        return JSONResponse(
            status_code=200,
            content={"status": "applied", "event_id": body.event_id},
        )
    return JSONResponse(
        status_code=202,
        content={"status": "accepted", "event_id": body.event_id},
    )
