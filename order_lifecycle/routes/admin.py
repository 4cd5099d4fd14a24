from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse

from order_lifecycle.dependencies import get_service
from order_lifecycle.routes.orders import require_admin
from order_lifecycle.service import OrderLifecycleService
from order_lifecycle.sqs_client import replay_dlq_to_main

router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(require_admin)])


@router.post("/dlq/replay")
async def dlq_replay(limit: int = Query(default=100, ge=1, le=1000)) -> JSONResponse:
    """
    Replay payment events from the SQS DLQ to the main queue.
    Returns number of messages replayed.
    """
    replayed = await replay_dlq_to_main(limit=limit)
    return JSONResponse(
        status_code=200,
        content={"status": "ok", "replayed": replayed},
    )


@router.post("/completions/sweep")
async def completion_sweep(service: OrderLifecycleService = Depends(get_service)) -> JSONResponse:
    """Complete accepted orders whose deferred completion is overdue (e.g. after a restart)."""
    completed = await service.sweep_due_completions()
    return JSONResponse(
        status_code=200,
        content={"status": "ok", "completed": completed},
    )
