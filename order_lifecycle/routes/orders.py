from typing import Literal

from fastapi import APIRouter, Depends, Header, HTTPException, Query
from pydantic import BaseModel, Field

from order_lifecycle.dependencies import get_service
from order_lifecycle.models import Caller, Order, PackageSnapshot
from order_lifecycle.order_state import Actor
from order_lifecycle.service import AvailableActions, OrderLifecycleService

router = APIRouter(prefix="/orders", tags=["orders"])


async def get_caller(
    x_user_id: str | None = Header(default=None),
    x_user_role: Actor | None = Header(default=None),
) -> Caller:
    """Identity forwarded by the auth gateway. `system` is internal only and never accepted over HTTP."""
    if not x_user_id or x_user_role is None:
        raise HTTPException(status_code=401, detail="Missing caller identity")
    if x_user_role == Actor.SYSTEM:
        raise HTTPException(status_code=403, detail="System role is not available to API callers")
    return Caller(user_id=x_user_id, role=x_user_role)


async def require_admin(caller: Caller = Depends(get_caller)) -> Caller:
    if caller.role != Actor.ADMIN:
        raise HTTPException(status_code=403, detail="Admin role required")
    return caller


class CreateOrderBody(BaseModel):
    service_id: str
    seller_id: str
    package: PackageSnapshot
    requirements: str = ""
    attachments: list[str] = Field(default_factory=list)


class DeliverBody(BaseModel):
    message: str
    files: list[str] = Field(default_factory=list)


class AcceptBody(BaseModel):
    feedback: str | None = None


class RevisionBody(BaseModel):
    instructions: str


class ReasonBody(BaseModel):
    reason: str | None = None


class NoteBody(BaseModel):
    note: str | None = None


class ResolveBody(BaseModel):
    resolution: Literal["completed", "cancelled"]
    note: str | None = None


@router.post("", status_code=201, response_model=Order)
async def create_order(
    body: CreateOrderBody,
    caller: Caller = Depends(get_caller),
    service: OrderLifecycleService = Depends(get_service),
) -> Order:
    return await service.create_order(
        caller,
        service_id=body.service_id,
        seller_id=body.seller_id,
        package=body.package,
        requirements=body.requirements,
        attachments=body.attachments,
    )


@router.get("", response_model=list[Order])
async def list_orders(
    buyer_id: str | None = Query(default=None),
    seller_id: str | None = Query(default=None),
    caller: Caller = Depends(get_caller),
    service: OrderLifecycleService = Depends(get_service),
) -> list[Order]:
    """Orders of one buyer or one seller, newest first. Callers only see their own unless admin."""
    if (buyer_id is None) == (seller_id is None):
        raise HTTPException(status_code=400, detail="Provide exactly one of buyer_id or seller_id")
    owner = buyer_id or seller_id
    if caller.role != Actor.ADMIN and caller.user_id != owner:
        raise HTTPException(status_code=403, detail="Cannot list another user's orders")
    if buyer_id is not None:
        return await service.list_orders_for_buyer(buyer_id)
    return await service.list_orders_for_seller(seller_id)


@router.get("/buyer/{buyer_id}/active", response_model=list[Order])
async def list_active_buyer_orders(
    buyer_id: str,
    caller: Caller = Depends(get_caller),
    service: OrderLifecycleService = Depends(get_service),
) -> list[Order]:
    if caller.role != Actor.ADMIN and caller.user_id != buyer_id:
        raise HTTPException(status_code=403, detail="Cannot list another user's orders")
    return await service.list_active_orders_for_buyer(buyer_id)


@router.get("/seller/{seller_id}/active", response_model=list[Order])
async def list_active_seller_orders(
    seller_id: str,
    caller: Caller = Depends(get_caller),
    service: OrderLifecycleService = Depends(get_service),
) -> list[Order]:
    if caller.role != Actor.ADMIN and caller.user_id != seller_id:
        raise HTTPException(status_code=403, detail="Cannot list another user's orders")
    return await service.list_active_orders_for_seller(seller_id)


@router.get("/{order_id}", response_model=Order)
async def get_order(
    order_id: str,
    caller: Caller = Depends(get_caller),
    service: OrderLifecycleService = Depends(get_service),
) -> Order:
    order = await service.get_order(order_id)
    if caller.role != Actor.ADMIN and order.role_of(caller.user_id) is None:
        raise HTTPException(status_code=403, detail="Not a party to this order")
    return order


@router.get("/{order_id}/actions", response_model=AvailableActions)
async def available_actions(
    order_id: str,
    caller: Caller = Depends(get_caller),
    service: OrderLifecycleService = Depends(get_service),
) -> AvailableActions:
    return await service.available_actions_for(order_id, caller)


@router.post("/{order_id}/deliver", response_model=Order)
async def deliver(
    order_id: str,
    body: DeliverBody,
    caller: Caller = Depends(get_caller),
    service: OrderLifecycleService = Depends(get_service),
) -> Order:
    return await service.deliver(order_id, caller, body.message, body.files)


@router.post("/{order_id}/accept", response_model=Order)
async def accept_delivery(
    order_id: str,
    body: AcceptBody,
    caller: Caller = Depends(get_caller),
    service: OrderLifecycleService = Depends(get_service),
) -> Order:
    return await service.accept_delivery(order_id, caller, body.feedback)


@router.post("/{order_id}/revision", response_model=Order)
async def request_revision(
    order_id: str,
    body: RevisionBody,
    caller: Caller = Depends(get_caller),
    service: OrderLifecycleService = Depends(get_service),
) -> Order:
    return await service.request_revision(order_id, caller, body.instructions)


@router.post("/{order_id}/cancel", response_model=Order)
async def cancel(
    order_id: str,
    body: ReasonBody,
    caller: Caller = Depends(get_caller),
    service: OrderLifecycleService = Depends(get_service),
) -> Order:
    return await service.cancel(order_id, caller, body.reason)


@router.post("/{order_id}/dispute", response_model=Order)
async def open_dispute(
    order_id: str,
    body: ReasonBody,
    caller: Caller = Depends(get_caller),
    service: OrderLifecycleService = Depends(get_service),
) -> Order:
    return await service.open_dispute(order_id, caller, body.reason)


@router.post("/{order_id}/complete", response_model=Order)
async def complete(
    order_id: str,
    body: NoteBody,
    caller: Caller = Depends(require_admin),
    service: OrderLifecycleService = Depends(get_service),
) -> Order:
    return await service.complete_order(order_id, caller, body.note)


@router.post("/{order_id}/resolve", response_model=Order)
async def resolve_dispute(
    order_id: str,
    body: ResolveBody,
    caller: Caller = Depends(require_admin),
    service: OrderLifecycleService = Depends(get_service),
) -> Order:
    return await service.resolve_dispute(order_id, caller, body.resolution, body.note)
