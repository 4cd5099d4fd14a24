"""
Order document. Stored whole (JSON) keyed by order_id; `version` guards every write.
"""
import uuid
from datetime import datetime, timezone

from pydantic import BaseModel, Field

from order_lifecycle.order_state import Actor, OrderStatus


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Caller(BaseModel):
    """Identity supplied by the auth collaborator for every call."""
    user_id: str
    role: Actor


SYSTEM_CALLER = Caller(user_id="system", role=Actor.SYSTEM)


class PackageSnapshot(BaseModel):
    """Commercial terms copied from the seller's catalog at checkout. Later catalog edits never reach the order."""
    model_config = {"frozen": True}

    package_id: str
    name: str
    description: str = ""
    delivery_time_days: int = Field(..., ge=1)
    revisions: int = Field(..., ge=0)
    price_cents: int = Field(..., ge=0)


class AmountBreakdown(BaseModel):
    model_config = {"frozen": True}

    base_cents: int
    platform_fee_cents: int
    seller_net_cents: int
    total_cents: int


class StatusHistoryEntry(BaseModel):
    model_config = {"frozen": True}

    status: OrderStatus
    timestamp: datetime
    actor_id: str
    actor_role: Actor
    note: str | None = None


class Delivery(BaseModel):
    message: str
    files: list[str] = Field(default_factory=list)
    delivered_at: datetime


class RevisionRequest(BaseModel):
    message: str
    requested_at: datetime


# State entered -> dedicated timestamp field (set once, on first entry)
STATUS_TIMESTAMP_FIELDS: dict[OrderStatus, str] = {
    OrderStatus.IN_PROGRESS: "paid_at",
    OrderStatus.DELIVERED: "delivered_at",
    OrderStatus.REVISION_REQUESTED: "revision_requested_at",
    OrderStatus.ACCEPTED: "accepted_at",
    OrderStatus.COMPLETED: "completed_at",
    OrderStatus.CANCELLED: "cancelled_at",
    OrderStatus.DISPUTED: "disputed_at",
}


class Order(BaseModel):
    order_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    service_id: str
    seller_id: str
    buyer_id: str
    package: PackageSnapshot
    requirements: str = ""
    attachments: list[str] = Field(default_factory=list)
    amounts: AmountBreakdown

    status: OrderStatus = OrderStatus.PENDING
    status_history: list[StatusHistoryEntry] = Field(default_factory=list)

    paid_at: datetime | None = None
    delivered_at: datetime | None = None
    revision_requested_at: datetime | None = None
    accepted_at: datetime | None = None
    completed_at: datetime | None = None
    cancelled_at: datetime | None = None
    disputed_at: datetime | None = None

    is_paid: bool = False
    payment_id: str | None = None
    payment_error: str | None = None

    current_delivery: Delivery | None = None
    current_revision_request: RevisionRequest | None = None
    revision_count: int = 0
    acceptance_feedback: str | None = None
    cancellation_reason: str | None = None
    dispute_reason: str | None = None

    completion_due_at: datetime | None = None

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    version: int = 0

    def role_of(self, user_id: str) -> Actor | None:
        if user_id == self.buyer_id:
            return Actor.BUYER
        if user_id == self.seller_id:
            return Actor.SELLER
        return None

    def stamp(self, status: OrderStatus, at: datetime) -> None:
        """Record the dedicated timestamp for status unless it was already set."""
        field = STATUS_TIMESTAMP_FIELDS.get(status)
        if field and getattr(self, field) is None:
            setattr(self, field, at)

    def to_document(self) -> dict:
        return self.model_dump(mode="json")

    @classmethod
    def from_document(cls, doc: dict) -> "Order":
        return cls.model_validate(doc)
