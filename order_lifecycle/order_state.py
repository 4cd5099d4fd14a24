"""
Order lifecycle state machine. Pure rules: which actor may move an order from one state to another.
No I/O and no mutable state, safe to call from any task.
"""
from enum import Enum


class OrderStatus(str, Enum):
    PENDING = "pending"  # created, waiting for payment
    IN_PROGRESS = "in_progress"  # paid, seller is working
    DELIVERED = "delivered"
    REVISION_REQUESTED = "revision_requested"
    ACCEPTED = "accepted"  # buyer accepted, funds not yet released
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    DISPUTED = "disputed"


class Actor(str, Enum):
    BUYER = "buyer"
    SELLER = "seller"
    ADMIN = "admin"
    SYSTEM = "system"


S = OrderStatus
A = Actor

# Current state -> {target state: roles allowed to request it}
TRANSITION_RULES: dict[OrderStatus, dict[OrderStatus, frozenset[Actor]]] = {
    S.PENDING: {
        S.IN_PROGRESS: frozenset({A.SYSTEM}),
        S.CANCELLED: frozenset({A.BUYER, A.SELLER, A.ADMIN}),
    },
    S.IN_PROGRESS: {
        S.DELIVERED: frozenset({A.SELLER}),
        S.CANCELLED: frozenset({A.BUYER, A.SELLER, A.ADMIN}),
        S.DISPUTED: frozenset({A.BUYER, A.SELLER}),
    },
    S.DELIVERED: {
        S.REVISION_REQUESTED: frozenset({A.BUYER}),
        S.ACCEPTED: frozenset({A.BUYER}),
        S.CANCELLED: frozenset({A.ADMIN}),
        S.DISPUTED: frozenset({A.BUYER, A.SELLER}),
    },
    S.REVISION_REQUESTED: {
        S.DELIVERED: frozenset({A.SELLER}),
        S.CANCELLED: frozenset({A.ADMIN}),
        S.DISPUTED: frozenset({A.BUYER, A.SELLER}),
    },
    S.ACCEPTED: {
        S.COMPLETED: frozenset({A.SYSTEM, A.ADMIN}),
        S.DISPUTED: frozenset({A.BUYER, A.SELLER}),
    },
    S.COMPLETED: {
        S.DISPUTED: frozenset({A.BUYER, A.SELLER, A.ADMIN}),
    },
    S.CANCELLED: {},  # terminal
    S.DISPUTED: {
        S.COMPLETED: frozenset({A.ADMIN}),
        S.CANCELLED: frozenset({A.ADMIN}),
    },
}

ACTIVE_SELLER_STATUSES: frozenset[OrderStatus] = frozenset(
    {S.IN_PROGRESS, S.DELIVERED, S.REVISION_REQUESTED}
)
ACTIVE_BUYER_STATUSES: frozenset[OrderStatus] = frozenset(
    {S.IN_PROGRESS, S.DELIVERED, S.REVISION_REQUESTED}
)

_STATUS_DESCRIPTIONS = {
    S.PENDING: "Order created, waiting for payment",
    S.IN_PROGRESS: "Order is in progress, seller is working",
    S.DELIVERED: "Work has been delivered, waiting for buyer review",
    S.REVISION_REQUESTED: "Buyer has requested revisions",
    S.ACCEPTED: "Delivery has been accepted, finalizing order",
    S.COMPLETED: "Order completed, payment released to seller",
    S.CANCELLED: "Order has been cancelled",
    S.DISPUTED: "Order is in dispute resolution",
}

_ACTION_LABELS = {
    S.DELIVERED: "Deliver Work",
    S.REVISION_REQUESTED: "Request Revision",
    S.ACCEPTED: "Accept Delivery",
    S.CANCELLED: "Cancel Order",
    S.DISPUTED: "Open Dispute",
}


def is_valid_transition(current: OrderStatus, target: OrderStatus, role: Actor) -> bool:
    """True if role may move an order from current to target. Same-state moves are always allowed (no-op)."""
    if current == target:
        return True
    targets = TRANSITION_RULES.get(current, {})
    if target not in targets:
        return False
    # Admin may take any transition that exists in the table
    if role == A.ADMIN:
        return True
    return role in targets[target]


def valid_next_states(current: OrderStatus, role: Actor) -> set[OrderStatus]:
    targets = TRANSITION_RULES.get(current, {})
    if role == A.ADMIN:
        return set(targets)
    return {target for target, roles in targets.items() if role in roles}


def is_final_state(status: OrderStatus) -> bool:
    return status in (S.COMPLETED, S.CANCELLED)


def is_active(status: OrderStatus) -> bool:
    """Work is underway or contested: paid but not yet settled."""
    return status in (S.IN_PROGRESS, S.DELIVERED, S.REVISION_REQUESTED, S.DISPUTED)


def status_description(status: OrderStatus) -> str:
    return _STATUS_DESCRIPTIONS.get(status, "Unknown status")


def action_label(target: OrderStatus) -> str:
    return _ACTION_LABELS.get(target, "Update Status")
