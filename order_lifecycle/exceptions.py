"""
Typed failures surfaced by the lifecycle service. A UI can tell "not your order" (Unauthorized)
from "action not available now" (InvalidStateTransition) from "no such order" (NotFound).
"""
from order_lifecycle.order_state import Actor, OrderStatus


class OrderLifecycleError(Exception):
    """Base for every error the lifecycle service raises."""


class NotFound(OrderLifecycleError):
    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__(f"Order {order_id} not found")


class Unauthorized(OrderLifecycleError):
    """Caller is not the party the operation requires."""

    def __init__(self, order_id: str, caller_id: str | None, reason: str = "caller is not a party to this order"):
        self.order_id = order_id
        self.caller_id = caller_id
        super().__init__(f"{reason} (order={order_id}, caller={caller_id})")


class InvalidStateTransition(OrderLifecycleError):
    """Raised when the rule engine rejects a move. Carries from/to/role for diagnostics."""

    def __init__(self, from_status: OrderStatus, to_status: OrderStatus, role: Actor):
        self.from_status = OrderStatus(from_status)
        self.to_status = OrderStatus(to_status)
        self.role = Actor(role)
        super().__init__(
            f"Transition {self.from_status.value} -> {self.to_status.value} not allowed for {self.role.value}"
        )


class PersistenceFailure(OrderLifecycleError):
    """The store rejected or could not complete a read/write (connectivity, timeout, conflict)."""


class ConcurrentModification(PersistenceFailure):
    """Versioned write lost the race: the stored document changed since it was read."""

    def __init__(self, order_id: str, expected_version: int):
        self.order_id = order_id
        self.expected_version = expected_version
        super().__init__(f"Order {order_id} was modified concurrently (expected version {expected_version})")
