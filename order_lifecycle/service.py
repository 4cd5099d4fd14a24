"""
Order lifecycle service: the only writer of order state.

Every transition runs the same cycle: load -> authorize caller -> ask the rule engine -> append history
-> side effects -> versioned write. A write that loses a race (ConcurrentModification) is retried from
a fresh load, so concurrent requests never drop each other's history entries.
"""
import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta
from typing import Protocol, TypeVar

from pydantic import BaseModel

from order_lifecycle import metrics
from order_lifecycle.config import settings
from order_lifecycle.exceptions import (
    ConcurrentModification,
    InvalidStateTransition,
    NotFound,
    PersistenceFailure,
    Unauthorized,
)
from order_lifecycle.fees import amount_breakdown
from order_lifecycle.models import (
    SYSTEM_CALLER,
    AmountBreakdown,
    Caller,
    Delivery,
    Order,
    PackageSnapshot,
    RevisionRequest,
    StatusHistoryEntry,
    utcnow,
)
from order_lifecycle.order_state import (
    ACTIVE_BUYER_STATUSES,
    ACTIVE_SELLER_STATUSES,
    Actor,
    OrderStatus,
    action_label,
    is_active,
    is_final_state,
    is_valid_transition,
    status_description,
    valid_next_states,
)
from order_lifecycle.scheduler import CompletionScheduler

logger = logging.getLogger(__name__)

T = TypeVar("T")

# (actor_id, role) acting on a loaded order; raises Unauthorized when the caller does not qualify
RoleResolver = Callable[[Order], tuple[str, Actor]]
SideEffect = Callable[[Order, datetime], None]


class OrderStore(Protocol):
    async def get(self, order_id: str) -> Order | None: ...
    async def create(self, order: Order) -> Order: ...
    async def replace(self, order: Order, expected_version: int) -> Order: ...
    async def list_orders(
        self,
        buyer_id: str | None = None,
        seller_id: str | None = None,
        statuses: set[OrderStatus] | None = None,
    ) -> list[Order]: ...
    async def list_due_completions(self, now: datetime) -> list[Order]: ...


class AvailableActions(BaseModel):
    order_id: str
    status: OrderStatus
    description: str
    final: bool
    active: bool
    role: Actor
    actions: list[OrderStatus]
    labels: dict[OrderStatus, str]


class OrderLifecycleService:
    def __init__(
        self,
        store: OrderStore,
        scheduler: CompletionScheduler | None = None,
        *,
        completion_delay_seconds: float | None = None,
        timeout_seconds: float | None = None,
        max_conflict_retries: int | None = None,
        fee_percent: int | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.scheduler = scheduler or CompletionScheduler()
        self.scheduler.bind(self._deferred_completion)
        self.completion_delay_seconds = (
            settings.completion_delay_seconds if completion_delay_seconds is None else completion_delay_seconds
        )
        self.timeout_seconds = settings.store_timeout_seconds if timeout_seconds is None else timeout_seconds
        self.max_conflict_retries = (
            settings.max_conflict_retries if max_conflict_retries is None else max_conflict_retries
        )
        self.fee_percent = fee_percent
        self._clock = clock

    async def create_order(
        self,
        caller: Caller,
        service_id: str,
        seller_id: str,
        package: PackageSnapshot,
        requirements: str = "",
        attachments: list[str] | None = None,
        timeout: float | None = None,
    ) -> Order:
        """Checkout: a buyer commissions a package. New order starts in pending, unpaid."""
        if caller.role != Actor.BUYER:
            raise Unauthorized("new", caller.user_id, reason="only buyers can place orders")
        if caller.user_id == seller_id:
            raise Unauthorized("new", caller.user_id, reason="cannot order your own service")

        now = self._clock()
        order = Order(
            service_id=service_id,
            seller_id=seller_id,
            buyer_id=caller.user_id,
            package=package,
            requirements=requirements,
            attachments=list(attachments or []),
            amounts=AmountBreakdown(**amount_breakdown(package.price_cents, self.fee_percent)),
            status=OrderStatus.PENDING,
            status_history=[
                StatusHistoryEntry(
                    status=OrderStatus.PENDING,
                    timestamp=now,
                    actor_id=caller.user_id,
                    actor_role=Actor.BUYER,
                    note="Order created",
                )
            ],
            created_at=now,
            updated_at=now,
        )
        await self._io(self.store.create(order), timeout)
        metrics.orders_created_total.inc()
        logger.info("Created order_id=%s buyer=%s seller=%s", order.order_id, order.buyer_id, order.seller_id)
        return order

    async def mark_paid(
        self,
        order_id: str,
        payment_id: str | None = None,
        note: str | None = None,
        timeout: float | None = None,
    ) -> Order:
        """Payment collaborator reported success: pending -> in_progress as system."""

        def apply(order: Order, now: datetime) -> None:
            order.is_paid = True
            order.payment_error = None
            if payment_id:
                order.payment_id = payment_id

        return await self._transition(
            order_id,
            OrderStatus.IN_PROGRESS,
            self._as_system(),
            apply,
            note=note or "Payment received",
            timeout=timeout,
        )

    async def deliver(
        self,
        order_id: str,
        caller: Caller,
        message: str,
        files: list[str] | None = None,
        timeout: float | None = None,
    ) -> Order:
        def apply(order: Order, now: datetime) -> None:
            order.current_delivery = Delivery(message=message, files=list(files or []), delivered_at=now)

        return await self._transition(
            order_id, OrderStatus.DELIVERED, self._as_party(caller, Actor.SELLER), apply, note=message, timeout=timeout
        )

    async def accept_delivery(
        self,
        order_id: str,
        caller: Caller,
        feedback: str | None = None,
        timeout: float | None = None,
    ) -> Order:
        """Buyer accepts; completion (funds release) follows after completion_delay_seconds."""
        delay = self.completion_delay_seconds

        def apply(order: Order, now: datetime) -> None:
            order.acceptance_feedback = feedback
            order.completion_due_at = now + timedelta(seconds=delay)

        return await self._transition(
            order_id, OrderStatus.ACCEPTED, self._as_party(caller, Actor.BUYER), apply, note=feedback, timeout=timeout
        )

    async def request_revision(
        self,
        order_id: str,
        caller: Caller,
        instructions: str,
        timeout: float | None = None,
    ) -> Order:
        def apply(order: Order, now: datetime) -> None:
            order.revision_count += 1
            order.current_revision_request = RevisionRequest(message=instructions, requested_at=now)

        return await self._transition(
            order_id,
            OrderStatus.REVISION_REQUESTED,
            self._as_party(caller, Actor.BUYER),
            apply,
            note=instructions,
            timeout=timeout,
        )

    async def cancel(
        self,
        order_id: str,
        caller: Caller,
        reason: str | None = None,
        timeout: float | None = None,
    ) -> Order:
        def apply(order: Order, now: datetime) -> None:
            if reason:
                order.cancellation_reason = reason

        return await self._transition(
            order_id, OrderStatus.CANCELLED, self._as_any_party(caller), apply, note=reason, timeout=timeout
        )

    async def open_dispute(
        self,
        order_id: str,
        caller: Caller,
        reason: str | None = None,
        timeout: float | None = None,
    ) -> Order:
        def apply(order: Order, now: datetime) -> None:
            if reason:
                order.dispute_reason = reason

        return await self._transition(
            order_id, OrderStatus.DISPUTED, self._as_any_party(caller), apply, note=reason, timeout=timeout
        )

    async def complete_order(
        self,
        order_id: str,
        caller: Caller,
        note: str | None = None,
        timeout: float | None = None,
    ) -> Order:
        """Manual release by an admin, without waiting for the deferred completion."""
        return await self._transition(
            order_id, OrderStatus.COMPLETED, self._as_admin(caller), note=note or "Completed by admin", timeout=timeout
        )

    async def resolve_dispute(
        self,
        order_id: str,
        caller: Caller,
        resolution: OrderStatus,
        note: str | None = None,
        timeout: float | None = None,
    ) -> Order:
        """Admin closes a dispute either by completing (release funds) or cancelling (refund) the order."""
        resolution = OrderStatus(resolution)
        if resolution not in (OrderStatus.COMPLETED, OrderStatus.CANCELLED):
            raise ValueError(f"dispute resolution must be completed or cancelled, got {resolution.value}")

        def apply(order: Order, now: datetime) -> None:
            if resolution == OrderStatus.CANCELLED and note:
                order.cancellation_reason = note

        return await self._transition(
            order_id,
            resolution,
            self._as_admin(caller),
            apply,
            note=note or "Dispute resolved",
            from_statuses={OrderStatus.DISPUTED},
            timeout=timeout,
        )

    async def complete_after_acceptance(self, order_id: str, timeout: float | None = None) -> Order:
        """
        Deferred accepted -> completed as system. If the order left `accepted` in the meantime
        (dispute, admin action) this is a no-op: a stale timer never overrides a dispute.
        """
        order, _ = await self._complete_deferred(order_id, timeout)
        return order

    async def record_payment_failure(self, order_id: str, error: str | None = None, timeout: float | None = None) -> Order:
        """Failed-payment path: only payment_error changes. is_paid never goes back to false."""
        for _ in range(self.max_conflict_retries + 1):
            order = await self._load(order_id, timeout)
            expected = order.version
            order.payment_error = error or "Payment failed"
            order.updated_at = self._clock()
            order.version = expected + 1
            try:
                await self._io(self.store.replace(order, expected), timeout)
            except ConcurrentModification:
                metrics.order_write_conflicts_total.inc()
                continue
            logger.info("Recorded payment failure for order_id=%s: %s", order_id, order.payment_error)
            return order
        raise PersistenceFailure(f"order {order_id}: gave up after {self.max_conflict_retries + 1} conflicting writes")

    async def sweep_due_completions(self, now: datetime | None = None, timeout: float | None = None) -> int:
        """Complete every accepted order whose completion_due_at has passed. Returns how many completed."""
        now = now or self._clock()
        due = await self._io(self.store.list_due_completions(now), timeout)
        completed = 0
        for order in due:
            if self.scheduler.is_scheduled(order.order_id):
                continue
            try:
                _, changed = await self._complete_deferred(order.order_id, timeout)
            except Exception as e:
                metrics.deferred_completions_total.labels(outcome="failed").inc()
                logger.exception("Sweep failed to complete order_id=%s: %s", order.order_id, e)
                continue
            if changed:
                completed += 1
        if due:
            logger.info("Completion sweep: %d due, %d completed", len(due), completed)
        return completed

    async def get_order(self, order_id: str, timeout: float | None = None) -> Order:
        return await self._load(order_id, timeout)

    async def list_orders_for_buyer(self, buyer_id: str, timeout: float | None = None) -> list[Order]:
        return await self._io(self.store.list_orders(buyer_id=buyer_id), timeout)

    async def list_orders_for_seller(self, seller_id: str, timeout: float | None = None) -> list[Order]:
        return await self._io(self.store.list_orders(seller_id=seller_id), timeout)

    async def list_active_orders_for_buyer(self, buyer_id: str, timeout: float | None = None) -> list[Order]:
        return await self._io(
            self.store.list_orders(buyer_id=buyer_id, statuses=set(ACTIVE_BUYER_STATUSES)), timeout
        )

    async def list_active_orders_for_seller(self, seller_id: str, timeout: float | None = None) -> list[Order]:
        return await self._io(
            self.store.list_orders(seller_id=seller_id, statuses=set(ACTIVE_SELLER_STATUSES)), timeout
        )

    async def available_actions_for(
        self, order: Order | str, caller: Caller, timeout: float | None = None
    ) -> AvailableActions:
        """Caller's role on the order and the states they may move it to right now."""
        if isinstance(order, str):
            order = await self._load(order, timeout)
        if caller.role in (Actor.ADMIN, Actor.SYSTEM):
            role = caller.role
        else:
            role = order.role_of(caller.user_id)
            if role is None:
                raise Unauthorized(order.order_id, caller.user_id)
        actions = sorted(valid_next_states(order.status, role), key=lambda s: s.value)
        return AvailableActions(
            order_id=order.order_id,
            status=order.status,
            description=status_description(order.status),
            final=is_final_state(order.status),
            active=is_active(order.status),
            role=role,
            actions=actions,
            labels={target: action_label(target) for target in actions},
        )

    async def _io(self, coro: Awaitable[T], timeout: float | None) -> T:
        try:
            return await asyncio.wait_for(coro, timeout if timeout is not None else self.timeout_seconds)
        except asyncio.TimeoutError as e:
            raise PersistenceFailure("order store call timed out") from e

    async def _load(self, order_id: str, timeout: float | None) -> Order:
        order = await self._io(self.store.get(order_id), timeout)
        if order is None:
            raise NotFound(order_id)
        return order

    async def _transition(self, order_id: str, target: OrderStatus, resolve_role: RoleResolver, *args, **kwargs) -> Order:
        order, _ = await self._apply_transition(order_id, target, resolve_role, *args, **kwargs)
        return order

    async def _apply_transition(
        self,
        order_id: str,
        target: OrderStatus,
        resolve_role: RoleResolver,
        apply: SideEffect | None = None,
        note: str | None = None,
        from_statuses: set[OrderStatus] | None = None,
        skip_on_mismatch: bool = False,
        timeout: float | None = None,
    ) -> tuple[Order, bool]:
        """Returns the order as stored and whether this call changed it."""
        for attempt in range(self.max_conflict_retries + 1):
            order = await self._load(order_id, timeout)
            actor_id, role = resolve_role(order)
            previous = order.status

            if from_statuses is not None and previous not in from_statuses:
                if skip_on_mismatch:
                    logger.info(
                        "Skipping %s for order_id=%s: status is %s", target.value, order_id, previous.value
                    )
                    return order, False
                raise InvalidStateTransition(previous, target, role)

            if not is_valid_transition(previous, target, role):
                metrics.order_transitions_rejected_total.labels(
                    from_status=previous.value, to_status=target.value, role=role.value
                ).inc()
                raise InvalidStateTransition(previous, target, role)

            if previous == target:
                logger.debug("No-op %s -> %s for order_id=%s", previous.value, target.value, order_id)
                return order, False

            now = self._clock()
            expected = order.version
            order.status = target
            order.status_history.append(
                StatusHistoryEntry(status=target, timestamp=now, actor_id=actor_id, actor_role=role, note=note)
            )
            order.stamp(target, now)
            if previous == OrderStatus.ACCEPTED:
                order.completion_due_at = None
            if apply is not None:
                apply(order, now)
            order.updated_at = now
            order.version = expected + 1

            try:
                await self._io(self.store.replace(order, expected), timeout)
            except ConcurrentModification:
                metrics.order_write_conflicts_total.inc()
                logger.warning(
                    "Write conflict on order_id=%s (attempt %d/%d), reloading",
                    order_id, attempt + 1, self.max_conflict_retries + 1,
                )
                continue

            metrics.order_transitions_total.labels(
                from_status=previous.value, to_status=target.value, role=role.value
            ).inc()
            logger.info(
                "order_id=%s %s -> %s by %s (%s)", order_id, previous.value, target.value, role.value, actor_id
            )
            self._after_write(order, previous)
            return order, True

        raise PersistenceFailure(
            f"order {order_id}: gave up after {self.max_conflict_retries + 1} conflicting writes"
        )

    def _after_write(self, order: Order, previous: OrderStatus) -> None:
        if previous == OrderStatus.ACCEPTED:
            self.scheduler.cancel(order.order_id)
        if order.status == OrderStatus.ACCEPTED:
            self.scheduler.schedule(order.order_id, self.completion_delay_seconds)
        metrics.scheduled_completions.set(self.scheduler.pending())

    async def _complete_deferred(self, order_id: str, timeout: float | None) -> tuple[Order, bool]:
        order, changed = await self._apply_transition(
            order_id,
            OrderStatus.COMPLETED,
            self._as_system(),
            note="Funds released to seller",
            from_statuses={OrderStatus.ACCEPTED},
            skip_on_mismatch=True,
            timeout=timeout,
        )
        metrics.deferred_completions_total.labels(outcome="completed" if changed else "skipped").inc()
        return order, changed

    async def _deferred_completion(self, order_id: str) -> None:
        try:
            await self.complete_after_acceptance(order_id)
        except Exception:
            metrics.deferred_completions_total.labels(outcome="failed").inc()
            raise

    # Role resolvers. Identity checks run before the rule engine, so a non-party always gets
    # Unauthorized whatever the order's state.

    def _as_system(self) -> RoleResolver:
        return lambda order: (SYSTEM_CALLER.user_id, Actor.SYSTEM)

    def _as_party(self, caller: Caller, party: Actor) -> RoleResolver:
        def resolve(order: Order) -> tuple[str, Actor]:
            expected_id = order.buyer_id if party == Actor.BUYER else order.seller_id
            if caller.user_id != expected_id:
                raise Unauthorized(order.order_id, caller.user_id, reason=f"caller is not the order's {party.value}")
            return caller.user_id, party

        return resolve

    def _as_any_party(self, caller: Caller) -> RoleResolver:
        def resolve(order: Order) -> tuple[str, Actor]:
            if caller.role in (Actor.ADMIN, Actor.SYSTEM):
                return caller.user_id, caller.role
            expected_id = order.buyer_id if caller.role == Actor.BUYER else order.seller_id
            if caller.user_id != expected_id:
                raise Unauthorized(
                    order.order_id, caller.user_id, reason=f"caller is not the order's {caller.role.value}"
                )
            return caller.user_id, caller.role

        return resolve

    def _as_admin(self, caller: Caller) -> RoleResolver:
        def resolve(order: Order) -> tuple[str, Actor]:
            if caller.role != Actor.ADMIN:
                raise Unauthorized(order.order_id, caller.user_id, reason="admin role required")
            return caller.user_id, Actor.ADMIN

        return resolve
