import asyncio
import itertools
from datetime import datetime, timedelta, timezone

import pytest

from _helper import ADMIN, BUYER, COMPLETION_DELAY, SELLER, STRANGER, wait_for_status
from order_lifecycle.exceptions import (
    ConcurrentModification,
    InvalidStateTransition,
    NotFound,
    PersistenceFailure,
    Unauthorized,
)
from order_lifecycle.memory_store import InMemoryOrderStore
from order_lifecycle.models import Caller
from order_lifecycle.order_state import Actor, OrderStatus
from order_lifecycle.service import OrderLifecycleService

S = OrderStatus


async def _to_delivered(service, new_order):
    order = await new_order()
    await service.mark_paid(order.order_id)
    return await service.deliver(order.order_id, SELLER, "done", ["f1"])


async def test_create_order_starts_pending_with_one_history_entry(new_order, package):
    order = await new_order()

    assert order.status == S.PENDING
    assert order.is_paid is False
    assert order.revision_count == 0
    assert len(order.status_history) == 1
    entry = order.status_history[0]
    assert entry.status == S.PENDING
    assert entry.actor_id == BUYER.user_id
    assert entry.note == "Order created"
    assert order.package == package
    assert order.amounts.base_cents == 10_000
    assert order.amounts.platform_fee_cents == 1_000
    assert order.amounts.total_cents == 11_000
    assert order.amounts.seller_net_cents == 9_000


async def test_create_order_persists(service, new_order):
    order = await new_order()
    stored = await service.get_order(order.order_id)
    assert stored == order


async def test_only_buyers_create_orders(service, package):
    with pytest.raises(Unauthorized):
        await service.create_order(SELLER, service_id="svc-1", seller_id="seller-2", package=package)


async def test_cannot_order_own_service(service, package):
    me = Caller(user_id="seller-1", role=Actor.BUYER)
    with pytest.raises(Unauthorized):
        await service.create_order(me, service_id="svc-1", seller_id="seller-1", package=package)


async def test_happy_path_with_deferred_completion(service, new_order):
    order = await new_order()

    order = await service.mark_paid(order.order_id)
    assert order.status == S.IN_PROGRESS
    assert order.is_paid is True
    assert order.paid_at is not None
    assert order.status_history[-1].note == "Payment received"
    assert order.status_history[-1].actor_role == Actor.SYSTEM

    order = await service.deliver(order.order_id, SELLER, "done", ["f1"])
    assert order.status == S.DELIVERED
    assert order.current_delivery.message == "done"
    assert order.current_delivery.files == ["f1"]

    order = await service.accept_delivery(order.order_id, BUYER, "great")
    assert order.status == S.ACCEPTED
    assert order.accepted_at is not None
    assert order.acceptance_feedback == "great"
    assert order.completion_due_at == order.accepted_at + timedelta(seconds=COMPLETION_DELAY)
    # accept_delivery returns before the deferred completion fires
    assert len(order.status_history) == 4
    assert service.scheduler.is_scheduled(order.order_id)

    order = await wait_for_status(service, order.order_id, S.COMPLETED)
    assert len(order.status_history) == 5
    assert order.status_history[-1].actor_role == Actor.SYSTEM
    assert order.completed_at is not None
    assert order.completion_due_at is None
    assert [e.status for e in order.status_history] == [
        S.PENDING, S.IN_PROGRESS, S.DELIVERED, S.ACCEPTED, S.COMPLETED,
    ]


async def test_revision_loop(service, new_order):
    order = await _to_delivered(service, new_order)
    oid = order.order_id

    order = await service.request_revision(oid, BUYER, "shorter intro")
    assert order.revision_count == 1
    assert order.current_revision_request.message == "shorter intro"
    await service.deliver(oid, SELLER, "v2", ["f2"])
    order = await service.request_revision(oid, BUYER, "louder music")
    assert order.revision_count == 2
    await service.deliver(oid, SELLER, "v3", ["f3"])
    await service.accept_delivery(oid, BUYER)

    order = await wait_for_status(service, oid, S.COMPLETED)
    assert order.revision_count == 2
    # pending, in_progress, delivered, revision, delivered, revision, delivered, accepted, completed
    assert len(order.status_history) == 9
    assert order.current_delivery.message == "v3"


async def test_revision_loop_history_length_counts_each_transition(service, new_order):
    order = await new_order()
    oid = order.order_id
    await service.mark_paid(oid)
    await service.deliver(oid, SELLER, "v1")
    await service.request_revision(oid, BUYER, "again")
    await service.deliver(oid, SELLER, "v2")
    await service.request_revision(oid, BUYER, "again")
    order = await service.get_order(oid)
    # creation entry + 5 transitions
    assert len(order.status_history) == 6
    assert order.revision_count == 2


async def test_deliver_on_pending_is_rejected(service, new_order):
    order = await new_order()
    with pytest.raises(InvalidStateTransition) as info:
        await service.deliver(order.order_id, SELLER, "too early")
    assert info.value.from_status == S.PENDING
    assert info.value.to_status == S.DELIVERED
    assert info.value.role == Actor.SELLER
    stored = await service.get_order(order.order_id)
    assert len(stored.status_history) == 1


async def test_cancelled_order_rejects_everything(service, new_order):
    order = await new_order()
    oid = order.order_id
    order = await service.cancel(oid, BUYER, "changed my mind")
    assert order.status == S.CANCELLED
    assert order.cancellation_reason == "changed my mind"
    assert order.cancelled_at is not None

    with pytest.raises(InvalidStateTransition):
        await service.mark_paid(oid)
    with pytest.raises(InvalidStateTransition):
        await service.deliver(oid, SELLER, "x")
    with pytest.raises(InvalidStateTransition):
        await service.open_dispute(oid, ADMIN, "x")
    with pytest.raises(InvalidStateTransition):
        await service.complete_order(oid, ADMIN)
    with pytest.raises(InvalidStateTransition):
        await service.accept_delivery(oid, BUYER)


@pytest.mark.parametrize("paid", [False, True])
async def test_deliver_by_non_seller_is_unauthorized_in_any_state(service, new_order, paid):
    order = await new_order()
    if paid:
        await service.mark_paid(order.order_id)
    for caller in (BUYER, STRANGER, ADMIN, Caller(user_id="seller-2", role=Actor.SELLER)):
        with pytest.raises(Unauthorized):
            await service.deliver(order.order_id, caller, "not mine")


async def test_buyer_operations_require_the_buyer(service, new_order):
    order = await _to_delivered(service, new_order)
    with pytest.raises(Unauthorized):
        await service.accept_delivery(order.order_id, STRANGER)
    with pytest.raises(Unauthorized):
        await service.request_revision(order.order_id, SELLER, "nope")


async def test_cancel_requires_matching_party(service, new_order):
    order = await new_order()
    impostor = Caller(user_id="seller-2", role=Actor.SELLER)
    with pytest.raises(Unauthorized):
        await service.cancel(order.order_id, impostor)
    with pytest.raises(Unauthorized):
        await service.open_dispute(order.order_id, STRANGER)


async def test_role_rules_still_apply_to_parties(service, new_order):
    order = await _to_delivered(service, new_order)
    # delivered -> cancelled is admin only
    with pytest.raises(InvalidStateTransition):
        await service.cancel(order.order_id, BUYER)
    order = await service.cancel(order.order_id, ADMIN, "refund issued")
    assert order.status == S.CANCELLED
    assert order.status_history[-1].actor_role == Actor.ADMIN


async def test_not_found(service):
    with pytest.raises(NotFound):
        await service.get_order("missing")
    with pytest.raises(NotFound):
        await service.deliver("missing", SELLER, "x")
    with pytest.raises(NotFound):
        await service.mark_paid("missing")


async def test_same_state_operation_is_a_noop(service, new_order):
    order = await new_order()
    first = await service.mark_paid(order.order_id)
    again = await service.mark_paid(order.order_id)
    assert again.status == S.IN_PROGRESS
    assert len(again.status_history) == len(first.status_history) == 2
    assert again.paid_at == first.paid_at
    assert again.version == first.version


async def test_state_timestamp_is_set_once(service, new_order):
    order = await _to_delivered(service, new_order)
    first_delivered_at = order.delivered_at
    await service.request_revision(order.order_id, BUYER, "again")
    order = await service.deliver(order.order_id, SELLER, "v2", ["f2"])
    assert order.delivered_at == first_delivered_at
    assert order.current_delivery.message == "v2"
    assert order.current_delivery.delivered_at >= first_delivered_at


async def test_history_entries_never_change(service, new_order):
    order = await new_order()
    oid = order.order_id
    snapshots = [order.status_history[0]]
    order = await service.mark_paid(oid)
    snapshots.append(order.status_history[-1])
    order = await service.deliver(oid, SELLER, "v1")
    snapshots.append(order.status_history[-1])
    order = await service.open_dispute(oid, SELLER, "buyer unresponsive")
    assert order.status_history[: len(snapshots)] == snapshots
    assert len(order.status_history) == 4
    assert order.dispute_reason == "buyer unresponsive"


async def test_payment_failure_never_clears_is_paid(service, new_order):
    order = await new_order()
    order = await service.record_payment_failure(order.order_id, "card declined")
    assert order.payment_error == "card declined"
    assert order.is_paid is False
    assert order.status == S.PENDING

    order = await service.mark_paid(order.order_id, payment_id="pay_1")
    assert order.is_paid is True
    assert order.payment_error is None
    assert order.payment_id == "pay_1"

    order = await service.record_payment_failure(order.order_id, "late failure")
    assert order.is_paid is True
    assert len(order.status_history) == 2


async def test_dispute_before_timer_suppresses_completion(service, new_order):
    order = await _to_delivered(service, new_order)
    oid = order.order_id
    await service.accept_delivery(oid, BUYER)
    order = await service.open_dispute(oid, BUYER, "wrong file")

    assert order.status == S.DISPUTED
    assert order.completion_due_at is None
    assert not service.scheduler.is_scheduled(oid)
    await asyncio.sleep(COMPLETION_DELAY * 4)
    order = await service.get_order(oid)
    assert order.status == S.DISPUTED
    assert order.completed_at is None


async def test_stale_completion_is_a_noop(service, store, new_order):
    order = await _to_delivered(service, new_order)
    oid = order.order_id
    await service.accept_delivery(oid, BUYER)
    service.scheduler.cancel(oid)
    await service.open_dispute(oid, SELLER)

    order = await service.complete_after_acceptance(oid)
    assert order.status == S.DISPUTED
    assert len(order.status_history) == 5


async def test_failed_deferred_completion_is_logged_not_raised(service, store, new_order, caplog):
    order = await _to_delivered(service, new_order)

    async def broken_get(order_id):
        raise PersistenceFailure("db down")

    await service.accept_delivery(order.order_id, BUYER)
    store.get = broken_get
    await asyncio.sleep(COMPLETION_DELAY * 4)
    assert "Deferred completion failed" in caplog.text


async def test_sweep_completes_overdue_orders_after_restart(store, new_order, service):
    order = await _to_delivered(service, new_order)
    oid = order.order_id
    order = await service.accept_delivery(oid, BUYER)
    # process restart: timer lost
    await service.scheduler.shutdown()

    fresh = OrderLifecycleService(store, completion_delay_seconds=COMPLETION_DELAY)
    try:
        assert await fresh.sweep_due_completions(now=order.completion_due_at - timedelta(seconds=1)) == 0
        assert await fresh.sweep_due_completions(now=order.completion_due_at + timedelta(seconds=1)) == 1
        order = await fresh.get_order(oid)
        assert order.status == S.COMPLETED
        assert await fresh.sweep_due_completions(now=order.updated_at + timedelta(hours=1)) == 0
    finally:
        await fresh.scheduler.shutdown()


async def test_admin_completion_cancels_timer(store, package):
    service = OrderLifecycleService(store, completion_delay_seconds=3600)
    try:
        order = await service.create_order(BUYER, service_id="svc-1", seller_id=SELLER.user_id, package=package)
        oid = order.order_id
        await service.mark_paid(oid)
        await service.deliver(oid, SELLER, "done")
        await service.accept_delivery(oid, BUYER)
        assert service.scheduler.is_scheduled(oid)

        order = await service.complete_order(oid, ADMIN, "released early")
        assert order.status == S.COMPLETED
        assert order.status_history[-1].actor_role == Actor.ADMIN
        assert not service.scheduler.is_scheduled(oid)
    finally:
        await service.scheduler.shutdown()


async def test_admin_resolves_dispute(service, new_order):
    order = await new_order()
    oid = order.order_id
    await service.mark_paid(oid)
    await service.open_dispute(oid, BUYER, "no progress")

    with pytest.raises(Unauthorized):
        await service.resolve_dispute(oid, BUYER, S.CANCELLED)

    order = await service.resolve_dispute(oid, ADMIN, S.CANCELLED, "refund buyer")
    assert order.status == S.CANCELLED
    assert order.cancellation_reason == "refund buyer"


async def test_resolve_requires_disputed_order(service, new_order):
    order = await new_order()
    await service.mark_paid(order.order_id)
    with pytest.raises(InvalidStateTransition):
        await service.resolve_dispute(order.order_id, ADMIN, S.CANCELLED)
    with pytest.raises(ValueError):
        await service.resolve_dispute(order.order_id, ADMIN, S.DELIVERED)


async def test_available_actions(service, new_order):
    order = await _to_delivered(service, new_order)

    buyer_view = await service.available_actions_for(order, BUYER)
    assert buyer_view.role == Actor.BUYER
    assert set(buyer_view.actions) == {S.REVISION_REQUESTED, S.ACCEPTED, S.DISPUTED}
    assert buyer_view.labels[S.ACCEPTED] == "Accept Delivery"
    assert buyer_view.description == "Work has been delivered, waiting for buyer review"
    assert not buyer_view.final
    assert buyer_view.active

    seller_view = await service.available_actions_for(order.order_id, SELLER)
    assert seller_view.role == Actor.SELLER
    assert seller_view.actions == [S.DISPUTED]

    admin_view = await service.available_actions_for(order, ADMIN)
    assert set(admin_view.actions) == {S.REVISION_REQUESTED, S.ACCEPTED, S.CANCELLED, S.DISPUTED}

    with pytest.raises(Unauthorized):
        await service.available_actions_for(order, STRANGER)


async def test_list_queries(store, package):
    start = datetime(2026, 1, 1, tzinfo=timezone.utc)
    ticks = itertools.count()
    service = OrderLifecycleService(store, clock=lambda: start + timedelta(minutes=next(ticks)))
    other_buyer = Caller(user_id="buyer-2", role=Actor.BUYER)
    first = await service.create_order(BUYER, service_id="svc-1", seller_id=SELLER.user_id, package=package)
    second = await service.create_order(other_buyer, service_id="svc-1", seller_id=SELLER.user_id, package=package)
    third = await service.create_order(BUYER, service_id="svc-2", seller_id="seller-2", package=package)
    await service.mark_paid(second.order_id)

    buyer_orders = await service.list_orders_for_buyer(BUYER.user_id)
    assert [o.order_id for o in buyer_orders] == [third.order_id, first.order_id]

    seller_orders = await service.list_orders_for_seller(SELLER.user_id)
    assert [o.order_id for o in seller_orders] == [second.order_id, first.order_id]

    active = await service.list_active_orders_for_seller(SELLER.user_id)
    assert [o.order_id for o in active] == [second.order_id]

    assert await service.list_active_orders_for_buyer(BUYER.user_id) == []
    assert [o.order_id for o in await service.list_active_orders_for_buyer(other_buyer.user_id)] == [second.order_id]


class ConflictingStore(InMemoryOrderStore):
    """Loses the first `conflicts` writes as if another writer got there first."""

    def __init__(self, conflicts: int):
        super().__init__()
        self.conflicts = conflicts
        self.replace_calls = 0

    async def replace(self, order, expected_version):
        self.replace_calls += 1
        if self.conflicts > 0:
            self.conflicts -= 1
            raise ConcurrentModification(order.order_id, expected_version)
        return await super().replace(order, expected_version)


async def test_write_conflict_is_retried(package):
    store = ConflictingStore(conflicts=2)
    service = OrderLifecycleService(store, max_conflict_retries=3)
    order = await service.create_order(BUYER, service_id="svc-1", seller_id=SELLER.user_id, package=package)

    order = await service.mark_paid(order.order_id)
    assert order.status == S.IN_PROGRESS
    assert store.replace_calls == 3
    assert len((await service.get_order(order.order_id)).status_history) == 2


async def test_persistent_conflict_surfaces_persistence_failure(package):
    store = ConflictingStore(conflicts=100)
    service = OrderLifecycleService(store, max_conflict_retries=2)
    order = await service.create_order(BUYER, service_id="svc-1", seller_id=SELLER.user_id, package=package)

    with pytest.raises(PersistenceFailure):
        await service.mark_paid(order.order_id)
    assert store.replace_calls == 3


async def test_concurrent_transitions_keep_every_history_entry(service, new_order):
    order = await _to_delivered(service, new_order)
    oid = order.order_id

    results = await asyncio.gather(
        service.accept_delivery(oid, BUYER),
        service.open_dispute(oid, SELLER, "scope creep"),
        return_exceptions=True,
    )
    succeeded = [r for r in results if not isinstance(r, Exception)]
    failed = [r for r in results if isinstance(r, Exception)]
    assert succeeded
    assert all(isinstance(e, InvalidStateTransition) for e in failed)

    order = await service.get_order(oid)
    # creation + paid + delivered, then one entry per successful call: nothing overwritten
    assert len(order.status_history) == 3 + len(succeeded)
    assert order.version == 2 + len(succeeded)
    assert order.status_history[-1].status == order.status


async def test_slow_store_times_out(service, new_order):
    order = await new_order()

    async def slow_get(order_id):
        await asyncio.sleep(1)

    service.store.get = slow_get
    with pytest.raises(PersistenceFailure):
        await service.get_order(order.order_id, timeout=0.01)
