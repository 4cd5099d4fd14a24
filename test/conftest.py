import pytest

from _helper import BUYER, COMPLETION_DELAY, SELLER
from order_lifecycle.memory_store import InMemoryOrderStore
from order_lifecycle.models import Caller, PackageSnapshot
from order_lifecycle.service import OrderLifecycleService


@pytest.fixture
def package():
    return PackageSnapshot(
        package_id="pkg-standard",
        name="Standard edit",
        description="Up to 10 minutes of footage, color grade",
        delivery_time_days=3,
        revisions=2,
        price_cents=10_000,
    )


@pytest.fixture
def store():
    return InMemoryOrderStore()


@pytest.fixture
async def service(store):
    svc = OrderLifecycleService(
        store, completion_delay_seconds=COMPLETION_DELAY, timeout_seconds=1.0, fee_percent=10
    )
    yield svc
    await svc.scheduler.shutdown()


@pytest.fixture
def new_order(service, package):
    async def _create(buyer: Caller = BUYER, seller_id: str = SELLER.user_id):
        return await service.create_order(buyer, service_id="svc-1", seller_id=seller_id, package=package)

    return _create
