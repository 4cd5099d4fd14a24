"""
Platform fee arithmetic. All amounts are integer cents.
"""
from order_lifecycle.config import settings


def platform_fee(base_cents: int, percent: int | None = None) -> int:
    """Fee on the base price, rounded half-up to a whole cent."""
    pct = settings.platform_fee_percent if percent is None else percent
    return (base_cents * pct + 50) // 100


def amount_breakdown(base_cents: int, percent: int | None = None) -> dict[str, int]:
    if base_cents < 0:
        raise ValueError("base amount must not be negative")
    fee = platform_fee(base_cents, percent)
    return {
        "base_cents": base_cents,
        "platform_fee_cents": fee,
        "seller_net_cents": base_cents - fee,
        "total_cents": base_cents + fee,
    }
