"""Manual credit adjustments by support staff."""

from magnetic.core.audit import log_event
from magnetic.core.exceptions import BadRequestError
from magnetic.core.logging import get_logger
from magnetic.models.credit_balance import CreditBalance
from magnetic.services import balances

log = get_logger(__name__)


async def adjust_credits(user_id: str, bucket: str, amount: int, reason: str, admin_id: str) -> CreditBalance:
    """Add (or remove) `amount` in one bucket; the bucket never drops below zero.

    The ledger records the delta actually applied, so a removal larger than
    the bucket is logged as the bucket's full value.
    """
    if bucket not in balances.BUCKETS:
        raise BadRequestError(f"Invalid bucket: {bucket}", details={"allowed": list(balances.BUCKETS)})
    if amount == 0:
        raise BadRequestError("Amount must not be zero")
    reason = (reason or "").strip()
    if not reason:
        raise BadRequestError("Reason is required")

    await balances.ensure_balance(user_id)
    applied: dict[str, int] = {}

    def compute(balance: CreditBalance) -> balances.Mutation | None:
        buckets = balances.buckets_of(balance)
        new_value = max(0, buckets[bucket] + amount)
        delta = new_value - buckets[bucket]
        applied["delta"] = delta
        if delta == 0:
            return None
        buckets[bucket] = new_value
        return balances.Mutation(
            changes={bucket: new_value},
            entries=[
                balances.ledger_entry(
                    user_id,
                    "admin_adjustment",
                    delta,
                    "admin_adjustment",
                    balances.total(buckets),
                    {"reason": reason, "adjusted_by": admin_id, "field": bucket, "requested": amount},
                )
            ],
        )

    balance = await balances.mutate_balance(user_id, compute)
    await log_event(
        user_id,
        "credits_adjusted",
        "credit_balance",
        str(balance.id),
        {"field": bucket, "requested": amount, "applied": applied.get("delta", 0), "reason": reason},
        actor_id=admin_id,
    )
    log.info("credits_adjusted", user_id=user_id, field=bucket, applied=applied.get("delta", 0), admin_id=admin_id)
    return balance
