"""Consumption engine: resolve an action's cost and charge it against the user's buckets."""

from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any

from beanie import PydanticObjectId
from bson.errors import InvalidId

from magnetic.core.config import get_settings
from magnetic.core.exceptions import InsufficientCreditsError, NoCreditsConfiguredError
from magnetic.core.logging import get_logger
from magnetic.models.agent import Agent
from magnetic.models.chat_message import ChatMessage
from magnetic.models.credit_balance import CreditBalance
from magnetic.services import balances

log = get_logger(__name__)

ACTIONS = ("script_generation", "script_adjustment", "chat_messages")


@dataclass
class ConsumeResult:
    success: bool
    credits_consumed: int
    balance: dict[str, int]

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


def default_costs() -> dict[str, int]:
    s = get_settings()
    return {
        "script_generation": s.credits_per_script_generation,
        "script_adjustment": s.credits_per_script_adjustment,
        "chat_messages": s.credits_per_chat_messages,
    }


def is_billable_message(prior_user_messages: int, package_size: int) -> bool:
    """Chat is sold in packages: the 1st message and every Nth after it are charged."""
    return prior_user_messages == 0 or prior_user_messages % package_size == 0


async def load_agent(agent_id: Any) -> Agent | None:
    if not agent_id:
        return None
    try:
        oid = PydanticObjectId(str(agent_id))
    except (InvalidId, TypeError):
        return None
    return await Agent.get(oid)


async def resolve_cost(action: str, metadata: dict[str, Any]) -> tuple[int, Agent | None]:
    """Default cost for the action, overridden by the agent's `credit_cost` when set."""
    cost = default_costs().get(action, 1)
    agent = await load_agent(metadata.get("agent_id"))
    if agent is not None and agent.credit_cost is not None:
        cost = agent.credit_cost
    return cost, agent


async def count_user_messages(user_id: str, conversation_id: str) -> int:
    return await ChatMessage.find(
        ChatMessage.conversation_id == conversation_id,
        ChatMessage.user_id == user_id,
        ChatMessage.role == "user",
    ).count()


async def consume(
    user_id: str,
    action: str,
    metadata: dict[str, Any] | None = None,
    now: datetime | None = None,
) -> ConsumeResult:
    """
    Charge `action` to the user.
    Raises NoCreditsConfiguredError when the user has no balance row and
    InsufficientCreditsError (after persisting any lazy expiration) when the total is short.
    """
    metadata = dict(metadata or {})
    now = now or datetime.utcnow()
    cost, agent = await resolve_cost(action, metadata)

    conversation_id = metadata.get("conversation_id")
    if action == "chat_messages" and conversation_id:
        package_size = get_settings().default_message_package_size
        if agent is not None and agent.message_package_size:
            package_size = agent.message_package_size
        prior = await count_user_messages(user_id, str(conversation_id))
        if not is_billable_message(prior, package_size):
            current = await balances.get_balance(user_id)
            if current is None:
                raise NoCreditsConfiguredError(user_id)
            log.info(
                "chat_message_not_billed",
                user_id=user_id,
                conversation_id=conversation_id,
                message_number=prior + 1,
                package_size=package_size,
            )
            return ConsumeResult(success=True, credits_consumed=0, balance=balances.balance_view(current))

    def compute(balance: CreditBalance) -> balances.Mutation:
        mutation = balances.Mutation()
        buckets = balances.buckets_of(balance)
        expiry = balances.expire_plan_credits(balance, now)
        if expiry:
            forfeited = buckets["plan_credits"]
            mutation.changes.update(expiry)
            buckets["plan_credits"] = 0
            if forfeited:
                mutation.entries.append(
                    balances.ledger_entry(
                        user_id,
                        "consumption",
                        -forfeited,
                        "credits_expired",
                        balances.total(buckets),
                        {"reason": "plan_credits_expire_at reached"},
                    )
                )
        try:
            after = balances.debit(buckets, cost)
        except InsufficientCreditsError as e:
            mutation.error = e
            return mutation
        if cost:
            mutation.changes.update(after)
            mutation.entries.append(
                balances.ledger_entry(
                    user_id,
                    "consumption",
                    -cost,
                    action,
                    balances.total(after),
                    metadata or None,
                )
            )
        return mutation

    try:
        balance = await balances.mutate_balance(user_id, compute)
    except InsufficientCreditsError as e:
        log.info("credits_insufficient", user_id=user_id, action=action, required=cost, total=e.balance["total"])
        raise
    view = balances.balance_view(balance)
    log.info("credits_consumed", user_id=user_id, action=action, cost=cost, remaining=view["total"])
    return ConsumeResult(success=True, credits_consumed=cost, balance=view)
