"""
Usage accounting: cost, budget units, entitlement and monthly spend alerts.

Cost (USD) = input_tokens / 1e6 * input_price + output_tokens / 1e6 * output_price

Budget units debited from the caller = ceil(ceil(tokens / 100) * tier multiplier)
(tier1 x1.0, tier2 x2.6, tier3 x10.0 by default).

Persistence goes through the UsageStore protocol; RedisUsageStore keeps
balances, usage records and monthly spend in Redis.
"""
import math
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Protocol

from redis.asyncio import Redis
from redis.exceptions import RedisError

from app.core.cache import get_redis_client
from app.core.errors import AuthorizationError, InsufficientBudgetError
from app.core.logging import get_logger
from app.core.metrics import update_budget_utilization
from app.services.ai.config import AISettings, TierConfig
from app.services.ai.schema import ALL_TIERS, Caller, ResponseEnvelope, Tier, UsageRecord

logger = get_logger(__name__)

BUDGET_WARNING_RATIO = 0.9
USAGE_RECORDS_PER_MONTH = 10_000


def calculate_cost(tier_config: TierConfig, input_tokens: int, output_tokens: int) -> float:
    cost = (
        (max(input_tokens, 0) / 1_000_000) * tier_config.input_price_per_million
        + (max(output_tokens, 0) / 1_000_000) * tier_config.output_price_per_million
    )
    return round(cost, 8)


def month_key(now: Optional[datetime] = None) -> str:
    now = now or datetime.now(timezone.utc)
    return now.strftime("%Y-%m")


class UsageStore(Protocol):
    """Durable store for usage records and caller budget balances."""

    async def get_balance(self, caller_id: str) -> Optional[int]: ...

    async def debit(self, caller_id: str, units: int, opening_balance: int) -> Optional[int]: ...

    async def append(self, record: UsageRecord) -> None: ...

    async def add_spend(self, month: str, amount: float) -> float: ...

    async def monthly_spend(self, month: str) -> float: ...


class RedisUsageStore:
    """
    UsageStore on Redis.

    Keys:
    - ai_budget:{caller_id}  remaining budget units
    - ai_usage:{YYYY-MM}     list of JSON UsageRecords (most recent last)
    - ai_spend:{YYYY-MM}     running USD spend
    """

    def __init__(self, redis_client: Optional[Redis] = None):
        self._redis_client = redis_client

    @property
    def redis_client(self) -> Optional[Redis]:
        return self._redis_client or get_redis_client()

    async def get_balance(self, caller_id: str) -> Optional[int]:
        if not self.redis_client:
            return None
        value = await self.redis_client.get(f"ai_budget:{caller_id}")
        return int(value) if value is not None else None

    async def debit(self, caller_id: str, units: int, opening_balance: int) -> Optional[int]:
        """Debit ``units``; a caller without a stored balance starts from ``opening_balance``."""
        client = self.redis_client
        if not client:
            return None
        key = f"ai_budget:{caller_id}"
        async with client.pipeline(transaction=True) as pipe:
            pipe.set(key, opening_balance, nx=True)
            pipe.decrby(key, units)
            _, remaining = await pipe.execute()
        return int(remaining)

    async def append(self, record: UsageRecord) -> None:
        client = self.redis_client
        if not client:
            return
        key = f"ai_usage:{month_key(record.timestamp)}"
        async with client.pipeline(transaction=True) as pipe:
            pipe.rpush(key, record.model_dump_json())
            pipe.ltrim(key, -USAGE_RECORDS_PER_MONTH, -1)
            await pipe.execute()

    async def add_spend(self, month: str, amount: float) -> float:
        if not self.redis_client:
            return 0.0
        return float(await self.redis_client.incrbyfloat(f"ai_spend:{month}", amount))

    async def monthly_spend(self, month: str) -> float:
        if not self.redis_client:
            return 0.0
        value = await self.redis_client.get(f"ai_spend:{month}")
        return float(value) if value is not None else 0.0


class UsageAccountant:
    """Pre-flight entitlement/budget checks and post-call debits."""

    def __init__(self, settings: AISettings, store: Optional[UsageStore] = None):
        self.settings = settings
        self.store: UsageStore = store or RedisUsageStore()

    def calculate_cost(self, tier: Tier, input_tokens: int, output_tokens: int) -> float:
        return calculate_cost(self.settings.tier(tier), input_tokens, output_tokens)

    def budget_units_for(self, tier: Tier, tokens: int) -> int:
        base = math.ceil(max(tokens, 0) / 100)
        return math.ceil(base * self.settings.tier(tier).budget_unit_multiplier)

    def is_entitled(self, caller: Caller, tier: Tier) -> bool:
        return caller.subscription in self.settings.tier(tier).entitled_subscriptions

    def can_afford(self, tier: Tier, balance: int) -> bool:
        return balance >= self.settings.tier(tier).min_budget_units

    def can_use(self, caller: Caller, tier: Tier, balance: int) -> bool:
        return self.is_entitled(caller, tier) and self.can_afford(tier, balance)

    def ceiling_for(self, caller: Caller, balance: int) -> Optional[Tier]:
        """Highest tier the caller is entitled to and can afford, or None."""
        usable = [tier for tier in ALL_TIERS if self.can_use(caller, tier, balance)]
        return usable[-1] if usable else None

    async def available_units(self, caller: Caller) -> int:
        try:
            stored = await self.store.get_balance(caller.id)
        except RedisError as e:
            logger.warning("ai_budget_read_failed", caller_id=caller.id, error=str(e), error_type=type(e).__name__)
            stored = None
        return caller.budget_units if stored is None else stored

    async def ensure_can_use(self, caller: Caller, tier: Tier) -> int:
        """
        Pre-flight check for an explicitly requested tier.

        Returns:
            The caller's available budget units

        Raises:
            AuthorizationError: subscription is not entitled to ``tier``
            InsufficientBudgetError: balance below the tier's minimum cost
        """
        if not self.is_entitled(caller, tier):
            raise AuthorizationError(
                f"{caller.subscription.value} subscription is not entitled to {tier.value}"
            )
        balance = await self.available_units(caller)
        required = self.settings.tier(tier).min_budget_units
        if balance < required:
            raise InsufficientBudgetError(
                f"{tier.value} requires at least {required} budget units, {balance} available",
                required_units=required,
                available_units=balance,
            )
        return balance

    async def record_usage(
        self,
        envelope: ResponseEnvelope,
        caller: Caller,
        request_type: str,
        debit: bool = True,
    ) -> UsageRecord:
        """Persist a usage record, debit the caller and update monthly spend."""
        units = self.budget_units_for(envelope.tier, envelope.total_tokens) if debit else 0
        record = UsageRecord(
            model=envelope.model,
            provider=envelope.provider,
            cost=envelope.cost,
            input_tokens=envelope.input_tokens,
            output_tokens=envelope.output_tokens,
            request_type=request_type,
            caller_id=caller.id,
            tier=envelope.tier,
            budget_units=units,
        )

        try:
            await self.store.append(record)
            if units:
                remaining = await self.store.debit(caller.id, units, caller.budget_units)
                logger.info(
                    "ai_budget_debited",
                    caller_id=caller.id,
                    tier=envelope.tier.value,
                    units=units,
                    remaining=remaining,
                )
            spend = await self.store.add_spend(month_key(record.timestamp), envelope.cost)
        except RedisError as e:
            logger.error(
                "ai_usage_record_failed",
                caller_id=caller.id,
                error=str(e),
                error_type=type(e).__name__,
            )
            return record

        self.check_budget_alerts(spend)
        return record

    def check_budget_alerts(self, spend: float) -> float:
        """Log budget alerts for the current month; returns utilization."""
        limit = self.settings.monthly_budget_limit
        utilization = spend / limit
        update_budget_utilization(utilization)
        if utilization >= 1.0:
            logger.error("ai_budget_exceeded", spend=round(spend, 4), limit=limit, utilization=round(utilization, 4))
        elif utilization >= BUDGET_WARNING_RATIO:
            logger.warning("ai_budget_warning", spend=round(spend, 4), limit=limit, utilization=round(utilization, 4))
        return utilization

    async def monthly_stats(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        month = month_key(now)
        spend = await self.store.monthly_spend(month)
        limit = self.settings.monthly_budget_limit
        return {
            "month": month,
            "spend": round(spend, 6),
            "limit": limit,
            "utilization": round(spend / limit, 6),
            "remaining": round(max(limit - spend, 0.0), 6),
        }
