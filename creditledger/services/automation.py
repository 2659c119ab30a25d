"""Automation usage tiers and the monthly tier bonus."""

import math
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Any

from pydantic import BaseModel

from creditledger.core.config import Settings, get_settings
from creditledger.core.exceptions import AppError
from creditledger.core.idempotency import automation_bonus_ref, period_key
from creditledger.core.logging import get_logger
from creditledger.models.enums import BucketType, TransactionType
from creditledger.services.buckets import BucketStore
from creditledger.services.credits import CreditEngine
from creditledger.services.transactions import TransactionLog

log = get_logger(__name__)


class AutomationTier(BaseModel):
    id: str
    name: str
    min_burn: int
    bonus: int
    description: str = ""


# Ascending by min_burn; credits burned in the trailing window.
AUTOMATION_BONUS_TIERS = [
    AutomationTier(id="low", name="Low Tier", min_burn=100_000, bonus=10_000, description="Low-volume automation"),
    AutomationTier(id="medium", name="Medium Tier", min_burn=300_000, bonus=40_000, description="Medium-volume automation"),
    AutomationTier(id="high", name="High Tier", min_burn=600_000, bonus=100_000, description="High-volume automation"),
    AutomationTier(
        id="enterprise",
        name="Enterprise Tier",
        min_burn=1_400_000,
        bonus=400_000,
        description="Enterprise-level automation",
    ),
]


def tier_for_burn(burn: int) -> AutomationTier | None:
    current = None
    for tier in AUTOMATION_BONUS_TIERS:
        if burn >= tier.min_burn:
            current = tier
    return current


def next_tier_after(tier: AutomationTier | None) -> AutomationTier | None:
    if tier is None:
        return AUTOMATION_BONUS_TIERS[0]
    idx = AUTOMATION_BONUS_TIERS.index(tier)
    return AUTOMATION_BONUS_TIERS[idx + 1] if idx + 1 < len(AUTOMATION_BONUS_TIERS) else None


class TierReport(BaseModel):
    user_id: str
    window_days: int
    usage_count: int
    monthly_burn: int
    tier: AutomationTier | None
    threshold: int | None  # min_burn of the current tier
    bonus: int
    next_tier: AutomationTier | None
    progress: int  # percent toward next tier
    credits_to_next_tier: int
    daily_rate: int
    days_to_next_tier: int | None
    projected_bonus_change: int
    received_current_bonus: bool


def previous_month_range(now: datetime) -> tuple[datetime, datetime]:
    """[first day of last month, first day of this month), both at midnight."""
    this_month = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    last_month = (this_month - timedelta(days=1)).replace(day=1)
    return last_month, this_month


class AutomationTierCalculator:
    """Reads usage and reports tiers. Never grants."""

    def __init__(self, store: BucketStore, transactions: TransactionLog, settings: Settings | None = None):
        self.store = store
        self.transactions = transactions
        self.settings = settings or get_settings()

    async def calculate_tier(
        self, user_id: str, window_days: int | None = None, now: datetime | None = None
    ) -> TierReport:
        now = now or datetime.utcnow()
        days = window_days or self.settings.automation_window_days
        usage = await self.transactions.usage_between(now - timedelta(days=days), now, user_id, include_until=True)
        burn = sum(-e.amount for e in usage)

        tier = tier_for_burn(burn)
        nxt = next_tier_after(tier) if (tier or burn > 0) else None
        progress = 0
        to_next = 0
        if nxt:
            base = tier.min_burn if tier else 0
            progress = min(100, round((burn - base) / (nxt.min_burn - base) * 100))
            to_next = nxt.min_burn - burn
        elif tier:
            progress = 100

        daily_rate = round(burn / days) if days > 0 else 0
        return TierReport(
            user_id=user_id,
            window_days=days,
            usage_count=len(usage),
            monthly_burn=burn,
            tier=tier,
            threshold=tier.min_burn if tier else None,
            bonus=tier.bonus if tier else 0,
            next_tier=nxt,
            progress=progress,
            credits_to_next_tier=to_next,
            daily_rate=daily_rate,
            days_to_next_tier=math.ceil(to_next / daily_rate) if daily_rate > 0 and to_next > 0 else None,
            projected_bonus_change=(nxt.bonus - (tier.bonus if tier else 0)) if nxt else 0,
            received_current_bonus=await self.has_received_current_bonus(user_id, now),
        )

    async def has_received_current_bonus(self, user_id: str, now: datetime | None = None) -> bool:
        ref = automation_bonus_ref(user_id, now or datetime.utcnow())
        return await self.store.get_by_external_ref(user_id, ref) is not None

    async def usage_stats(self, user_id: str, days: int = 30, now: datetime | None = None) -> dict[str, Any]:
        now = now or datetime.utcnow()
        since = now - timedelta(days=days)
        usage = await self.transactions.usage_between(since, now, user_id, include_until=True)
        bonuses = await self.transactions.of_type_between(user_id, TransactionType.AUTOMATION_BONUS, since, now)

        daily: dict[str, int] = defaultdict(int)
        by_model: dict[str, int] = defaultdict(int)
        for entry in usage:
            daily[entry.created_at.date().isoformat()] += -entry.amount
            by_model[entry.model_id or "unknown"] += -entry.amount
        return {
            "user_id": user_id,
            "days": days,
            "daily_burn": [{"date": d, "burn": b} for d, b in sorted(daily.items())],
            "model_usage": [{"model_id": m, "burn": b} for m, b in sorted(by_model.items(), key=lambda kv: -kv[1])],
            "total_executions": len(usage),
            "total_burn": sum(daily.values()),
            "bonuses": [b.to_public() for b in bonuses],
            "total_bonus_received": sum(b.amount for b in bonuses),
        }


class AutomationBonusAwarder:
    """Scheduled caller: grants last month's tier bonus, keyed by the current period."""

    def __init__(
        self,
        calculator: AutomationTierCalculator,
        credits: CreditEngine,
        transactions: TransactionLog,
        settings: Settings | None = None,
    ):
        self.calculator = calculator
        self.credits = credits
        self.transactions = transactions
        self.settings = settings or get_settings()

    async def award_monthly_bonuses(self, now: datetime | None = None) -> dict[str, Any]:
        now = now or datetime.utcnow()
        since, until = previous_month_range(now)
        burn_by_user: dict[str, int] = defaultdict(int)
        for entry in await self.transactions.usage_between(since, until):
            burn_by_user[entry.user_id] += -entry.amount

        results: dict[str, Any] = {
            "period": period_key(since),
            "processed_users": 0,
            "bonuses_awarded": 0,
            "already_awarded": 0,
            "total_bonus_credits": 0,
            "errors": [],
        }
        for user_id, burn in burn_by_user.items():
            results["processed_users"] += 1
            tier = tier_for_burn(burn)
            if tier is None:
                continue
            try:
                if await self.calculator.has_received_current_bonus(user_id, now):
                    results["already_awarded"] += 1
                    continue
                await self.credits.grant(
                    user_id,
                    tier.bonus,
                    BucketType.BONUS,
                    "automation_bonus",
                    expiry_days=self.settings.automation_bonus_expiry_days,
                    external_ref=automation_bonus_ref(user_id, now),
                    description=f"{tier.name} automation bonus for {period_key(since)}",
                    metadata={"tier": tier.id, "monthly_burn": burn, "period": period_key(since)},
                    now=now,
                )
            except AppError as e:
                log.error("automation_bonus_failed", user_id=user_id, error=e.message)
                results["errors"].append({"user_id": user_id, "error": e.message})
                continue
            results["bonuses_awarded"] += 1
            results["total_bonus_credits"] += tier.bonus

        log.info("automation_bonuses_awarded", **{k: v for k, v in results.items() if k != "errors"})
        return results
