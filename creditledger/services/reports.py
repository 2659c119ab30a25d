"""Read-only reports: platform credit totals for admins and earnings for creators."""

from collections import defaultdict
from datetime import datetime, timedelta
from typing import Any

from creditledger.db.errors import storage_guard
from creditledger.models.enums import TransactionType
from creditledger.models.user import User
from creditledger.services.buckets import BucketStore
from creditledger.services.pricing import MODEL_REGISTRY, format_dollars
from creditledger.services.transactions import TransactionLog

CREATOR_PAYOUT_SOURCE = "creator_payout"


def _day_start(now: datetime) -> datetime:
    return now.replace(hour=0, minute=0, second=0, microsecond=0)


def _week_start(now: datetime) -> datetime:
    # weeks start on Sunday
    return _day_start(now) - timedelta(days=(now.weekday() + 1) % 7)


def _month_start(now: datetime) -> datetime:
    return _day_start(now).replace(day=1)


def _percent(part: int, whole: int) -> int:
    return round(part / whole * 100) if whole else 0


class LedgerReports:
    def __init__(self, store: BucketStore, transactions: TransactionLog):
        self.store = store
        self.transactions = transactions

    async def admin_credit_stats(self, now: datetime | None = None, days: int = 30) -> dict[str, Any]:
        now = now or datetime.utcnow()
        today, month = _day_start(now), _month_start(now)
        window_start = _day_start(now - timedelta(days=days - 1))

        with storage_guard("count_users"):
            total_users = await User.find_all().count()
        remaining = await self.store.live_remaining_by_type(now)
        recent = await self.transactions.debits_between(min(month, window_start))
        purchases = await self.transactions.all_of_type(TransactionType.PURCHASE)

        used_today = sum(-t.amount for t in recent if t.created_at >= today)
        used_month = sum(-t.amount for t in recent if t.created_at >= month)

        by_model: dict[str, int] = defaultdict(int)
        for t in recent:
            if t.created_at >= month and t.model_id:
                by_model[t.model_id] += -t.amount
        daily: dict[str, int] = defaultdict(int)
        for t in recent:
            if t.created_at >= window_start:
                daily[t.created_at.date().isoformat()] += -t.amount

        return {
            "total_users": total_users,
            "total_credits": sum(remaining.values()),
            "remaining_by_type": remaining,
            "credits_used_today": used_today,
            "credits_used_this_month": used_month,
            "model_usage": [
                {
                    "model_id": model_id,
                    "display_name": MODEL_REGISTRY[model_id].display_name if model_id in MODEL_REGISTRY else model_id,
                    "credits_burned": burned,
                    "percentage_of_total": _percent(burned, used_month),
                }
                for model_id, burned in sorted(by_model.items(), key=lambda kv: -kv[1])
            ],
            "daily_usage": [{"date": d, "credits": c} for d, c in sorted(daily.items())],
            "revenue": {
                "today": format_dollars(used_today),
                "this_month": format_dollars(used_month),
                "all_time": format_dollars(sum(t.amount for t in purchases)),
            },
        }

    async def creator_earnings(self, creator_id: str, now: datetime | None = None) -> dict[str, Any]:
        """Payouts received by a creator, per period and per item, plus payout credit still unspent."""
        now = now or datetime.utcnow()
        payouts = await self.transactions.all_of_type(TransactionType.CREATOR_PAYOUT, user_id=creator_id)
        # debits by other users that carried this creator's fee
        sales = await self.transactions.debits_between(creator_id=creator_id)

        items: dict[str, dict[str, Any]] = {}

        def item(item_id: str) -> dict[str, Any]:
            return items.setdefault(item_id, {"item_id": item_id, "total_runs": 0, "total_earnings": 0})

        for t in payouts:
            if t.metadata.get("item_id"):
                item(t.metadata["item_id"])["total_earnings"] += t.amount
        buyers = set()
        for t in sales:
            buyers.add(t.user_id)
            if t.item_id:
                item(t.item_id)["total_runs"] += 1

        all_time = sum(t.amount for t in payouts)
        live = await self.store.list_buckets(creator_id, include_expired=False, include_depleted=False, now=now)
        return {
            "creator_id": creator_id,
            "by_period": {
                "today": sum(t.amount for t in payouts if t.created_at >= _day_start(now)),
                "this_week": sum(t.amount for t in payouts if t.created_at >= _week_start(now)),
                "this_month": sum(t.amount for t in payouts if t.created_at >= _month_start(now)),
                "all_time": all_time,
            },
            "by_item": [
                {**entry, "percentage_of_total": _percent(entry["total_earnings"], all_time)}
                for entry in sorted(items.values(), key=lambda e: -e["total_earnings"])
            ],
            "pending_payout": sum(b.remaining for b in live if b.source == CREATOR_PAYOUT_SOURCE),
            "total_users": len(buyers),
        }
