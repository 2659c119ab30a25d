"""Ledger facade: the entry points callers use, composed from the engines.

Debit entry points (`burn_credits`, `charge_for_prompt_run`,
`charge_for_flow_unlock`) report insufficient funds in their result instead of
raising.
"""

from datetime import datetime
from typing import Any

from beanie.operators import Set
from pymongo.errors import DuplicateKeyError

from creditledger.core.config import Settings, get_settings
from creditledger.core.exceptions import (
    AppError,
    InsufficientCreditsError,
    InvalidAmountError,
    NotFoundError,
)
from creditledger.core.idempotency import creator_payout_ref, legacy_migration_ref
from creditledger.core.logging import get_logger
from creditledger.core.pagination import page_of, paginate
from creditledger.db.errors import storage_guard
from creditledger.models.catalog import FlowListing, PromptListing
from creditledger.models.credit_bucket import CreditBucket
from creditledger.models.credit_transaction import CreditTransaction
from creditledger.models.enums import BucketType, ItemType, PromptLength, TransactionType
from creditledger.models.flow_unlock import FlowUnlock
from creditledger.services import pricing
from creditledger.services.automation import AutomationBonusAwarder, AutomationTierCalculator
from creditledger.services.buckets import BucketStore
from creditledger.services.credits import CreditEngine
from creditledger.services.debit import ChargeMetadata, DebitEngine
from creditledger.services.expiration import ExpirationSweeper
from creditledger.services.locks import build_lock_manager
from creditledger.services.payments import PaymentProcessor
from creditledger.services.referrals import ReferralProcessor
from creditledger.services.reports import LedgerReports
from creditledger.services.transactions import TransactionLog

log = get_logger(__name__)


class Ledger:
    def __init__(self, locks, settings: Settings | None = None):
        self.settings = settings or get_settings()
        self.store = BucketStore()
        self.transactions = TransactionLog()
        self.locks = locks
        self.debits = DebitEngine(self.store, self.transactions, locks, self.settings)
        self.credits = CreditEngine(self.store, self.transactions)
        self.sweeper = ExpirationSweeper(self.store, self.transactions, self.settings.sweep_batch_size)
        self.referrals = ReferralProcessor(self.credits, self.transactions, self.settings)
        self.tiers = AutomationTierCalculator(self.store, self.transactions, self.settings)
        self.automation_bonuses = AutomationBonusAwarder(self.tiers, self.credits, self.transactions, self.settings)
        self.payments = PaymentProcessor(self.credits, self.settings)
        self.reports = LedgerReports(self.store, self.transactions)

    # Balance reads

    async def _live_buckets(self, user_id: str, now: datetime | None) -> list[CreditBucket]:
        now = now or datetime.utcnow()
        await self.sweeper.sweep_user(user_id, now)
        return await self.store.list_buckets(user_id, include_expired=False, include_depleted=False, now=now)

    async def get_user_total_credits(self, user_id: str, now: datetime | None = None) -> int:
        return sum(b.remaining for b in await self._live_buckets(user_id, now))

    async def get_user_credit_breakdown(self, user_id: str, now: datetime | None = None) -> dict[str, int]:
        breakdown = {t.value: 0 for t in BucketType}
        for bucket in await self._live_buckets(user_id, now):
            breakdown[BucketType(bucket.type).value] += bucket.remaining
        return breakdown

    async def get_user_credit_buckets(self, user_id: str, now: datetime | None = None) -> list[CreditBucket]:
        """Spendable buckets in the order a debit would drain them."""
        return sorted(await self._live_buckets(user_id, now), key=CreditBucket.drain_key)

    async def get_user_credit_history(self, user_id: str, limit: int = 10, offset: int = 0) -> dict[str, Any]:
        limit, offset = paginate(limit, offset, self.settings.history_max_limit)
        entries = await self.transactions.history(user_id, limit, offset)
        total = await self.transactions.count(user_id)
        return page_of([e.to_public() for e in entries], limit, offset, total)

    async def has_enough_credits(self, user_id: str, amount: int) -> bool:
        return await self.get_user_total_credits(user_id) >= amount

    # Reports

    async def admin_credit_stats(self, now: datetime | None = None) -> dict[str, Any]:
        return await self.reports.admin_credit_stats(now)

    async def creator_earnings(self, creator_id: str, now: datetime | None = None) -> dict[str, Any]:
        return await self.reports.creator_earnings(creator_id, now)

    # Grants

    async def grant(self, user_id: str, amount: int, type: BucketType, source: str, **kwargs) -> CreditBucket:
        return await self.credits.grant(user_id, amount, type, source, **kwargs)

    async def add_credits(self, user_id: str, amount: int, **kwargs) -> CreditBucket:
        return await self.credits.add_credits(user_id, amount, **kwargs)

    async def migrate_legacy_balance(self, user_id: str, amount: int) -> CreditBucket | None:
        """Carry a pre-bucket balance over as one purchased bucket, once per user."""
        if amount <= 0:
            log.info("legacy_migration_skipped", user_id=user_id, amount=amount)
            return None
        return await self.credits.grant(
            user_id,
            amount,
            BucketType.PURCHASED,
            "legacy_migration",
            external_ref=legacy_migration_ref(user_id),
            description="Migrated balance",
        )

    async def admin_adjust(
        self,
        user_id: str,
        amount: int,
        reason: str,
        bucket_type: BucketType = BucketType.BONUS,
        expiry_days: int | None = None,
        admin_id: str | None = None,
        external_ref: str | None = None,
    ) -> dict[str, Any]:
        if not isinstance(amount, int) or amount == 0:
            raise InvalidAmountError(amount)
        info = {"reason": reason, "admin_id": admin_id}
        if amount > 0:
            bucket = await self.credits.grant(
                user_id,
                amount,
                bucket_type,
                "admin_adjustment",
                expiry_days=expiry_days,
                external_ref=external_ref,
                description=reason,
                transaction_type=TransactionType.ADJUSTMENT,
                metadata=info,
            )
            log.info("admin_adjustment", user_id=user_id, amount=amount, admin_id=admin_id)
            return {"user_id": user_id, "amount": amount, "bucket_id": str(bucket.id)}

        result = await self.debits.charge(
            user_id,
            -amount,
            ChargeMetadata(
                type=TransactionType.ADJUSTMENT,
                description=reason,
                source="admin_adjustment",
                extra=info,
            ),
        )
        if not result.success:
            raise InsufficientCreditsError(-amount, result.balance_after)
        log.info("admin_adjustment", user_id=user_id, amount=amount, admin_id=admin_id)
        return {"user_id": user_id, "amount": amount, "transaction_id": str(result.transaction.id)}

    # Debits

    def calculate_cost(
        self,
        model_id: str,
        prompt_length: PromptLength | str | None = None,
        prompt_text: str | None = None,
        creator_fee_percent: int = 0,
    ) -> pricing.CostBreakdown:
        length = pricing.resolve_prompt_length(model_id, prompt_length, prompt_text)
        return pricing.calculate_cost(model_id, length, creator_fee_percent)

    async def burn_credits(
        self,
        user_id: str,
        model_id: str,
        prompt_length: PromptLength | str | None = None,
        prompt_text: str | None = None,
        creator_id: str | None = None,
        creator_fee_percent: int = 0,
        item_type: ItemType = ItemType.COMPLETION,
        item_id: str | None = None,
        flow_id: str | None = None,
        source: str | None = None,
    ) -> dict[str, Any]:
        """Charge one model run. Flow runs are recorded as `flow_run`, everything else `prompt_run`."""
        cost = self.calculate_cost(model_id, prompt_length, prompt_text, creator_fee_percent if creator_id else 0)
        run_type = TransactionType.FLOW_RUN if (flow_id or item_type == ItemType.FLOW) else TransactionType.PROMPT_RUN
        result = await self.debits.charge(
            user_id,
            cost.total_cost,
            ChargeMetadata(
                type=run_type,
                description=f"{model_id} {cost.prompt_length.value} run",
                item_id=item_id or flow_id,
                item_type=item_type,
                model_id=model_id,
                creator_id=creator_id,
                source=source,
                extra={
                    "prompt_length": cost.prompt_length.value,
                    "inference_cost": cost.inference_cost,
                    "platform_markup": cost.platform_markup,
                    "creator_fee": cost.creator_fee,
                    "flow_id": flow_id,
                },
            ),
        )
        out: dict[str, Any] = {"success": result.success, "cost": cost.to_public(), "charge": result.to_public()}
        if result.success and creator_id and cost.creator_fee > 0:
            out["creator_payout"] = await self._pay_creator(
                creator_id, cost.creator_fee, result.transaction, user_id, item_id or flow_id, item_type
            )
        return out

    async def charge_for_prompt_run(
        self,
        user_id: str,
        prompt_id: str,
        model_id: str,
        prompt_length: PromptLength | str | None = None,
        prompt_text: str | None = None,
        source: str | None = None,
    ) -> dict[str, Any]:
        with storage_guard("get_prompt_listing"):
            listing = await PromptListing.find_one(PromptListing.listing_id == prompt_id)
        if listing is None:
            raise NotFoundError(f"Prompt {prompt_id} not found")
        return await self.burn_credits(
            user_id,
            model_id,
            prompt_length=prompt_length,
            prompt_text=prompt_text,
            creator_id=listing.creator_id,
            creator_fee_percent=listing.creator_fee_percent,
            item_type=ItemType.PROMPT,
            item_id=prompt_id,
            source=source,
        )

    async def charge_for_flow_unlock(self, user_id: str, flow_id: str) -> dict[str, Any]:
        with storage_guard("get_flow_listing"):
            listing = await FlowListing.find_one(FlowListing.listing_id == flow_id)
        if listing is None:
            raise NotFoundError(f"Flow {flow_id} not found")
        base = {"flow_id": flow_id, "unlock_fee": listing.unlock_fee or 0}
        if listing.creator_id == user_id:
            return {**base, "success": True, "unlocked": True, "charged": 0, "reason": "creator"}
        if listing.is_free:
            return {**base, "success": True, "unlocked": True, "charged": 0, "reason": "free"}

        async with self.locks.hold(user_id):
            # the unlock record is claimed first; its unique index stops a second charge
            unlock = FlowUnlock(user_id=user_id, flow_id=flow_id)
            try:
                with storage_guard("claim_flow_unlock"):
                    await unlock.insert()
            except DuplicateKeyError:
                return {**base, "success": True, "unlocked": True, "charged": 0, "reason": "already_unlocked"}

            try:
                result = await self.debits.charge_holding_lock(
                    user_id,
                    listing.unlock_fee,
                    ChargeMetadata(
                        type=TransactionType.FLOW_UNLOCK,
                        description=f"Unlocked flow {listing.title or flow_id}",
                        item_id=flow_id,
                        item_type=ItemType.FLOW,
                        creator_id=listing.creator_id,
                    ),
                )
            except BaseException:
                await unlock.delete()
                raise
            if not result.success:
                await unlock.delete()
                return {
                    **base,
                    "success": False,
                    "unlocked": False,
                    "charged": 0,
                    "reason": result.reason,
                    "charge": result.to_public(),
                }

            with storage_guard("record_flow_unlock"):
                await FlowUnlock.find_one(FlowUnlock.id == unlock.id).update(
                    Set({FlowUnlock.transaction_id: str(result.transaction.id)})
                )

        log.info("flow_unlocked", user_id=user_id, flow_id=flow_id, fee=listing.unlock_fee)
        return {
            **base,
            "success": True,
            "unlocked": True,
            "charged": listing.unlock_fee,
            "charge": result.to_public(),
            "creator_payout": await self._pay_creator(
                listing.creator_id, listing.unlock_fee, result.transaction, user_id, flow_id, ItemType.FLOW
            ),
        }

    async def has_unlocked_flow(self, user_id: str, flow_id: str) -> bool:
        with storage_guard("has_unlocked_flow"):
            listing = await FlowListing.find_one(FlowListing.listing_id == flow_id)
            if listing is not None and (listing.creator_id == user_id or listing.is_free):
                return True
            unlock = await FlowUnlock.find_one(FlowUnlock.user_id == user_id, FlowUnlock.flow_id == flow_id)
        return unlock is not None

    async def _pay_creator(
        self,
        creator_id: str,
        fee: int,
        txn: CreditTransaction,
        payer_id: str,
        item_id: str | None,
        item_type: ItemType,
    ) -> dict[str, Any]:
        """Settle the creator share of a fee. The debit already happened, so a failure here is
        reported and logged with the transaction id; the payout key makes a retry safe."""
        creator_share, platform_share = pricing.split_creator_fee(fee, self.settings.creator_share_percent)
        if creator_share <= 0:
            return {"status": "skipped", "creator_share": 0, "platform_share": platform_share}
        try:
            bucket = await self.credits.grant(
                creator_id,
                creator_share,
                BucketType.BONUS,
                "creator_payout",
                expiry_days=self.settings.creator_payout_expiry_days,
                external_ref=creator_payout_ref(str(txn.id)),
                description=f"Earnings from {ItemType(item_type).value} {item_id or ''}".strip(),
                transaction_type=TransactionType.CREATOR_PAYOUT,
                metadata={"payer_id": payer_id, "item_id": item_id, "fee": fee, "debit_transaction_id": str(txn.id)},
            )
        except AppError as e:
            log.error(
                "creator_payout_failed",
                creator_id=creator_id,
                debit_transaction_id=str(txn.id),
                amount=creator_share,
                error=e.message,
            )
            return {"status": "failed", "creator_share": creator_share, "platform_share": platform_share}
        return {
            "status": "paid",
            "creator_id": creator_id,
            "creator_share": creator_share,
            "platform_share": platform_share,
            "bucket_id": str(bucket.id),
        }

    # Scheduled work

    async def sweep_expired(self, now: datetime | None = None) -> int:
        return await self.sweeper.sweep(now)

    async def process_referrals(self, now: datetime | None = None) -> int:
        return await self.referrals.process_qualifying_referrals(now)

    async def award_automation_bonuses(self, now: datetime | None = None) -> dict[str, Any]:
        return await self.automation_bonuses.award_monthly_bonuses(now)


def build_ledger(settings: Settings | None = None, redis=None) -> Ledger:
    settings = settings or get_settings()
    return Ledger(build_lock_manager(settings, redis), settings)
