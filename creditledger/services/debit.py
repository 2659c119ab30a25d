"""Debit engine: all-or-nothing, priority-ordered drain across a user's buckets."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from creditledger.core.config import Settings, get_settings
from creditledger.core.exceptions import (
    BucketExpiredError,
    InsufficientBucketBalanceError,
    InvalidAmountError,
    LedgerBusyError,
    NotFoundError,
    StorageUnavailableError,
)
from creditledger.core.logging import get_logger
from creditledger.models.credit_bucket import CreditBucket
from creditledger.models.credit_transaction import CreditTransaction
from creditledger.models.enums import ItemType, TransactionType
from creditledger.services.buckets import BucketStore
from creditledger.services.transactions import TransactionLog

log = get_logger(__name__)


class ChargeMetadata(BaseModel):
    """What a debit pays for; copied onto its transaction."""

    type: TransactionType = TransactionType.PROMPT_RUN
    description: str = ""
    item_id: str | None = None
    item_type: ItemType | None = None
    model_id: str | None = None
    creator_id: str | None = None
    source: str | None = None
    extra: dict[str, Any] = Field(default_factory=dict)


class DrainedBucket(BaseModel):
    bucket_id: str
    amount_taken: int


class ChargeResult(BaseModel):
    success: bool
    amount: int
    drained: list[DrainedBucket] = Field(default_factory=list)
    transaction: CreditTransaction | None = None
    balance_after: int = 0
    reason: str | None = None

    def to_public(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "amount": self.amount,
            "drained": [d.model_dump() for d in self.drained],
            "transaction": self.transaction.to_public() if self.transaction else None,
            "balance_after": self.balance_after,
            "reason": self.reason,
        }


def plan_drain(buckets: list[CreditBucket], amount: int) -> list[tuple[CreditBucket, int]] | None:
    """Walk buckets (already in drain order) until `amount` is covered.

    Returns (bucket, take) pairs, or None when the buckets cannot cover it.
    """
    plan = []
    outstanding = amount
    for bucket in buckets:
        if outstanding == 0:
            break
        if bucket.remaining <= 0:
            continue
        take = min(bucket.remaining, outstanding)
        plan.append((bucket, take))
        outstanding -= take
    if outstanding > 0:
        return None
    return plan


class DebitEngine:
    def __init__(
        self,
        store: BucketStore,
        transactions: TransactionLog,
        locks,
        settings: Settings | None = None,
    ):
        self.store = store
        self.transactions = transactions
        self.locks = locks
        self.settings = settings or get_settings()

    async def charge(
        self,
        user_id: str,
        amount: int,
        metadata: ChargeMetadata | None = None,
        now: datetime | None = None,
    ) -> ChargeResult:
        """Debit `amount` from the user's buckets, or nothing at all.

        Insufficient funds is a normal outcome (`success=False`), not an error.
        """
        _check_amount(amount)
        async with self.locks.hold(user_id):
            return await self.charge_holding_lock(user_id, amount, metadata, now)

    async def charge_holding_lock(
        self,
        user_id: str,
        amount: int,
        metadata: ChargeMetadata | None = None,
        now: datetime | None = None,
    ) -> ChargeResult:
        """Same as `charge`, for callers that already hold the user's lock."""
        _check_amount(amount)
        metadata = metadata or ChargeMetadata()
        attempts = max(self.settings.charge_max_attempts, 1)
        for attempt in range(1, attempts + 1):
            at = now or datetime.utcnow()
            buckets = await self.store.spendable_buckets(user_id, at)
            available = sum(b.remaining for b in buckets)
            plan = plan_drain(buckets, amount)
            if plan is None:
                log.info("charge_declined", user_id=user_id, amount=amount, available=available)
                return ChargeResult(
                    success=False,
                    amount=amount,
                    balance_after=available,
                    reason="insufficient_credits",
                )

            applied: list[tuple[str, int]] = []
            try:
                for bucket, take in plan:
                    await self.store.decrement_bucket(bucket.id, take, at)
                    applied.append((str(bucket.id), take))
            except (BucketExpiredError, InsufficientBucketBalanceError, NotFoundError) as e:
                await self._rollback(user_id, applied)
                log.warning("charge_replan", user_id=user_id, attempt=attempt, reason=e.code)
                continue
            except BaseException:
                # includes cancellation
                await self._rollback(user_id, applied)
                raise

            drained = [DrainedBucket(bucket_id=b, amount_taken=t) for b, t in applied]
            try:
                txn = await self.transactions.append(
                    user_id=user_id,
                    amount=-amount,
                    type=metadata.type,
                    description=metadata.description,
                    item_id=metadata.item_id,
                    item_type=metadata.item_type,
                    model_id=metadata.model_id,
                    creator_id=metadata.creator_id,
                    source=metadata.source,
                    related_bucket_ids=[d.bucket_id for d in drained],
                    metadata={**metadata.extra, "drained": [d.model_dump() for d in drained]},
                    now=at,
                )
            except BaseException:
                await self._rollback(user_id, applied)
                raise

            log.info(
                "charge_applied",
                user_id=user_id,
                amount=amount,
                type=TransactionType(metadata.type).value,
                buckets=len(drained),
                transaction_id=str(txn.id),
            )
            return ChargeResult(
                success=True,
                amount=amount,
                drained=drained,
                transaction=txn,
                balance_after=available - amount,
            )

        log.error("charge_gave_up", user_id=user_id, amount=amount, attempts=attempts)
        raise LedgerBusyError(user_id)

    async def _rollback(self, user_id: str, applied: list[tuple[str, int]]) -> None:
        for bucket_id, take in reversed(applied):
            try:
                if await self.store.restore_bucket(bucket_id, take):
                    continue
                # expired while the charge was in flight; the credit is voided, not revived
                await self.transactions.append(
                    user_id=user_id,
                    amount=0,
                    type=TransactionType.SYSTEM_CLEANUP,
                    description=f"Expired {take} credits returned by an incomplete charge",
                    source="charge_rollback",
                    related_bucket_ids=[bucket_id],
                    metadata={"expired_amount": take},
                )
            except StorageUnavailableError:
                log.error("bucket_restore_failed", user_id=user_id, bucket_id=bucket_id, amount=take)
                raise


def _check_amount(amount: Any) -> None:
    if not isinstance(amount, int) or isinstance(amount, bool) or amount <= 0:
        raise InvalidAmountError(amount)
