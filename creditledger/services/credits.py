"""Credit engine: grants new buckets, idempotent against an external reference."""

from datetime import datetime

from creditledger.core.exceptions import DuplicateExternalRefError, InvalidAmountError
from creditledger.core.logging import get_logger
from creditledger.models.credit_bucket import CreditBucket
from creditledger.models.enums import BucketType, TransactionType
from creditledger.services.buckets import BucketStore, expires_at_for
from creditledger.services.transactions import TransactionLog

log = get_logger(__name__)

# source -> transaction type, when the caller does not say
_SOURCE_TRANSACTION_TYPES = {
    "stripe_checkout": TransactionType.PURCHASE,
    "purchase": TransactionType.PURCHASE,
    "referral_bonus": TransactionType.REFERRAL_BONUS,
    "welcome_bonus": TransactionType.REFERRAL_BONUS,
    "automation_bonus": TransactionType.AUTOMATION_BONUS,
    "creator_payout": TransactionType.CREATOR_PAYOUT,
    "admin_adjustment": TransactionType.ADJUSTMENT,
    "legacy_migration": TransactionType.ADJUSTMENT,
}

_BUCKET_TRANSACTION_TYPES = {
    BucketType.PURCHASED: TransactionType.PURCHASE,
    BucketType.BONUS: TransactionType.BONUS,
    BucketType.REFERRAL: TransactionType.REFERRAL_BONUS,
}


def infer_transaction_type(bucket_type: BucketType, source: str) -> TransactionType:
    if source in _SOURCE_TRANSACTION_TYPES:
        return _SOURCE_TRANSACTION_TYPES[source]
    return _BUCKET_TRANSACTION_TYPES[BucketType(bucket_type)]


class CreditEngine:
    def __init__(self, store: BucketStore, transactions: TransactionLog):
        self.store = store
        self.transactions = transactions

    async def grant(
        self,
        user_id: str,
        amount: int,
        type: BucketType,
        source: str,
        expiry_days: int | None = None,
        external_ref: str | None = None,
        description: str | None = None,
        transaction_type: TransactionType | None = None,
        metadata: dict | None = None,
        now: datetime | None = None,
    ) -> CreditBucket:
        """Create a bucket and its mirroring transaction.

        A repeated `external_ref` for the same user returns the bucket granted
        the first time and writes nothing.
        """
        if not isinstance(amount, int) or isinstance(amount, bool) or amount <= 0:
            raise InvalidAmountError(amount)
        if expiry_days is not None and expiry_days <= 0:
            raise InvalidAmountError(expiry_days)
        now = now or datetime.utcnow()
        try:
            bucket = await self.store.create_bucket(
                user_id=user_id,
                type=type,
                amount=amount,
                source=source,
                expires_at=expires_at_for(expiry_days, now),
                external_ref=external_ref,
                now=now,
            )
        except DuplicateExternalRefError as e:
            log.info("grant_duplicate", user_id=user_id, external_ref=external_ref)
            if e.existing is None:
                raise
            return e.existing

        txn_type = transaction_type or infer_transaction_type(type, source)
        try:
            await self.transactions.append(
                user_id=user_id,
                amount=amount,
                type=txn_type,
                description=description or f"{amount} credits from {source}",
                source=source,
                related_bucket_ids=[str(bucket.id)],
                metadata={**(metadata or {}), "external_ref": external_ref, "bucket_type": BucketType(type).value},
                now=now,
            )
        except BaseException:
            # no partial grant: the bucket only exists alongside its transaction
            await bucket.delete()
            log.error("grant_rolled_back", user_id=user_id, amount=amount, external_ref=external_ref)
            raise

        log.info(
            "credits_granted",
            user_id=user_id,
            amount=amount,
            bucket_type=BucketType(type).value,
            source=source,
            external_ref=external_ref,
            expires_at=bucket.expires_at.isoformat() if bucket.expires_at else None,
        )
        return bucket

    async def add_credits(
        self,
        user_id: str,
        amount: int,
        type: BucketType = BucketType.PURCHASED,
        source: str = "purchase",
        expiry_days: int | None = None,
        external_ref: str | None = None,
        **kwargs,
    ) -> CreditBucket:
        return await self.grant(
            user_id,
            amount,
            type,
            source,
            expiry_days=expiry_days,
            external_ref=external_ref,
            **kwargs,
        )
