"""Expiration sweeper: zeroes expired buckets and logs a system transaction for each."""

from datetime import datetime

from creditledger.core.exceptions import AppError
from creditledger.core.logging import get_logger
from creditledger.models.credit_bucket import CreditBucket
from creditledger.models.enums import BucketType, TransactionType
from creditledger.services.buckets import BucketStore
from creditledger.services.transactions import TransactionLog

log = get_logger(__name__)


class ExpirationSweeper:
    def __init__(self, store: BucketStore, transactions: TransactionLog, batch_size: int = 500):
        self.store = store
        self.transactions = transactions
        self.batch_size = batch_size

    async def sweep(self, now: datetime | None = None) -> int:
        """Sweep every user. Running it twice has the same effect as once."""
        now = now or datetime.utcnow()
        expired = 0
        # buckets that failed stay candidates; skip them so the rest of the run moves on
        seen: list = []
        while True:
            batch = await self.store.expired_candidates(now, limit=self.batch_size, exclude_ids=seen)
            if not batch:
                break
            for bucket in batch:
                seen.append(bucket.id)
                if await self._expire(bucket, now):
                    expired += 1
        if expired:
            log.info("credit_sweep_completed", expired=expired)
        return expired

    async def sweep_user(self, user_id: str, now: datetime | None = None) -> int:
        now = now or datetime.utcnow()
        expired = 0
        for bucket in await self.store.expired_candidates(now, limit=self.batch_size, user_id=user_id):
            if await self._expire(bucket, now):
                expired += 1
        return expired

    async def _expire(self, bucket: CreditBucket, now: datetime) -> bool:
        try:
            voided = await self.store.void_bucket(bucket, now)
        except AppError as e:
            log.error("credit_sweep_bucket_failed", bucket_id=str(bucket.id), user_id=bucket.user_id, error=e.message)
            return False
        if not voided:
            return False
        try:
            await self.transactions.append(
                user_id=bucket.user_id,
                amount=0,
                type=TransactionType.SYSTEM_CLEANUP,
                description=f"Expired {voided} {BucketType(bucket.type).value} credits",
                source="expiration_sweep",
                related_bucket_ids=[str(bucket.id)],
                metadata={
                    "expired_amount": voided,
                    "bucket_type": BucketType(bucket.type).value,
                    "expires_at": bucket.expires_at.isoformat() if bucket.expires_at else None,
                },
                now=now,
            )
        except AppError as e:
            # no audit entry, so put the credit back for the next run to void again
            log.error("credit_sweep_log_failed", bucket_id=str(bucket.id), user_id=bucket.user_id, error=e.message)
            try:
                await self.store.unvoid_bucket(bucket, voided, now)
            except AppError as undo_error:
                log.error(
                    "credit_sweep_unvoid_failed",
                    bucket_id=str(bucket.id),
                    user_id=bucket.user_id,
                    amount=voided,
                    error=undo_error.message,
                )
            return False
        log.info("bucket_expired", bucket_id=str(bucket.id), user_id=bucket.user_id, amount=voided)
        return True
