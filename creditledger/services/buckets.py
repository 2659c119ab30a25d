"""Bucket store: data access for credit buckets plus the invariants enforced at write time."""

from datetime import datetime, timedelta

from beanie import PydanticObjectId
from beanie.operators import Inc, NotIn, Or, Set
from pymongo.errors import DuplicateKeyError

from creditledger.core.exceptions import (
    BucketExpiredError,
    DuplicateExternalRefError,
    InsufficientBucketBalanceError,
    InvalidAmountError,
    NotFoundError,
)
from creditledger.core.idempotency import grant_key
from creditledger.core.logging import get_logger
from creditledger.db.errors import storage_guard
from creditledger.models.credit_bucket import CreditBucket
from creditledger.models.enums import BucketType

log = get_logger(__name__)


def _not_expired(now: datetime):
    # expired means now > expires_at; a bucket at exactly its expiry is still live
    return Or(CreditBucket.expires_at == None, CreditBucket.expires_at >= now)  # noqa: E711


def expires_at_for(expiry_days: int | None, now: datetime) -> datetime | None:
    if expiry_days is None:
        return None
    return now + timedelta(days=expiry_days)


class BucketStore:
    async def create_bucket(
        self,
        user_id: str,
        type: BucketType,
        amount: int,
        source: str,
        expires_at: datetime | None = None,
        external_ref: str | None = None,
        now: datetime | None = None,
    ) -> CreditBucket:
        """Insert a new bucket. Raises DuplicateExternalRefError if (user, external_ref) exists."""
        if not isinstance(amount, int) or isinstance(amount, bool) or amount <= 0:
            raise InvalidAmountError(amount)
        now = now or datetime.utcnow()
        bucket = CreditBucket(
            user_id=user_id,
            type=BucketType(type),
            amount=amount,
            remaining=amount,
            source=source,
            external_ref=external_ref,
            grant_key=grant_key(user_id, external_ref),
            expires_at=expires_at,
            created_at=now,
            updated_at=now,
        )
        try:
            with storage_guard("create_bucket"):
                await bucket.insert()
        except DuplicateKeyError:
            existing = await self.get_by_external_ref(user_id, external_ref) if external_ref else None
            raise DuplicateExternalRefError(user_id, external_ref or "", existing=existing)
        return bucket

    async def get(self, bucket_id: str | PydanticObjectId) -> CreditBucket | None:
        with storage_guard("get_bucket"):
            return await CreditBucket.get(PydanticObjectId(bucket_id))

    async def get_by_external_ref(self, user_id: str, external_ref: str) -> CreditBucket | None:
        with storage_guard("get_bucket_by_ref"):
            return await CreditBucket.find_one(CreditBucket.grant_key == grant_key(user_id, external_ref))

    async def list_buckets(
        self,
        user_id: str,
        include_expired: bool = False,
        include_depleted: bool = True,
        now: datetime | None = None,
    ) -> list[CreditBucket]:
        now = now or datetime.utcnow()
        criteria = [CreditBucket.user_id == user_id]
        if not include_expired:
            criteria.append(_not_expired(now))
        if not include_depleted:
            criteria.append(CreditBucket.remaining > 0)
        with storage_guard("list_buckets"):
            return await CreditBucket.find(*criteria).sort(+CreditBucket.created_at).to_list()

    async def spendable_buckets(self, user_id: str, now: datetime) -> list[CreditBucket]:
        """Non-expired buckets with credit left, in drain order."""
        buckets = await self.list_buckets(user_id, include_expired=False, include_depleted=False, now=now)
        return sorted(buckets, key=CreditBucket.drain_key)

    async def decrement_bucket(
        self, bucket_id: str | PydanticObjectId, amount: int, now: datetime | None = None
    ) -> CreditBucket:
        """Atomically take `amount` from a bucket.

        Remaining balance and expiry are both part of the update filter, so the
        check holds at write time regardless of what was read earlier or whether
        the sweeper has run yet.
        """
        if amount <= 0:
            raise InvalidAmountError(amount)
        now = now or datetime.utcnow()
        oid = PydanticObjectId(bucket_id)
        with storage_guard("decrement_bucket"):
            result = await CreditBucket.find_one(
                CreditBucket.id == oid,
                CreditBucket.remaining >= amount,
                _not_expired(now),
            ).update(Inc({CreditBucket.remaining: -amount}), Set({CreditBucket.updated_at: now}))
            bucket = await CreditBucket.get(oid)
        if bucket is None:
            raise NotFoundError(f"Bucket {bucket_id} not found")
        if result.modified_count == 1:
            return bucket
        if bucket.is_expired(now):
            raise BucketExpiredError(str(oid))
        raise InsufficientBucketBalanceError(str(oid), amount, bucket.remaining)

    async def restore_bucket(
        self, bucket_id: str | PydanticObjectId, amount: int, now: datetime | None = None
    ) -> bool:
        """Give back credit taken by a debit that did not complete.

        Only a live bucket takes credit back. Returns False when the bucket
        expired in the meantime; the caller accounts for the forfeited amount.
        """
        now = now or datetime.utcnow()
        with storage_guard("restore_bucket"):
            result = await CreditBucket.find_one(
                CreditBucket.id == PydanticObjectId(bucket_id),
                _not_expired(now),
            ).update(Inc({CreditBucket.remaining: amount}), Set({CreditBucket.updated_at: now}))
        if result.modified_count != 1:
            log.warning("bucket_restore_refused", bucket_id=str(bucket_id), amount=amount)
            return False
        log.warning("bucket_restored", bucket_id=str(bucket_id), amount=amount)
        return True

    async def expired_candidates(
        self,
        now: datetime,
        limit: int = 500,
        user_id: str | None = None,
        exclude_ids: list[PydanticObjectId] | None = None,
    ) -> list[CreditBucket]:
        criteria = [
            CreditBucket.remaining > 0,
            CreditBucket.expires_at != None,  # noqa: E711
            CreditBucket.expires_at < now,
        ]
        if user_id is not None:
            criteria.append(CreditBucket.user_id == user_id)
        if exclude_ids:
            criteria.append(NotIn(CreditBucket.id, list(exclude_ids)))
        with storage_guard("expired_candidates"):
            return await CreditBucket.find(*criteria).sort(+CreditBucket.expires_at).limit(limit).to_list()

    async def void_bucket(self, bucket: CreditBucket, now: datetime) -> int:
        """Zero an expired bucket; return the voided amount (0 if it changed underneath us)."""
        with storage_guard("void_bucket"):
            result = await CreditBucket.find_one(
                CreditBucket.id == bucket.id,
                CreditBucket.remaining == bucket.remaining,
                CreditBucket.expires_at < now,
            ).update(Set({CreditBucket.remaining: 0, CreditBucket.updated_at: now}))
        return bucket.remaining if result.modified_count == 1 else 0

    async def unvoid_bucket(self, bucket: CreditBucket, amount: int, now: datetime) -> None:
        """Undo `void_bucket` so the next sweep picks the bucket up again."""
        with storage_guard("unvoid_bucket"):
            await CreditBucket.find_one(CreditBucket.id == bucket.id, CreditBucket.remaining == 0).update(
                Set({CreditBucket.remaining: amount, CreditBucket.updated_at: now})
            )

    async def zero_out_expired(self, now: datetime, limit: int = 500) -> int:
        """Bulk zero-out without transaction logging; the sweeper is the logged path."""
        count = 0
        for bucket in await self.expired_candidates(now, limit=limit):
            if await self.void_bucket(bucket, now):
                count += 1
        return count

    async def live_remaining_by_type(self, now: datetime) -> dict[str, int]:
        """Unexpired credit left across all users, per bucket type."""
        totals = {t.value: 0 for t in BucketType}
        with storage_guard("live_remaining_by_type"):
            buckets = await CreditBucket.find(CreditBucket.remaining > 0, _not_expired(now)).to_list()
        for bucket in buckets:
            totals[BucketType(bucket.type).value] += bucket.remaining
        return totals
