"""Append-only transaction log and the history queries built on it."""

from datetime import datetime
from typing import Any, Iterable

from beanie.operators import In

from creditledger.db.errors import storage_guard
from creditledger.models.credit_transaction import CreditTransaction
from creditledger.models.enums import USAGE_TRANSACTION_TYPES, ItemType, TransactionType


class TransactionLog:
    async def append(
        self,
        user_id: str,
        amount: int,
        type: TransactionType,
        description: str = "",
        item_id: str | None = None,
        item_type: ItemType | None = None,
        model_id: str | None = None,
        creator_id: str | None = None,
        source: str | None = None,
        related_bucket_ids: Iterable[str] = (),
        metadata: dict[str, Any] | None = None,
        now: datetime | None = None,
    ) -> CreditTransaction:
        entry = CreditTransaction(
            user_id=user_id,
            amount=amount,
            type=TransactionType(type),
            description=description,
            item_id=item_id,
            item_type=ItemType(item_type) if item_type else None,
            model_id=model_id,
            creator_id=creator_id,
            source=source,
            related_bucket_ids=[str(b) for b in related_bucket_ids],
            metadata=metadata or {},
            created_at=now or datetime.utcnow(),
        )
        with storage_guard("append_transaction"):
            await entry.insert()
        return entry

    async def history(self, user_id: str, limit: int = 10, offset: int = 0) -> list[CreditTransaction]:
        """Newest first."""
        with storage_guard("transaction_history"):
            return (
                await CreditTransaction.find(CreditTransaction.user_id == user_id)
                .sort([("created_at", -1), ("_id", -1)])
                .skip(offset)
                .limit(limit)
                .to_list()
            )

    async def count(self, user_id: str) -> int:
        with storage_guard("transaction_count"):
            return await CreditTransaction.find(CreditTransaction.user_id == user_id).count()

    async def total_debited(self, user_id: str) -> int:
        """Lifetime credits spent by a user (absolute sum of negative entries)."""
        with storage_guard("total_debited"):
            debits = await CreditTransaction.find(
                CreditTransaction.user_id == user_id,
                CreditTransaction.amount < 0,
            ).to_list()
        return sum(-e.amount for e in debits)

    async def usage_between(
        self, since: datetime, until: datetime, user_id: str | None = None, include_until: bool = False
    ) -> list[CreditTransaction]:
        """Usage entries (prompt and flow runs) from `since` up to `until`, exclusive unless `include_until`."""
        criteria = [
            In(CreditTransaction.type, [t.value for t in USAGE_TRANSACTION_TYPES]),
            CreditTransaction.created_at >= since,
            CreditTransaction.created_at <= until if include_until else CreditTransaction.created_at < until,
        ]
        if user_id is not None:
            criteria.append(CreditTransaction.user_id == user_id)
        with storage_guard("usage_between"):
            return await CreditTransaction.find(*criteria).sort(+CreditTransaction.created_at).to_list()

    async def of_type_between(
        self, user_id: str, type: TransactionType, since: datetime, until: datetime
    ) -> list[CreditTransaction]:
        with storage_guard("transactions_of_type"):
            return await CreditTransaction.find(
                CreditTransaction.user_id == user_id,
                CreditTransaction.type == TransactionType(type).value,
                CreditTransaction.created_at >= since,
                CreditTransaction.created_at <= until,
            ).to_list()

    async def sum_of_type(self, user_id: str, type: TransactionType) -> int:
        with storage_guard("sum_of_type"):
            entries = await CreditTransaction.find(
                CreditTransaction.user_id == user_id,
                CreditTransaction.type == TransactionType(type).value,
            ).to_list()
        return sum(e.amount for e in entries)

    async def debits_between(
        self, since: datetime | None = None, until: datetime | None = None, creator_id: str | None = None
    ) -> list[CreditTransaction]:
        """Negative entries (credit spent), optionally only those paying a given creator."""
        criteria = [CreditTransaction.amount < 0]
        if since is not None:
            criteria.append(CreditTransaction.created_at >= since)
        if until is not None:
            criteria.append(CreditTransaction.created_at < until)
        if creator_id is not None:
            criteria.append(CreditTransaction.creator_id == creator_id)
        with storage_guard("debits_between"):
            return await CreditTransaction.find(*criteria).sort(+CreditTransaction.created_at).to_list()

    async def all_of_type(self, type: TransactionType, user_id: str | None = None) -> list[CreditTransaction]:
        """Newest first."""
        criteria = [CreditTransaction.type == TransactionType(type).value]
        if user_id is not None:
            criteria.append(CreditTransaction.user_id == user_id)
        with storage_guard("all_of_type"):
            return await CreditTransaction.find(*criteria).sort(-CreditTransaction.created_at).to_list()
