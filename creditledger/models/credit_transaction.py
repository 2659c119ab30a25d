from datetime import datetime
from typing import Any

from beanie import Document, Indexed
from pydantic import Field

from creditledger.models.enums import ItemType, TransactionType


class CreditTransaction(Document):
    """Immutable ledger entry. Never updated or deleted once inserted."""

    user_id: Indexed(str)
    amount: int  # positive = credit, negative = debit, zero = system/informational
    type: TransactionType
    description: str = ""
    item_id: str | None = None
    item_type: ItemType | None = None
    model_id: str | None = None
    creator_id: str | None = None
    source: str | None = None
    related_bucket_ids: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "credit_transactions"
        indexes = [
            [("user_id", 1), ("created_at", -1)],
            [("user_id", 1), ("type", 1), ("created_at", -1)],
            [("type", 1), ("created_at", -1)],
        ]

    def to_public(self) -> dict[str, Any]:
        return {
            "id": str(self.id),
            "user_id": self.user_id,
            "amount": self.amount,
            "type": TransactionType(self.type).value,
            "description": self.description,
            "item_id": self.item_id,
            "item_type": ItemType(self.item_type).value if self.item_type else None,
            "model_id": self.model_id,
            "creator_id": self.creator_id,
            "source": self.source,
            "related_bucket_ids": self.related_bucket_ids,
            "created_at": self.created_at.isoformat(),
        }
