from datetime import datetime

from beanie import Document, Indexed
from pydantic import Field

from creditledger.models.enums import BUCKET_DRAIN_PRIORITY, BucketType


class CreditBucket(Document):
    """A discrete grant of credits with its own remaining balance and optional expiry."""

    user_id: Indexed(str)
    type: BucketType
    amount: int  # granted, immutable
    remaining: int
    source: str  # stripe_checkout, referral_bonus, legacy_migration, ...
    external_ref: str | None = None
    grant_key: Indexed(str, unique=True)  # <user_id>:<external_ref>, enforced by the store
    expires_at: datetime | None = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "credit_buckets"
        indexes = [
            [("user_id", 1), ("remaining", 1), ("expires_at", 1)],
            [("expires_at", 1), ("remaining", 1)],
        ]

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at < now

    def drain_key(self) -> tuple:
        """Soonest expiry first (never-expiring last), then referral < bonus < purchased, then oldest."""
        return (
            self.expires_at is None,
            self.expires_at or datetime.max,
            BUCKET_DRAIN_PRIORITY[BucketType(self.type)],
            self.created_at,
        )
