from datetime import datetime

from beanie import Document, Indexed
from pydantic import Field

from creditledger.models.enums import ReferralStatus


class Referral(Document):
    """Inviter -> invitee relationship; rewarded once the invitee has spent enough."""

    referrer_id: Indexed(str)
    referred_id: Indexed(str, unique=True)  # a user can only be referred once
    status: ReferralStatus = ReferralStatus.PENDING
    credits_awarded: int = 0
    created_at: datetime = Field(default_factory=datetime.utcnow)
    completed_at: datetime | None = None

    class Settings:
        name = "referrals"
        indexes = [[("status", 1), ("created_at", 1)]]
