from datetime import datetime

from beanie import Document, Indexed
from pydantic import Field


class User(Document):
    """Ledger-side projection of a platform user (identity lives in the web layer)."""

    user_id: Indexed(str, unique=True)  # platform user id, the key every ledger record uses
    email: str = ""
    name: str = ""
    referral_code: Indexed(str, unique=True)
    referred_by: str | None = None  # referrer user_id
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "users"
