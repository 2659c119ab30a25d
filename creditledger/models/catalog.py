"""Read-only projections of marketplace listings the ledger prices against."""

from datetime import datetime

from beanie import Document, Indexed
from pydantic import Field


class PromptListing(Document):
    listing_id: Indexed(str, unique=True)
    creator_id: str
    title: str = ""
    creator_fee_percent: int = 0  # 0 = platform markup applies instead
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "prompt_listings"


class FlowListing(Document):
    listing_id: Indexed(str, unique=True)
    creator_id: str
    title: str = ""
    unlock_fee: int | None = None  # None or 0 = free flow
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "flow_listings"

    @property
    def is_free(self) -> bool:
        return not self.unlock_fee
