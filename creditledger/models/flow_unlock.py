from datetime import datetime

from beanie import Document
from pydantic import Field
from pymongo import ASCENDING, IndexModel


class FlowUnlock(Document):
    """A paid flow unlock; at most one per (user, flow)."""

    user_id: str
    flow_id: str
    transaction_id: str | None = None
    created_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "flow_unlocks"
        indexes = [
            IndexModel([("user_id", ASCENDING), ("flow_id", ASCENDING)], unique=True),
        ]
