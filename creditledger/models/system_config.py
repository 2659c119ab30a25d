from datetime import datetime
from typing import Any

from beanie import Document, Indexed
from pydantic import Field


class SystemConfig(Document):
    """Mutable key/value records owned by operators (e.g. `referralProgram`)."""

    key: Indexed(str, unique=True)
    value: dict[str, Any] = Field(default_factory=dict)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "system_config"
