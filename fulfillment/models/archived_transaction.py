from datetime import datetime
from typing import Any

from beanie import Document
from pydantic import Field


class ArchivedTransaction(Document):
    """Completed transaction moved out of the hot collection by the retention sweeper."""
    id: str
    uid: str
    amount: int
    created_at: datetime
    snapshot: dict[str, Any] = Field(default_factory=dict)
    archived_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "transactions_archive"
        indexes = [[("uid", 1), ("created_at", -1)]]
