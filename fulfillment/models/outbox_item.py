from datetime import datetime
from typing import Any, Literal

from beanie import Document
from pydantic import Field

OutboxOperation = Literal["create", "update", "delete"]


class OutboxItem(Document):
    """Pending remote mutation; drained in insertion (_id) order."""
    collection: str
    doc_id: str
    operation: OutboxOperation
    payload: dict[str, Any] = Field(default_factory=dict)
    enqueued_at: datetime = Field(default_factory=datetime.utcnow)
    attempts: int = 0
    next_attempt_at: datetime = Field(default_factory=datetime.utcnow)
    last_error: str | None = None

    class Settings:
        name = "outbox"
        indexes = [[("collection", 1), ("doc_id", 1)]]
