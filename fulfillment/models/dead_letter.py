"""Dead-letter: outbox items that exhausted their retries, kept for inspection and replay."""

from datetime import datetime
from typing import Any

from beanie import Document
from pydantic import Field


class DeadLetter(Document):
    collection: str
    doc_id: str
    operation: str
    payload: dict[str, Any] = Field(default_factory=dict)
    enqueued_at: datetime
    attempts: int = 0
    reason: str = ""
    failed_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "outbox_dead_letters"
        indexes = [[("collection", 1)], [("failed_at", -1)]]
