from abc import ABC, abstractmethod
from typing import Any

from fulfillment.core.config import get_settings


class RemoteStore(ABC):
    """Remote durable document store the outbox drains into."""

    @abstractmethod
    async def set_merge(self, collection: str, doc_id: str, data: dict[str, Any]) -> None:
        """Upsert document, merging fields into any existing copy. Raises SyncError."""
        ...

    @abstractmethod
    async def delete(self, collection: str, doc_id: str) -> None:
        """Delete document if present. Raises SyncError."""
        ...

    @abstractmethod
    async def list_documents(self, collection: str) -> list[tuple[str, dict[str, Any]]]:
        """Bulk read of a collection as (doc_id, data) pairs, for hydration."""
        ...


def get_remote_store() -> RemoteStore | None:
    settings = get_settings()
    if settings.remote_store == "firestore":
        from fulfillment.remote.firestore import FirestoreRemoteStore
        return FirestoreRemoteStore()
    if settings.remote_store == "memory":
        from fulfillment.remote.memory import InMemoryRemoteStore
        return InMemoryRemoteStore()
    return None
