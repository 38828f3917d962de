import copy
from typing import Any

from fulfillment.remote.base import RemoteStore


class InMemoryRemoteStore(RemoteStore):
    """Process-local stand-in for the remote store (development and tests)."""

    def __init__(self, documents: dict[str, dict[str, dict[str, Any]]] | None = None) -> None:
        self.documents: dict[str, dict[str, dict[str, Any]]] = copy.deepcopy(documents or {})

    async def set_merge(self, collection: str, doc_id: str, data: dict[str, Any]) -> None:
        doc = self.documents.setdefault(collection, {}).setdefault(doc_id, {})
        doc.update(copy.deepcopy(data))

    async def delete(self, collection: str, doc_id: str) -> None:
        self.documents.get(collection, {}).pop(doc_id, None)

    async def list_documents(self, collection: str) -> list[tuple[str, dict[str, Any]]]:
        return [(doc_id, copy.deepcopy(data)) for doc_id, data in self.documents.get(collection, {}).items()]

    def get(self, collection: str, doc_id: str) -> dict[str, Any] | None:
        return self.documents.get(collection, {}).get(doc_id)
