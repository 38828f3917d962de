from typing import Any

from google.api_core.exceptions import GoogleAPICallError, RetryError
from google.cloud import firestore

from fulfillment.core.config import get_settings
from fulfillment.core.exceptions import SyncError
from fulfillment.remote.base import RemoteStore


class FirestoreRemoteStore(RemoteStore):
    def __init__(self) -> None:
        settings = get_settings()
        self._client = firestore.AsyncClient(project=settings.firestore_project)

    async def set_merge(self, collection: str, doc_id: str, data: dict[str, Any]) -> None:
        try:
            await self._client.collection(collection).document(doc_id).set(data, merge=True)
        except (GoogleAPICallError, RetryError) as e:
            raise SyncError(f"Firestore write failed for {collection}/{doc_id}: {e}") from e

    async def delete(self, collection: str, doc_id: str) -> None:
        try:
            await self._client.collection(collection).document(doc_id).delete()
        except (GoogleAPICallError, RetryError) as e:
            raise SyncError(f"Firestore delete failed for {collection}/{doc_id}: {e}") from e

    async def list_documents(self, collection: str) -> list[tuple[str, dict[str, Any]]]:
        out: list[tuple[str, dict[str, Any]]] = []
        try:
            async for snap in self._client.collection(collection).stream():
                out.append((snap.id, snap.to_dict() or {}))
        except (GoogleAPICallError, RetryError) as e:
            raise SyncError(f"Firestore read failed for {collection}: {e}") from e
        return out
