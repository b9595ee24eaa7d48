from __future__ import annotations

import copy
import threading
from typing import Any, Dict, List, Optional

from lankaqr.logging import get_logger
from lankaqr.storage.errors import StoreError
from lankaqr.storage.models import Document


class MemoryStore:
    """In-memory document store for tests and local development.

    Documents are copied on the way in and out so callers never share
    mutable state with the store.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.collections: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._data_lock = threading.RLock()

    def _collection(self, collection: str) -> Dict[str, Dict[str, Any]]:
        return self.collections.setdefault(collection.strip("/"), {})

    async def get(self, collection: str, doc_id: str) -> Optional[Document]:
        with self._data_lock:
            data = self._collection(collection).get(doc_id)
            if data is None:
                return None
            return Document(id=doc_id, data=copy.deepcopy(data))

    async def set(
        self, collection: str, doc_id: str, data: Dict[str, Any], *, merge: bool = False
    ) -> None:
        with self._data_lock:
            docs = self._collection(collection)
            if merge and doc_id in docs:
                docs[doc_id].update(copy.deepcopy(data))
            else:
                docs[doc_id] = copy.deepcopy(data)

    async def update(
        self, collection: str, doc_id: str, changes: Dict[str, Any]
    ) -> None:
        with self._data_lock:
            docs = self._collection(collection)
            if doc_id not in docs:
                raise StoreError(
                    "document not found", {"collection": collection, "doc_id": doc_id}
                )
            docs[doc_id].update(copy.deepcopy(changes))

    async def delete(self, collection: str, doc_id: str) -> None:
        with self._data_lock:
            self._collection(collection).pop(doc_id, None)

    async def find(
        self,
        collection: str,
        filters: Dict[str, Any],
        *,
        limit: Optional[int] = None,
    ) -> List[Document]:
        with self._data_lock:
            matches = [
                Document(id=doc_id, data=copy.deepcopy(data))
                for doc_id, data in self._collection(collection).items()
                if all(data.get(key) == value for key, value in filters.items())
            ]
        if limit is not None:
            matches = matches[:limit]
        return matches

    async def find_one(
        self, collection: str, filters: Dict[str, Any]
    ) -> Optional[Document]:
        matches = await self.find(collection, filters, limit=1)
        return matches[0] if matches else None

    async def compare_and_update(
        self,
        collection: str,
        doc_id: str,
        expected: Dict[str, Any],
        changes: Dict[str, Any],
    ) -> bool:
        with self._data_lock:
            data = self._collection(collection).get(doc_id)
            if data is None:
                return False
            if any(data.get(key) != value for key, value in expected.items()):
                return False
            data.update(copy.deepcopy(changes))
            return True

    async def verify_connection(self) -> None:
        return None

    async def close(self) -> None:
        return None
