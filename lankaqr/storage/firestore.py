from __future__ import annotations

import inspect
import json
import threading
from typing import Any, Dict, List, Optional

import firebase_admin
from firebase_admin import credentials, firestore_async
from google.cloud import firestore
from google.cloud.firestore_v1.base_query import FieldFilter

from lankaqr.config import Settings
from lankaqr.logging import get_logger
from lankaqr.storage.errors import StoreError
from lankaqr.storage.models import Document

logger = get_logger(__name__)

_init_lock = threading.Lock()


def init_firebase_admin(settings: Settings) -> firebase_admin.App:
    """Initialize the Firebase Admin SDK exactly once.

    Uses the ``FIREBASE_SERVICE_ACCOUNT`` JSON when present and parseable,
    otherwise Application Default Credentials.
    """
    if firebase_admin._apps:
        return firebase_admin.get_app()

    with _init_lock:
        if firebase_admin._apps:
            return firebase_admin.get_app()

        options: Dict[str, Any] = {}
        if settings.firebase_project_id:
            options["projectId"] = settings.firebase_project_id

        cred = None
        if settings.firebase_service_account:
            try:
                cred = credentials.Certificate(json.loads(settings.firebase_service_account))
            except (ValueError, TypeError) as exc:
                logger.warning(
                    "firebase_service_account_invalid",
                    error=str(exc),
                    message="falling back to application default credentials",
                )
        if cred is None:
            cred = credentials.ApplicationDefault()

        app = firebase_admin.initialize_app(cred, options or None)
        logger.info("firebase_admin_initialized", project_id=settings.firebase_project_id)
        return app


class FirestoreStore:
    """Document store backed by the async Firestore client."""

    def __init__(self, settings: Settings) -> None:
        app = init_firebase_admin(settings)
        self.client = firestore_async.client(app)

    def _collection(self, collection: str):
        return self.client.collection(*collection.strip("/").split("/"))

    async def get(self, collection: str, doc_id: str) -> Optional[Document]:
        snap = await self._collection(collection).document(doc_id).get()
        if not snap.exists:
            return None
        return Document(id=snap.id, data=snap.to_dict() or {})

    async def set(
        self, collection: str, doc_id: str, data: Dict[str, Any], *, merge: bool = False
    ) -> None:
        await self._collection(collection).document(doc_id).set(data, merge=merge)

    async def update(
        self, collection: str, doc_id: str, changes: Dict[str, Any]
    ) -> None:
        try:
            await self._collection(collection).document(doc_id).update(changes)
        except Exception as exc:
            raise StoreError(
                "document update failed",
                {"collection": collection, "doc_id": doc_id, "error": str(exc)},
            ) from exc

    async def delete(self, collection: str, doc_id: str) -> None:
        await self._collection(collection).document(doc_id).delete()

    async def find(
        self,
        collection: str,
        filters: Dict[str, Any],
        *,
        limit: Optional[int] = None,
    ) -> List[Document]:
        query = self._collection(collection)
        for key, value in filters.items():
            query = query.where(filter=FieldFilter(key, "==", value))
        if limit is not None:
            query = query.limit(limit)
        return [
            Document(id=snap.id, data=snap.to_dict() or {})
            async for snap in query.stream()
        ]

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
        ref = self._collection(collection).document(doc_id)

        @firestore.async_transactional
        async def _apply(transaction) -> bool:
            snap = await ref.get(transaction=transaction)
            if not snap.exists:
                return False
            data = snap.to_dict() or {}
            if any(data.get(key) != value for key, value in expected.items()):
                return False
            transaction.update(ref, changes)
            return True

        return await _apply(self.client.transaction())

    async def verify_connection(self) -> None:
        async for _ in self.client.collection("companies").limit(1).stream():
            break

    async def close(self) -> None:
        result = self.client.close()
        if inspect.isawaitable(result):
            await result
