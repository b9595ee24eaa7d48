from __future__ import annotations

import asyncio
import secrets
import time
from dataclasses import dataclass
from typing import Optional

from lankaqr.logging import get_logger
from lankaqr.service.tasks import CleanupQueue
from lankaqr.storage.common import (
    ADMIN_INVITES,
    ADMIN_SESSIONS,
    ADMINS,
    STAFF,
    STAFF_INVITES,
    STAFF_SESSIONS,
    DocumentStore,
)
from lankaqr.storage.models import Principal, SessionRecord, now_ms

logger = get_logger(__name__)

SESSION_ID_BYTES = 32


@dataclass(frozen=True)
class OperatorRole:
    """Collections, cookie and policy for one back-office role."""

    key: str
    principals_collection: str
    sessions_collection: str
    invites_collection: str
    principal_field: str
    cookie_name: str
    set_password_path: str
    signin_path: str
    single_session: bool
    # Expired invites are deleted on use unless kept for audit
    delete_expired_invites: bool


OPERATOR_ROLES: dict[str, OperatorRole] = {
    "admin": OperatorRole(
        key="admin",
        principals_collection=ADMINS,
        sessions_collection=ADMIN_SESSIONS,
        invites_collection=ADMIN_INVITES,
        principal_field="adminId",
        cookie_name="admin_session",
        set_password_path="/admin/set-password",
        signin_path="/admin/signin",
        single_session=True,
        delete_expired_invites=False,
    ),
    "staff": OperatorRole(
        key="staff",
        principals_collection=STAFF,
        sessions_collection=STAFF_SESSIONS,
        invites_collection=STAFF_INVITES,
        principal_field="staffId",
        cookie_name="staff_session",
        set_password_path="/staff/set-password",
        signin_path="/staff/signin",
        single_session=False,
        delete_expired_invites=True,
    ),
}


def get_operator_role(key: Optional[str]) -> Optional[OperatorRole]:
    return OPERATOR_ROLES.get(key or "")


def new_session_id() -> str:
    """256 bits of randomness, hex encoded; only ever stored as an opaque cookie."""
    return secrets.token_hex(SESSION_ID_BYTES)


class OperatorSessionStore:
    """Opaque-token sessions for one operator role, persisted in the document store."""

    def __init__(
        self,
        store: DocumentStore,
        role: OperatorRole,
        *,
        cleanup: CleanupQueue,
        ttl_seconds: int = 8 * 60 * 60,
    ) -> None:
        self.store = store
        self.role = role
        self.cleanup = cleanup
        self.ttl_seconds = ttl_seconds

    async def create(self, principal_id: str, ttl_seconds: Optional[int] = None) -> SessionRecord:
        if self.role.single_session:
            await self._supersede(principal_id)
        ttl = ttl_seconds if ttl_seconds is not None else self.ttl_seconds
        record = SessionRecord(
            id=new_session_id(),
            principal_id=principal_id,
            created_at=time.time(),
            expires_at_ms=now_ms() + ttl * 1000,
        )
        await self.store.set(
            self.role.sessions_collection,
            record.id,
            {
                self.role.principal_field: principal_id,
                "created_at": record.created_at,
                "expires_at_ms": record.expires_at_ms,
            },
        )
        logger.info(
            "operator_session_created",
            role=self.role.key,
            principal_id=principal_id,
            expires_at_ms=record.expires_at_ms,
        )
        return record

    async def _supersede(self, principal_id: str) -> None:
        """Queue deletion of every existing session of the principal.

        Best effort: concurrent sign-ins can both create a session; the next
        sign-in's cleanup removes the survivor.
        """
        try:
            existing = await self.store.find(
                self.role.sessions_collection,
                {self.role.principal_field: principal_id},
            )
        except Exception as exc:
            logger.warning(
                "operator_session_supersede_lookup_failed",
                role=self.role.key,
                principal_id=principal_id,
                error=str(exc),
            )
            return
        if not existing:
            return
        stale_ids = [doc.id for doc in existing]
        collection = self.role.sessions_collection

        async def _delete_all() -> None:
            await asyncio.gather(*(self.store.delete(collection, sid) for sid in stale_ids))
            logger.info(
                "operator_sessions_superseded",
                role=self.role.key,
                principal_id=principal_id,
                count=len(stale_ids),
            )

        self.cleanup.schedule(f"{self.role.key}_session_supersede", _delete_all)

    async def get_record(self, session_id: Optional[str]) -> Optional[SessionRecord]:
        if not session_id:
            return None
        doc = await self.store.get(self.role.sessions_collection, session_id)
        if doc is None:
            return None
        principal_id = doc.data.get(self.role.principal_field)
        return SessionRecord(
            id=doc.id,
            principal_id=str(principal_id or ""),
            created_at=doc.data.get("created_at") or 0,
            expires_at_ms=int(doc.data.get("expires_at_ms") or 0),
        )

    async def resolve(self, session_id: Optional[str]) -> Optional[Principal]:
        """Return the principal behind a session id, or None.

        Never raises: store failures resolve to None so a broken backend
        can only ever produce an unauthenticated request.
        """
        if not session_id:
            return None
        try:
            record = await self.get_record(session_id)
            if record is None:
                return None
            if record.is_expired():
                await self._drop_expired(record)
                return None
            if not record.principal_id:
                return None
            doc = await self.store.get(self.role.principals_collection, record.principal_id)
            if doc is None:
                return None
            return Principal.from_document(self.role.key, doc)
        except Exception as exc:
            logger.error(
                "operator_session_resolve_failed",
                role=self.role.key,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return None

    async def _drop_expired(self, record: SessionRecord) -> None:
        try:
            await self.store.delete(self.role.sessions_collection, record.id)
        except Exception as exc:
            logger.warning(
                "expired_session_delete_failed",
                role=self.role.key,
                error=str(exc),
            )

    async def destroy(self, session_id: Optional[str]) -> None:
        if not session_id:
            return
        await self.store.delete(self.role.sessions_collection, session_id)
