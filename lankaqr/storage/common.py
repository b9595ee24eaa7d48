from __future__ import annotations

from typing import Any, Dict, List, Optional, Protocol

from lankaqr.storage.models import Document

# Collection names shared by the services
ADMINS = "admins"
STAFF = "staff"
USERS = "users"
COMPANIES = "companies"
ADMIN_SESSIONS = "admin_sessions"
STAFF_SESSIONS = "staff_sessions"
ADMIN_INVITES = "admin_invites"
STAFF_INVITES = "staff_invites"
BRANCH_MANAGER_INVITES = "branch_manager_invites"
CASHIER_INVITES = "cashier_invites"
EMAIL_OTPS = "email_otps"


def branches_path(company_id: str) -> str:
    return f"{COMPANIES}/{company_id}/branches"


def cashiers_path(company_id: str, branch_id: str) -> str:
    return f"{branches_path(company_id)}/{branch_id}/cashiers"


class DocumentStore(Protocol):
    """Async document store keyed by slash-separated collection paths.

    ``delete`` is idempotent. ``update`` raises ``StoreError`` when the
    document does not exist. ``find`` matches documents whose fields equal
    every filter value.
    """

    async def get(self, collection: str, doc_id: str) -> Optional[Document]: ...

    async def set(
        self, collection: str, doc_id: str, data: Dict[str, Any], *, merge: bool = False
    ) -> None: ...

    async def update(
        self, collection: str, doc_id: str, changes: Dict[str, Any]
    ) -> None: ...

    async def delete(self, collection: str, doc_id: str) -> None: ...

    async def find(
        self,
        collection: str,
        filters: Dict[str, Any],
        *,
        limit: Optional[int] = None,
    ) -> List[Document]: ...

    async def compare_and_update(
        self,
        collection: str,
        doc_id: str,
        expected: Dict[str, Any],
        changes: Dict[str, Any],
    ) -> bool:
        """Apply ``changes`` only if the current fields equal ``expected``."""
        ...

    async def find_one(
        self, collection: str, filters: Dict[str, Any]
    ) -> Optional[Document]: ...

    async def verify_connection(self) -> None: ...

    async def close(self) -> None: ...


__all__ = [
    "DocumentStore",
    "ADMINS",
    "STAFF",
    "USERS",
    "COMPANIES",
    "ADMIN_SESSIONS",
    "STAFF_SESSIONS",
    "ADMIN_INVITES",
    "STAFF_INVITES",
    "BRANCH_MANAGER_INVITES",
    "CASHIER_INVITES",
    "EMAIL_OTPS",
    "branches_path",
    "cashiers_path",
]
