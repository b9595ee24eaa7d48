from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


def now_ms() -> int:
    return int(time.time() * 1000)


class Role(str, Enum):
    INDIVIDUAL = "individual"
    COMPANY_OWNER = "company-owner"
    BRANCH_MANAGER = "branch-manager"
    CASHIER = "cashier"

    @classmethod
    def parse(cls, value: Any) -> Optional["Role"]:
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError:
            return None


@dataclass
class Document:
    """A stored document: its id within the collection plus its fields."""

    id: str
    data: Dict[str, Any]


@dataclass
class SessionRecord:
    id: str
    principal_id: str
    created_at: float
    expires_at_ms: int

    def is_expired(self, at_ms: Optional[int] = None) -> bool:
        return self.expires_at_ms < (at_ms if at_ms is not None else now_ms())


@dataclass
class Principal:
    """An authenticated admin or staff member resolved from a session."""

    id: str
    kind: str
    email: Optional[str] = None
    name: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_document(cls, kind: str, doc: Document) -> "Principal":
        return cls(
            id=doc.id,
            kind=kind,
            email=doc.data.get("email"),
            name=doc.data.get("name"),
            data=dict(doc.data),
        )


@dataclass
class InviteRecord:
    id: str
    email: str
    token_hash: str
    expires_at_ms: int
    used: bool = False
    name: str = ""
    meta: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_document(cls, doc: Document) -> "InviteRecord":
        known = {"email", "tokenHash", "expires_at_ms", "used", "name", "created_at", "used_at"}
        return cls(
            id=doc.id,
            email=str(doc.data.get("email") or "").strip().lower(),
            token_hash=str(doc.data.get("tokenHash") or ""),
            expires_at_ms=int(doc.data.get("expires_at_ms") or 0),
            used=doc.data.get("used") is True,
            name=str(doc.data.get("name") or ""),
            meta={k: v for k, v in doc.data.items() if k not in known},
        )


@dataclass
class Company:
    id: str
    slug: str
    name: str = ""
    owner_uid: Optional[str] = None

    @classmethod
    def from_document(cls, doc: Document) -> "Company":
        return cls(
            id=doc.id,
            slug=str(doc.data.get("slug") or ""),
            name=str(doc.data.get("name") or ""),
            owner_uid=doc.data.get("ownerUid"),
        )


@dataclass
class Branch:
    id: str
    company_id: str
    slug: str
    name: str = ""
    manager_uid: Optional[str] = None

    @classmethod
    def from_document(cls, company_id: str, doc: Document) -> "Branch":
        return cls(
            id=doc.id,
            company_id=company_id,
            slug=str(doc.data.get("slug") or ""),
            name=str(doc.data.get("name") or ""),
            manager_uid=doc.data.get("managerUid"),
        )


@dataclass
class Cashier:
    id: str
    company_id: str
    branch_id: str
    slug: str
    name: str = ""
    status: Optional[str] = None

    @classmethod
    def from_document(cls, company_id: str, branch_id: str, doc: Document) -> "Cashier":
        return cls(
            id=doc.id,
            company_id=company_id,
            branch_id=branch_id,
            slug=str(doc.data.get("slug") or doc.data.get("username") or ""),
            name=str(doc.data.get("name") or doc.data.get("displayName") or ""),
            status=doc.data.get("status"),
        )


# Scalar claims copied forward whenever claims are re-issued
CLAIM_SCALAR_FIELDS = (
    "role",
    "accountType",
    "companyId",
    "companySlug",
    "branchId",
    "branchSlug",
    "cashierSlug",
)


@dataclass
class IdentityClaims:
    """Decoded identity-provider session claims relevant to authorization."""

    uid: str
    email: Optional[str] = None
    role: Optional[str] = None
    account_type: Optional[str] = None
    company_id: Optional[str] = None
    company_slug: Optional[str] = None
    branch_id: Optional[str] = None
    branch_slug: Optional[str] = None
    cashier_slug: Optional[str] = None
    permissions: List[str] = field(default_factory=list)
    raw: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_decoded(cls, decoded: Dict[str, Any]) -> "IdentityClaims":
        raw_permissions = decoded.get("permissions")
        permissions = (
            [p for p in raw_permissions if isinstance(p, str)]
            if isinstance(raw_permissions, list)
            else []
        )
        return cls(
            uid=str(decoded.get("uid") or decoded.get("sub") or ""),
            email=decoded.get("email"),
            role=decoded.get("role"),
            account_type=decoded.get("accountType"),
            company_id=decoded.get("companyId"),
            company_slug=decoded.get("companySlug"),
            branch_id=decoded.get("branchId"),
            branch_slug=decoded.get("branchSlug"),
            cashier_slug=decoded.get("cashierSlug"),
            permissions=permissions,
            raw=dict(decoded),
        )

    def scalar_claims(self) -> Dict[str, Any]:
        return {
            key: self.raw[key]
            for key in CLAIM_SCALAR_FIELDS
            if self.raw.get(key) is not None
        }

    def slug_context(self) -> Dict[str, Optional[str]]:
        return {
            "companySlug": self.company_slug,
            "branchSlug": self.branch_slug,
            "cashierSlug": self.cashier_slug,
        }
