from __future__ import annotations

from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Optional

from lankaqr.logging import get_logger
from lankaqr.storage.models import IdentityClaims, Role

if TYPE_CHECKING:
    from lankaqr.service.identity import IdentityProvider

logger = get_logger(__name__)

ROLE_DEFAULT_PERMISSIONS: Dict[Role, tuple[str, ...]] = {
    Role.INDIVIDUAL: (
        "qr-registration",
        "transactions",
        "summary",
        "profile",
        "settings",
    ),
    Role.COMPANY_OWNER: (
        "company:dashboard",
        "company:branches",
        "company:cashiers",
        "transactions",
        "summary",
        "profile",
        "settings",
    ),
    Role.BRANCH_MANAGER: (
        "company:cashiers",
        "transactions",
        "summary",
        "profile",
        "settings",
    ),
    Role.CASHIER: (
        "qr-registration",
        "transactions",
        "summary",
    ),
}


def default_permissions(role: Any) -> List[str]:
    parsed = Role.parse(role)
    if parsed is None:
        return []
    return list(ROLE_DEFAULT_PERMISSIONS[parsed])


def with_role_defaults(role: Any, existing: Optional[Iterable[str]] = None) -> List[str]:
    """Union of ``existing`` and the role's default permissions.

    Existing entries keep their order and come first; defaults are appended.
    Unknown or missing roles return ``existing`` unchanged (deduplicated).
    """
    merged: List[str] = []
    seen: set[str] = set()
    for perm in list(existing or []) + default_permissions(role):
        if not isinstance(perm, str) or perm in seen:
            continue
        seen.add(perm)
        merged.append(perm)
    return merged


def permissions_differ(current: Iterable[str], merged: Iterable[str]) -> bool:
    return set(current) != set(merged)


async def ensure_claims_permissions(
    provider: "IdentityProvider",
    decoded: Dict[str, Any],
    merged: List[str],
) -> bool:
    """Re-issue custom claims when the token's permissions lag the merged set.

    Every scalar claim already present on the token is carried over; only
    ``permissions`` changes. Returns True when claims were re-issued.
    Since ``merged`` always contains the token's own permissions, this can
    only ever add permissions.
    """
    raw = decoded.get("permissions")
    current = [p for p in raw if isinstance(p, str)] if isinstance(raw, list) else []
    if not permissions_differ(current, merged):
        return False

    uid = decoded.get("uid") or decoded.get("sub")
    if not uid:
        return False

    claims = IdentityClaims.from_decoded(decoded).scalar_claims()
    claims["permissions"] = list(merged)
    await provider.set_claims(uid, claims)
    logger.info(
        "claims_permissions_upgraded",
        uid=uid,
        role=decoded.get("role"),
        added=sorted(set(merged) - set(current)),
    )
    return True
