from __future__ import annotations

from typing import Any, Iterable, Mapping, Optional

from lankaqr.storage.models import Role

FALLBACK_ROUTE = "/qr-registration"

# Top-level prefixes, matched exactly or as ``prefix/...``
PERMISSION_RULES: tuple[tuple[str, str], ...] = (
    ("/qr-registration", "qr-registration"),
    ("/generate-qr", "qr-registration"),
    ("/transactions", "transactions"),
    ("/summary", "summary"),
    ("/profile", "profile"),
    ("/settings", "settings"),
    ("/company", "company:branches"),
    ("/branch", "company:cashiers"),
)

# First path segments that are never a company slug
RESERVED_ROOT_SEGMENTS = frozenset(
    {
        "admin",
        "staff",
        "api",
        "signin",
        "signup",
        "reset-pin",
        "verify-customer",
        "docs",
        "public",
        "icons",
        "static",
        "overlay",
        "qr-registration",
        "generate-qr",
        "transactions",
        "summary",
        "profile",
        "settings",
        "company",
        "branch",
    }
)

CASHIER_PAGE_PERMISSIONS = {
    "qr-registration": "qr-registration",
    "generate-qr": "qr-registration",
    "transactions": "transactions",
    "summary": "summary",
    "profile": "profile",
    "settings": "settings",
}

DIRECT_PAGES = ("profile", "settings")


def _slug(context: Optional[Mapping[str, Any]], key: str) -> Optional[str]:
    if not context:
        return None
    value = context.get(key)
    return value if isinstance(value, str) and value else None


def get_default_route_for_role(
    role: Any, context: Optional[Mapping[str, Any]] = None
) -> str:
    """Canonical landing path for a role within its tenant context."""
    company = _slug(context, "companySlug")
    branch = _slug(context, "branchSlug")
    cashier = _slug(context, "cashierSlug")

    parsed = Role.parse(role)
    if parsed is Role.COMPANY_OWNER and company:
        return f"/{company}"
    if parsed is Role.BRANCH_MANAGER and company and branch:
        return f"/{company}/{branch}"
    if parsed is Role.CASHIER and company and branch and cashier:
        return f"/{company}/{branch}/{cashier}"
    return FALLBACK_ROUTE


def get_required_permission_for_path(pathname: str) -> Optional[str]:
    """Permission a path requires, or None when no permission applies.

    Top-level routes use an allow-list of prefixes. Tenant routes are parsed
    more permissively; their slugs are checked separately by the page guards.
    """
    for prefix, permission in PERMISSION_RULES:
        if pathname == prefix or pathname.startswith(prefix + "/"):
            return permission

    segments = [s for s in pathname.split("/") if s]
    if not segments:
        return None

    if len(segments) >= 2:
        second = segments[1]
        if second == "branches":
            return "company:branches"
        if second in DIRECT_PAGES:
            return second
    if len(segments) == 2:
        # Reserved root words are never a company slug
        if segments[0] in RESERVED_ROOT_SEGMENTS:
            return None
        return "company:cashiers"
    if len(segments) >= 3:
        third = segments[2]
        if third.startswith("cashier"):
            if len(segments) < 4:
                return "qr-registration"
            return CASHIER_PAGE_PERMISSIONS.get(segments[3], "qr-registration")
        if third in DIRECT_PAGES:
            return third
    return None


def has_permission(permissions: Optional[Iterable[str]], pathname: str) -> bool:
    """Whether a holder of ``permissions`` may view ``pathname``."""
    required = get_required_permission_for_path(pathname)
    if required is None:
        return True
    return required in set(permissions or ())
