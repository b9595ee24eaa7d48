from __future__ import annotations

from typing import Optional
from urllib.parse import quote

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse, RedirectResponse

from lankaqr.api.error_handling import error_response
from lankaqr.logging import get_logger
from lankaqr.service.access import PROTECTED_PREFIXES
from lankaqr.service.errors import NotFoundError
from lankaqr.service.guards import (
    Allow,
    Deny,
    GuardResult,
    Redirect,
    SIGNIN_PATH,
    guard_branch,
    guard_cashier,
    guard_company,
)
from lankaqr.service.identity import SESSION_COOKIE
from lankaqr.service.routing import (
    RESERVED_ROOT_SEGMENTS,
    get_default_route_for_role,
    has_permission,
)
from lankaqr.service.runtime import get_runtime
from lankaqr.storage.models import IdentityClaims, Role

logger = get_logger(__name__)

router = APIRouter(tags=["pages"])

APP_PAGES = frozenset(prefix.lstrip("/") for prefix in PROTECTED_PREFIXES)


def render(result: GuardResult):
    """Translate a guard result into the HTTP response."""
    if isinstance(result, Allow):
        return JSONResponse({"ok": True, "page": result.context.to_dict()})
    if isinstance(result, Redirect):
        return RedirectResponse(result.location, status_code=307)
    if isinstance(result, Deny):
        return error_response(result.status_code, result.reason)
    raise TypeError(f"unexpected guard result {result!r}")


async def _claims(request: Request) -> Optional[IdentityClaims]:
    runtime = get_runtime()
    return await runtime.identity.try_resolve_claims(request.cookies.get(SESSION_COOKIE))


def _role_home(claims: Optional[IdentityClaims]) -> Redirect:
    if claims is None:
        return Redirect(SIGNIN_PATH)
    return Redirect(get_default_route_for_role(claims.role, claims.slug_context()))


def _check_tenant_root(segment: str) -> None:
    if segment in RESERVED_ROOT_SEGMENTS:
        raise NotFoundError("Not found")


async def _app_page(request: Request, page: str, claims: Optional[IdentityClaims]):
    """Top-level pages such as ``/transactions``: any signed-in role with the permission."""
    if claims is None:
        return render(Redirect(f"{SIGNIN_PATH}?from={quote(request.url.path, safe='')}"))
    if not has_permission(claims.permissions, request.url.path):
        home = _role_home(claims)
        if home.location == request.url.path:
            return render(Deny("Forbidden", 403))
        return render(home)
    return JSONResponse(
        {
            "ok": True,
            "page": {
                "uid": claims.uid,
                "role": claims.role,
                "page": page,
                "permissions": claims.permissions,
            },
        }
    )


def _set_pin_page(role: Role, **slugs: str):
    """Invite landing pages; the invite token in the query string is the credential."""
    _check_tenant_root(slugs["companySlug"])
    return JSONResponse({"ok": True, "page": {"page": "set-pin", "role": role.value, **slugs}})


@router.get("/{company}/{branch}/set-pin")
async def branch_manager_set_pin_page(company: str, branch: str):
    return _set_pin_page(Role.BRANCH_MANAGER, companySlug=company, branchSlug=branch)


@router.get("/{company}/{branch}/{cashier}/set-pin")
async def cashier_set_pin_page(company: str, branch: str, cashier: str):
    return _set_pin_page(
        Role.CASHIER, companySlug=company, branchSlug=branch, cashierSlug=cashier
    )


@router.get("/{first}")
async def first_level(first: str, request: Request):
    claims = await _claims(request)
    if first in APP_PAGES:
        return await _app_page(request, first, claims)
    _check_tenant_root(first)
    role = Role.parse(claims.role) if claims else None
    if role is Role.COMPANY_OWNER:
        return render(await guard_company(claims, get_runtime().tenants, first))
    return render(_role_home(claims))


@router.get("/{first}/{second}")
async def second_level(first: str, second: str, request: Request):
    claims = await _claims(request)
    if first in APP_PAGES:
        return await _app_page(request, f"{first}/{second}", claims)
    _check_tenant_root(first)
    tenants = get_runtime().tenants
    role = Role.parse(claims.role) if claims else None
    if role is Role.COMPANY_OWNER:
        return render(await guard_company(claims, tenants, first, page=second))
    if role is Role.BRANCH_MANAGER:
        return render(await guard_branch(claims, tenants, first, second))
    return render(_role_home(claims))


@router.get("/{first}/{second}/{third}")
async def third_level(first: str, second: str, third: str, request: Request):
    claims = await _claims(request)
    _check_tenant_root(first)
    tenants = get_runtime().tenants
    role = Role.parse(claims.role) if claims else None
    if role is Role.BRANCH_MANAGER:
        return render(await guard_branch(claims, tenants, first, second, page=third))
    if role is Role.CASHIER:
        return render(await guard_cashier(claims, tenants, first, second, third))
    return render(_role_home(claims))


@router.get("/{first}/{second}/{third}/{page}")
async def fourth_level(first: str, second: str, third: str, page: str, request: Request):
    claims = await _claims(request)
    _check_tenant_root(first)
    role = Role.parse(claims.role) if claims else None
    if role is Role.CASHIER:
        return render(
            await guard_cashier(claims, get_runtime().tenants, first, second, third, page=page)
        )
    return render(_role_home(claims))
