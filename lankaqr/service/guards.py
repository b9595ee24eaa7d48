from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

from lankaqr.logging import get_logger
from lankaqr.service.routing import get_default_route_for_role
from lankaqr.storage.models import Branch, Cashier, Company, IdentityClaims, Role
from lankaqr.storage.tenants import TenantDirectory

logger = get_logger(__name__)

SIGNIN_PATH = "/signin"


@dataclass
class PageContext:
    """What a tenant page is allowed to render for the signed-in user."""

    uid: str
    role: str
    base_path: str
    page: Optional[str]
    company: Company
    branch: Optional[Branch] = None
    cashier: Optional[Cashier] = None
    permissions: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "uid": self.uid,
            "role": self.role,
            "basePath": self.base_path,
            "page": self.page,
            "permissions": list(self.permissions),
            "company": {"id": self.company.id, "slug": self.company.slug, "name": self.company.name},
        }
        if self.branch is not None:
            data["branch"] = {"id": self.branch.id, "slug": self.branch.slug, "name": self.branch.name}
        if self.cashier is not None:
            data["cashier"] = {
                "id": self.cashier.id,
                "slug": self.cashier.slug,
                "name": self.cashier.name,
                "status": self.cashier.status,
            }
        return data


@dataclass(frozen=True)
class Allow:
    context: PageContext


@dataclass(frozen=True)
class Redirect:
    location: str


@dataclass(frozen=True)
class Deny:
    reason: str
    status_code: int = 403


GuardResult = Union[Allow, Redirect, Deny]


def _with_page(base: str, page: Optional[str]) -> str:
    return f"{base}/{page}" if page else base


def _role_gate(
    claims: IdentityClaims, role: Role, slug_keys: tuple[str, ...]
) -> Optional[GuardResult]:
    if Role.parse(claims.role) is not role:
        return Redirect(SIGNIN_PATH)
    context = claims.slug_context()
    if not all(context.get(key) for key in slug_keys):
        return Redirect(get_default_route_for_role(claims.role, context))
    return None


def _finish(
    claims: IdentityClaims,
    canonical_base: str,
    requested_base: str,
    page: Optional[str],
    context: PageContext,
) -> GuardResult:
    if requested_base != canonical_base:
        logger.info(
            "tenant_slug_redirect",
            uid=claims.uid,
            requested=requested_base,
            canonical=canonical_base,
        )
        return Redirect(_with_page(canonical_base, page))
    return Allow(context)


async def guard_company(
    claims: Optional[IdentityClaims],
    tenants: TenantDirectory,
    company_slug: str,
    page: Optional[str] = None,
) -> GuardResult:
    """Company-owner pages under ``/{companySlug}``."""
    if claims is None:
        return Redirect(SIGNIN_PATH)
    gate = _role_gate(claims, Role.COMPANY_OWNER, ("companySlug",))
    if gate is not None:
        return gate

    company = await tenants.company_by_slug(claims.company_slug)
    if company is None:
        return Deny("Company not found", 404)
    if (claims.company_id and company.id != claims.company_id) or company.owner_uid != claims.uid:
        logger.warning("tenant_claim_mismatch", uid=claims.uid, company_id=company.id)
        return Redirect(SIGNIN_PATH)

    canonical = f"/{company.slug}"
    return _finish(
        claims,
        canonical,
        f"/{company_slug}",
        page,
        PageContext(
            uid=claims.uid,
            role=claims.role,
            base_path=canonical,
            page=page,
            company=company,
            permissions=claims.permissions,
        ),
    )


async def guard_branch(
    claims: Optional[IdentityClaims],
    tenants: TenantDirectory,
    company_slug: str,
    branch_slug: str,
    page: Optional[str] = None,
) -> GuardResult:
    """Branch-manager pages under ``/{companySlug}/{branchSlug}``."""
    if claims is None:
        return Redirect(SIGNIN_PATH)
    gate = _role_gate(claims, Role.BRANCH_MANAGER, ("companySlug", "branchSlug"))
    if gate is not None:
        return gate

    company = await tenants.company_by_slug(claims.company_slug)
    if company is None:
        return Deny("Company not found", 404)
    branch = await tenants.branch_by_slug(company.id, claims.branch_slug)
    if branch is None:
        return Deny("Branch not found", 404)
    if company.id != claims.company_id or branch.id != claims.branch_id:
        logger.warning(
            "tenant_claim_mismatch",
            uid=claims.uid,
            company_id=company.id,
            branch_id=branch.id,
        )
        return Redirect(SIGNIN_PATH)

    canonical = f"/{company.slug}/{branch.slug}"
    return _finish(
        claims,
        canonical,
        f"/{company_slug}/{branch_slug}",
        page,
        PageContext(
            uid=claims.uid,
            role=claims.role,
            base_path=canonical,
            page=page,
            company=company,
            branch=branch,
            permissions=claims.permissions,
        ),
    )


async def guard_cashier(
    claims: Optional[IdentityClaims],
    tenants: TenantDirectory,
    company_slug: str,
    branch_slug: str,
    cashier_slug: str,
    page: Optional[str] = None,
) -> GuardResult:
    """Cashier pages under ``/{companySlug}/{branchSlug}/{cashierSlug}``."""
    if claims is None:
        return Redirect(SIGNIN_PATH)
    gate = _role_gate(claims, Role.CASHIER, ("companySlug", "branchSlug", "cashierSlug"))
    if gate is not None:
        return gate

    company = await tenants.company_by_slug(claims.company_slug)
    if company is None:
        return Deny("Company not found", 404)
    branch = await tenants.branch_by_slug(company.id, claims.branch_slug)
    if branch is None:
        return Deny("Branch not found", 404)
    cashier = await tenants.cashier_by_slug(company.id, branch.id, claims.cashier_slug)
    if cashier is None:
        return Deny("Cashier not found", 404)
    if company.id != claims.company_id or branch.id != claims.branch_id:
        logger.warning(
            "tenant_claim_mismatch",
            uid=claims.uid,
            company_id=company.id,
            branch_id=branch.id,
        )
        return Redirect(SIGNIN_PATH)

    canonical = f"/{company.slug}/{branch.slug}/{cashier.slug}"
    return _finish(
        claims,
        canonical,
        f"/{company_slug}/{branch_slug}/{cashier_slug}",
        page,
        PageContext(
            uid=claims.uid,
            role=claims.role,
            base_path=canonical,
            page=page,
            company=company,
            branch=branch,
            cashier=cashier,
            permissions=claims.permissions,
        ),
    )
