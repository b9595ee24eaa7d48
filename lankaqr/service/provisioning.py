"""Tenant provisioning: merchant onboarding, branches, branch managers, cashiers.

Every operation writes the ``users`` record and tenant documents first and
then creates the auth user and sets its custom claims. Issued claims always
carry the tenant slugs the page guards resolve. Staff added without a PIN
get a disabled auth user plus an emailed set-pin invite; the PIN setup flow
enables them.
"""

from __future__ import annotations

import asyncio
import re
import time
import uuid
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
from urllib.parse import quote

from lankaqr.logging import get_logger, redact_email
from lankaqr.service.access import PUBLIC_ROOT_SEGMENTS
from lankaqr.service.claims import default_permissions
from lankaqr.service.credentials import ARGON2_ALGO, CredentialHasher
from lankaqr.service.email import EmailService
from lankaqr.service.errors import (
    InvalidSession,
    MissingContext,
    NotAuthorized,
    NotFoundError,
    ServerError,
    ValidationError,
)
from lankaqr.service.identity import IdentityBridge
from lankaqr.service.invites import InviteService, normalize_email, require_email, require_pin
from lankaqr.service.routing import RESERVED_ROOT_SEGMENTS
from lankaqr.storage.common import (
    BRANCH_MANAGER_INVITES,
    CASHIER_INVITES,
    COMPANIES,
    USERS,
    DocumentStore,
    branches_path,
    cashiers_path,
)
from lankaqr.storage.models import Document, IdentityClaims, Role
from lankaqr.storage.tenants import TenantDirectory

logger = get_logger(__name__)

SLUG_SEPARATORS = re.compile(r"[^a-z0-9]+")
# Company slugs sit at the URL root, so they cannot shadow app or auth pages
UNAVAILABLE_COMPANY_SLUGS = RESERVED_ROOT_SEGMENTS | PUBLIC_ROOT_SEGMENTS
CASHIER_NUMBER_ATTEMPTS = 5


def slugify(value: str) -> str:
    return SLUG_SEPARATORS.sub("-", value.lower()).strip("-")


def _text(value: Any) -> str:
    return str(value or "").strip()


@dataclass
class MerchantProfile:
    """KYC details captured when a signed-in user becomes a merchant."""

    display_name: str
    nic: str
    business_registration_number: str
    address: str
    email: Optional[str] = None
    phone: Optional[str] = None

    @classmethod
    def from_fields(cls, kyc: Dict[str, Any], contact: Dict[str, Any]) -> "MerchantProfile":
        profile = cls(
            display_name=_text(kyc.get("displayName")),
            nic=_text(kyc.get("nic")),
            business_registration_number=_text(kyc.get("businessReg")),
            address=_text(kyc.get("address")),
            email=normalize_email(contact.get("email")) or None,
            phone=_text(contact.get("phone") or contact.get("whatsappNumber")) or None,
        )
        if not all(
            (profile.display_name, profile.nic, profile.business_registration_number, profile.address)
        ):
            raise ValidationError("Missing required profile fields")
        return profile

    def to_fields(self) -> Dict[str, Any]:
        return {
            "displayName": self.display_name,
            "nic": self.nic,
            "businessRegistrationNumber": self.business_registration_number,
            "address": self.address,
            "email": self.email,
            "phone": self.phone,
        }


def _require_claims(claims: Optional[IdentityClaims]) -> IdentityClaims:
    if claims is None:
        raise InvalidSession("Not authenticated")
    return claims


class TenantProvisioning:
    """Creates merchants and staffs their branches on behalf of signed-in users."""

    def __init__(
        self,
        store: DocumentStore,
        identity: IdentityBridge,
        invites: InviteService,
        hasher: CredentialHasher,
        email: EmailService,
        tenants: TenantDirectory,
        *,
        app_origin: str,
        login_domain: str = "lqr.internal",
    ) -> None:
        self.store = store
        self.identity = identity
        self.invites = invites
        self.hasher = hasher
        self.email = email
        self.tenants = tenants
        self.app_origin = app_origin.rstrip("/")
        self.login_domain = login_domain

    def _login_email(self, username: str) -> str:
        return f"{username}@{self.login_domain}"

    def _company_scope(self, claims: Optional[IdentityClaims], *roles: Role) -> IdentityClaims:
        claims = _require_claims(claims)
        if Role.parse(claims.role) not in roles:
            logger.warning("provisioning_forbidden", uid=claims.uid, role=claims.role)
            raise NotAuthorized("Not authorized")
        if not claims.company_id:
            raise MissingContext("Missing company context")
        return claims

    async def _company(self, company_id: str) -> Document:
        doc = await self.store.get(COMPANIES, company_id)
        if doc is None:
            raise NotFoundError("Company not found")
        return doc

    async def _branch(self, company_id: str, branch_id: Any) -> Document:
        if not _text(branch_id):
            raise ValidationError("branchId missing")
        doc = await self.store.get(branches_path(company_id), _text(branch_id))
        if doc is None:
            raise NotFoundError("Branch not found")
        return doc

    async def _unique_slug(self, collection: str, name: str, fallback: str, reserved=frozenset()) -> str:
        base = slugify(name) or fallback
        slug = base
        suffix = 1
        while slug in reserved or await self.store.find_one(collection, {"slug": slug}) is not None:
            slug = f"{base}-{suffix}"
            suffix += 1
        return slug

    async def _pin_fields(self, pin: Optional[str]) -> Dict[str, Any]:
        if pin is None:
            return {}
        return {
            "pinHash": await self.hasher.hash(pin),
            "pinHashAlgo": ARGON2_ALGO,
            "pinHashUpdatedAt": time.time(),
        }

    async def _send_invite(self, address: str, url: str, role_label: str) -> None:
        """Email a set-pin link; a failed send is logged and the invite stays valid."""
        sent = await asyncio.to_thread(self.email.send_invite, address, url, role_label=role_label)
        if not sent:
            logger.warning("staff_invite_email_failed", email=redact_email(address), role=role_label)

    # Merchant onboarding

    async def onboard_individual(
        self, claims: Optional[IdentityClaims], profile: MerchantProfile
    ) -> Dict[str, Any]:
        claims = _require_claims(claims)
        permissions = default_permissions(Role.INDIVIDUAL)
        existing = await self.store.get(USERS, claims.uid)
        record: Dict[str, Any] = {
            **profile.to_fields(),
            "uid": claims.uid,
            "role": Role.INDIVIDUAL.value,
            "accountType": "individual",
            "permissions": permissions,
            "updated_at": time.time(),
        }
        if existing is None:
            record["created_at"] = time.time()
        await self.store.set(USERS, claims.uid, record, merge=True)
        await self.identity.provision_user(
            claims.uid,
            {"role": Role.INDIVIDUAL.value, "accountType": "individual", "permissions": permissions},
            email=profile.email or claims.email,
            display_name=profile.display_name,
        )
        logger.info("merchant_onboarded", uid=claims.uid, account_type="individual")
        return {"accountType": "individual"}

    async def onboard_company(
        self, claims: Optional[IdentityClaims], profile: MerchantProfile, company_name: Any
    ) -> Dict[str, Any]:
        claims = _require_claims(claims)
        name = _text(company_name)
        if not name:
            raise ValidationError("Company name is required")
        existing = await self.store.get(USERS, claims.uid)
        if existing is not None and existing.data.get("companyId"):
            raise ValidationError("User already linked to a company")

        company_id = uuid.uuid4().hex
        slug = await self._unique_slug(COMPANIES, name, "company", UNAVAILABLE_COMPANY_SLUGS)
        permissions = default_permissions(Role.COMPANY_OWNER)
        await self.store.set(
            COMPANIES,
            company_id,
            {
                "id": company_id,
                "name": name,
                "slug": slug,
                "registrationNumber": profile.business_registration_number,
                "address": profile.address,
                "ownerUid": claims.uid,
                "created_at": time.time(),
                "updated_at": time.time(),
            },
        )
        record: Dict[str, Any] = {
            **profile.to_fields(),
            "uid": claims.uid,
            "role": Role.COMPANY_OWNER.value,
            "accountType": "company",
            "companyId": company_id,
            "companyName": name,
            "companySlug": slug,
            "permissions": permissions,
            "updated_at": time.time(),
        }
        if existing is None:
            record["created_at"] = time.time()
        await self.store.set(USERS, claims.uid, record, merge=True)
        await self.identity.provision_user(
            claims.uid,
            {
                "role": Role.COMPANY_OWNER.value,
                "accountType": "company",
                "companyId": company_id,
                "companySlug": slug,
                "permissions": permissions,
            },
            email=profile.email or claims.email,
            display_name=profile.display_name or name,
        )
        logger.info("merchant_onboarded", uid=claims.uid, account_type="company", company_id=company_id)
        return {"accountType": "company", "companyId": company_id, "companySlug": slug}

    # Branches

    async def create_branch(
        self, claims: Optional[IdentityClaims], name: Any, address: Any = None
    ) -> Dict[str, Any]:
        claims = self._company_scope(claims, Role.COMPANY_OWNER)
        branch_name = _text(name)
        if not branch_name:
            raise ValidationError("Branch name is required")
        company = await self._company(claims.company_id)
        if company.data.get("ownerUid") != claims.uid:
            raise NotAuthorized("Not authorized to add branches")

        collection = branches_path(company.id)
        branch_id = uuid.uuid4().hex
        slug = await self._unique_slug(collection, branch_name, f"branch-{branch_id[:5]}")
        company_slug = str(company.data.get("slug") or "")
        username = f"{company_slug}-{slug}"
        if await self.store.find_one(collection, {"username": username}) is not None:
            username = f"{username}-{branch_id[-3:]}"

        await self.store.set(
            collection,
            branch_id,
            {
                "id": branch_id,
                "companyId": company.id,
                "companyName": company.data.get("name"),
                "companySlug": company_slug,
                "name": branch_name,
                "slug": slug,
                "username": username,
                "address": _text(address) or None,
                "managerUid": None,
                "managerName": None,
                "managerContact": None,
                "managerAccountUid": f"{branch_id}-manager",
                "nextCashierNumber": 1,
                "created_at": time.time(),
                "updated_at": time.time(),
            },
        )
        self.tenants.invalidate()
        logger.info("branch_created", company_id=company.id, branch_id=branch_id, slug=slug)
        return {"branchId": branch_id, "slug": slug, "username": username}

    async def assign_branch_manager(
        self,
        claims: Optional[IdentityClaims],
        branch_id: Any,
        display_name: Any,
        *,
        pin: Any = None,
        email: Any = None,
        phone: Any = None,
    ) -> Dict[str, Any]:
        """Create or replace a branch's manager account.

        With a PIN the account is active at once. Without one, ``email`` is
        required and receives a branch-manager set-pin invite.
        """
        claims = self._company_scope(claims, Role.COMPANY_OWNER)
        name = _text(display_name)
        if not name:
            raise ValidationError("Display name is required")
        new_pin = require_pin(pin) if _text(pin) else None
        contact_email = normalize_email(email) or None
        if new_pin is None:
            if not contact_email:
                raise ValidationError("Email is required to send manager invite")
            contact_email = require_email(contact_email)

        company = await self._company(claims.company_id)
        branch = await self._branch(company.id, branch_id)
        username = branch.data.get("username")
        if not username:
            raise ServerError("Branch username missing")
        manager_uid = branch.data.get("managerAccountUid") or f"{branch.id}-manager"
        login_email = contact_email or self._login_email(username)
        contact_phone = _text(phone) or None
        company_slug = str(company.data.get("slug") or "")
        branch_slug = str(branch.data.get("slug") or "")
        status = "active" if new_pin else "invited"
        permissions = default_permissions(Role.BRANCH_MANAGER)
        tenant_claims = {
            "role": Role.BRANCH_MANAGER.value,
            "accountType": "company",
            "companyId": company.id,
            "companySlug": company_slug,
            "branchId": branch.id,
            "branchSlug": branch_slug,
        }

        existing = await self.store.get(USERS, manager_uid)
        record: Dict[str, Any] = {
            **tenant_claims,
            **await self._pin_fields(new_pin),
            "uid": manager_uid,
            "username": username,
            "email": login_email,
            "phone": contact_phone,
            "displayName": name,
            "status": status,
            "permissions": permissions,
            "updated_at": time.time(),
        }
        if existing is None:
            record["created_at"] = time.time()
        await self.store.set(USERS, manager_uid, record, merge=True)
        await self.store.update(
            branches_path(company.id),
            branch.id,
            {
                "managerUid": manager_uid,
                "managerName": name,
                "managerContact": {"email": contact_email, "phone": contact_phone},
                "updated_at": time.time(),
            },
        )
        await self.identity.provision_user(
            manager_uid,
            {**tenant_claims, "permissions": permissions},
            email=login_email,
            display_name=name,
            disabled=new_pin is None,
        )

        if new_pin is None:
            token = await self.invites.issue(
                BRANCH_MANAGER_INVITES,
                login_email,
                name=name,
                extra={"managerUid": manager_uid, "companyId": company.id, "branchId": branch.id},
            )
            link = (
                f"{self.app_origin}/{quote(company_slug)}/{quote(branch_slug)}"
                f"/set-pin?token={quote(token, safe='')}"
            )
            await self._send_invite(login_email, link, "branch manager")

        self.tenants.invalidate()
        logger.info(
            "branch_manager_assigned",
            company_id=company.id,
            branch_id=branch.id,
            manager_uid=manager_uid,
            status=status,
        )
        return {"managerUid": manager_uid, "username": username, "email": login_email, "status": status}

    async def remove_branch_manager(self, claims: Optional[IdentityClaims], branch_id: Any) -> bool:
        """Detach and disable a branch's manager; False when there was none."""
        claims = self._company_scope(claims, Role.COMPANY_OWNER)
        branch = await self._branch(claims.company_id, branch_id)
        manager_uid = branch.data.get("managerUid")
        if not manager_uid:
            return False

        await self.store.update(
            branches_path(claims.company_id),
            branch.id,
            {"managerUid": None, "managerName": None, "managerContact": None, "updated_at": time.time()},
        )
        await self.store.set(
            USERS,
            manager_uid,
            {"status": "disabled", "pinHash": None, "updated_at": time.time()},
            merge=True,
        )
        await self.identity.disable_and_revoke(manager_uid)
        self.tenants.invalidate()
        logger.info("branch_manager_removed", branch_id=branch.id, manager_uid=manager_uid)
        return True

    # Cashiers

    async def _next_cashier_number(self, company_id: str, branch: Document) -> int:
        """Claim the branch's next cashier number with a compare-and-set."""
        collection = branches_path(company_id)
        data = branch.data
        for _ in range(CASHIER_NUMBER_ATTEMPTS):
            current = data.get("nextCashierNumber")
            number = int(current or 1)
            if await self.store.compare_and_update(
                collection,
                branch.id,
                {"nextCashierNumber": current},
                {"nextCashierNumber": number + 1, "updated_at": time.time()},
            ):
                return number
            fresh = await self.store.get(collection, branch.id)
            if fresh is None:
                raise NotFoundError("Branch not found")
            data = fresh.data
        raise ServerError("Could not allocate cashier number")

    async def create_cashier(
        self,
        claims: Optional[IdentityClaims],
        branch_id: Any,
        display_name: Any,
        *,
        pin: Any = None,
        email: Any = None,
    ) -> Dict[str, Any]:
        """Add a numbered cashier (``cashierN``) to a branch.

        Branch managers may only add cashiers to their own branch.
        """
        claims = self._company_scope(claims, Role.COMPANY_OWNER, Role.BRANCH_MANAGER)
        if Role.parse(claims.role) is Role.BRANCH_MANAGER and claims.branch_id != _text(branch_id):
            raise NotAuthorized("Not authorized to manage this branch")
        name = _text(display_name)
        if not name:
            raise ValidationError("Display name is required")
        new_pin = require_pin(pin) if _text(pin) else None
        contact_email = None
        if new_pin is None:
            if not normalize_email(email):
                raise ValidationError("Email is required to send cashier invite")
            contact_email = require_email(email)

        company = await self._company(claims.company_id)
        branch = await self._branch(company.id, branch_id)
        branch_username = branch.data.get("username")
        if not branch_username:
            raise ServerError("Branch username missing")

        number = await self._next_cashier_number(company.id, branch)
        cashier_id = uuid.uuid4().hex
        cashier_slug = f"cashier{number}"
        username = f"{branch_username}-{number}"
        login_email = contact_email or self._login_email(username)
        company_slug = str(company.data.get("slug") or "")
        branch_slug = str(branch.data.get("slug") or "")
        status = "active" if new_pin else "invited"
        permissions = default_permissions(Role.CASHIER)
        tenant_claims = {
            "role": Role.CASHIER.value,
            "accountType": "company",
            "companyId": company.id,
            "companySlug": company_slug,
            "branchId": branch.id,
            "branchSlug": branch_slug,
            "cashierSlug": cashier_slug,
        }

        await self.store.set(
            cashiers_path(company.id, branch.id),
            cashier_id,
            {
                "id": cashier_id,
                "uid": cashier_id,
                "slug": cashier_slug,
                "username": username,
                "displayName": name,
                "status": status,
                "created_at": time.time(),
                "updated_at": time.time(),
            },
        )
        await self.store.set(
            USERS,
            cashier_id,
            {
                **tenant_claims,
                **await self._pin_fields(new_pin),
                "uid": cashier_id,
                "cashierNumber": number,
                "username": username,
                "email": login_email,
                "displayName": name,
                "status": status,
                "permissions": permissions,
                "created_at": time.time(),
                "updated_at": time.time(),
            },
        )
        await self.identity.provision_user(
            cashier_id,
            {**tenant_claims, "permissions": permissions},
            email=login_email,
            display_name=name,
            disabled=new_pin is None,
        )

        if new_pin is None:
            token = await self.invites.issue(
                CASHIER_INVITES,
                login_email,
                name=name,
                extra={"cashierUid": cashier_id, "companyId": company.id, "branchId": branch.id},
            )
            link = (
                f"{self.app_origin}/{quote(company_slug)}/{quote(branch_slug)}/{cashier_slug}"
                f"/set-pin?token={quote(token, safe='')}"
            )
            await self._send_invite(login_email, link, "cashier")

        self.tenants.invalidate()
        logger.info(
            "cashier_created",
            company_id=company.id,
            branch_id=branch.id,
            cashier_id=cashier_id,
            status=status,
        )
        return {"cashierId": cashier_id, "username": username, "cashierSlug": cashier_slug, "status": status}

    async def list_cashiers(self, claims: Optional[IdentityClaims], branch_id: Any) -> List[Dict[str, Any]]:
        claims = self._company_scope(claims, Role.COMPANY_OWNER, Role.BRANCH_MANAGER)
        if Role.parse(claims.role) is Role.BRANCH_MANAGER and claims.branch_id != _text(branch_id):
            raise NotAuthorized("Not authorized to manage this branch")
        branch = await self._branch(claims.company_id, branch_id)
        docs = await self.store.find(cashiers_path(claims.company_id, branch.id), {})
        cashiers = [
            {
                "id": doc.id,
                "slug": doc.data.get("slug"),
                "username": doc.data.get("username"),
                "displayName": doc.data.get("displayName") or doc.data.get("name"),
                "status": doc.data.get("status") or "active",
                "created_at": doc.data.get("created_at") or 0,
            }
            for doc in docs
        ]
        cashiers.sort(key=lambda item: item["created_at"], reverse=True)
        for item in cashiers:
            del item["created_at"]
        return cashiers
