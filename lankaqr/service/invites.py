"""Invite tokens and the credential flows built on them.

Invite tokens are 256-bit random hex strings. Only their sha256 digest is
stored (``tokenHash``); the plaintext exists in the emailed link alone. A
token is consumed with a compare-and-set on ``used`` so concurrent
submissions of the same link succeed at most once.
"""

from __future__ import annotations

import asyncio
import hashlib
import re
import secrets
import time
import uuid
from typing import Any, Dict, Optional
from urllib.parse import quote

from lankaqr.logging import get_logger, redact_email
from lankaqr.service.credentials import ARGON2_ALGO, CredentialHasher, is_argon_hash
from lankaqr.service.email import EmailService
from lankaqr.service.errors import (
    InvalidCredentials,
    InvalidOrExpiredToken,
    NotFoundError,
    ServerError,
    ValidationError,
)
from lankaqr.service.identity import IdentityBridge
from lankaqr.service.otp import EmailCodes, require_code
from lankaqr.service.sessions import OperatorRole, OperatorSessionStore
from lankaqr.storage.common import (
    BRANCH_MANAGER_INVITES,
    CASHIER_INVITES,
    USERS,
    DocumentStore,
)
from lankaqr.storage.models import (
    IdentityClaims,
    InviteRecord,
    Principal,
    Role,
    SessionRecord,
    now_ms,
)
from lankaqr.storage.tenants import TenantDirectory

logger = get_logger(__name__)

INVITE_TOKEN_BYTES = 32
MIN_TOKEN_LENGTH = 8
MIN_PASSWORD_LENGTH = 8
PIN_PATTERN = re.compile(r"^[0-9]{4,6}$")
EMAIL_PATTERN = re.compile(r"\S+@\S+\.\S+")


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def normalize_email(email: Any) -> str:
    return str(email or "").strip().lower()


def require_email(email: Any) -> str:
    normalized = normalize_email(email)
    if not normalized or not EMAIL_PATTERN.fullmatch(normalized):
        raise ValidationError("Invalid email")
    return normalized


def require_token(token: Any) -> str:
    value = str(token or "").strip()
    if len(value) < MIN_TOKEN_LENGTH:
        raise ValidationError("Missing token")
    return value


def require_pin(pin: Any) -> str:
    value = str(pin or "").strip()
    if not PIN_PATTERN.match(value):
        raise ValidationError("Invalid PIN format")
    return value


class InviteService:
    """Issue and redeem single-use invite tokens in a given collection."""

    def __init__(self, store: DocumentStore, *, ttl_hours: int = 24) -> None:
        self.store = store
        self.ttl_hours = ttl_hours

    async def _purge_stale(self, collection: str, email: str) -> None:
        try:
            existing = await self.store.find(collection, {"email": email})
            current = now_ms()
            stale = [
                doc.id
                for doc in existing
                if doc.data.get("used") is True or int(doc.data.get("expires_at_ms") or 0) < current
            ]
            if stale:
                await asyncio.gather(*(self.store.delete(collection, doc_id) for doc_id in stale))
        except Exception as exc:
            logger.warning(
                "invite_cleanup_failed",
                collection=collection,
                error_type=type(exc).__name__,
                error=str(exc),
            )

    async def issue(
        self,
        collection: str,
        email: str,
        *,
        name: str = "",
        extra: Optional[Dict[str, Any]] = None,
    ) -> str:
        """Store a fresh invite and return the plaintext token."""
        await self._purge_stale(collection, email)
        token = secrets.token_hex(INVITE_TOKEN_BYTES)
        record: Dict[str, Any] = {
            **(extra or {}),
            "email": email,
            "name": name,
            "tokenHash": hash_token(token),
            "created_at": time.time(),
            "expires_at_ms": now_ms() + self.ttl_hours * 60 * 60 * 1000,
            "used": False,
        }
        await self.store.set(collection, f"invite_{uuid.uuid4().hex}", record)
        logger.info("invite_issued", collection=collection, email=redact_email(email))
        return token

    async def lookup(self, collection: str, token: str, *, delete_expired: bool) -> InviteRecord:
        """Find a redeemable invite or raise ``InvalidOrExpiredToken``.

        Expired invites are deleted when ``delete_expired`` is set; otherwise
        they stay in place for audit.
        """
        doc = await self.store.find_one(collection, {"tokenHash": hash_token(token)})
        if doc is None:
            raise InvalidOrExpiredToken("Invalid or expired token", status_code=404)
        invite = InviteRecord.from_document(doc)
        if invite.used:
            raise InvalidOrExpiredToken("Token already used")
        if invite.expires_at_ms < now_ms():
            if delete_expired:
                try:
                    await self.store.delete(collection, invite.id)
                except Exception as exc:
                    logger.warning(
                        "expired_invite_delete_failed",
                        collection=collection,
                        error=str(exc),
                    )
            raise InvalidOrExpiredToken("Token expired")
        return invite

    async def consume(self, collection: str, invite: InviteRecord) -> None:
        """Flip ``used`` from false to true, failing if someone got there first."""
        claimed = await self.store.compare_and_update(
            collection,
            invite.id,
            {"used": False},
            {"used": True, "used_at": time.time()},
        )
        if not claimed:
            raise InvalidOrExpiredToken("Token already used")


class OperatorAccounts:
    """Sign-in, invites and password setup for one back-office role."""

    def __init__(
        self,
        store: DocumentStore,
        role: OperatorRole,
        sessions: OperatorSessionStore,
        invites: InviteService,
        hasher: CredentialHasher,
        email: EmailService,
        *,
        app_origin: str,
    ) -> None:
        self.store = store
        self.role = role
        self.sessions = sessions
        self.invites = invites
        self.hasher = hasher
        self.email = email
        self.app_origin = app_origin.rstrip("/")

    def _link(self, token: str) -> str:
        return f"{self.app_origin}{self.role.set_password_path}?token={quote(token, safe='')}"

    async def _find_principal(self, email: str):
        return await self.store.find_one(self.role.principals_collection, {"email": email})

    async def check_exists(self, email: Any) -> bool:
        address = require_email(email)
        return await self._find_principal(address) is not None

    async def signin(self, email: Any, password: Any) -> SessionRecord:
        address = normalize_email(email)
        secret = str(password or "")
        if not address or not secret:
            raise ValidationError("Missing credentials")

        doc = await self._find_principal(address)
        if doc is None:
            raise InvalidCredentials("Invalid email or password")
        stored = str(doc.data.get("passwordHash") or "")
        if not stored:
            raise InvalidCredentials("No password set for this account")
        if not await self.hasher.verify(secret, stored):
            logger.info("operator_signin_rejected", role=self.role.key, principal_id=doc.id)
            raise InvalidCredentials("Invalid email or password")

        return await self.sessions.create(doc.id)

    async def signout(self, session_id: Optional[str]) -> None:
        try:
            await self.sessions.destroy(session_id)
        except Exception as exc:
            logger.warning("operator_signout_delete_failed", role=self.role.key, error=str(exc))

    async def _send(self, address: str, url: str, *, reset: bool) -> None:
        if reset:
            sent = await asyncio.to_thread(self.email.send_password_reset, address, url)
        else:
            sent = await asyncio.to_thread(
                self.email.send_invite, address, url, role_label=self.role.key
            )
        if not sent:
            raise ServerError("Failed to send email")

    async def invite(self, email: Any, name: Any, *, inviter: Principal) -> None:
        """Create the account if needed and email a set-password link."""
        address = require_email(email)
        display_name = str(name or "").strip()
        if await self._find_principal(address) is None:
            await self.store.set(
                self.role.principals_collection,
                uuid.uuid4().hex,
                {
                    "email": address,
                    "name": display_name,
                    "status": "invited",
                    "invitedBy": inviter.id,
                    "created_at": time.time(),
                },
            )
        token = await self.invites.issue(self.role.invites_collection, address, name=display_name)
        await self._send(address, self._link(token), reset=False)
        logger.info(
            "operator_invited",
            role=self.role.key,
            inviter_id=inviter.id,
            email=redact_email(address),
        )

    async def reset_password(self, email: Any) -> None:
        address = require_email(email)
        if await self._find_principal(address) is None:
            raise NotFoundError("No such account")
        token = await self.invites.issue(self.role.invites_collection, address)
        await self._send(address, self._link(token), reset=True)

    async def set_password(self, token: Any, password: Any) -> None:
        raw_token = require_token(token)
        secret = str(password or "")
        if len(secret) < MIN_PASSWORD_LENGTH:
            raise ValidationError("Password must be at least 8 characters")

        collection = self.role.invites_collection
        invite = await self.invites.lookup(
            collection, raw_token, delete_expired=self.role.delete_expired_invites
        )
        if not invite.email:
            raise ServerError("Invite missing email")
        doc = await self._find_principal(invite.email)
        if doc is None:
            raise NotFoundError(f"{self.role.key} account not found")

        password_hash = await self.hasher.hash(secret)
        await self.invites.consume(collection, invite)
        await self.store.update(
            self.role.principals_collection,
            doc.id,
            {
                "passwordHash": password_hash,
                "passwordHashAlgo": ARGON2_ALGO,
                "passwordSetAt": time.time(),
                "status": "active",
            },
        )
        logger.info("operator_password_set", role=self.role.key, principal_id=doc.id)


class PinAccounts:
    """PIN setup, PIN reset and PIN sign-in for identity-provider users.

    Branch managers and cashiers set their first PIN from an invite link.
    Any signed-in user may set a PIN directly, and a forgotten PIN is reset
    with a code mailed to the account's address.
    """

    def __init__(
        self,
        store: DocumentStore,
        invites: InviteService,
        hasher: CredentialHasher,
        identity: IdentityBridge,
        tenants: TenantDirectory,
        codes: EmailCodes,
    ) -> None:
        self.store = store
        self.invites = invites
        self.hasher = hasher
        self.identity = identity
        self.tenants = tenants
        self.codes = codes

    async def _store_pin(self, uid: str, pin: str) -> None:
        pin_hash = await self.hasher.hash(pin)
        await self.store.set(
            USERS,
            uid,
            {
                "pinHash": pin_hash,
                "pinHashAlgo": ARGON2_ALGO,
                "pinHashUpdatedAt": time.time(),
                "status": "active",
                "updated_at": time.time(),
            },
            merge=True,
        )

    async def set_user_pin(self, claims: IdentityClaims, pin: Any) -> None:
        """Store a PIN for the signed-in user, creating their users record if needed."""
        new_pin = require_pin(pin)
        pin_hash = await self.hasher.hash(new_pin)
        existing = await self.store.get(USERS, claims.uid)
        payload: Dict[str, Any] = {
            "uid": claims.uid,
            "pinHash": pin_hash,
            "pinHashAlgo": ARGON2_ALGO,
            "pinHashUpdatedAt": time.time(),
            "updated_at": time.time(),
        }
        profile = {
            "displayName": claims.raw.get("name"),
            "email": claims.email,
            "phone": claims.raw.get("phone_number"),
        }
        # Known profile fields only; nulls never overwrite stored values
        payload.update({key: value for key, value in profile.items() if value})
        if existing is None:
            payload["created_at"] = time.time()
        await self.store.set(USERS, claims.uid, payload, merge=True)
        logger.info("pin_set", role=claims.role, uid=claims.uid)

    async def reset_user_pin(self, email: Any, code: Any, new_pin: Any) -> Dict[str, Optional[str]]:
        """Replace a forgotten PIN after checking a mailed code.

        Returns the uid and, when one can be minted, a custom token so the
        client can sign straight back in.
        """
        address = require_email(email)
        otp = require_code(code)
        pin = require_pin(new_pin)

        await self.codes.redeem(address, otp)
        uid = await self.identity.find_uid_by_email(address)
        if uid is None:
            raise NotFoundError("No account found for this email")

        pin_hash = await self.hasher.hash(pin)
        await self.store.set(
            USERS,
            uid,
            {
                "uid": uid,
                "email": address,
                "pinHash": pin_hash,
                "pinHashAlgo": ARGON2_ALGO,
                "pinHashUpdatedAt": time.time(),
                "updated_at": time.time(),
            },
            merge=True,
        )
        logger.info("pin_reset", uid=uid)

        custom_token: Optional[str] = None
        try:
            custom_token = await self.identity.create_custom_token(uid)
        except Exception as exc:
            logger.warning("pin_reset_token_failed", uid=uid, error=str(exc))
        return {"uid": uid, "customToken": custom_token}

    async def _user_by_email(self, email: str, role: Role):
        return await self.store.find_one(USERS, {"email": email, "role": role.value})

    async def set_branch_manager_pin(self, token: Any, pin: Any) -> str:
        raw_token = require_token(token)
        new_pin = require_pin(pin)
        invite = await self.invites.lookup(BRANCH_MANAGER_INVITES, raw_token, delete_expired=True)
        if not invite.email:
            raise ServerError("Invite missing email")
        user = await self._user_by_email(invite.email, Role.BRANCH_MANAGER)
        if user is None:
            raise NotFoundError("Manager account not found")

        await self.invites.consume(BRANCH_MANAGER_INVITES, invite)
        await self._store_pin(user.id, new_pin)
        await self.identity.enable_and_revoke(user.id)
        logger.info("pin_set", role=Role.BRANCH_MANAGER.value, uid=user.id)
        return user.id

    async def set_cashier_pin(self, token: Any, pin: Any) -> str:
        raw_token = require_token(token)
        new_pin = require_pin(pin)
        invite = await self.invites.lookup(CASHIER_INVITES, raw_token, delete_expired=True)

        uid = invite.meta.get("cashierUid")
        if not uid:
            if not invite.email:
                raise ServerError("Invite missing target")
            user = await self._user_by_email(invite.email, Role.CASHIER)
            if user is None:
                raise NotFoundError("Cashier account not found")
            uid = user.id

        await self.invites.consume(CASHIER_INVITES, invite)
        await self._store_pin(uid, new_pin)
        await self._activate_cashier(uid, invite)
        await self.identity.enable_and_revoke(uid)
        logger.info("pin_set", role=Role.CASHIER.value, uid=uid)
        return uid

    async def _activate_cashier(self, uid: str, invite: InviteRecord) -> None:
        """Mark the tenant cashier record active; missing records are only logged."""
        company_id = invite.meta.get("companyId")
        branch_id = invite.meta.get("branchId")
        try:
            if not (company_id and branch_id):
                user = await self.store.get(USERS, uid)
                if user is not None:
                    company_id = user.data.get("companyId")
                    branch_id = user.data.get("branchId")
            if company_id and branch_id and await self.tenants.mark_cashier_active(
                company_id, branch_id, uid
            ):
                return
            logger.warning(
                "cashier_record_not_found",
                uid=uid,
                company_id=company_id,
                branch_id=branch_id,
            )
        except Exception as exc:
            logger.warning("cashier_activate_failed", uid=uid, error=str(exc))

    async def signin_with_pin(self, identifier: Any, pin: Any) -> Dict[str, str]:
        """Verify a PIN for a user found by email or phone; returns a custom token."""
        ident = str(identifier or "").strip()
        secret = str(pin or "").strip()
        if not ident or not secret:
            raise ValidationError("Missing identifier or pin")

        user = await self.store.find_one(USERS, {"email": ident.lower()})
        if user is None:
            user = await self.store.find_one(USERS, {"phone": ident})
        if user is None:
            raise NotFoundError("User not found")

        stored = user.data.get("pinHash")
        if not stored:
            raise ValidationError("PIN not set")
        if not is_argon_hash(stored):
            logger.warning("pin_hash_legacy_format", uid=user.id, algo=user.data.get("pinHashAlgo"))
            raise ValidationError("PIN reset required")
        if not await self.hasher.verify(secret, stored):
            raise InvalidCredentials("Invalid PIN")

        uid = user.data.get("uid") or user.id
        custom_token = await self.identity.create_custom_token(uid)
        logger.info("pin_signin", uid=uid)
        return {"customToken": custom_token, "uid": uid}
