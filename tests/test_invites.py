"""Invite tokens, password setup and PIN setup at the service layer."""

import re

import pytest

from lankaqr.service.errors import InvalidCredentials, InvalidOrExpiredToken, NotFoundError, ValidationError
from lankaqr.service.invites import hash_token, require_email, require_pin, require_token
from lankaqr.storage.common import (
    ADMIN_INVITES,
    ADMINS,
    BRANCH_MANAGER_INVITES,
    CASHIER_INVITES,
    STAFF,
    STAFF_INVITES,
    USERS,
    cashiers_path,
)
from lankaqr.storage.models import Principal, now_ms
from tenant_fixtures import seed_tenants

TOKEN_IN_LINK = re.compile(r"token=([0-9a-f]{64})")


async def expire(store, collection, token):
    doc = await store.find_one(collection, {"tokenHash": hash_token(token)})
    await store.update(collection, doc.id, {"expires_at_ms": now_ms() - 1})
    return doc.id


class TestValidators:
    def test_email(self):
        assert require_email("  Ops@Example.COM ") == "ops@example.com"
        for bad in (None, "", "ops", "ops@example"):
            with pytest.raises(ValidationError, match="Invalid email"):
                require_email(bad)

    def test_token(self):
        with pytest.raises(ValidationError, match="Missing token"):
            require_token("short")
        assert require_token(" abcdefgh ") == "abcdefgh"

    @pytest.mark.parametrize("pin", ["1234", "123456", 4321])
    def test_valid_pins(self, pin):
        assert require_pin(pin) == str(pin)

    @pytest.mark.parametrize("pin", ["123", "1234567", "12a4", "", None])
    def test_invalid_pins(self, pin):
        with pytest.raises(ValidationError, match="Invalid PIN format"):
            require_pin(pin)


class TestInviteService:
    async def test_only_hash_is_stored(self, runtime, store):
        token = await runtime.invites.issue(STAFF_INVITES, "ops@example.com", name="Ops")
        docs = await store.find(STAFF_INVITES, {"email": "ops@example.com"})

        assert len(docs) == 1
        assert docs[0].id.startswith("invite_")
        assert docs[0].data["tokenHash"] == hash_token(token)
        assert token not in str(docs[0].data)
        assert docs[0].data["used"] is False

    async def test_single_use(self, runtime):
        invites = runtime.invites
        token = await invites.issue(STAFF_INVITES, "ops@example.com")
        invite = await invites.lookup(STAFF_INVITES, token, delete_expired=True)

        await invites.consume(STAFF_INVITES, invite)
        with pytest.raises(InvalidOrExpiredToken, match="Token already used"):
            await invites.consume(STAFF_INVITES, invite)
        with pytest.raises(InvalidOrExpiredToken, match="Token already used"):
            await invites.lookup(STAFF_INVITES, token, delete_expired=True)

    async def test_unknown_token(self, runtime):
        with pytest.raises(InvalidOrExpiredToken) as excinfo:
            await runtime.invites.lookup(STAFF_INVITES, "f" * 64, delete_expired=True)
        assert excinfo.value.status_code == 404
        assert excinfo.value.message == "Invalid or expired token"

    async def test_expired_deleted_only_when_asked(self, runtime, store):
        invites = runtime.invites
        kept = await invites.issue(ADMIN_INVITES, "root@example.com")
        dropped = await invites.issue(BRANCH_MANAGER_INVITES, "mgr@example.com")
        kept_id = await expire(store, ADMIN_INVITES, kept)
        dropped_id = await expire(store, BRANCH_MANAGER_INVITES, dropped)

        with pytest.raises(InvalidOrExpiredToken, match="Token expired"):
            await invites.lookup(ADMIN_INVITES, kept, delete_expired=False)
        with pytest.raises(InvalidOrExpiredToken, match="Token expired"):
            await invites.lookup(BRANCH_MANAGER_INVITES, dropped, delete_expired=True)

        assert await store.get(ADMIN_INVITES, kept_id) is not None
        assert await store.get(BRANCH_MANAGER_INVITES, dropped_id) is None

    async def test_reissue_purges_stale_invites(self, runtime, store):
        invites = runtime.invites
        old = await invites.issue(STAFF_INVITES, "ops@example.com")
        await expire(store, STAFF_INVITES, old)
        await invites.issue(STAFF_INVITES, "ops@example.com")

        assert len(await store.find(STAFF_INVITES, {"email": "ops@example.com"})) == 1


class TestOperatorAccounts:
    async def test_invite_then_set_password_then_signin(self, runtime, store):
        admin = Principal(id="admin-1", kind="admin", email="root@example.com")
        staff = runtime.operators["staff"]

        await staff.invite("Ops@Example.com", "Ops", inviter=admin)
        created = await store.find_one(STAFF, {"email": "ops@example.com"})
        assert created.data["status"] == "invited"
        assert created.data["invitedBy"] == "admin-1"

        to, _subject, body = runtime.email.outbox[-1]
        assert to == "ops@example.com"
        assert "/staff/set-password?token=" in body
        token = TOKEN_IN_LINK.search(body).group(1)

        await staff.set_password(token, "long-enough-pw")
        updated = await store.get(STAFF, created.id)
        assert updated.data["status"] == "active"
        assert updated.data["passwordHashAlgo"] == "argon2"
        assert "long-enough-pw" not in updated.data["passwordHash"]

        session = await staff.signin("ops@example.com", "long-enough-pw")
        principal = await runtime.operator_sessions["staff"].resolve(session.id)
        assert principal.id == created.id

        with pytest.raises(InvalidOrExpiredToken, match="Token already used"):
            await staff.set_password(token, "another-password")

    async def test_signin_failures(self, runtime, store):
        admins = runtime.operators["admin"]
        await store.set(ADMINS, "a1", {"email": "root@example.com"})

        with pytest.raises(ValidationError, match="Missing credentials"):
            await admins.signin("", "pw")
        with pytest.raises(InvalidCredentials, match="No password set"):
            await admins.signin("root@example.com", "whatever-pw")
        with pytest.raises(InvalidCredentials, match="Invalid email or password"):
            await admins.signin("nobody@example.com", "whatever-pw")

        await store.update(ADMINS, "a1", {"passwordHash": await runtime.hasher.hash("right-password")})
        with pytest.raises(InvalidCredentials, match="Invalid email or password"):
            await admins.signin("root@example.com", "wrong-password")

    async def test_short_password_rejected_before_token_use(self, runtime, store):
        await store.set(STAFF, "s1", {"email": "ops@example.com"})
        token = await runtime.invites.issue(STAFF_INVITES, "ops@example.com")

        with pytest.raises(ValidationError, match="at least 8"):
            await runtime.operators["staff"].set_password(token, "short")
        invite = await runtime.invites.lookup(STAFF_INVITES, token, delete_expired=True)
        assert invite.used is False

    async def test_reset_password_unknown_account(self, runtime):
        with pytest.raises(NotFoundError):
            await runtime.operators["admin"].reset_password("nobody@example.com")

    async def test_reset_password_sends_link(self, runtime, store):
        await store.set(ADMINS, "a1", {"email": "root@example.com"})
        await runtime.operators["admin"].reset_password("root@example.com")
        _to, subject, body = runtime.email.outbox[-1]
        assert "Reset" in subject
        assert "/admin/set-password?token=" in body


class TestPinAccounts:
    async def test_branch_manager_pin(self, runtime, store, identity):
        await store.set(USERS, "mgr-1", {"email": "mgr@example.com", "role": "branch-manager"})
        identity.add_user("mgr-1", "mgr@example.com", role="branch-manager")
        token = await runtime.invites.issue(BRANCH_MANAGER_INVITES, "mgr@example.com")

        uid = await runtime.pins.set_branch_manager_pin(token, "2468")

        assert uid == "mgr-1"
        user = await store.get(USERS, "mgr-1")
        assert user.data["pinHashAlgo"] == "argon2"
        assert await runtime.hasher.verify("2468", user.data["pinHash"])
        assert "mgr-1" in identity.revoked
        assert runtime.metrics.revoked_count == 1

    async def test_branch_manager_without_account(self, runtime):
        token = await runtime.invites.issue(BRANCH_MANAGER_INVITES, "ghost@example.com")
        with pytest.raises(NotFoundError):
            await runtime.pins.set_branch_manager_pin(token, "2468")

    async def test_cashier_pin_activates_cashier(self, runtime, store, identity):
        await seed_tenants(store)
        identity.add_user("cashier-1", role="cashier")
        token = await runtime.invites.issue(
            CASHIER_INVITES,
            "nimal@example.com",
            extra={"cashierUid": "cashier-1", "companyId": "c1", "branchId": "b1"},
        )

        assert await runtime.pins.set_cashier_pin(token, "135790") == "cashier-1"

        record = await store.get(cashiers_path("c1", "b1"), "cashier-1")
        assert record.data["status"] == "active"
        assert "cashier-1" in identity.revoked

    async def test_cashier_found_by_email(self, runtime, store, identity):
        await seed_tenants(store)
        token = await runtime.invites.issue(CASHIER_INVITES, "nimal@example.com")

        assert await runtime.pins.set_cashier_pin(token, "1357") == "cashier-1"
        record = await store.get(cashiers_path("c1", "b1"), "cashier-1")
        assert record.data["status"] == "active"

    async def test_signin_with_pin(self, runtime, store, identity):
        await store.set(
            USERS,
            "u1",
            {"email": "mgr@example.com", "phone": "+94770000000", "pinHash": await runtime.hasher.hash("2468")},
        )

        by_email = await runtime.pins.signin_with_pin("MGR@example.com", "2468")
        by_phone = await runtime.pins.signin_with_pin("+94770000000", 2468)

        assert by_email["uid"] == by_phone["uid"] == "u1"
        assert identity.custom_tokens[by_email["customToken"]] == "u1"

    async def test_signin_with_pin_failures(self, runtime, store):
        await store.set(USERS, "u1", {"email": "nopin@example.com"})
        await store.set(USERS, "u2", {"email": "mgr@example.com", "pinHash": await runtime.hasher.hash("2468")})

        with pytest.raises(ValidationError, match="Missing identifier or pin"):
            await runtime.pins.signin_with_pin("", "2468")
        with pytest.raises(NotFoundError):
            await runtime.pins.signin_with_pin("ghost@example.com", "2468")
        with pytest.raises(ValidationError, match="PIN not set"):
            await runtime.pins.signin_with_pin("nopin@example.com", "2468")
        with pytest.raises(InvalidCredentials, match="Invalid PIN"):
            await runtime.pins.signin_with_pin("mgr@example.com", "0000")

    async def test_legacy_pin_hash_needs_reset(self, runtime, store):
        await store.set(
            USERS,
            "u1",
            {"email": "old@example.com", "pinHash": "e3b0c44298fc1c149afbf4c8996fb924", "pinHashAlgo": "sha256"},
        )
        with pytest.raises(ValidationError, match="PIN reset required"):
            await runtime.pins.signin_with_pin("old@example.com", "2468")
