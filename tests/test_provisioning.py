"""Merchant onboarding, branches, managers and cashiers at the service layer."""

import re

import pytest

from lankaqr.service.claims import default_permissions
from lankaqr.service.errors import (
    InvalidSession,
    MissingContext,
    NotAuthorized,
    NotFoundError,
    ValidationError,
)
from lankaqr.service.provisioning import MerchantProfile, slugify
from lankaqr.storage.common import (
    BRANCH_MANAGER_INVITES,
    CASHIER_INVITES,
    COMPANIES,
    USERS,
    branches_path,
    cashiers_path,
)
from lankaqr.storage.models import IdentityClaims
from tenant_fixtures import CASHIER_CLAIMS, OWNER_CLAIMS, seed_tenants

TOKEN_IN_LINK = re.compile(r"token=([0-9a-f]{64})")

PROFILE = MerchantProfile(
    display_name="Kamal Perera",
    nic="901234567V",
    business_registration_number="PV 1234",
    address="12 Galle Road, Colombo 03",
    email="kamal@example.com",
)


def as_claims(raw: dict) -> IdentityClaims:
    return IdentityClaims.from_decoded(raw)


async def owner_with_branch(runtime, branch_name="Galle Fort"):
    """Onboard a company for ``owner-9`` and give it one branch."""
    company = await runtime.provisioning.onboard_company(
        as_claims({"uid": "owner-9"}), PROFILE, "Lanka Traders"
    )
    owner = as_claims(
        {
            "uid": "owner-9",
            "role": "company-owner",
            "companyId": company["companyId"],
            "companySlug": company["companySlug"],
        }
    )
    branch = await runtime.provisioning.create_branch(owner, branch_name, "Church Street")
    return owner, branch


def manager_of(owner: IdentityClaims, branch_id: str) -> IdentityClaims:
    return as_claims(
        {
            "uid": f"{branch_id}-manager",
            "role": "branch-manager",
            "companyId": owner.company_id,
            "companySlug": owner.company_slug,
            "branchId": branch_id,
            "branchSlug": "galle-fort",
        }
    )


def invite_token(runtime, address: str) -> str:
    sent = [body for to, _, body in runtime.email.outbox if to == address]
    return TOKEN_IN_LINK.search(sent[-1]).group(1)


def test_slugify():
    assert slugify("Lanka Traders (Pvt) Ltd") == "lanka-traders-pvt-ltd"
    assert slugify("  Galle   Fort ") == "galle-fort"
    assert slugify("!!!") == ""


class TestMerchantProfile:
    def test_reads_kyc_and_contact(self):
        profile = MerchantProfile.from_fields(
            {"displayName": " Kamal ", "nic": "9012", "businessReg": "PV 1", "address": "Colombo"},
            {"email": "Kamal@Example.com", "whatsappNumber": "+94771234567"},
        )
        assert profile.display_name == "Kamal"
        assert profile.email == "kamal@example.com"
        assert profile.phone == "+94771234567"

    def test_missing_field(self):
        with pytest.raises(ValidationError, match="Missing required profile fields"):
            MerchantProfile.from_fields({"displayName": "Kamal", "nic": "9012"}, {})


class TestOnboarding:
    async def test_individual(self, runtime, store, identity):
        result = await runtime.provisioning.onboard_individual(as_claims({"uid": "u1"}), PROFILE)

        assert result == {"accountType": "individual"}
        user = await store.get(USERS, "u1")
        assert user.data["role"] == "individual"
        assert user.data["nic"] == "901234567V"
        assert identity.users["u1"]["claims"] == {
            "role": "individual",
            "accountType": "individual",
            "permissions": default_permissions("individual"),
        }
        assert identity.users["u1"]["email"] == "kamal@example.com"

    async def test_company(self, runtime, store, identity):
        result = await runtime.provisioning.onboard_company(
            as_claims({"uid": "owner-9"}), PROFILE, "Lanka Traders"
        )

        assert result["companySlug"] == "lanka-traders"
        company = await store.get(COMPANIES, result["companyId"])
        assert company.data["ownerUid"] == "owner-9"
        assert company.data["registrationNumber"] == "PV 1234"
        claims = identity.users["owner-9"]["claims"]
        assert claims["role"] == "company-owner"
        assert claims["companyId"] == result["companyId"]
        assert claims["companySlug"] == "lanka-traders"

    async def test_company_slugs_are_unique(self, runtime):
        first = await runtime.provisioning.onboard_company(as_claims({"uid": "a"}), PROFILE, "Lanka Traders")
        second = await runtime.provisioning.onboard_company(as_claims({"uid": "b"}), PROFILE, "Lanka Traders")
        assert (first["companySlug"], second["companySlug"]) == ("lanka-traders", "lanka-traders-1")

    @pytest.mark.parametrize("name, slug", [("Admin", "admin-1"), ("Signin", "signin-1"), ("Transactions", "transactions-1")])
    async def test_company_slug_avoids_app_routes(self, runtime, name, slug):
        result = await runtime.provisioning.onboard_company(as_claims({"uid": "a"}), PROFILE, name)
        assert result["companySlug"] == slug

    async def test_company_name_required(self, runtime):
        with pytest.raises(ValidationError, match="Company name is required"):
            await runtime.provisioning.onboard_company(as_claims({"uid": "a"}), PROFILE, "  ")

    async def test_user_already_linked(self, runtime):
        await runtime.provisioning.onboard_company(as_claims({"uid": "a"}), PROFILE, "Lanka Traders")
        with pytest.raises(ValidationError, match="already linked"):
            await runtime.provisioning.onboard_company(as_claims({"uid": "a"}), PROFILE, "Second Co")

    async def test_requires_session(self, runtime):
        with pytest.raises(InvalidSession):
            await runtime.provisioning.onboard_individual(None, PROFILE)


class TestBranches:
    async def test_create_branch(self, runtime, store):
        owner, branch = await owner_with_branch(runtime)

        assert branch["slug"] == "galle-fort"
        assert branch["username"] == "lanka-traders-galle-fort"
        doc = await store.get(branches_path(owner.company_id), branch["branchId"])
        assert doc.data["nextCashierNumber"] == 1
        assert doc.data["managerAccountUid"] == f"{branch['branchId']}-manager"
        assert doc.data["address"] == "Church Street"
        # The new branch resolves through the tenant directory straight away
        found = await runtime.tenants.branch_by_slug(owner.company_id, "galle-fort")
        assert found is not None

    async def test_branch_slugs_are_unique(self, runtime):
        owner, _ = await owner_with_branch(runtime)
        again = await runtime.provisioning.create_branch(owner, "Galle Fort")
        assert again["slug"] == "galle-fort-1"

    async def test_non_owner_rejected(self, runtime):
        with pytest.raises(NotAuthorized):
            await runtime.provisioning.create_branch(as_claims(CASHIER_CLAIMS), "Kandy")

    async def test_owner_without_company(self, runtime):
        owner = as_claims({"uid": "owner-1", "role": "company-owner"})
        with pytest.raises(MissingContext, match="Missing company context"):
            await runtime.provisioning.create_branch(owner, "Kandy")

    async def test_owner_of_another_company(self, runtime, store):
        await seed_tenants(store)
        intruder = as_claims({**OWNER_CLAIMS, "companyId": "c2"})
        with pytest.raises(NotAuthorized):
            await runtime.provisioning.create_branch(intruder, "Kandy")

    async def test_name_required(self, runtime):
        owner, _ = await owner_with_branch(runtime)
        with pytest.raises(ValidationError, match="Branch name is required"):
            await runtime.provisioning.create_branch(owner, "")


class TestBranchManagers:
    async def test_invite_then_set_pin(self, runtime, store, identity):
        owner, branch = await owner_with_branch(runtime)
        branch_id = branch["branchId"]

        result = await runtime.provisioning.assign_branch_manager(
            owner, branch_id, "Sunil", email="Sunil@Example.com", phone="0771234567"
        )

        manager_uid = f"{branch_id}-manager"
        assert result["managerUid"] == manager_uid
        assert result["status"] == "invited"
        assert identity.users[manager_uid]["disabled"] is True
        assert identity.users[manager_uid]["claims"]["branchSlug"] == "galle-fort"
        assert identity.users[manager_uid]["claims"]["companySlug"] == "lanka-traders"
        assert await store.find(BRANCH_MANAGER_INVITES, {"email": "sunil@example.com"})
        link = runtime.email.outbox[-1][2]
        assert "/lanka-traders/galle-fort/set-pin?token=" in link
        branch_doc = await store.get(branches_path(owner.company_id), branch_id)
        assert branch_doc.data["managerUid"] == manager_uid
        assert branch_doc.data["managerContact"] == {"email": "sunil@example.com", "phone": "0771234567"}

        token = invite_token(runtime, "sunil@example.com")
        assert await runtime.pins.set_branch_manager_pin(token, "2468") == manager_uid
        assert identity.users[manager_uid]["disabled"] is False
        user = await store.get(USERS, manager_uid)
        assert user.data["status"] == "active"

    async def test_with_pin_is_active(self, runtime, store, identity):
        owner, branch = await owner_with_branch(runtime)

        result = await runtime.provisioning.assign_branch_manager(
            owner, branch["branchId"], "Sunil", pin="2468"
        )

        assert result["status"] == "active"
        assert result["email"] == "lanka-traders-galle-fort@lqr.internal"
        user = await store.get(USERS, result["managerUid"])
        assert await runtime.hasher.verify("2468", user.data["pinHash"])
        assert identity.users[result["managerUid"]]["disabled"] is False
        assert runtime.email.outbox == []

    async def test_invite_needs_email(self, runtime):
        owner, branch = await owner_with_branch(runtime)
        with pytest.raises(ValidationError, match="Email is required"):
            await runtime.provisioning.assign_branch_manager(owner, branch["branchId"], "Sunil")

    async def test_unknown_branch(self, runtime):
        owner, _ = await owner_with_branch(runtime)
        with pytest.raises(NotFoundError, match="Branch not found"):
            await runtime.provisioning.assign_branch_manager(owner, "nope", "Sunil", pin="2468")

    async def test_manager_cannot_assign(self, runtime):
        owner, branch = await owner_with_branch(runtime)
        with pytest.raises(NotAuthorized):
            await runtime.provisioning.assign_branch_manager(
                manager_of(owner, branch["branchId"]), branch["branchId"], "Other", pin="2468"
            )

    async def test_remove(self, runtime, store, identity):
        owner, branch = await owner_with_branch(runtime)
        assigned = await runtime.provisioning.assign_branch_manager(
            owner, branch["branchId"], "Sunil", pin="2468"
        )

        assert await runtime.provisioning.remove_branch_manager(owner, branch["branchId"]) is True

        branch_doc = await store.get(branches_path(owner.company_id), branch["branchId"])
        assert branch_doc.data["managerUid"] is None
        user = await store.get(USERS, assigned["managerUid"])
        assert user.data["status"] == "disabled"
        assert user.data["pinHash"] is None
        assert identity.users[assigned["managerUid"]]["disabled"] is True
        assert assigned["managerUid"] in identity.revoked
        assert await runtime.provisioning.remove_branch_manager(owner, branch["branchId"]) is False


class TestCashiers:
    async def test_numbers_are_sequential(self, runtime, store):
        owner, branch = await owner_with_branch(runtime)
        branch_id = branch["branchId"]

        first = await runtime.provisioning.create_cashier(owner, branch_id, "Nimal", pin="1357")
        second = await runtime.provisioning.create_cashier(owner, branch_id, "Kumari", pin="2468")

        assert (first["cashierSlug"], second["cashierSlug"]) == ("cashier1", "cashier2")
        assert second["username"] == "lanka-traders-galle-fort-2"
        branch_doc = await store.get(branches_path(owner.company_id), branch_id)
        assert branch_doc.data["nextCashierNumber"] == 3
        user = await store.get(USERS, first["cashierId"])
        assert user.data["cashierNumber"] == 1
        assert user.data["status"] == "active"

    async def test_branch_without_counter_starts_at_one(self, runtime, store):
        owner, branch = await owner_with_branch(runtime)
        await store.update(
            branches_path(owner.company_id), branch["branchId"], {"nextCashierNumber": None}
        )
        result = await runtime.provisioning.create_cashier(owner, branch["branchId"], "Nimal", pin="1357")
        assert result["cashierSlug"] == "cashier1"

    async def test_invite_then_set_pin(self, runtime, store, identity):
        owner, branch = await owner_with_branch(runtime)
        branch_id = branch["branchId"]

        result = await runtime.provisioning.create_cashier(
            owner, branch_id, "Nimal", email="nimal@example.com"
        )

        cashier_id = result["cashierId"]
        assert result["status"] == "invited"
        assert identity.users[cashier_id]["disabled"] is True
        assert identity.users[cashier_id]["claims"]["cashierSlug"] == "cashier1"
        invites = await store.find(CASHIER_INVITES, {"email": "nimal@example.com"})
        assert invites[0].data["cashierUid"] == cashier_id
        assert "/lanka-traders/galle-fort/cashier1/set-pin?token=" in runtime.email.outbox[-1][2]

        token = invite_token(runtime, "nimal@example.com")
        assert await runtime.pins.set_cashier_pin(token, "135790") == cashier_id
        record = await store.get(cashiers_path(owner.company_id, branch_id), cashier_id)
        assert record.data["status"] == "active"
        assert identity.users[cashier_id]["disabled"] is False

    async def test_invite_needs_email(self, runtime):
        owner, branch = await owner_with_branch(runtime)
        with pytest.raises(ValidationError, match="Email is required to send cashier invite"):
            await runtime.provisioning.create_cashier(owner, branch["branchId"], "Nimal")

    async def test_manager_limited_to_own_branch(self, runtime):
        owner, branch = await owner_with_branch(runtime)
        other = await runtime.provisioning.create_branch(owner, "Kandy")
        manager = manager_of(owner, branch["branchId"])

        created = await runtime.provisioning.create_cashier(manager, branch["branchId"], "Nimal", pin="1357")
        assert created["cashierSlug"] == "cashier1"
        with pytest.raises(NotAuthorized, match="Not authorized to manage this branch"):
            await runtime.provisioning.create_cashier(manager, other["branchId"], "Kumari", pin="2468")

    async def test_cashier_cannot_add_cashiers(self, runtime):
        with pytest.raises(NotAuthorized):
            await runtime.provisioning.create_cashier(as_claims(CASHIER_CLAIMS), "b1", "Kumari", pin="2468")

    async def test_list(self, runtime):
        owner, branch = await owner_with_branch(runtime)
        await runtime.provisioning.create_cashier(owner, branch["branchId"], "Nimal", pin="1357")
        await runtime.provisioning.create_cashier(
            owner, branch["branchId"], "Kumari", email="kumari@example.com"
        )

        cashiers = await runtime.provisioning.list_cashiers(owner, branch["branchId"])

        assert {c["slug"]: c["status"] for c in cashiers} == {"cashier1": "active", "cashier2": "invited"}
        assert {c["displayName"] for c in cashiers} == {"Nimal", "Kumari"}
