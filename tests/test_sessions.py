"""Tests for opaque admin/staff sessions."""

import pytest

from lankaqr.service.sessions import (
    OPERATOR_ROLES,
    OperatorSessionStore,
    get_operator_role,
    new_session_id,
)
from lankaqr.service.tasks import CleanupQueue
from lankaqr.storage.common import ADMIN_SESSIONS, ADMINS, STAFF, STAFF_SESSIONS
from lankaqr.storage.memory import MemoryStore
from lankaqr.storage.models import now_ms


class BrokenStore(MemoryStore):
    """Store whose reads fail, as during a backend outage."""

    async def get(self, collection, doc_id):
        raise RuntimeError("backend unavailable")

    async def find(self, collection, filters, *, limit=None):
        raise RuntimeError("backend unavailable")


@pytest.fixture
def memory():
    return MemoryStore()


@pytest.fixture
def cleanup():
    return CleanupQueue()


def admin_sessions(memory, cleanup, ttl_seconds=3600):
    return OperatorSessionStore(memory, OPERATOR_ROLES["admin"], cleanup=cleanup, ttl_seconds=ttl_seconds)


def staff_sessions(memory, cleanup):
    return OperatorSessionStore(memory, OPERATOR_ROLES["staff"], cleanup=cleanup)


def test_session_ids_are_256_bit_hex():
    first, second = new_session_id(), new_session_id()
    assert len(first) == 64
    int(first, 16)
    assert first != second


def test_operator_role_lookup():
    assert get_operator_role("admin").cookie_name == "admin_session"
    assert get_operator_role("staff").principal_field == "staffId"
    assert get_operator_role("owner") is None
    assert get_operator_role(None) is None


class TestSessionLifecycle:
    async def test_create_persists_record(self, memory, cleanup):
        sessions = admin_sessions(memory, cleanup)
        record = await sessions.create("admin-1")

        doc = await memory.get(ADMIN_SESSIONS, record.id)
        assert doc.data["adminId"] == "admin-1"
        assert doc.data["expires_at_ms"] == record.expires_at_ms
        assert record.expires_at_ms > now_ms()

    async def test_resolve_returns_principal(self, memory, cleanup):
        await memory.set(ADMINS, "admin-1", {"email": "root@example.com", "name": "Root"})
        sessions = admin_sessions(memory, cleanup)
        record = await sessions.create("admin-1")

        principal = await sessions.resolve(record.id)
        assert principal.id == "admin-1"
        assert principal.kind == "admin"
        assert principal.email == "root@example.com"

    async def test_unknown_or_empty_session_is_none(self, memory, cleanup):
        sessions = admin_sessions(memory, cleanup)
        assert await sessions.resolve(None) is None
        assert await sessions.resolve("") is None
        assert await sessions.resolve("deadbeef") is None

    async def test_expired_session_is_deleted(self, memory, cleanup):
        """An expired record resolves to nobody and is removed."""
        await memory.set(ADMINS, "admin-1", {"email": "root@example.com"})
        await memory.set(
            ADMIN_SESSIONS,
            "old",
            {"adminId": "admin-1", "created_at": 0, "expires_at_ms": now_ms() - 1000},
        )
        sessions = admin_sessions(memory, cleanup)

        assert await sessions.resolve("old") is None
        assert await memory.get(ADMIN_SESSIONS, "old") is None

    async def test_session_for_deleted_principal(self, memory, cleanup):
        sessions = staff_sessions(memory, cleanup)
        record = await sessions.create("gone")
        assert await sessions.resolve(record.id) is None

    async def test_destroy(self, memory, cleanup):
        await memory.set(STAFF, "staff-1", {"email": "ops@example.com"})
        sessions = staff_sessions(memory, cleanup)
        record = await sessions.create("staff-1")

        await sessions.destroy(record.id)
        await sessions.destroy(None)
        assert await sessions.resolve(record.id) is None

    async def test_resolve_fails_closed(self, cleanup):
        """Store errors yield an unauthenticated result, never an exception."""
        sessions = admin_sessions(BrokenStore(), cleanup)
        assert await sessions.resolve("anything") is None


class TestSingleSession:
    async def test_admin_signin_supersedes_previous_sessions(self, memory, cleanup):
        await memory.set(ADMINS, "admin-1", {"email": "root@example.com"})
        sessions = admin_sessions(memory, cleanup)
        first = await sessions.create("admin-1")
        second = await sessions.create("admin-1")
        await cleanup.drain()

        assert await sessions.resolve(first.id) is None
        assert (await sessions.resolve(second.id)).id == "admin-1"
        remaining = await memory.find(ADMIN_SESSIONS, {"adminId": "admin-1"})
        assert [doc.id for doc in remaining] == [second.id]

    async def test_other_admins_are_untouched(self, memory, cleanup):
        sessions = admin_sessions(memory, cleanup)
        other = await sessions.create("admin-2")
        await sessions.create("admin-1")
        await cleanup.drain()

        assert await memory.get(ADMIN_SESSIONS, other.id) is not None

    async def test_staff_keeps_concurrent_sessions(self, memory, cleanup):
        await memory.set(STAFF, "staff-1", {"email": "ops@example.com"})
        sessions = staff_sessions(memory, cleanup)
        first = await sessions.create("staff-1")
        second = await sessions.create("staff-1")
        await cleanup.drain()

        assert (await sessions.resolve(first.id)).id == "staff-1"
        assert (await sessions.resolve(second.id)).id == "staff-1"
        assert len(await memory.find(STAFF_SESSIONS, {"staffId": "staff-1"})) == 2

    async def test_lookup_failure_still_creates_session(self, cleanup):
        """Superseding is best effort; a failed lookup does not block sign-in."""

        class FindFails(MemoryStore):
            async def find(self, collection, filters, *, limit=None):
                raise RuntimeError("index missing")

        store = FindFails()
        sessions = admin_sessions(store, cleanup)
        record = await sessions.create("admin-1")
        assert await store.get(ADMIN_SESSIONS, record.id) is not None


class TestCleanupQueue:
    async def test_failed_job_is_counted_not_raised(self, cleanup):
        async def boom():
            raise RuntimeError("delete failed")

        cleanup.schedule("boom", boom)
        await cleanup.drain()
        assert cleanup.failed == 1
        assert cleanup.pending == 0
