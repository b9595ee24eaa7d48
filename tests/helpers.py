"""Shared helpers for HTTP-level tests."""

import httpx

from fakes import FakeIdentityProvider, exchange_transport
from lankaqr.service.runtime import Runtime, reset_runtime_for_tests
from lankaqr.storage.memory import MemoryStore


def sign_in(provider: FakeIdentityProvider, claims: dict, email: str | None = None) -> str:
    """Register a provider user from a claims dict and return a live session cookie."""
    uid = claims["uid"]
    provider.add_user(uid, email, **{k: v for k, v in claims.items() if k != "uid"})
    return provider.session_for(uid)


def runtime_with_exchange(monkeypatch, provider: FakeIdentityProvider) -> Runtime:
    """Rebuild the runtime with a REST API key and a mocked token exchange."""
    monkeypatch.setenv("FIREBASE_REST_API_KEY", "test-key")
    return reset_runtime_for_tests(
        store=MemoryStore(),
        identity_provider=provider,
        http_client=httpx.AsyncClient(transport=exchange_transport(provider)),
    )
