from __future__ import annotations

import threading
from typing import Optional

import httpx

from lankaqr.config import Settings, get_settings, reset_settings_cache
from lankaqr.logging import get_logger
from lankaqr.service.credentials import CredentialHasher
from lankaqr.service.email import EmailService
from lankaqr.service.identity import FirebaseIdentityProvider, IdentityBridge, IdentityProvider
from lankaqr.service.invites import InviteService, OperatorAccounts, PinAccounts
from lankaqr.service.metrics import Metrics
from lankaqr.service.otp import EmailCodes
from lankaqr.service.provisioning import TenantProvisioning
from lankaqr.service.sessions import OPERATOR_ROLES, OperatorSessionStore
from lankaqr.service.tasks import CleanupQueue
from lankaqr.storage.common import DocumentStore
from lankaqr.storage.firestore import FirestoreStore, init_firebase_admin
from lankaqr.storage.memory import MemoryStore
from lankaqr.storage.tenants import TenantDirectory

logger = get_logger(__name__)


class Runtime:
    """Holds the process-wide service instances for the FastAPI app.

    ``store``, ``identity_provider`` and ``http_client`` may be injected;
    otherwise they are built from settings (Firestore and Firebase Auth, or
    the in-memory store when ``USE_MEMORY_STORE`` is set).
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        store: Optional[DocumentStore] = None,
        identity_provider: Optional[IdentityProvider] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            app_env=self.settings.app_env.value,
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        self.metrics = Metrics()
        self.cleanup = CleanupQueue()

        try:
            self.store = store or self._build_store()
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        if identity_provider is None:
            identity_provider = FirebaseIdentityProvider(init_firebase_admin(self.settings))
        self.identity_provider = identity_provider

        if not self.settings.pin_pepper:
            logger.warning("pin_pepper_missing", message="hashes are unpeppered")
        self.hasher = CredentialHasher(self.settings.pin_pepper)
        self.email = EmailService.from_settings(self.settings)
        if not self.email.is_configured:
            logger.warning("smtp_not_configured", message="invite links will be logged only")

        self.identity = IdentityBridge(
            self.identity_provider,
            self.settings,
            self.metrics,
            http_client=http_client,
        )
        self.tenants = TenantDirectory(
            self.store, self.metrics, ttl_ms=self.settings.tenant_cache_ttl_ms
        )
        self.invites = InviteService(self.store, ttl_hours=self.settings.invite_ttl_hours)

        self.operator_sessions = {
            key: OperatorSessionStore(
                self.store,
                role,
                cleanup=self.cleanup,
                ttl_seconds=self.settings.operator_session_ttl_seconds,
            )
            for key, role in OPERATOR_ROLES.items()
        }
        self.operators = {
            key: OperatorAccounts(
                self.store,
                role,
                self.operator_sessions[key],
                self.invites,
                self.hasher,
                self.email,
                app_origin=self.settings.app_origin,
            )
            for key, role in OPERATOR_ROLES.items()
        }
        self.codes = EmailCodes(
            self.store, self.email, ttl_seconds=self.settings.email_code_ttl_seconds
        )
        self.pins = PinAccounts(
            self.store, self.invites, self.hasher, self.identity, self.tenants, self.codes
        )
        self.provisioning = TenantProvisioning(
            self.store,
            self.identity,
            self.invites,
            self.hasher,
            self.email,
            self.tenants,
            app_origin=self.settings.app_origin,
            login_domain=self.settings.virtual_login_domain,
        )
        logger.info("runtime_init_completed", store_type=type(self.store).__name__)

    def _build_store(self) -> DocumentStore:
        if self.settings.use_memory_store:
            return MemoryStore()
        return FirestoreStore(self.settings)

    async def shutdown(self) -> None:
        await self.cleanup.drain()
        await self.identity.aclose()
        await self.store.close()
        logger.info("runtime_shutdown", cleanup_failures=self.cleanup.failed)


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests(
    *,
    store: Optional[DocumentStore] = None,
    identity_provider: Optional[IdentityProvider] = None,
    http_client: Optional[httpx.AsyncClient] = None,
) -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(
            settings,
            store=store,
            identity_provider=identity_provider,
            http_client=http_client,
        )
        return runtime
