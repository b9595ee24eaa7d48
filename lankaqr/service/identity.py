from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol

import firebase_admin
import httpx
from firebase_admin import auth as firebase_auth
from firebase_admin import exceptions as firebase_exceptions

from lankaqr.config import (
    DEFAULT_SESSION_COOKIE_MS,
    MAX_SESSION_COOKIE_MS,
    MIN_SESSION_COOKIE_MS,
    Settings,
)
from lankaqr.logging import get_logger
from lankaqr.service.claims import ensure_claims_permissions, with_role_defaults
from lankaqr.service.errors import (
    InvalidIdToken,
    InvalidSession,
    ServerError,
)
from lankaqr.service.metrics import Metrics
from lankaqr.storage.models import IdentityClaims

logger = get_logger(__name__)

SESSION_COOKIE = "session"
EXCHANGE_URL = "https://identitytoolkit.googleapis.com/v1/accounts:signInWithCustomToken"


class IdentityProvider(Protocol):
    """Server-side identity provider operations.

    Implementations raise ``InvalidIdToken`` when a token is not a valid ID
    token and ``InvalidSession`` when a session cookie fails verification.
    """

    async def create_session_cookie(self, id_token: str, expires_in_ms: int) -> str: ...

    async def verify_session_cookie(
        self, cookie: str, check_revoked: bool = True
    ) -> Dict[str, Any]: ...

    async def create_custom_token(self, uid: str) -> str: ...

    async def set_claims(self, uid: str, claims: Dict[str, Any]) -> None: ...

    async def enable_and_revoke(self, uid: str) -> bool:
        """Enable the user and revoke refresh tokens; False when the user is unknown."""
        ...

    async def disable_and_revoke(self, uid: str) -> bool:
        """Disable the user and revoke refresh tokens; False when the user is unknown."""
        ...

    async def ensure_user(
        self,
        uid: str,
        *,
        email: Optional[str] = None,
        display_name: Optional[str] = None,
        disabled: bool = False,
    ) -> None:
        """Update the auth user, creating it first when missing."""
        ...

    async def find_uid_by_email(self, email: str) -> Optional[str]: ...


class FirebaseIdentityProvider:
    """IdentityProvider over ``firebase_admin.auth``; SDK calls run in a worker thread."""

    def __init__(self, app: firebase_admin.App) -> None:
        self.app = app

    async def create_session_cookie(self, id_token: str, expires_in_ms: int) -> str:
        try:
            cookie = await asyncio.to_thread(
                firebase_auth.create_session_cookie,
                id_token,
                expires_in_ms // 1000,
                app=self.app,
            )
        except (firebase_auth.InvalidIdTokenError, ValueError) as exc:
            raise InvalidIdToken("Invalid token", detail={"error": str(exc)}) from exc
        except firebase_exceptions.InvalidArgumentError as exc:
            raise InvalidIdToken("Invalid token", detail={"error": str(exc)}) from exc
        return cookie.decode() if isinstance(cookie, bytes) else cookie

    async def verify_session_cookie(
        self, cookie: str, check_revoked: bool = True
    ) -> Dict[str, Any]:
        try:
            return await asyncio.to_thread(
                firebase_auth.verify_session_cookie,
                cookie,
                check_revoked=check_revoked,
                app=self.app,
            )
        except (
            firebase_auth.InvalidSessionCookieError,
            firebase_auth.UserDisabledError,
            firebase_auth.UserNotFoundError,
            ValueError,
        ) as exc:
            raise InvalidSession(
                "Invalid session", detail={"error_type": type(exc).__name__}
            ) from exc

    async def create_custom_token(self, uid: str) -> str:
        token = await asyncio.to_thread(firebase_auth.create_custom_token, uid, app=self.app)
        return token.decode() if isinstance(token, bytes) else token

    async def set_claims(self, uid: str, claims: Dict[str, Any]) -> None:
        await asyncio.to_thread(firebase_auth.set_custom_user_claims, uid, claims, app=self.app)

    async def enable_and_revoke(self, uid: str) -> bool:
        try:
            await asyncio.to_thread(firebase_auth.get_user, uid, app=self.app)
        except firebase_auth.UserNotFoundError:
            return False
        await asyncio.to_thread(firebase_auth.update_user, uid, disabled=False, app=self.app)
        await asyncio.to_thread(firebase_auth.revoke_refresh_tokens, uid, app=self.app)
        return True

    async def disable_and_revoke(self, uid: str) -> bool:
        try:
            await asyncio.to_thread(firebase_auth.update_user, uid, disabled=True, app=self.app)
        except firebase_auth.UserNotFoundError:
            return False
        await asyncio.to_thread(firebase_auth.revoke_refresh_tokens, uid, app=self.app)
        return True

    async def ensure_user(
        self,
        uid: str,
        *,
        email: Optional[str] = None,
        display_name: Optional[str] = None,
        disabled: bool = False,
    ) -> None:
        fields: Dict[str, Any] = {"disabled": disabled}
        if email:
            fields["email"] = email
        if display_name:
            fields["display_name"] = display_name
        try:
            await asyncio.to_thread(firebase_auth.update_user, uid, app=self.app, **fields)
        except firebase_auth.UserNotFoundError:
            await asyncio.to_thread(firebase_auth.create_user, uid=uid, app=self.app, **fields)

    async def find_uid_by_email(self, email: str) -> Optional[str]:
        try:
            user = await asyncio.to_thread(firebase_auth.get_user_by_email, email, app=self.app)
        except firebase_auth.UserNotFoundError:
            return None
        return user.uid


@dataclass
class SessionCookie:
    value: str
    max_age_seconds: int


def clamp_session_ttl_ms(ttl_ms: Optional[int]) -> int:
    """Requested cookie lifetime, defaulted and kept within 5 minutes to 14 days."""
    if ttl_ms is None or ttl_ms <= 0:
        return DEFAULT_SESSION_COOKIE_MS
    return max(MIN_SESSION_COOKIE_MS, min(int(ttl_ms), MAX_SESSION_COOKIE_MS))


def session_cookie_options(settings: Settings, max_age_seconds: int) -> Dict[str, Any]:
    """``Response.set_cookie`` keyword arguments for the provider session cookie.

    Production cookies are ``SameSite=None; Secure`` so the portal works when
    embedded cross-site.
    """
    return {
        "max_age": max_age_seconds,
        "path": "/",
        "httponly": True,
        "secure": settings.is_production,
        "samesite": "none" if settings.is_production else "lax",
    }


def operator_cookie_options(settings: Settings, max_age_seconds: int) -> Dict[str, Any]:
    return {
        "max_age": max_age_seconds,
        "path": "/",
        "httponly": True,
        "secure": settings.is_production,
        "samesite": "lax",
    }


class IdentityBridge:
    """Session-cookie lifecycle on top of an ``IdentityProvider``."""

    def __init__(
        self,
        provider: IdentityProvider,
        settings: Settings,
        metrics: Metrics,
        *,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.provider = provider
        self.settings = settings
        self.metrics = metrics
        self._client = http_client
        self._owns_client = http_client is None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(15.0, connect=5.0))
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def exchange_custom_token(self, custom_token: str) -> str:
        """Trade a custom token for an ID token via the Identity Toolkit REST API."""
        api_key = self.settings.firebase_rest_api_key
        if not api_key:
            raise ServerError("Server error", detail={"reason": "FIREBASE_REST_API_KEY not set"})

        client = await self._get_client()
        try:
            response = await client.post(
                EXCHANGE_URL,
                params={"key": api_key},
                json={"token": custom_token, "returnSecureToken": True},
            )
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPStatusError as exc:
            logger.error(
                "custom_token_exchange_http_error",
                status_code=exc.response.status_code,
            )
            raise InvalidIdToken(
                "Invalid token", detail={"status_code": exc.response.status_code}
            ) from exc
        except (httpx.HTTPError, ValueError) as exc:
            logger.error(
                "custom_token_exchange_error",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise ServerError("Server error", detail={"error": str(exc)}) from exc

        id_token = payload.get("idToken") if isinstance(payload, dict) else None
        if not id_token:
            raise InvalidIdToken("Invalid token", detail={"reason": "exchange returned no idToken"})
        return id_token

    async def create_session_cookie(
        self, id_token: str, ttl_ms: Optional[int] = None
    ) -> SessionCookie:
        """Mint a session cookie, upgrading a custom token to an ID token if needed.

        Some client flows only hold a custom token. When the provider rejects
        the value as an ID token it is exchanged once and cookie creation is
        retried with the result.
        """
        expires_in_ms = clamp_session_ttl_ms(ttl_ms)
        try:
            value = await self.provider.create_session_cookie(id_token, expires_in_ms)
        except InvalidIdToken:
            logger.info("session_cookie_custom_token_fallback")
            exchanged = await self.exchange_custom_token(id_token)
            value = await self.provider.create_session_cookie(exchanged, expires_in_ms)
        return SessionCookie(value=value, max_age_seconds=expires_in_ms // 1000)

    async def verify_session_cookie(
        self, cookie: Optional[str], check_revoked: bool = True
    ) -> Dict[str, Any]:
        if not cookie:
            raise InvalidSession("No valid session")
        return await self.provider.verify_session_cookie(cookie, check_revoked=check_revoked)

    async def resolve_claims(self, cookie: Optional[str]) -> IdentityClaims:
        """Verify a session cookie and return its claims with role defaults merged.

        Lagging token permissions are re-issued as a side effect; a failure
        to re-issue is logged and does not fail verification.
        """
        decoded = await self.verify_session_cookie(cookie)
        claims = IdentityClaims.from_decoded(decoded)
        merged = with_role_defaults(claims.role, claims.permissions)
        try:
            await ensure_claims_permissions(self.provider, decoded, merged)
        except Exception as exc:
            logger.warning(
                "claims_permissions_upgrade_failed",
                uid=claims.uid,
                error_type=type(exc).__name__,
                error=str(exc),
            )
        claims.permissions = merged
        return claims

    async def try_resolve_claims(self, cookie: Optional[str]) -> Optional[IdentityClaims]:
        try:
            return await self.resolve_claims(cookie)
        except InvalidSession:
            return None
        except Exception as exc:
            logger.error(
                "session_claims_resolve_failed",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return None

    async def create_custom_token(self, uid: str) -> str:
        return await self.provider.create_custom_token(uid)

    async def refresh(self, cookie: Optional[str]) -> Optional[SessionCookie]:
        """Re-mint the session cookie for the cookie's user.

        Returns None when no REST API key is configured, leaving the current
        cookie in place. Raises ``InvalidSession`` for an invalid cookie.
        """
        decoded = await self.verify_session_cookie(cookie)
        if not self.settings.firebase_rest_api_key:
            return None
        uid = decoded.get("uid") or decoded.get("sub")
        custom_token = await self.provider.create_custom_token(uid)
        id_token = await self.exchange_custom_token(custom_token)
        return await self.create_session_cookie(id_token, self.settings.session_cookie_ttl_ms)

    async def enable_and_revoke(self, uid: str) -> bool:
        """Re-enable a user and revoke their refresh tokens; never raises."""
        try:
            found = await self.provider.enable_and_revoke(uid)
        except Exception as exc:
            logger.warning(
                "enable_and_revoke_failed",
                uid=uid,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
        if found:
            self.metrics.increment_revocation()
            logger.info("refresh_tokens_revoked", uid=uid)
        return found

    async def disable_and_revoke(self, uid: str) -> bool:
        """Disable a user and revoke their refresh tokens; never raises."""
        try:
            found = await self.provider.disable_and_revoke(uid)
        except Exception as exc:
            logger.warning(
                "disable_and_revoke_failed",
                uid=uid,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
        if found:
            self.metrics.increment_revocation()
            logger.info("user_disabled", uid=uid)
        return found

    async def provision_user(
        self,
        uid: str,
        claims: Dict[str, Any],
        *,
        email: Optional[str] = None,
        display_name: Optional[str] = None,
        disabled: bool = False,
    ) -> None:
        """Create or update the auth user and set its custom claims."""
        await self.provider.ensure_user(
            uid, email=email, display_name=display_name, disabled=disabled
        )
        await self.provider.set_claims(uid, claims)
        logger.info(
            "auth_user_provisioned",
            uid=uid,
            role=claims.get("role"),
            disabled=disabled,
        )

    async def find_uid_by_email(self, email: str) -> Optional[str]:
        return await self.provider.find_uid_by_email(email)
