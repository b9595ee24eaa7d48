from __future__ import annotations

import html
import json
from typing import Any, Dict, Optional
from urllib.parse import parse_qsl

from fastapi import APIRouter, Query, Request, Response
from fastapi.responses import HTMLResponse, JSONResponse

from lankaqr.api.error_handling import error_response
from lankaqr.api.schemas import (
    BranchCreateRequest,
    EmailRequest,
    MerchantOnboardRequest,
    OkResponse,
    OperatorInviteRequest,
    OperatorSigninRequest,
    PinSigninRequest,
    ResetPinRequest,
    SessionCreateRequest,
    SessionLandingRequest,
    SessionVerifyResponse,
    SetPasswordRequest,
    SetPinRequest,
    StaffRequest,
    UserPinRequest,
)
from lankaqr.logging import get_logger
from lankaqr.service.errors import InvalidSession, NotAuthorized, ValidationError
from lankaqr.service.identity import (
    SESSION_COOKIE,
    operator_cookie_options,
    session_cookie_options,
)
from lankaqr.service.invites import require_email
from lankaqr.service.provisioning import MerchantProfile
from lankaqr.service.routing import get_default_route_for_role, has_permission
from lankaqr.service.runtime import Runtime, get_runtime
from lankaqr.service.sessions import get_operator_role
from lankaqr.storage.models import IdentityClaims, Principal

logger = get_logger(__name__)

router = APIRouter(prefix="/api")


def _clear_cookie(response: Response, name: str, options: Dict[str, Any]) -> None:
    response.delete_cookie(
        name,
        path=options["path"],
        secure=options["secure"],
        httponly=options["httponly"],
        samesite=options["samesite"],
    )


def _operator(runtime: Runtime, role: str):
    if get_operator_role(role) is None:
        raise ValidationError("Unknown role")
    return runtime.operators[role]


async def _session_claims(request: Request, runtime: Runtime) -> Optional[IdentityClaims]:
    return await runtime.identity.try_resolve_claims(request.cookies.get(SESSION_COOKIE))


async def require_admin(request: Request, runtime: Runtime) -> Principal:
    """The admin behind the ``admin_session`` cookie, or ``InvalidSession``."""
    store = runtime.operator_sessions["admin"]
    principal = await store.resolve(request.cookies.get(store.role.cookie_name))
    if principal is None:
        raise InvalidSession("Unauthorized")
    return principal


# Identity-provider session cookie


@router.get("/session/verify", tags=["session"])
async def verify_session(request: Request, path: Optional[str] = Query(default=None)):
    """Verify the ``session`` cookie and return the caller's claims.

    Missing permissions are re-issued on the way through. When ``path`` is
    given the response also says whether that path is allowed and, if not,
    where the caller should go instead.
    """
    runtime = get_runtime()
    claims = await _session_claims(request, runtime)
    if claims is None:
        return error_response(401, "No valid session")

    body = SessionVerifyResponse(
        uid=claims.uid,
        email=claims.email,
        role=claims.role,
        accountType=claims.account_type,
        companyId=claims.company_id,
        companySlug=claims.company_slug,
        branchId=claims.branch_id,
        branchSlug=claims.branch_slug,
        cashierSlug=claims.cashier_slug,
        permissions=claims.permissions,
    )
    if path:
        body.allowed = has_permission(claims.permissions, path)
        if not body.allowed:
            body.redirectTo = get_default_route_for_role(claims.role, claims.slug_context())
    return body.to_body()


@router.post("/session/create", tags=["session"])
async def create_session(body: SessionCreateRequest, response: Response):
    runtime = get_runtime()
    if not body.idToken:
        raise ValidationError("Missing idToken")
    cookie = await runtime.identity.create_session_cookie(body.idToken, body.expiresIn)
    response.set_cookie(
        SESSION_COOKIE,
        cookie.value,
        **session_cookie_options(runtime.settings, cookie.max_age_seconds),
    )
    return OkResponse()


@router.post("/session/destroy", tags=["session"])
async def destroy_session(response: Response):
    runtime = get_runtime()
    _clear_cookie(response, SESSION_COOKIE, session_cookie_options(runtime.settings, 0))
    return OkResponse()


@router.post("/session/refresh", tags=["session"])
async def refresh_session(request: Request, response: Response):
    runtime = get_runtime()
    current = request.cookies.get(SESSION_COOKIE)
    if not current:
        raise InvalidSession("No session cookie")
    cookie = await runtime.identity.refresh(current)
    if cookie is None:
        return {"ok": True, "refreshed": False}
    response.set_cookie(
        SESSION_COOKIE,
        cookie.value,
        **session_cookie_options(runtime.settings, cookie.max_age_seconds),
    )
    return {"ok": True, "refreshed": True}


async def _landing_body(request: Request) -> Dict[str, Any]:
    content_type = request.headers.get("content-type", "")
    raw = await request.body()
    if "application/x-www-form-urlencoded" in content_type:
        return dict(parse_qsl(raw.decode("utf-8", errors="replace")))
    try:
        data = json.loads(raw or b"{}")
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


def _landing_page(target: str) -> str:
    return (
        "<!doctype html><html><head><meta charset=\"utf-8\">"
        "<meta name=\"viewport\" content=\"width=device-width,initial-scale=1\" />"
        "<title>Signing in…</title></head><body>"
        f"<script>window.location.replace({json.dumps(target)});</script>"
        f"<noscript><a href=\"{html.escape(target, quote=True)}\">Continue</a></noscript>"
        "</body></html>"
    )


@router.post("/session/landing", tags=["session"])
async def session_landing(request: Request):
    """Exchange a custom token, set the session cookie and hand back a redirect page.

    A client-side redirect keeps the follow-up GET a plain navigation.
    """
    runtime = get_runtime()
    body = SessionLandingRequest.model_validate(await _landing_body(request))
    if not body.customToken:
        raise ValidationError("Missing customToken")
    id_token = await runtime.identity.exchange_custom_token(body.customToken)
    cookie = await runtime.identity.create_session_cookie(
        id_token, runtime.settings.session_cookie_ttl_ms
    )
    response = HTMLResponse(_landing_page(body.safe_redirect()))
    response.set_cookie(
        SESSION_COOKIE,
        cookie.value,
        **session_cookie_options(runtime.settings, cookie.max_age_seconds),
    )
    return response


# Cross-origin client hydration


def _cors_headers(runtime: Runtime, origin: Optional[str]) -> Dict[str, str]:
    if not origin:
        return {}
    allowed = runtime.settings.cors_allow_origins
    if "*" in allowed or origin.rstrip("/") in allowed:
        return {
            "Access-Control-Allow-Origin": origin,
            "Access-Control-Allow-Credentials": "true",
            "Vary": "Origin",
        }
    return {}


@router.options("/auth/custom-token", tags=["auth"])
async def custom_token_preflight(request: Request):
    runtime = get_runtime()
    headers = _cors_headers(runtime, request.headers.get("origin"))
    headers["Access-Control-Allow-Methods"] = "GET,OPTIONS"
    headers["Access-Control-Allow-Headers"] = (
        request.headers.get("access-control-request-headers") or "Content-Type"
    )
    return Response(status_code=204, headers=headers)


@router.get("/auth/custom-token", tags=["auth"])
async def custom_token(request: Request):
    """Mint a custom token for the session's user so the client SDK can sign in."""
    runtime = get_runtime()
    headers = _cors_headers(runtime, request.headers.get("origin"))
    claims = await _session_claims(request, runtime)
    if claims is None:
        return error_response(401, "No valid session", headers=headers)
    try:
        token = await runtime.identity.create_custom_token(claims.uid)
    except Exception as exc:
        logger.error(
            "custom_token_create_failed",
            uid=claims.uid,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        return error_response(500, "Server error", headers=headers)
    return JSONResponse({"ok": True, "customToken": token, "uid": claims.uid}, headers=headers)


@router.post("/auth/signin-pin", tags=["auth"])
async def signin_pin(body: PinSigninRequest):
    runtime = get_runtime()
    result = await runtime.pins.signin_with_pin(body.identifier, body.pin)
    return {"ok": True, **result}


# PIN setup from invite links


@router.post("/branch-manager/set-pin", tags=["pin"])
async def branch_manager_set_pin(body: SetPinRequest):
    runtime = get_runtime()
    await runtime.pins.set_branch_manager_pin(body.token, body.pin)
    return OkResponse(message="PIN set")


@router.post("/cashier/set-pin", tags=["pin"])
async def cashier_set_pin(body: SetPinRequest):
    runtime = get_runtime()
    await runtime.pins.set_cashier_pin(body.token, body.pin)
    return OkResponse(message="PIN set")


@router.post("/user/set-pin", tags=["pin"])
async def user_set_pin(body: UserPinRequest, request: Request):
    runtime = get_runtime()
    claims = await _session_claims(request, runtime)
    if claims is None:
        return error_response(401, "Not authenticated")
    await runtime.pins.set_user_pin(claims, body.pin)
    return OkResponse()


@router.post("/email/send-otp", tags=["pin"])
async def send_email_otp(body: EmailRequest):
    runtime = get_runtime()
    ttl_seconds = await runtime.codes.send(require_email(body.email))
    return {"ok": True, "message": "OTP sent", "ttlSeconds": ttl_seconds}


@router.post("/user/reset-pin", tags=["pin"])
async def user_reset_pin(body: ResetPinRequest):
    runtime = get_runtime()
    result = await runtime.pins.reset_user_pin(body.email, body.code, body.newPin)
    return {"ok": True, **result}


# Merchant onboarding and tenant staffing


@router.post("/merchant/onboard", tags=["tenants"])
async def merchant_onboard(body: MerchantOnboardRequest, request: Request):
    runtime = get_runtime()
    claims = await _session_claims(request, runtime)
    if claims is None:
        return error_response(401, "Not authenticated")
    if body.accountType not in ("individual", "company"):
        raise ValidationError("Invalid account type")
    profile = MerchantProfile.from_fields(body.kyc, body.contact)
    if body.accountType == "individual":
        result = await runtime.provisioning.onboard_individual(claims, profile)
    else:
        result = await runtime.provisioning.onboard_company(
            claims, profile, body.kyc.get("companyName")
        )
    return {"ok": True, **result}


@router.post("/company/branches", tags=["tenants"])
async def create_branch(body: BranchCreateRequest, request: Request):
    runtime = get_runtime()
    claims = await _session_claims(request, runtime)
    result = await runtime.provisioning.create_branch(claims, body.name, body.address)
    return {"ok": True, **result}


@router.post("/company/branches/{branch_id}/manager", tags=["tenants"])
async def assign_branch_manager(branch_id: str, body: StaffRequest, request: Request):
    runtime = get_runtime()
    claims = await _session_claims(request, runtime)
    result = await runtime.provisioning.assign_branch_manager(
        claims, branch_id, body.displayName, pin=body.pin, email=body.email, phone=body.phone
    )
    return {"ok": True, **result}


@router.delete("/company/branches/{branch_id}/manager", tags=["tenants"])
async def remove_branch_manager(branch_id: str, request: Request):
    runtime = get_runtime()
    claims = await _session_claims(request, runtime)
    removed = await runtime.provisioning.remove_branch_manager(claims, branch_id)
    return {"ok": True, "removed": removed}


@router.get("/company/branches/{branch_id}/cashiers", tags=["tenants"])
async def list_cashiers(branch_id: str, request: Request):
    runtime = get_runtime()
    claims = await _session_claims(request, runtime)
    cashiers = await runtime.provisioning.list_cashiers(claims, branch_id)
    return {"ok": True, "cashiers": cashiers}


@router.post("/company/branches/{branch_id}/cashiers", tags=["tenants"])
async def create_cashier(branch_id: str, body: StaffRequest, request: Request):
    runtime = get_runtime()
    claims = await _session_claims(request, runtime)
    result = await runtime.provisioning.create_cashier(
        claims, branch_id, body.displayName, pin=body.pin, email=body.email
    )
    return {"ok": True, **result}


# Diagnostics


@router.get("/debug/metrics", tags=["debug"])
async def debug_metrics():
    runtime = get_runtime()
    if runtime.settings.is_production:
        raise NotAuthorized("Forbidden")
    metrics = runtime.metrics.snapshot()
    metrics["cleanupPending"] = runtime.cleanup.pending
    metrics["cleanupFailed"] = runtime.cleanup.failed
    return {"ok": True, "metrics": metrics}


# Admin / staff back office


@router.post("/{role}/signin", tags=["operators"])
async def operator_signin(role: str, body: OperatorSigninRequest, response: Response):
    runtime = get_runtime()
    accounts = _operator(runtime, role)
    session = await accounts.signin(body.email, body.password)
    response.set_cookie(
        accounts.role.cookie_name,
        session.id,
        **operator_cookie_options(runtime.settings, accounts.sessions.ttl_seconds),
    )
    return OkResponse()


@router.post("/{role}/signout", tags=["operators"])
async def operator_signout(role: str, request: Request, response: Response):
    runtime = get_runtime()
    accounts = _operator(runtime, role)
    await accounts.signout(request.cookies.get(accounts.role.cookie_name))
    _clear_cookie(
        response, accounts.role.cookie_name, operator_cookie_options(runtime.settings, 0)
    )
    return OkResponse()


@router.post("/{role}/invite", tags=["operators"])
async def operator_invite(role: str, body: OperatorInviteRequest, request: Request):
    runtime = get_runtime()
    accounts = _operator(runtime, role)
    inviter = await require_admin(request, runtime)
    await accounts.invite(body.email, body.name, inviter=inviter)
    return OkResponse(message="Invite created")


@router.post("/{role}/reset-password", tags=["operators"])
async def operator_reset_password(role: str, body: EmailRequest):
    runtime = get_runtime()
    await _operator(runtime, role).reset_password(body.email)
    return OkResponse(message="Reset sent")


@router.post("/{role}/set-password", tags=["operators"])
async def operator_set_password(role: str, body: SetPasswordRequest):
    runtime = get_runtime()
    await _operator(runtime, role).set_password(body.token, body.password)
    return OkResponse(message="Password set")


@router.post("/{role}/check-exists", tags=["operators"])
async def operator_check_exists(role: str, body: EmailRequest):
    runtime = get_runtime()
    exists = await _operator(runtime, role).check_exists(body.email)
    return {"ok": True, "exists": exists}
