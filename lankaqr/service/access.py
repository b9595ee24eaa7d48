from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping, Optional
from urllib.parse import quote

SKIP_PREFIXES = ("/_next", "/static", "/favicon", "/api", "/healthz")

PROTECTED_PREFIXES = (
    "/qr-registration",
    "/generate-qr",
    "/transactions",
    "/summary",
    "/profile",
    "/settings",
)

PUBLIC_ROOT_SEGMENTS = frozenset(
    {
        "",
        "signin",
        "signup",
        "reset-pin",
        "docs",
        "public",
        "manifest.json",
        "sw.js",
        "icons",
        "robots.txt",
        # Operator areas authenticate with their own opaque session cookies
        "admin",
        "staff",
    }
)

# Presence of any one of these lets a request reach the page guard
SESSION_COOKIE_NAMES = ("session", "token", "uid")

NO_STORE_HEADERS = {
    "Cache-Control": "no-store, no-cache, must-revalidate, proxy-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
}


@dataclass(frozen=True)
class AccessDecision:
    allowed: bool
    redirect_to: Optional[str] = None
    no_store: bool = False


def is_protected_path(pathname: str) -> bool:
    if any(pathname == prefix or pathname.startswith(prefix + "/") for prefix in PROTECTED_PREFIXES):
        return True
    segments = [s for s in pathname.split("/") if s]
    if not segments:
        return False
    # Invite links land on a tenant set-pin page before any session exists
    if segments[-1] == "set-pin" and len(segments) > 1:
        return False
    first = segments[0]
    return first not in PUBLIC_ROOT_SEGMENTS and not first.startswith("_next")


def check_access(pathname: str, cookies: Mapping[str, str]) -> AccessDecision:
    """Cheap edge check: protected pages need a session-like cookie to exist.

    Cookie contents are not validated here; the page guards verify them.
    """
    if pathname.startswith(SKIP_PREFIXES) or not is_protected_path(pathname):
        return AccessDecision(allowed=True)
    if any(cookies.get(name) for name in SESSION_COOKIE_NAMES):
        return AccessDecision(allowed=True, no_store=True)
    return AccessDecision(allowed=False, redirect_to=f"/signin?from={quote(pathname, safe='')}")
