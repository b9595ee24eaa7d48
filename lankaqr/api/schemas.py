from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, field_validator

# Maximum length accepted for any free-form request string
MAX_STRING_LENGTH = 8192


def _as_text(value: Any) -> Optional[str]:
    """Accept strings and bare numbers (PINs often arrive as JSON numbers)."""
    if value is None:
        return None
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, str):
        return value[:MAX_STRING_LENGTH]
    return None


class _Request(BaseModel):
    """Lenient request body: the services own the user-facing validation messages."""

    model_config = ConfigDict(extra="ignore")


class SessionCreateRequest(_Request):
    idToken: Optional[str] = None
    expiresIn: Optional[int] = None

    @field_validator("idToken", mode="before")
    @classmethod
    def _token(cls, value: Any) -> Optional[str]:
        return _as_text(value)

    @field_validator("expiresIn", mode="before")
    @classmethod
    def _expires(cls, value: Any) -> Optional[int]:
        # Non-numeric lifetimes fall back to the default
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return None
        return int(value)


class SessionLandingRequest(_Request):
    customToken: Optional[str] = None
    redirectTo: Optional[str] = None

    @field_validator("customToken", "redirectTo", mode="before")
    @classmethod
    def _text(cls, value: Any) -> Optional[str]:
        return _as_text(value)

    def safe_redirect(self) -> str:
        """Same-origin path to land on; anything else becomes ``/``."""
        target = (self.redirectTo or "/").strip()
        if not target.startswith("/") or target.startswith("//") or "\\" in target:
            return "/"
        return target


class PinSigninRequest(_Request):
    identifier: Optional[str] = None
    pin: Optional[str] = None

    @field_validator("identifier", "pin", mode="before")
    @classmethod
    def _text(cls, value: Any) -> Optional[str]:
        return _as_text(value)


class OperatorSigninRequest(_Request):
    email: Optional[str] = None
    password: Optional[str] = None

    @field_validator("email", "password", mode="before")
    @classmethod
    def _text(cls, value: Any) -> Optional[str]:
        return _as_text(value)


class OperatorInviteRequest(_Request):
    email: Optional[str] = None
    name: Optional[str] = None

    @field_validator("email", "name", mode="before")
    @classmethod
    def _text(cls, value: Any) -> Optional[str]:
        return _as_text(value)


class EmailRequest(_Request):
    email: Optional[str] = None

    @field_validator("email", mode="before")
    @classmethod
    def _text(cls, value: Any) -> Optional[str]:
        return _as_text(value)


class SetPasswordRequest(_Request):
    token: Optional[str] = None
    password: Optional[str] = None

    @field_validator("token", "password", mode="before")
    @classmethod
    def _text(cls, value: Any) -> Optional[str]:
        return _as_text(value)


class SetPinRequest(_Request):
    token: Optional[str] = None
    pin: Optional[str] = None

    @field_validator("token", "pin", mode="before")
    @classmethod
    def _text(cls, value: Any) -> Optional[str]:
        return _as_text(value)


class UserPinRequest(_Request):
    pin: Optional[str] = None

    @field_validator("pin", mode="before")
    @classmethod
    def _text(cls, value: Any) -> Optional[str]:
        return _as_text(value)


class ResetPinRequest(_Request):
    email: Optional[str] = None
    code: Optional[str] = None
    newPin: Optional[str] = None

    @field_validator("email", "code", "newPin", mode="before")
    @classmethod
    def _text(cls, value: Any) -> Optional[str]:
        return _as_text(value)


def _as_mapping(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


class MerchantOnboardRequest(_Request):
    accountType: Optional[str] = None
    kyc: Dict[str, Any] = {}
    contact: Dict[str, Any] = {}

    @field_validator("accountType", mode="before")
    @classmethod
    def _text(cls, value: Any) -> Optional[str]:
        return _as_text(value)

    @field_validator("kyc", "contact", mode="before")
    @classmethod
    def _mapping(cls, value: Any) -> Dict[str, Any]:
        return _as_mapping(value)


class BranchCreateRequest(_Request):
    name: Optional[str] = None
    address: Optional[str] = None

    @field_validator("name", "address", mode="before")
    @classmethod
    def _text(cls, value: Any) -> Optional[str]:
        return _as_text(value)


class StaffRequest(_Request):
    """Body for adding a branch manager or cashier; no PIN means an emailed invite."""

    displayName: Optional[str] = None
    pin: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None

    @field_validator("displayName", "pin", "email", "phone", mode="before")
    @classmethod
    def _text(cls, value: Any) -> Optional[str]:
        return _as_text(value)


class OkResponse(BaseModel):
    ok: bool = True
    message: Optional[str] = None


class ErrorResponse(BaseModel):
    ok: bool = False
    message: str


class SessionVerifyResponse(BaseModel):
    ok: bool = True
    uid: str
    email: Optional[str] = None
    role: Optional[str] = None
    accountType: Optional[str] = None
    companyId: Optional[str] = None
    companySlug: Optional[str] = None
    branchId: Optional[str] = None
    branchSlug: Optional[str] = None
    cashierSlug: Optional[str] = None
    permissions: List[str]
    # Present only when the caller asked about a specific path
    allowed: Optional[bool] = None
    redirectTo: Optional[str] = None

    def to_body(self) -> dict:
        """Claim fields are always present (null when unset); path fields only when asked."""
        unasked = {key for key in ("allowed", "redirectTo") if getattr(self, key) is None}
        return self.model_dump(exclude=unasked)
