"""Short-lived numeric codes mailed to a user to prove control of an address."""

from __future__ import annotations

import asyncio
import hashlib
import math
import re
import secrets
import time
import uuid
from typing import Any

from lankaqr.logging import get_logger, redact_email
from lankaqr.service.email import EmailService
from lankaqr.service.errors import RateLimited, ServerError, ValidationError
from lankaqr.storage.common import EMAIL_OTPS, DocumentStore
from lankaqr.storage.models import now_ms

logger = get_logger(__name__)

CODE_PATTERN = re.compile(r"^[0-9]{4,6}$")
DEFAULT_TTL_SECONDS = 5 * 60


def hash_code(code: str) -> str:
    return hashlib.sha256(code.encode("utf-8")).hexdigest()


def require_code(code: Any) -> str:
    value = str(code or "").strip()
    if not CODE_PATTERN.match(value):
        raise ValidationError("Invalid code")
    return value


class EmailCodes:
    """Issue and redeem 6-digit email codes stored as sha256 digests.

    Only one live code per address: a second request while one is unexpired
    raises ``RateLimited`` with the seconds left in the message.
    """

    def __init__(
        self,
        store: DocumentStore,
        email: EmailService,
        *,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
    ) -> None:
        self.store = store
        self.email = email
        self.ttl_seconds = ttl_seconds

    async def send(self, address: str) -> int:
        """Mail a fresh code to ``address``; returns its lifetime in seconds."""
        existing = await self.store.find(EMAIL_OTPS, {"email": address})
        current = now_ms()
        live = [int(doc.data.get("expires_at_ms") or 0) for doc in existing]
        live = [expires for expires in live if expires > current]
        if live:
            secs_left = math.ceil((max(live) - current) / 1000)
            raise RateLimited(f"OTP already sent. Try again in {secs_left}s.")
        if existing:
            await asyncio.gather(*(self.store.delete(EMAIL_OTPS, doc.id) for doc in existing))

        code = str(100000 + secrets.randbelow(900000))
        await self.store.set(
            EMAIL_OTPS,
            f"otp_{uuid.uuid4().hex}",
            {
                "email": address,
                "codeHash": hash_code(code),
                "created_at": time.time(),
                "expires_at_ms": current + self.ttl_seconds * 1000,
                "attempts": 0,
            },
        )
        sent = await asyncio.to_thread(
            self.email.send_code, address, code, ttl_minutes=self.ttl_seconds // 60
        )
        if not sent:
            raise ServerError("Failed to send email")
        logger.info("email_code_sent", email=redact_email(address))
        return self.ttl_seconds

    async def redeem(self, address: str, code: str) -> None:
        """Delete the matching unexpired code or raise ``ValidationError``."""
        wanted = hash_code(code)
        current = now_ms()
        for doc in await self.store.find(EMAIL_OTPS, {"email": address}):
            if int(doc.data.get("expires_at_ms") or 0) < current:
                continue
            if doc.data.get("codeHash") == wanted:
                await self.store.delete(EMAIL_OTPS, doc.id)
                return
        logger.info("email_code_rejected", email=redact_email(address))
        raise ValidationError("OTP not found or expired")
