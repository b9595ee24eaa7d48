from __future__ import annotations

import asyncio

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from lankaqr.logging import get_logger

logger = get_logger(__name__)

ARGON2_ALGO = "argon2"


def is_argon_hash(stored_hash: object) -> bool:
    """Heuristic check that a stored value is an encoded argon2 hash."""
    return isinstance(stored_hash, str) and stored_hash.startswith("$argon2")


class CredentialHasher:
    """Peppered argon2id hashing for PINs and passwords.

    The pepper is appended to the secret before hashing, so hashes are only
    verifiable by a process configured with the same ``PIN_PEPPER``.
    """

    def __init__(self, pepper: str = "") -> None:
        self._pepper = pepper or ""
        self._hasher = PasswordHasher(
            time_cost=3,
            memory_cost=2**16,  # KiB, i.e. 64 MiB
            parallelism=1,
            type=Type.ID,
        )

    def hash_sync(self, secret: str) -> str:
        return self._hasher.hash(secret + self._pepper)

    def verify_sync(self, secret: str, stored_hash: str) -> bool:
        if not isinstance(stored_hash, str) or not stored_hash:
            return False
        try:
            return self._hasher.verify(stored_hash, secret + self._pepper)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError) as exc:
            logger.warning("credential_verify_error", error_type=type(exc).__name__)
            return False

    async def hash(self, secret: str) -> str:
        return await asyncio.to_thread(self.hash_sync, secret)

    async def verify(self, secret: str, stored_hash: str) -> bool:
        return await asyncio.to_thread(self.verify_sync, secret, stored_hash)
