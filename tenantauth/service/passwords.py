from __future__ import annotations

import asyncio
import secrets
import string
from typing import Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import Argon2Error, InvalidHashError

from tenantauth.logging import get_logger

logger = get_logger(__name__)

MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_LENGTH = 128
_SPECIAL_CHARACTERS = frozenset(string.punctuation)


class CredentialVerifier:
    """Argon2id hash-and-verify for account passwords.

    ``verify`` never distinguishes a wrong password from a corrupt or foreign
    hash to its caller; both are ``False``.
    """

    def __init__(
        self,
        *,
        time_cost: int = 3,
        memory_cost_kib: int = 64 * 1024,
        parallelism: int = 4,
    ) -> None:
        self._hasher = PasswordHasher(
            time_cost=time_cost,
            memory_cost=memory_cost_kib,
            parallelism=parallelism,
            type=Type.ID,
        )
        self._dummy_hash = self._hasher.hash(secrets.token_urlsafe(24))

    def hash(self, secret: str) -> str:
        return self._hasher.hash(secret)

    def verify(self, secret: str, stored_hash: Optional[str]) -> bool:
        if not stored_hash:
            return False
        try:
            return self._hasher.verify(stored_hash, secret)
        except InvalidHashError:
            logger.debug("password_hash_unreadable")
            return False
        except Argon2Error as exc:
            # VerifyMismatchError and VerificationError both land here
            logger.debug("password_verification_failed", error_type=type(exc).__name__)
            return False

    def needs_rehash(self, stored_hash: str) -> bool:
        try:
            return self._hasher.check_needs_rehash(stored_hash)
        except InvalidHashError:
            return True

    def dummy_verify(self, secret: str) -> None:
        """Spend a verification's worth of work so unknown accounts are not faster to reject."""
        self.verify(secret, self._dummy_hash)

    async def hash_async(self, secret: str) -> str:
        return await asyncio.to_thread(self.hash, secret)

    async def verify_async(self, secret: str, stored_hash: Optional[str]) -> bool:
        return await asyncio.to_thread(self.verify, secret, stored_hash)

    async def dummy_verify_async(self, secret: str) -> None:
        await asyncio.to_thread(self.dummy_verify, secret)


def password_problems(secret: str) -> list[str]:
    """Return the strength rules ``secret`` fails; empty when acceptable."""
    problems: list[str] = []
    if len(secret) < MIN_PASSWORD_LENGTH:
        problems.append(f"password must be at least {MIN_PASSWORD_LENGTH} characters")
    if len(secret) > MAX_PASSWORD_LENGTH:
        problems.append(f"password must be at most {MAX_PASSWORD_LENGTH} characters")
    if not any(c.isupper() for c in secret):
        problems.append("password must contain an upper case letter")
    if not any(c.islower() for c in secret):
        problems.append("password must contain a lower case letter")
    if not any(c.isdigit() for c in secret):
        problems.append("password must contain a digit")
    if not any(c in _SPECIAL_CHARACTERS for c in secret):
        problems.append("password must contain a special character")
    return problems


def is_strong(secret: str) -> bool:
    return not password_problems(secret)
