from __future__ import annotations

from typing import Any, Protocol

from tenantauth.logging import get_logger
from tenantauth.service.bounded import call_bounded
from tenantauth.service.errors import AuthError, AuthErrorKind

logger = get_logger(__name__)


class RevocationBackend(Protocol):
    """Expiring key set; methods may be sync (in-memory) or async (Redis)."""

    def revoke(self, token_id: str, ttl_seconds: int) -> Any: ...

    def is_revoked(self, token_id: str) -> Any: ...


class RevocationStore:
    """Tracks revoked token identifiers until the token would have expired anyway.

    When the backend cannot be reached the store either fails closed (raises
    ``DEPENDENCY_UNAVAILABLE``) or, if ``fail_open`` was configured for a
    non-production profile, answers "not revoked" and logs the degradation.
    """

    def __init__(
        self,
        backend: RevocationBackend,
        *,
        fail_open: bool = False,
        timeout_seconds: float = 2.0,
    ) -> None:
        self.backend = backend
        self.fail_open = fail_open
        self.timeout_seconds = timeout_seconds

    async def revoke(self, token_id: str, ttl_seconds: int) -> None:
        """Remember ``token_id`` for ``ttl_seconds``; non-positive TTLs are a no-op."""
        if ttl_seconds <= 0:
            return
        try:
            await call_bounded(
                self.backend.revoke,
                token_id,
                int(ttl_seconds),
                timeout=self.timeout_seconds,
                dependency="revocation_store",
            )
        except AuthError as exc:
            self._degraded("revoke", token_id, exc)

    async def is_revoked(self, token_id: str) -> bool:
        try:
            return bool(
                await call_bounded(
                    self.backend.is_revoked,
                    token_id,
                    timeout=self.timeout_seconds,
                    dependency="revocation_store",
                )
            )
        except AuthError as exc:
            self._degraded("is_revoked", token_id, exc)
            return False

    def _degraded(self, operation: str, token_id: str, exc: AuthError) -> None:
        if exc.kind is not AuthErrorKind.DEPENDENCY_UNAVAILABLE or not self.fail_open:
            raise exc
        logger.error(
            "revocation_store_degraded_fail_open",
            operation=operation,
            token_id=token_id,
            message="revocation store unreachable; treating token as not revoked",
        )
