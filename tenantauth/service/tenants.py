from __future__ import annotations

from typing import Any, List, Optional, Protocol

from tenantauth.logging import get_logger
from tenantauth.service.bounded import call_bounded
from tenantauth.service.errors import AuthError, AuthErrorKind
from tenantauth.storage.models import TenantMembership

logger = get_logger(__name__)


class MembershipSource(Protocol):
    def list_memberships_for_principal(self, principal_id: str) -> Any: ...


class TenantContextResolver:
    """Answers which tenants a principal may act within, and whether they are open."""

    def __init__(
        self,
        source: MembershipSource,
        *,
        timeout_seconds: float = 2.0,
        redirect_template: Optional[str] = None,
    ) -> None:
        self.source = source
        self.timeout_seconds = timeout_seconds
        self.redirect_template = redirect_template

    async def list_for_principal(self, principal_id: str) -> List[TenantMembership]:
        memberships = await call_bounded(
            self.source.list_memberships_for_principal,
            principal_id,
            timeout=self.timeout_seconds,
            dependency="tenant_directory",
        )
        return list(memberships or [])

    async def resolve(self, principal_id: str, tenant_id: str) -> TenantMembership:
        """The principal's membership in ``tenant_id``.

        Raises TENANT_NOT_AUTHORIZED when there is no membership and
        TENANT_NOT_ACTIVE when the tenant itself is not active.
        """
        for membership in await self.list_for_principal(principal_id):
            if membership.tenant_id != tenant_id:
                continue
            if not membership.tenant_active:
                raise AuthError(
                    AuthErrorKind.TENANT_NOT_ACTIVE,
                    "tenant is not active",
                    detail={"tenant_id": tenant_id},
                )
            return membership
        raise AuthError(
            AuthErrorKind.TENANT_NOT_AUTHORIZED,
            "no access to tenant",
            detail={"tenant_id": tenant_id},
        )

    def redirect_url(self, membership: TenantMembership) -> Optional[str]:
        if not self.redirect_template or not membership.tenant_subdomain:
            return None
        return self.redirect_template.format(
            subdomain=membership.tenant_subdomain, tenant_id=membership.tenant_id
        )
