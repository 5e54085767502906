from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, List, Optional, Protocol

from tenantauth.config import PasswordChangeRevokes
from tenantauth.logging import audit_event, email_digest, get_logger
from tenantauth.service.bounded import call_bounded
from tenantauth.service.errors import AuthError, AuthErrorKind, ValidationError
from tenantauth.service.passwords import CredentialVerifier, password_problems
from tenantauth.service.revocation import RevocationStore
from tenantauth.service.sessions import RotationResult, SessionRegistry
from tenantauth.service.tenants import TenantContextResolver
from tenantauth.service.tokens import (
    ACCESS,
    REFRESH,
    IssuedToken,
    TokenClaims,
    TokenCodec,
    token_id,
)
from tenantauth.storage.models import Principal, TenantMembership

logger = get_logger(__name__)


class PrincipalRepository(Protocol):
    def get_principal_by_email(self, email: str) -> Any: ...

    def get_principal(self, principal_id: str) -> Any: ...

    def update_last_authenticated(self, principal_id: str, timestamp: datetime) -> Any: ...

    def save_password_hash(self, principal_id: str, password_hash: str) -> Any: ...


@dataclass
class AuthContext:
    principal: Principal
    claims: TokenClaims

    @property
    def principal_id(self) -> str:
        return self.principal.id

    @property
    def session_id(self) -> Optional[str]:
        return self.claims.sid

    @property
    def tenant_id(self) -> Optional[str]:
        return self.claims.tenant_id


@dataclass
class TokenPair:
    access_token: str
    access_expires_at: datetime
    refresh_token: str
    refresh_expires_at: datetime
    session_id: str
    token_type: str = "bearer"


@dataclass
class LoginResult:
    principal: Principal
    tokens: TokenPair
    tenants: List[TenantMembership] = field(default_factory=list)
    tenant: Optional[TenantMembership] = None


@dataclass
class TenantSelection:
    access_token: str
    access_expires_at: datetime
    membership: TenantMembership
    redirect_url: Optional[str] = None
    token_type: str = "bearer"


class AuthLifecycleManager:
    """Login, tenant selection, refresh rotation, logout and password change.

    Every authentication failure leaves this class as an ``AuthError``; the
    specific reason goes to the audit channel only.
    """

    def __init__(
        self,
        *,
        principals: PrincipalRepository,
        credentials: CredentialVerifier,
        codec: TokenCodec,
        revocation: RevocationStore,
        sessions: SessionRegistry,
        tenants: TenantContextResolver,
        password_change_revokes: PasswordChangeRevokes = PasswordChangeRevokes.ALL,
        timeout_seconds: float = 2.0,
    ) -> None:
        self.principals = principals
        self.credentials = credentials
        self.codec = codec
        self.revocation = revocation
        self.sessions = sessions
        self.tenants = tenants
        self.password_change_revokes = PasswordChangeRevokes(password_change_revokes)
        self.timeout_seconds = timeout_seconds
        self.logger = logger

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def _repo(self, fn, *args):
        return await call_bounded(
            fn, *args, timeout=self.timeout_seconds, dependency="principal_directory"
        )

    def _issue_access(
        self,
        subject: str,
        session_id: Optional[str],
        membership: Optional[TenantMembership] = None,
    ) -> IssuedToken:
        if membership is None:
            return self.codec.issue_access(subject, session_id=session_id)
        return self.codec.issue_access(
            subject,
            tenant_id=membership.tenant_id,
            role=membership.role,
            tenant_key=membership.tenant_subdomain,
            session_id=session_id,
        )

    # -- login ------------------------------------------------------------

    def _reject_login(
        self, email: str, reason: str, principal_id: Optional[str] = None
    ) -> AuthError:
        audit_event(
            "login_failed",
            outcome="failure",
            principal_id=principal_id,
            reason=reason,
            level="warning",
            email_digest=email_digest(email),
        )
        return AuthError(AuthErrorKind.INVALID_CREDENTIALS, detail={"reason": reason})

    async def login(
        self,
        email: str,
        password: str,
        *,
        tenant_id: Optional[str] = None,
        user_agent: Optional[str] = None,
        ip_addr: Optional[str] = None,
    ) -> LoginResult:
        """Exchange email and password for an access and refresh token.

        Unknown email, inactive or blocked account, and wrong password are all
        reported as INVALID_CREDENTIALS. When ``tenant_id`` is given the
        session is bound to that tenant and the access token carries it.
        """
        email = email.strip().lower()
        principal: Optional[Principal] = await self._repo(
            self.principals.get_principal_by_email, email
        )
        if principal is None:
            await self.credentials.dummy_verify_async(password)
            raise self._reject_login(email, "principal_not_found")
        if not principal.is_active:
            await self.credentials.dummy_verify_async(password)
            raise self._reject_login(email, "account_not_active", principal.id)
        if not await self.credentials.verify_async(password, principal.password_hash):
            raise self._reject_login(email, "invalid_password", principal.id)

        membership: Optional[TenantMembership] = None
        if tenant_id:
            try:
                membership = await self.tenants.resolve(principal.id, tenant_id)
            except AuthError as exc:
                audit_event(
                    "login_failed",
                    outcome="failure",
                    principal_id=principal.id,
                    reason=exc.kind.value,
                    level="warning",
                    tenant_id=tenant_id,
                )
                raise

        refresh = self.codec.issue_refresh(principal.id)
        session_id = await self.sessions.create(
            principal.id,
            refresh.token_id,
            self.codec.refresh_ttl,
            tenant_id=membership.tenant_id if membership else None,
            user_agent=user_agent,
            ip_addr=ip_addr,
        )
        access = self._issue_access(principal.id, session_id, membership)

        await self._repo(self.principals.update_last_authenticated, principal.id, self._now())
        if principal.password_hash and self.credentials.needs_rehash(principal.password_hash):
            rehashed = await self.credentials.hash_async(password)
            await self._repo(self.principals.save_password_hash, principal.id, rehashed)
            self.logger.info("password_rehashed", principal_id=principal.id)

        tenants = await self.tenants.list_for_principal(principal.id)
        audit_event(
            "login",
            outcome="success",
            principal_id=principal.id,
            session_id=session_id,
            tenant_id=membership.tenant_id if membership else None,
            user_agent=user_agent,
            ip_addr=ip_addr,
        )
        return LoginResult(
            principal=principal,
            tokens=TokenPair(
                access_token=access.token,
                access_expires_at=access.expires_at,
                refresh_token=refresh.token,
                refresh_expires_at=refresh.expires_at,
                session_id=session_id,
            ),
            tenants=tenants,
            tenant=membership,
        )

    # -- tenant selection -------------------------------------------------

    async def select_tenant(self, claims: TokenClaims, tenant_id: str) -> TenantSelection:
        """Re-issue the caller's access token scoped to ``tenant_id``.

        No refresh token or session is created.
        """
        try:
            membership = await self.tenants.resolve(claims.sub, tenant_id)
        except AuthError as exc:
            audit_event(
                "tenant_select_failed",
                outcome="failure",
                principal_id=claims.sub,
                reason=exc.kind.value,
                level="warning",
                tenant_id=tenant_id,
            )
            raise
        access = self._issue_access(claims.sub, claims.sid, membership)
        audit_event(
            "tenant_select",
            outcome="success",
            principal_id=claims.sub,
            tenant_id=membership.tenant_id,
            role=membership.role,
        )
        return TenantSelection(
            access_token=access.token,
            access_expires_at=access.expires_at,
            membership=membership,
            redirect_url=self.tenants.redirect_url(membership),
        )

    # -- refresh ----------------------------------------------------------

    def _reject_refresh(
        self,
        kind: AuthErrorKind,
        reason: str,
        principal_id: Optional[str] = None,
        *,
        level: str = "warning",
        **fields: Any,
    ) -> AuthError:
        audit_event(
            "refresh_failed",
            outcome="failure",
            principal_id=principal_id,
            reason=reason,
            level=level,
            **fields,
        )
        return AuthError(kind, detail={"reason": reason})

    def _unverified_fields(self, token: str) -> dict[str, Any]:
        """``sub`` and ``jti`` a rejected token claims to carry, for the audit trail only."""
        payload = self.codec.decode_unsafe(token) or {}
        return {
            f"claimed_{name}": payload[name]
            for name in ("sub", "jti")
            if isinstance(payload.get(name), str)
        }

    async def refresh(self, refresh_token: str) -> TokenPair:
        """Exchange a refresh token for a new pair, retiring the presented one.

        A refresh token that was already exchanged no longer matches its
        session and is rejected; of two concurrent exchanges exactly one wins.
        """
        result = self.codec.verify(refresh_token, expected_type=REFRESH)
        if not result.valid or result.claims is None:
            if result.expired:
                raise self._reject_refresh(
                    AuthErrorKind.TOKEN_EXPIRED,
                    "token_expired",
                    result.claims.sub if result.claims else None,
                    level="info",
                )
            raise self._reject_refresh(
                AuthErrorKind.SESSION_NOT_FOUND,
                "token_invalid",
                **self._unverified_fields(refresh_token),
            )
        claims = result.claims
        old_id = token_id(refresh_token)

        session = await self.sessions.find_by_subject_and_hash(claims.sub, old_id)
        if session is None:
            # Covers reuse of a token that was already rotated away
            raise self._reject_refresh(
                AuthErrorKind.SESSION_NOT_FOUND,
                "session_not_found",
                claims.sub,
                token_id=old_id,
            )
        if await self.revocation.is_revoked(old_id):
            raise self._reject_refresh(
                AuthErrorKind.TOKEN_REVOKED,
                "refresh_replay_detected",
                claims.sub,
                session_id=session.id,
                token_id=old_id,
            )

        principal: Optional[Principal] = await self._repo(self.principals.get_principal, claims.sub)
        if principal is None or not principal.is_active:
            await self.sessions.invalidate(session.id)
            raise self._reject_refresh(
                AuthErrorKind.ACCOUNT_NOT_ACTIVE,
                "account_not_active",
                claims.sub,
                session_id=session.id,
            )

        membership: Optional[TenantMembership] = None
        if session.tenant_id:
            try:
                membership = await self.tenants.resolve(claims.sub, session.tenant_id)
            except AuthError as exc:
                if exc.kind is AuthErrorKind.DEPENDENCY_UNAVAILABLE:
                    raise
                # Tenant status is not disclosed to refresh callers
                await self.sessions.invalidate(session.id)
                raise self._reject_refresh(
                    AuthErrorKind.SESSION_NOT_FOUND,
                    exc.kind.value,
                    claims.sub,
                    session_id=session.id,
                    tenant_id=session.tenant_id,
                ) from exc

        new_refresh = self.codec.issue_refresh(claims.sub)
        rotation = await self.sessions.rotate(
            session.id, old_id, new_refresh.token_id, self.codec.refresh_ttl
        )
        if rotation is RotationResult.CONFLICT:
            raise self._reject_refresh(
                AuthErrorKind.ROTATION_CONFLICT,
                "rotation_conflict",
                claims.sub,
                session_id=session.id,
            )
        access = self._issue_access(claims.sub, session.id, membership)
        try:
            await self.revocation.revoke(old_id, self.codec.remaining_seconds(claims))
        except AuthError as exc:
            # The session no longer holds old_id, so the rotation stands
            self.logger.error(
                "refresh_revoke_after_rotation_failed",
                principal_id=claims.sub,
                session_id=session.id,
                token_id=old_id,
                kind=exc.kind.value,
            )

        audit_event(
            "token_refresh",
            outcome="success",
            principal_id=claims.sub,
            session_id=session.id,
        )
        return TokenPair(
            access_token=access.token,
            access_expires_at=access.expires_at,
            refresh_token=new_refresh.token,
            refresh_expires_at=new_refresh.expires_at,
            session_id=session.id,
        )

    # -- logout -----------------------------------------------------------

    async def logout(self, refresh_token: str, access_token: Optional[str] = None) -> None:
        """Revoke the refresh token and end its session. Always succeeds for stale input."""
        principal_id: Optional[str] = None
        session_id: Optional[str] = None
        result = self.codec.verify(refresh_token, expected_type=REFRESH)
        if result.claims is not None:
            claims = result.claims
            principal_id = claims.sub
            refresh_id = token_id(refresh_token)
            await self.revocation.revoke(refresh_id, self.codec.remaining_seconds(claims))
            session = await self.sessions.find_by_subject_and_hash(claims.sub, refresh_id)
            if session is not None:
                session_id = session.id
                await self.sessions.invalidate(session.id)
        else:
            self.logger.info(
                "logout_token_unverifiable", **self._unverified_fields(refresh_token)
            )

        if access_token:
            access = self.codec.verify(access_token, expected_type=ACCESS)
            if access.valid and access.claims is not None:
                await self.revocation.revoke(
                    access.claims.jti, self.codec.remaining_seconds(access.claims)
                )

        audit_event(
            "logout",
            outcome="success" if session_id else "noop",
            principal_id=principal_id,
            session_id=session_id,
        )

    # -- password change --------------------------------------------------

    async def change_password(
        self, claims: TokenClaims, current_password: str, new_password: str
    ) -> int:
        """Replace the caller's password and revoke sessions per policy.

        Returns the number of sessions invalidated.
        """
        principal: Optional[Principal] = await self._repo(self.principals.get_principal, claims.sub)
        if principal is None or not principal.is_active:
            audit_event(
                "password_change_failed",
                outcome="failure",
                principal_id=claims.sub,
                reason="account_not_active",
                level="warning",
            )
            raise AuthError(AuthErrorKind.INVALID_CREDENTIALS, detail={"reason": "account_not_active"})
        if not await self.credentials.verify_async(current_password, principal.password_hash):
            audit_event(
                "password_change_failed",
                outcome="failure",
                principal_id=principal.id,
                reason="invalid_password",
                level="warning",
            )
            raise AuthError(AuthErrorKind.INVALID_CREDENTIALS, detail={"reason": "invalid_password"})
        if new_password == current_password:
            raise ValidationError("new password must differ from the current password")
        problems = password_problems(new_password)
        if problems:
            raise ValidationError(
                "password does not meet requirements", detail={"problems": problems}
            )

        new_hash = await self.credentials.hash_async(new_password)
        await self._repo(self.principals.save_password_hash, principal.id, new_hash)

        if self.password_change_revokes is PasswordChangeRevokes.ALL:
            invalidated = await self.sessions.invalidate_all_for_subject(principal.id)
        elif claims.sid:
            invalidated = 1 if await self.sessions.invalidate(claims.sid) else 0
        else:
            invalidated = 0
        await self.revocation.revoke(claims.jti, self.codec.remaining_seconds(claims))

        audit_event(
            "password_change",
            outcome="success",
            principal_id=principal.id,
            sessions_invalidated=invalidated,
            policy=self.password_change_revokes.value,
        )
        return invalidated

    # -- bearer authentication --------------------------------------------

    async def authenticate(self, access_token: str) -> AuthContext:
        """Validate a bearer access token for an inbound request."""
        result = self.codec.verify(access_token, expected_type=ACCESS)
        if not result.valid or result.claims is None:
            if result.expired:
                raise AuthError(AuthErrorKind.TOKEN_EXPIRED)
            raise AuthError(AuthErrorKind.INVALID_CREDENTIALS, detail={"reason": "token_invalid"})
        claims = result.claims
        if await self.revocation.is_revoked(claims.jti):
            raise AuthError(AuthErrorKind.TOKEN_REVOKED, detail={"jti": claims.jti})
        principal: Optional[Principal] = await self._repo(self.principals.get_principal, claims.sub)
        if principal is None:
            raise AuthError(AuthErrorKind.INVALID_CREDENTIALS, detail={"reason": "principal_not_found"})
        if not principal.is_active:
            raise AuthError(AuthErrorKind.ACCOUNT_NOT_ACTIVE)
        return AuthContext(principal=principal, claims=claims)
