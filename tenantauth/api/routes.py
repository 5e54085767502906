from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, Request

from tenantauth.api.schemas import (
    Envelope,
    LoginRequest,
    LoginResponse,
    LogoutRequest,
    MeResponse,
    PasswordChangeRequest,
    PrincipalSummary,
    TenantSelectRequest,
    TenantSelectResponse,
    TenantSummary,
    TokenPairResponse,
    TokenRefreshRequest,
)
from tenantauth.logging import get_logger
from tenantauth.service.auth import AuthContext, TokenPair
from tenantauth.service.errors import AuthError, AuthErrorKind, RateLimitedError
from tenantauth.service.runtime import check_rate_limit, get_runtime
from tenantauth.storage.models import Principal, TenantMembership

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def _extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


async def get_auth_context(authorization: Optional[str] = Header(None)) -> AuthContext:
    token = _extract_bearer(authorization)
    if not token:
        raise AuthError(AuthErrorKind.INVALID_CREDENTIALS, detail={"reason": "missing_bearer"})
    return await get_runtime().auth.authenticate(token)


def _client_host(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


async def _enforce_rate_limit(runtime, key: str, limit: int, window_seconds: int = 60) -> None:
    """Raise 429 once ``key`` has spent its budget for the window."""
    allowed, _, reset_seconds = await check_rate_limit(runtime, key, limit, window_seconds)
    if not allowed:
        logger.warning("rate_limited", scope=key.partition(":")[0], retry_after=reset_seconds)
        raise RateLimitedError(retry_after=reset_seconds)


def _principal_summary(principal: Principal) -> PrincipalSummary:
    return PrincipalSummary(
        id=principal.id,
        email=principal.email,
        display_name=principal.display_name,
        last_authenticated_at=principal.last_authenticated_at,
    )


def _tenant_summary(membership: TenantMembership) -> TenantSummary:
    return TenantSummary(
        id=membership.tenant_id,
        name=membership.tenant_name,
        subdomain=membership.tenant_subdomain,
        role=membership.role,
        active=membership.tenant_active,
    )


def _token_pair_fields(tokens: TokenPair) -> dict:
    return {
        "access_token": tokens.access_token,
        "refresh_token": tokens.refresh_token,
        "token_type": tokens.token_type,
        "expires_at": tokens.access_expires_at,
        "refresh_expires_at": tokens.refresh_expires_at,
        "session_id": tokens.session_id,
    }


def _ok(model) -> Envelope:
    return Envelope(status="ok", data=model.model_dump(by_alias=True, mode="json"))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request):
    """Authenticate with email and password.

    Returns an access token, a refresh token and the tenants the principal
    belongs to. Wrong password, unknown email and disabled accounts all
    answer 401 with the same message; too many attempts per email or per
    client address answer 429.
    """
    runtime = get_runtime()
    client_host = _client_host(request)
    await _enforce_rate_limit(
        runtime, f"login_ip:{client_host}", runtime.settings.login_ip_rate_limit_per_minute
    )
    await _enforce_rate_limit(
        runtime, f"login:{body.email}", runtime.settings.login_rate_limit_per_minute
    )
    result = await runtime.auth.login(
        body.email,
        body.password,
        tenant_id=body.tenant_id,
        user_agent=request.headers.get("user-agent"),
        ip_addr=client_host,
    )
    return _ok(
        LoginResponse(
            **_token_pair_fields(result.tokens),
            principal=_principal_summary(result.principal),
            tenants=[_tenant_summary(m) for m in result.tenants],
            tenant=_tenant_summary(result.tenant) if result.tenant else None,
        )
    )


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(body: TokenRefreshRequest, request: Request):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime, f"refresh:{_client_host(request)}", runtime.settings.refresh_rate_limit_per_minute
    )
    tokens = await runtime.auth.refresh(body.refresh_token)
    return _ok(TokenPairResponse(**_token_pair_fields(tokens)))


@router.post("/auth/tenant", response_model=Envelope, tags=["auth"])
async def select_tenant(
    body: TenantSelectRequest,
    ctx: AuthContext = Depends(get_auth_context),
):
    """Scope the caller's access token to one of their tenants."""
    runtime = get_runtime()
    selection = await runtime.auth.select_tenant(ctx.claims, body.tenant_id)
    return _ok(
        TenantSelectResponse(
            access_token=selection.access_token,
            token_type=selection.token_type,
            expires_at=selection.access_expires_at,
            tenant=_tenant_summary(selection.membership),
            redirect_url=selection.redirect_url,
        )
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(body: LogoutRequest, authorization: Optional[str] = Header(None)):
    """End the session behind ``refreshToken``. Repeating the call is harmless."""
    runtime = get_runtime()
    await runtime.auth.logout(body.refresh_token, _extract_bearer(authorization))
    return Envelope(status="ok", data={"message": "logged out"})


@router.post("/auth/password", response_model=Envelope, tags=["auth"])
async def change_password(
    body: PasswordChangeRequest,
    ctx: AuthContext = Depends(get_auth_context),
):
    """Change the caller's password; sessions are revoked per PASSWORD_CHANGE_REVOKES."""
    runtime = get_runtime()
    invalidated = await runtime.auth.change_password(
        ctx.claims, body.current_password, body.new_password
    )
    return Envelope(status="ok", data={"status": "changed", "sessionsRevoked": invalidated})


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(ctx: AuthContext = Depends(get_auth_context)):
    return _ok(
        MeResponse(
            principal=_principal_summary(ctx.principal),
            session_id=ctx.session_id,
            tenant_id=ctx.tenant_id,
            role=ctx.claims.role,
            expires_at=ctx.claims.expires_at,
        )
    )
