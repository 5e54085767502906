from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from tenantauth.logging import get_logger

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"
_TOKEN_TYPES = frozenset({ACCESS, REFRESH})

# Claim name on the wire -> TokenClaims attribute
_WIRE_NAMES = {"tenantId": "tenant_id"}
_ATTR_NAMES = {attr: wire for wire, attr in _WIRE_NAMES.items()}


@dataclass(frozen=True)
class TokenClaims:
    """Fixed claim set carried by every token this service signs."""

    sub: str
    iat: int
    exp: int
    iss: str
    aud: str
    jti: str
    type: str
    tenant_id: Optional[str] = None
    role: Optional[str] = None
    sid: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "TokenClaims":
        if not isinstance(payload, dict):
            raise ValueError("payload must be an object")
        values: dict[str, Any] = {}
        for key, value in payload.items():
            values[_WIRE_NAMES.get(key, key)] = value
        for name in ("sub", "iss", "aud", "jti", "type"):
            if not isinstance(values.get(name), str) or not values[name]:
                raise ValueError(f"claim {name!r} missing or not a string")
        for name in ("iat", "exp"):
            value = values.get(name)
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ValueError(f"claim {name!r} missing or not numeric")
        if values["type"] not in _TOKEN_TYPES:
            raise ValueError(f"unknown token type {values['type']!r}")
        for name in ("tenant_id", "role", "sid"):
            value = values.get(name)
            if value is not None and not isinstance(value, str):
                raise ValueError(f"claim {name!r} must be a string")
        return cls(
            sub=values["sub"],
            iat=int(values["iat"]),
            exp=int(values["exp"]),
            iss=values["iss"],
            aud=values["aud"],
            jti=values["jti"],
            type=values["type"],
            tenant_id=values.get("tenant_id"),
            role=values.get("role"),
            sid=values.get("sid"),
        )

    def to_payload(self) -> dict[str, Any]:
        return {
            _ATTR_NAMES.get(key, key): value
            for key, value in asdict(self).items()
            if value is not None
        }

    @property
    def expires_at(self) -> datetime:
        return datetime.fromtimestamp(self.exp, tz=timezone.utc)


@dataclass(frozen=True)
class IssuedToken:
    token: str
    claims: TokenClaims

    @property
    def expires_at(self) -> datetime:
        return self.claims.expires_at


@dataclass(frozen=True)
class IssuedRefreshToken:
    """A freshly minted refresh token; ``token`` is shown to the client once and never stored."""

    token: str
    token_id: str
    claims: TokenClaims

    @property
    def expires_at(self) -> datetime:
        return self.claims.expires_at


@dataclass(frozen=True)
class VerifyResult:
    valid: bool
    expired: bool = False
    claims: Optional[TokenClaims] = None


def token_id(raw_token: str) -> str:
    """Deterministic lookup and revocation id for a raw token (SHA-256 hex)."""
    return hashlib.sha256(raw_token.encode("utf-8")).hexdigest()


class TokenCodec:
    """Signs and verifies compact HS256 JWS tokens.

    Tenant-bound access tokens are signed with a key derived from the tenant
    subdomain and carry it as their audience when ``tenant_isolation`` is on.
    """

    ALGORITHM = "HS256"

    def __init__(
        self,
        secret: str,
        *,
        issuer: str,
        audience: str,
        access_ttl: timedelta,
        refresh_ttl: timedelta,
        leeway_seconds: int = 30,
        tenant_isolation: bool = False,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not secret:
            raise ValueError("signing secret is required")
        self._secret = secret.encode("utf-8")
        self.issuer = issuer
        self.audience = audience
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl
        self.leeway_seconds = leeway_seconds
        self.tenant_isolation = tenant_isolation
        self._clock = clock

    # -- keys -------------------------------------------------------------

    def _tenant_key(self, tenant_key: str) -> bytes:
        return hmac.new(self._secret, f"tenant:{tenant_key}".encode("utf-8"), hashlib.sha256).digest()

    def _signing_key(self, audience: str) -> bytes:
        if self.tenant_isolation and audience != self.audience:
            return self._tenant_key(audience)
        return self._secret

    # -- encoding ---------------------------------------------------------

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str, key: bytes) -> str:
        return self._encode_segment(
            hmac.new(key, signing_input.encode("utf-8"), hashlib.sha256).digest()
        )

    def _encode(self, claims: TokenClaims) -> str:
        header = {"alg": self.ALGORITHM, "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(
            json.dumps(claims.to_payload(), separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input, self._signing_key(claims.aud))}"

    def _split(self, token: str) -> Optional[tuple[dict, dict, str, str]]:
        if not isinstance(token, str):
            return None
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None
        try:
            header = json.loads(self._decode_segment(header_b64))
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError):
            return None
        if not isinstance(header, dict) or not isinstance(payload, dict):
            return None
        return header, payload, f"{header_b64}.{payload_b64}", sig_b64

    # -- issuing ----------------------------------------------------------

    def _claims(
        self,
        subject: str,
        token_type: str,
        ttl: timedelta,
        *,
        audience: Optional[str] = None,
        tenant_id: Optional[str] = None,
        role: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> TokenClaims:
        now = int(self._clock())
        return TokenClaims(
            sub=subject,
            iat=now,
            exp=now + int(ttl.total_seconds()),
            iss=self.issuer,
            aud=audience or self.audience,
            jti=str(uuid.uuid4()),
            type=token_type,
            tenant_id=tenant_id,
            role=role,
            sid=session_id,
        )

    def issue_access(
        self,
        subject: str,
        *,
        tenant_id: Optional[str] = None,
        role: Optional[str] = None,
        tenant_key: Optional[str] = None,
        session_id: Optional[str] = None,
        ttl: Optional[timedelta] = None,
    ) -> IssuedToken:
        """Mint an access token; ``tenant_key`` (the tenant subdomain) scopes it when isolation is on."""
        audience = tenant_key if (self.tenant_isolation and tenant_id and tenant_key) else None
        claims = self._claims(
            subject,
            ACCESS,
            ttl or self.access_ttl,
            audience=audience,
            tenant_id=tenant_id,
            role=role,
            session_id=session_id,
        )
        return IssuedToken(token=self._encode(claims), claims=claims)

    def issue_refresh(self, subject: str, *, ttl: Optional[timedelta] = None) -> IssuedRefreshToken:
        claims = self._claims(subject, REFRESH, ttl or self.refresh_ttl)
        raw = self._encode(claims)
        return IssuedRefreshToken(token=raw, token_id=token_id(raw), claims=claims)

    # -- verification -----------------------------------------------------

    def verify(
        self,
        token: str,
        *,
        expected_type: Optional[str] = None,
        tenant: Optional[str] = None,
    ) -> VerifyResult:
        """Check algorithm, signature, issuer, audience, structure and expiry.

        A correctly signed token whose ``exp`` has passed yields
        ``VerifyResult(valid=False, expired=True, claims=...)`` so callers can
        tell expiry apart from forgery.
        """
        parts = self._split(token)
        if parts is None:
            return VerifyResult(valid=False)
        header, payload, signing_input, signature = parts

        # Algorithm confusion: only the configured algorithm is accepted
        if header.get("alg") != self.ALGORITHM:
            logger.warning("jwt_invalid_algorithm", alg=header.get("alg"))
            return VerifyResult(valid=False)

        audience = payload.get("aud")
        if not isinstance(audience, str):
            return VerifyResult(valid=False)
        if tenant is not None:
            if audience != tenant:
                return VerifyResult(valid=False)
        elif audience != self.audience and not self.tenant_isolation:
            return VerifyResult(valid=False)

        expected_sig = self._sign(signing_input, self._signing_key(audience))
        if not hmac.compare_digest(expected_sig, signature):
            return VerifyResult(valid=False)

        try:
            claims = TokenClaims.from_payload(payload)
        except ValueError as exc:
            logger.warning("jwt_claims_invalid", error=str(exc))
            return VerifyResult(valid=False)
        if claims.iss != self.issuer:
            return VerifyResult(valid=False)
        if expected_type is not None and claims.type != expected_type:
            return VerifyResult(valid=False)
        if claims.exp <= self._clock() - self.leeway_seconds:
            return VerifyResult(valid=False, expired=True, claims=claims)
        return VerifyResult(valid=True, claims=claims)

    def decode_unsafe(self, token: str) -> Optional[dict[str, Any]]:
        """Payload without signature verification. Diagnostics only."""
        parts = self._split(token)
        return parts[1] if parts else None

    def remaining_seconds(self, claims: TokenClaims) -> int:
        return max(0, int(claims.exp - self._clock()))

    def token_id(self, raw_token: str) -> str:
        return token_id(raw_token)
