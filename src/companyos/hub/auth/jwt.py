"""
CompanyOS Hub - JWT Authentication.

A real-time connection authenticates once with an access token; the token
fixes the user, organization and role for the lifetime of the connection.

Features:
- HS256 tokens issued and verified with PyJWT
- Organization-scoped principals
- FastAPI dependency for HTTP routes
"""

import logging
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any

import jwt
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from companyos.core.config import AuthConfig, get_config
from companyos.core.errors import AuthorizationError

logger = logging.getLogger(__name__)


# =============================================================================
# TOKEN MODELS
# =============================================================================


class TokenType(str, Enum):
    """Token types. Only access tokens are issued; any other `type` claim is malformed."""

    ACCESS = "access"


@dataclass(slots=True)
class TokenPayload:
    """JWT token payload; the authenticated principal.

    Attributes:
        sub: Subject (user ID)
        organization_id: Organization the user acts for
        role: Role within the organization
        type: Token type (always access)
        iat: Issued at timestamp
        exp: Expiration timestamp
        jti: JWT ID (unique token identifier)
    """

    sub: str
    organization_id: str
    role: str = "member"
    type: TokenType = TokenType.ACCESS
    iat: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    exp: datetime | None = None
    jti: str = field(default_factory=lambda: secrets.token_urlsafe(16))

    @property
    def user_id(self) -> str:
        return self.sub

    def to_dict(self) -> dict[str, Any]:
        """Convert to JWT claims dict."""
        claims = {
            "sub": self.sub,
            "organization_id": self.organization_id,
            "role": self.role,
            "type": self.type.value,
            "iat": int(self.iat.timestamp()),
            "jti": self.jti,
        }
        if self.exp:
            claims["exp"] = int(self.exp.timestamp())
        return claims

    @classmethod
    def from_dict(cls, claims: dict[str, Any]) -> "TokenPayload":
        """Create from JWT claims dict."""
        return cls(
            sub=str(claims.get("sub", "")),
            organization_id=str(claims.get("organization_id") or claims.get("organizationId") or ""),
            role=claims.get("role", "member"),
            type=TokenType(claims.get("type", "access")),
            iat=datetime.fromtimestamp(claims.get("iat", 0), tz=timezone.utc),
            exp=datetime.fromtimestamp(claims["exp"], tz=timezone.utc) if "exp" in claims else None,
            jti=claims.get("jti", ""),
        )


# Principals are token payloads
Principal = TokenPayload


# =============================================================================
# JWT SERVICE
# =============================================================================


class JWTService:
    """JWT token creation and validation service.

    Example:
        jwt_service = JWTService(AuthConfig(secret_key="..."))
        token = jwt_service.create_access_token("user-1", "org-1", role="admin")
        principal = jwt_service.verify_token(token)
    """

    def __init__(self, config: AuthConfig | None = None):
        """Initialize JWT service.

        Args:
            config: Auth configuration (defaults to the global config)
        """
        self.config = config or get_config().auth

    @property
    def configured(self) -> bool:
        return bool(self.config.secret_key)

    def create_access_token(
        self,
        user_id: str,
        organization_id: str,
        role: str = "member",
        expires_in: timedelta | None = None,
    ) -> str:
        """Create an access token.

        Raises:
            RuntimeError: If no signing key is configured
        """
        if not self.configured:
            raise RuntimeError("JWT_SECRET_KEY not configured")

        now = datetime.now(timezone.utc)
        exp = now + (expires_in or timedelta(minutes=self.config.access_token_expire_minutes))

        payload = TokenPayload(
            sub=user_id,
            organization_id=organization_id,
            role=role,
            type=TokenType.ACCESS,
            iat=now,
            exp=exp,
        )

        claims = payload.to_dict()
        claims["iss"] = self.config.issuer
        claims["aud"] = self.config.audience

        return jwt.encode(claims, self.config.secret_key, algorithm=self.config.algorithm)

    def verify_token(self, token: str | None) -> TokenPayload:
        """Verify and decode a JWT token.

        Args:
            token: JWT token to verify

        Returns:
            Decoded principal

        Raises:
            AuthorizationError: If the token is missing, invalid, expired or unscoped
        """
        if not token:
            raise AuthorizationError("Missing authentication token")
        if not self.configured:
            raise AuthorizationError("Authentication service not available", status_code=503)

        try:
            claims = jwt.decode(
                token,
                self.config.secret_key,
                algorithms=[self.config.algorithm],
                issuer=self.config.issuer,
                audience=self.config.audience,
                leeway=timedelta(seconds=self.config.leeway_seconds),
                options={"require": ["exp", "sub"]},
            )
        except jwt.ExpiredSignatureError:
            raise AuthorizationError("Token has expired")
        except jwt.InvalidAudienceError:
            raise AuthorizationError("Invalid token audience")
        except jwt.InvalidIssuerError:
            raise AuthorizationError("Invalid token issuer")
        except jwt.InvalidSignatureError:
            raise AuthorizationError("Invalid token signature")
        except jwt.InvalidTokenError as e:
            raise AuthorizationError(f"Invalid token: {e}")

        try:
            payload = TokenPayload.from_dict(claims)
        except (TypeError, ValueError) as e:
            raise AuthorizationError(f"Malformed token claims: {e}")

        if not payload.sub or not payload.organization_id:
            raise AuthorizationError("Token is not scoped to a user and organization")

        return payload


# =============================================================================
# FASTAPI DEPENDENCIES
# =============================================================================

# Global JWT service instance
_jwt_service: JWTService | None = None


def get_jwt_service() -> JWTService:
    """Get or create JWT service singleton."""
    global _jwt_service
    if _jwt_service is None:
        _jwt_service = JWTService()
        if not _jwt_service.configured:
            logger.warning("JWT_SECRET_KEY not configured - all connections will be rejected")
    return _jwt_service


def reset_jwt_service() -> None:
    global _jwt_service
    _jwt_service = None


# Bearer token security scheme
bearer_scheme = HTTPBearer(auto_error=False)


async def get_current_user(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> TokenPayload:
    """FastAPI dependency to get the authenticated principal.

    Raises:
        HTTPException 401/503: If not authenticated
    """
    token = credentials.credentials if credentials else None
    service = getattr(request.app.state, "jwt_service", None) or get_jwt_service()
    try:
        return service.verify_token(token)
    except AuthorizationError as e:
        raise HTTPException(
            status_code=e.status_code,
            detail=str(e),
            headers={"WWW-Authenticate": "Bearer"},
        )


def require_roles(*roles: str):
    """Dependency requiring one of the given roles.

    Usage:
        @app.get("/admin")
        async def admin_only(user: TokenPayload = Depends(require_roles("admin"))):
            ...
    """

    async def check_roles(user: TokenPayload = Depends(get_current_user)) -> TokenPayload:
        if user.role not in roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Requires one of roles: {', '.join(roles)}",
            )
        return user

    return check_roles
