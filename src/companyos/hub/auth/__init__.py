"""
CompanyOS Hub - Authentication Layer.

Organization-scoped JWT principals for sockets and HTTP routes.
"""

from companyos.hub.auth.jwt import (
    JWTService,
    Principal,
    TokenPayload,
    TokenType,
    get_current_user,
    get_jwt_service,
    require_roles,
)

__all__ = [
    "JWTService",
    "Principal",
    "TokenPayload",
    "TokenType",
    "get_current_user",
    "get_jwt_service",
    "require_roles",
]
