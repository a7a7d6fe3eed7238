# api/auth.py
# ============================================================================
# TISCO MARKET BACKEND v1.0 — AUTHENTICATION
# ============================================================================
# Bearer tokens come from the hosted auth provider (HS256, audience
# "authenticated"). Admin routes accept an admin-role token or X-Admin-Key.
# ============================================================================

import hmac
import os
from typing import Any, Dict, Optional

import jwt
import structlog
from fastapi import Request

from errors import AuthenticationError, PermissionDeniedError
from schemas.commerce import AuthUser

logger = structlog.get_logger().bind(component="auth")


class AuthConfig:
    """Token verification settings from environment"""

    JWT_SECRET = os.getenv("SUPABASE_JWT_SECRET", "")
    JWT_AUDIENCE = os.getenv("SUPABASE_JWT_AUDIENCE", "authenticated")
    ADMIN_API_KEY = os.getenv("ADMIN_API_KEY", "")


config = AuthConfig()

ADMIN_KEY_USER_ID = "00000000-0000-0000-0000-000000000000"


class TokenVerifier:
    def __init__(
        self,
        secret: Optional[str] = None,
        audience: Optional[str] = None,
        admin_api_key: Optional[str] = None,
    ):
        self.secret = config.JWT_SECRET if secret is None else secret
        self.audience = audience or config.JWT_AUDIENCE
        self.admin_api_key = config.ADMIN_API_KEY if admin_api_key is None else admin_api_key

    def decode(self, token: str) -> Dict[str, Any]:
        if not self.secret:
            logger.error("jwt_secret_missing")
            raise AuthenticationError("Authentication is not configured")
        try:
            return jwt.decode(token, self.secret, algorithms=["HS256"], audience=self.audience)
        except jwt.ExpiredSignatureError:
            raise AuthenticationError("Token expired")
        except jwt.InvalidTokenError as e:
            logger.info("jwt_rejected", error=str(e))
            raise AuthenticationError("Invalid token")

    def user_from_claims(self, claims: Dict[str, Any]) -> AuthUser:
        if not claims.get("sub"):
            raise AuthenticationError("Invalid token")
        app_meta = claims.get("app_metadata") or {}
        user_meta = claims.get("user_metadata") or {}
        return AuthUser(
            id=str(claims["sub"]),
            email=claims.get("email"),
            role="admin" if app_meta.get("role") == "admin" else "customer",
            first_name=user_meta.get("first_name"),
            last_name=user_meta.get("last_name"),
            phone=claims.get("phone") or user_meta.get("phone"),
        )

    def user_from_request(self, request: Request) -> AuthUser:
        header = request.headers.get("authorization") or ""
        scheme, _, token = header.partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            raise AuthenticationError("Authentication required")
        return self.user_from_claims(self.decode(token.strip()))

    def is_admin_key(self, provided: Optional[str]) -> bool:
        if not provided or not self.admin_api_key:
            return False
        return hmac.compare_digest(provided.encode("utf-8"), self.admin_api_key.encode("utf-8"))


# ============================================================================
# FASTAPI DEPENDENCIES
# ============================================================================

def _verifier(request: Request) -> TokenVerifier:
    return request.app.state.token_verifier


async def get_current_user(request: Request) -> AuthUser:
    return _verifier(request).user_from_request(request)


async def require_admin(request: Request) -> AuthUser:
    verifier = _verifier(request)
    if verifier.is_admin_key(request.headers.get("x-admin-key")):
        return AuthUser(id=ADMIN_KEY_USER_ID, role="admin")

    user = verifier.user_from_request(request)
    if not user.is_admin:
        logger.warning("admin_access_denied", user_id=user.id)
        raise PermissionDeniedError("Admin access required")
    return user
