"""Authentication middleware and dependencies.

Identity comes from a bearer JWT issued by the upstream identity provider; the
``sub`` claim is the caller's user id. Everything tenant-related is resolved
later from the database, never from token claims.
"""

import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

import structlog
from fastapi import HTTPException, Request, status
from fastapi.responses import JSONResponse
from jose import ExpiredSignatureError, JWTError, jwt
from starlette.middleware.base import BaseHTTPMiddleware

from src.core.settings import Settings, get_settings

logger = logging.getLogger(__name__)

DEV_USER_ID = "00000000-0000-0000-0000-000000000001"

# Served without a caller identity; rate limiting skips them too.
PUBLIC_PATHS = frozenset({
    "/",
    "/health",
    "/health/database",
    "/version",
    "/openapi.json",
    "/docs",
    "/redoc",
    "/favicon.ico",
})


class AuthenticationFailed(Exception):
    """Rejected credentials; rendered as a 401 by the middleware."""

    def __init__(self, error: str, message: str, code: str):
        super().__init__(message)
        self.error = error
        self.message = message
        self.code = code

    def to_response(self) -> JSONResponse:
        return JSONResponse(
            status_code=status.HTTP_401_UNAUTHORIZED,
            content={"detail": {"error": self.error, "message": self.message, "code": self.code}},
            headers={"WWW-Authenticate": "Bearer"},
        )


def decode_caller_token(token: str, settings: Settings) -> dict:
    """
    Verify a bearer token and return its claims.

    Raises:
        AuthenticationFailed: If the signature, expiry, audience or subject is invalid
    """
    options = {"verify_aud": settings.jwt_audience is not None}
    try:
        claims = jwt.decode(
            token,
            settings.jwt_secret_key,
            algorithms=[settings.jwt_algorithm],
            audience=settings.jwt_audience,
            options=options,
        )
    except ExpiredSignatureError:
        raise AuthenticationFailed("token_expired", "JWT token has expired", "TOKEN_EXPIRED")
    except JWTError as e:
        logger.warning(f"JWT validation failed: {e}")
        raise AuthenticationFailed("invalid_token", "Invalid or expired JWT token", "INVALID_JWT_TOKEN")

    subject = claims.get("sub")
    if not subject:
        raise AuthenticationFailed(
            "invalid_token_payload", "Token must contain 'sub' claim", "INVALID_TOKEN_PAYLOAD"
        )
    try:
        uuid.UUID(str(subject))
    except ValueError:
        raise AuthenticationFailed("invalid_user_id", "User ID must be a valid UUID", "INVALID_USER_ID")
    return claims


class AuthenticationMiddleware(BaseHTTPMiddleware):
    """
    Establishes the caller for every non-public request.

    The user id lands on ``request.state`` for the dependencies and in the
    structlog context so ledger and tenant log lines name the caller.
    """

    async def dispatch(self, request: Request, call_next):
        if request.url.path in PUBLIC_PATHS:
            return await call_next(request)

        settings = get_settings()

        if settings.disable_auth and not settings.is_production:
            user_id = request.headers.get("X-Dev-User-ID", DEV_USER_ID)
            self._establish(request, user_id, "dev@example.com")
            return await call_next(request)

        try:
            claims = decode_caller_token(self._bearer_token(request), settings)
        except AuthenticationFailed as failure:
            logger.warning(f"Rejected request to {request.url.path}: {failure.code}")
            return failure.to_response()

        self._establish(request, str(claims["sub"]), claims.get("email", ""))
        logger.debug(f"Authenticated user {claims['sub']} for {request.url.path}")

        return await call_next(request)

    def _bearer_token(self, request: Request) -> str:
        authorization = request.headers.get("Authorization")
        if not authorization:
            raise AuthenticationFailed(
                "missing_authorization", "Authorization header is required", "AUTHORIZATION_REQUIRED"
            )
        scheme, _, token = authorization.partition(" ")
        if scheme != "Bearer" or not token:
            raise AuthenticationFailed(
                "invalid_authorization_format",
                "Authorization must be in 'Bearer <token>' format",
                "INVALID_AUTHORIZATION_FORMAT",
            )
        return token

    def _establish(self, request: Request, user_id: str, email: str) -> None:
        request.state.user_id = user_id
        request.state.user_email = email
        structlog.contextvars.bind_contextvars(user_id=user_id)


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    """Issue a token the middleware accepts (local development and tests)."""
    settings = get_settings()
    to_encode = data.copy()

    expire = datetime.now(timezone.utc) + (
        expires_delta or timedelta(minutes=settings.jwt_access_token_expire_minutes)
    )
    to_encode["exp"] = expire
    if settings.jwt_audience is not None:
        to_encode.setdefault("aud", settings.jwt_audience)

    return jwt.encode(to_encode, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def get_current_user_id(request: Request) -> str:
    """Extract current user ID from request state."""
    if not hasattr(request.state, "user_id"):
        raise HTTPException(
            status_code=500,
            detail={
                "error": "user_context_missing",
                "message": "User context not established",
                "code": "USER_CONTEXT_ERROR"
            }
        )
    return request.state.user_id


def get_current_user_email(request: Request) -> Optional[str]:
    """Extract current user email from request state."""
    return getattr(request.state, "user_email", None) or None
