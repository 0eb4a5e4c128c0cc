from __future__ import annotations
import logging
from typing import Any, Dict, Optional

import jwt  # PyJWT
from fastapi import Request

from chatrelay.config import Settings
from chatrelay.core.errors import AuthenticationError, ConfigurationError

logger = logging.getLogger(__name__)


class AuthUser(Dict[str, Any]):
    """Minimal user payload extracted from the identity provider's JWT."""

    @property
    def id(self) -> str:
        return str(self.get("sub"))


def bearer_token(request: Request) -> Optional[str]:
    auth = request.headers.get("authorization") or request.headers.get("Authorization")
    if not auth or not auth.lower().startswith("bearer "):
        return None
    token = auth.split(" ", 1)[1].strip()
    return token or None


def decode_token(token: str, settings: Settings) -> AuthUser:
    """
    Verify an HS256 bearer token issued by the identity provider.
    - Uses AUTH_JWT_SECRET to verify the signature.
    - Checks the audience when AUTH_JWT_AUDIENCE is configured.
    - Requires a `sub` claim, which is the user id.
    """
    if not settings.auth_jwt_secret:
        logger.error("AUTH_JWT_SECRET is not configured; rejecting authenticated request")
        raise ConfigurationError("Server configuration error: auth is not configured")

    options = {"require": ["sub"]}
    try:
        if settings.auth_jwt_audience:
            payload = jwt.decode(
                token,
                settings.auth_jwt_secret,
                algorithms=["HS256"],
                audience=settings.auth_jwt_audience,
                options=options,
            )
        else:
            payload = jwt.decode(
                token,
                settings.auth_jwt_secret,
                algorithms=["HS256"],
                options={**options, "verify_aud": False},
            )
    except jwt.PyJWTError as e:
        logger.info("Rejected bearer token: %s", e)
        raise AuthenticationError() from e
    return AuthUser(payload)


def optional_user(request: Request) -> Optional[AuthUser]:
    """Resolve the caller if a bearer token is present; invalid tokens still fail."""
    token = bearer_token(request)
    if token is None:
        return None
    return decode_token(token, request.app.state.settings)


def require_user(request: Request) -> AuthUser:
    token = bearer_token(request)
    if token is None:
        raise AuthenticationError("Missing auth")
    return decode_token(token, request.app.state.settings)
