"""
Bearer token identity.

The login/consent flow lives in the frontend. This side only checks the
session JWT it signs with the shared secret (``settings.jwt``) and turns
the claims into the identity that keys compilation jobs and storage
folders.
"""

from typing import Optional
from dataclasses import dataclass

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
import jwt
from jwt.exceptions import InvalidTokenError, ExpiredSignatureError

from app.config import JwtConfig, get_settings


security = HTTPBearer(auto_error=False)

_CHALLENGE = {"WWW-Authenticate": "Bearer"}


@dataclass
class AuthenticatedUser:
    id: str
    email: Optional[str] = None
    name: Optional[str] = None

    @property
    def identity(self) -> str:
        """Key used for job tracking and the storage scope (email, else subject)."""
        return self.email or self.id


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=detail, headers=_CHALLENGE)


def get_jwt_config(request: Request) -> JwtConfig:
    """Token settings of the running app (``create_app(settings)``)."""
    settings = getattr(request.app.state, "settings", None) or get_settings()
    return settings.jwt


def verify_jwt_token(token: str, config: JwtConfig) -> dict:
    """
    Decode a session JWT and check its signature and expiry.

    Raises:
        HTTPException: 500 when no secret is configured, 401 for a bad token
    """
    if not config.secret:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="JWT secret not configured",
        )

    algorithm = (config.algorithm or "HS256").strip()
    try:
        return jwt.decode(
            token,
            config.secret,
            algorithms=[algorithm],
            options={"verify_signature": True, "verify_exp": True},
        )
    except ExpiredSignatureError:
        raise _unauthorized("Session expired. Please log in again.")
    except InvalidTokenError as e:
        raise _unauthorized(f"Invalid token: {e}")


def extract_user_from_payload(payload: dict) -> AuthenticatedUser:
    subject = payload.get("sub")
    if not subject:
        raise _unauthorized("Token missing user ID")
    return AuthenticatedUser(id=str(subject), email=payload.get("email"), name=payload.get("name"))


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    config: JwtConfig = Depends(get_jwt_config),
) -> AuthenticatedUser:
    """Dependency: the caller behind the bearer token, or 401."""
    if not credentials:
        raise _unauthorized("Not authenticated")
    return extract_user_from_payload(verify_jwt_token(credentials.credentials, config))
