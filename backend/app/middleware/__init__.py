"""Request identity: bearer JWT -> AuthenticatedUser."""

from .auth import (
    AuthenticatedUser,
    extract_user_from_payload,
    get_current_user,
    get_jwt_config,
    verify_jwt_token,
)

__all__ = [
    "AuthenticatedUser",
    "extract_user_from_payload",
    "get_current_user",
    "get_jwt_config",
    "verify_jwt_token",
]
