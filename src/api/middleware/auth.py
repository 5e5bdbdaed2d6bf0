"""JWT authentication for Supabase-issued access tokens."""

import json
from enum import Enum
from functools import lru_cache
from typing import Any

import jwt
from jwt import PyJWK

from src.core.config import get_settings
from src.schemas.auth import TokenPayload


class AuthErrorCode(str, Enum):
    """Authentication error codes."""

    UNAUTHORIZED = "UNAUTHORIZED"
    TOKEN_EXPIRED = "TOKEN_EXPIRED"
    INVALID_TOKEN = "INVALID_TOKEN"
    INVALID_SIGNATURE = "INVALID_SIGNATURE"


class AuthError(Exception):
    """Authentication error with specific error code.

    Raised when JWT validation fails for any reason.
    The error code indicates the specific failure reason.
    """

    def __init__(self, message: str, code: AuthErrorCode) -> None:
        self.message = message
        self.code = code
        super().__init__(message)


@lru_cache
def get_signing_key() -> PyJWK:
    """Load the project's public signing key from SUPABASE_SIGNING_KEY_JWK.

    Raises:
        AuthError: If the key is missing or not valid JWK JSON.
    """
    jwk_json = get_settings().supabase_signing_key_jwk
    if not jwk_json:
        raise AuthError("Signing key not configured", AuthErrorCode.INVALID_TOKEN)

    try:
        return PyJWK.from_dict(json.loads(jwk_json))
    except (json.JSONDecodeError, jwt.PyJWTError) as e:
        raise AuthError(f"Invalid signing key JWK: {e}", AuthErrorCode.INVALID_TOKEN) from e


def extract_bearer_token(authorization: str | None) -> str:
    """Return the token of a `Bearer <token>` header value.

    Raises:
        AuthError: If the header is missing or malformed.
    """
    if not authorization:
        raise AuthError("Authorization header required", AuthErrorCode.UNAUTHORIZED)

    parts = authorization.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise AuthError(
            "Invalid authorization header format. Expected: Bearer <token>",
            AuthErrorCode.UNAUTHORIZED,
        )
    return parts[1]


def decode_jwt(token: str) -> TokenPayload:
    """Decode and validate a Supabase access token.

    Validates signature, expiration, audience and required claims.

    Raises:
        AuthError: If token is invalid, expired, or has wrong signature.
    """
    signing_key = get_signing_key()
    settings = get_settings()

    try:
        payload: dict[str, Any] = jwt.decode(
            token,
            signing_key.key,
            algorithms=[signing_key.algorithm_name],
            audience=settings.supabase_jwt_audience,
            options={"require": ["exp", "iat", "sub"]},
        )
    except jwt.ExpiredSignatureError as e:
        raise AuthError("Token has expired", AuthErrorCode.TOKEN_EXPIRED) from e
    except jwt.InvalidSignatureError as e:
        raise AuthError("Invalid token signature", AuthErrorCode.INVALID_SIGNATURE) from e
    except jwt.MissingRequiredClaimError as e:
        raise AuthError(f"Token missing required claim: {e}", AuthErrorCode.INVALID_TOKEN) from e
    except jwt.PyJWTError as e:
        raise AuthError(f"Invalid token: {e}", AuthErrorCode.INVALID_TOKEN) from e

    return TokenPayload(
        sub=payload["sub"],
        email=payload.get("email"),
        role=payload.get("role"),
        exp=payload["exp"],
        iat=payload["iat"],
        aud=payload.get("aud") if isinstance(payload.get("aud"), str) else None,
        iss=payload.get("iss"),
    )
