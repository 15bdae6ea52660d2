"""
FastAPI dependency resolving the calling user from a Supabase Auth token.

The invoice routes only need a user id (to scope the duplicate check) and
the token itself (to build an RLS-scoped Supabase client). Tokens are
verified against the project's JWT signing keys (JWKS, ES256).
"""

import logging
from dataclasses import dataclass
from typing import Annotated

from fastapi import Header, HTTPException, status
from jwt import PyJWKClient, decode
from jwt.exceptions import ExpiredSignatureError, InvalidTokenError, PyJWKClientError

from cufe_backend.config import settings

logger = logging.getLogger(__name__)

# Caches Supabase's public keys between requests
_jwks_client: PyJWKClient | None = None


@dataclass
class AuthenticatedUser:
    """
    Attributes:
        user_id: The user's UUID from the token's 'sub' claim
        access_token: The raw JWT, used to create an RLS-scoped Supabase client
    """
    user_id: str
    access_token: str


def get_jwks_client() -> PyJWKClient:
    """
    Get or create the JWKS client.

    Raises:
        ValueError: If SUPABASE_URL is not configured
    """
    global _jwks_client

    if _jwks_client is None:
        jwks_url = settings.SUPABASE_JWKS_URL
        if not jwks_url:
            raise ValueError(
                "SUPABASE_URL is not configured. "
                "Cannot construct JWKS URL for JWT verification."
            )

        logger.info(f"Initializing JWKS client with URL: {jwks_url}")
        _jwks_client = PyJWKClient(jwks_url, cache_keys=True, max_cached_keys=16)

    return _jwks_client


def _unauthorized(error: str, details: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"error": error, "details": details},
    )


def _bearer_token(authorization: str | None) -> str:
    if not authorization:
        logger.warning("Missing Authorization header")
        raise _unauthorized("unauthorized", "Missing Authorization header")

    parts = authorization.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        logger.warning("Invalid Authorization header format")
        raise _unauthorized("unauthorized", "Invalid Authorization header format")

    return parts[1]


def decode_access_token(token: str) -> str:
    """
    Verify a Supabase access token and return its user id.

    Raises:
        HTTPException: 401 if the token is invalid, expired or unverifiable
    """
    try:
        signing_key = get_jwks_client().get_signing_key_from_jwt(token)
        payload = decode(
            token,
            signing_key.key,
            algorithms=["ES256"],
            audience="authenticated",
            issuer=f"{settings.SUPABASE_URL.rstrip('/')}/auth/v1",
            options={
                "verify_signature": True,
                "verify_exp": True,
                "verify_aud": True,
                "verify_iss": True,
            },
        )
    except ExpiredSignatureError:
        logger.warning("Token has expired")
        raise _unauthorized("token_expired", "Authentication token has expired")
    except PyJWKClientError as e:
        logger.error(f"JWKS client error: {str(e)}")
        raise _unauthorized("jwks_error", "Unable to verify token signature")
    except InvalidTokenError as e:
        logger.warning(f"Invalid token: {str(e)}")
        raise _unauthorized("invalid_token", "Invalid authentication token")
    except ValueError as e:
        logger.error(f"Token verification unavailable: {str(e)}")
        raise _unauthorized("unauthorized", "Token verification failed")

    user_id = payload.get("sub")
    if not user_id:
        logger.error("Token payload missing 'sub' claim")
        raise _unauthorized("unauthorized", "Invalid token: missing user ID")

    return str(user_id)


async def get_authenticated_user(
    authorization: Annotated[str | None, Header()] = None
) -> AuthenticatedUser:
    """
    Resolve the caller from the "Authorization: Bearer <token>" header.

    Raises:
        HTTPException: 401 if the header is missing or the token is invalid
    """
    token = _bearer_token(authorization)
    user_id = decode_access_token(token)
    logger.debug(f"Token verified for user_id={user_id}")
    return AuthenticatedUser(user_id=user_id, access_token=token)
