"""
Authentication and authorization utilities.
"""

import hashlib
import hmac
from datetime import datetime, timedelta, timezone
from typing import Annotated
from uuid import UUID

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from pydantic import BaseModel

from buildqueue.config import get_settings

# Security scheme
security = HTTPBearer()

ROLE_USER = "user"
ROLE_OPERATOR = "operator"


class TokenData(BaseModel):
    """Data extracted from JWT token."""

    owner_id: UUID
    role: str = ROLE_USER
    exp: datetime


class AuthenticatedUser(BaseModel):
    """Authenticated user context."""

    owner_id: UUID
    role: str = ROLE_USER

    @property
    def is_operator(self) -> bool:
        return self.role == ROLE_OPERATOR


def create_access_token(
    owner_id: UUID,
    role: str = ROLE_USER,
    expires_delta: timedelta | None = None,
) -> str:
    """
    Create a JWT access token.

    Args:
        owner_id: The user the token identifies (the "sub" claim).
        role: ROLE_USER or ROLE_OPERATOR.
        expires_delta: Optional custom expiration time.

    Returns:
        The encoded JWT token.
    """
    settings = get_settings()

    if expires_delta is None:
        expires_delta = timedelta(minutes=settings.api_access_token_expire_minutes)

    now = datetime.now(timezone.utc)
    to_encode = {
        "sub": str(owner_id),
        "role": role,
        "exp": now + expires_delta,
        "iat": now,
    }

    return jwt.encode(
        to_encode,
        settings.api_secret_key,
        algorithm=settings.api_algorithm,
    )


def decode_token(token: str) -> TokenData:
    """
    Decode and validate a JWT token.

    Args:
        token: The JWT token to decode.

    Returns:
        TokenData extracted from the token.

    Raises:
        HTTPException: If token is invalid or expired.
    """
    settings = get_settings()

    try:
        payload = jwt.decode(
            token,
            settings.api_secret_key,
            algorithms=[settings.api_algorithm],
        )
    except JWTError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Invalid token: {e}",
            headers={"WWW-Authenticate": "Bearer"},
        ) from e

    subject = payload.get("sub")
    try:
        owner_id = UUID(subject)
    except (TypeError, ValueError):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token: missing or malformed subject",
            headers={"WWW-Authenticate": "Bearer"},
        ) from None

    return TokenData(
        owner_id=owner_id,
        role=payload.get("role", ROLE_USER),
        exp=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
    )


async def get_current_user(
    credentials: Annotated[HTTPAuthorizationCredentials, Depends(security)],
) -> AuthenticatedUser:
    """
    FastAPI dependency to get the current authenticated user.

    Args:
        credentials: The HTTP authorization credentials.

    Returns:
        AuthenticatedUser with the owner id and role.

    Raises:
        HTTPException: If authentication fails.
    """
    token_data = decode_token(credentials.credentials)
    return AuthenticatedUser(owner_id=token_data.owner_id, role=token_data.role)


async def require_operator(
    user: Annotated[AuthenticatedUser, Depends(get_current_user)],
) -> AuthenticatedUser:
    """FastAPI dependency restricting a route to operators."""
    if not user.is_operator:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Operator role required",
        )
    return user


# Type aliases for dependency injection
CurrentUser = Annotated[AuthenticatedUser, Depends(get_current_user)]
CurrentOperator = Annotated[AuthenticatedUser, Depends(require_operator)]


def validate_api_key(api_key: str) -> str | None:
    """
    Validate an API key and resolve the role it grants.

    Any non-empty key identifies a regular user; user accounts and their
    keys live with the session layer in front of this service. The
    configured operator key grants the operator role.

    Args:
        api_key: The API key to validate.

    Returns:
        The granted role, or None if the key is invalid.
    """
    if not api_key:
        return None
    if hmac.compare_digest(api_key, get_settings().api_operator_key):
        return ROLE_OPERATOR
    return ROLE_USER


def payment_signature(provider_order_id: str, provider_payment_id: str) -> str:
    """
    Compute the provider signature of a payment callback.

    HMAC-SHA256 over "<order_id>|<payment_id>" keyed with the webhook
    secret, hex encoded.
    """
    message = f"{provider_order_id}|{provider_payment_id}".encode()
    key = get_settings().payment_webhook_secret.encode()
    return hmac.new(key, message, hashlib.sha256).hexdigest()


def verify_payment_signature(
    provider_order_id: str | None,
    provider_payment_id: str | None,
    signature: str | None,
) -> bool:
    """Check a callback signature in constant time."""
    if not (provider_order_id and provider_payment_id and signature):
        return False
    expected = payment_signature(provider_order_id, provider_payment_id)
    return hmac.compare_digest(expected, signature)
